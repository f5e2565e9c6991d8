import json
import logging
from typing import Any, Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from fleetdeck.core.security import encrypt_secret, decrypt_secret
from fleetdeck.models.store import StoreEntry, utcnow

logger = logging.getLogger(__name__)


class KeyValueStore:
    """Encrypted key-value persistence for hosts, key metadata and deployment history.

    Callers only deal in JSON-compatible values; encryption at rest happens
    here and nowhere else.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def get(self, key: str) -> Optional[Any]:
        with Session(self.engine) as session:
            entry = session.get(StoreEntry, key)
            if not entry:
                return None
            return json.loads(decrypt_secret(entry.value))

    def put(self, key: str, value: Any) -> None:
        payload = encrypt_secret(json.dumps(value, default=str))
        with Session(self.engine) as session:
            entry = session.get(StoreEntry, key)
            if entry:
                entry.value = payload
                entry.updated_at = utcnow()
            else:
                entry = StoreEntry(key=key, value=payload)
            session.add(entry)
            session.commit()

    def delete(self, key: str) -> bool:
        with Session(self.engine) as session:
            entry = session.get(StoreEntry, key)
            if not entry:
                return False
            session.delete(entry)
            session.commit()
            return True

    def scan(self, prefix: str) -> dict[str, Any]:
        """Returns every entry whose key starts with ``prefix``, ordered by key."""
        with Session(self.engine) as session:
            statement = select(StoreEntry).where(StoreEntry.key.startswith(prefix)).order_by(StoreEntry.key)
            entries = session.exec(statement).all()
        result = {}
        for entry in entries:
            result[entry.key] = json.loads(decrypt_secret(entry.value))
        return result
