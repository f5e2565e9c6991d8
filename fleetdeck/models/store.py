from sqlmodel import SQLModel, Field
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StoreEntry(SQLModel, table=True):
    key: str = Field(primary_key=True)
    value: str  # Fernet token of a JSON document
    updated_at: datetime = Field(default_factory=utcnow)
