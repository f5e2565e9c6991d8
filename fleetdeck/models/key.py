from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel


class KeyAlgorithm(str, Enum):
    ED25519 = "ed25519"
    RSA = "rsa"
    ECDSA = "ecdsa"


class KeyOrigin(str, Enum):
    GENERATED = "generated"
    IMPORTED = "imported"


class KeyRecord(BaseModel):
    name: str
    algorithm: str
    public_key: str  # OpenSSH single-line form
    fingerprint: str
    created_at: datetime
    origin: KeyOrigin
    private_key_path: str
    public_key_path: str
    has_passphrase: bool = False
    comment: Optional[str] = None
