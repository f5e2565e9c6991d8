"""Local SSH key material.

Private keys live in ``KEYS_DIR`` with owner-only permissions, public keys
beside them as ``<name>.pub``. Metadata goes to the key-value store under
``key:<name>``. A name is never reused silently: generating or importing
under an existing name is a conflict.
"""
import logging
import os
import threading
from pathlib import Path
from typing import Optional

import asyncssh

from fleetdeck.core.errors import ConflictError, NotFoundError, ValidationError
from fleetdeck.models.key import KeyAlgorithm, KeyOrigin, KeyRecord
from fleetdeck.models.store import utcnow
from fleetdeck.services.store import KeyValueStore
from fleetdeck.utils.validation import require_key_name

logger = logging.getLogger(__name__)

PRIVATE_MODE = 0o600
PUBLIC_MODE = 0o644
DIR_MODE = 0o700

RSA_DEFAULT_BITS = 4096
RSA_MIN_BITS = 2048
RSA_MAX_BITS = 8192
ECDSA_CURVES = {256: "ecdsa-sha2-nistp256", 384: "ecdsa-sha2-nistp384", 521: "ecdsa-sha2-nistp521"}


def _store_key(name: str) -> str:
    return f"key:{name}"


def _write_exclusive(path: Path, data: bytes, mode: int) -> None:
    """Creates ``path`` with ``mode``; fails if it already exists."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    # umask may have narrowed the requested mode
    os.chmod(path, mode)


def resolve_algorithm(algorithm: KeyAlgorithm, bits: Optional[int]) -> tuple[str, dict]:
    """Maps (algorithm, bits) to an asyncssh algorithm name and generation options."""
    if algorithm == KeyAlgorithm.ED25519:
        if bits not in (None, 256):
            raise ValidationError("ed25519 keys have a fixed size; omit bits")
        return "ssh-ed25519", {}
    if algorithm == KeyAlgorithm.RSA:
        bits = bits or RSA_DEFAULT_BITS
        if not RSA_MIN_BITS <= bits <= RSA_MAX_BITS:
            raise ValidationError(f"RSA key size must be between {RSA_MIN_BITS} and {RSA_MAX_BITS} bits")
        return "ssh-rsa", {"key_size": bits}
    if algorithm == KeyAlgorithm.ECDSA:
        bits = bits or 256
        if bits not in ECDSA_CURVES:
            raise ValidationError(f"ECDSA key size must be one of {sorted(ECDSA_CURVES)}")
        return ECDSA_CURVES[bits], {}
    raise ValidationError(f"Unsupported key algorithm {algorithm!r}")


class KeyManager:
    def __init__(self, keys_dir: Path, store: KeyValueStore):
        self.keys_dir = Path(keys_dir)
        self.store = store
        # generation runs in worker threads; claim and write happen under this lock
        self._lock = threading.Lock()

    def _paths(self, name: str) -> tuple[Path, Path]:
        return self.keys_dir / name, self.keys_dir / f"{name}.pub"

    def _ensure_dir(self) -> None:
        self.keys_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self.keys_dir, DIR_MODE)

    def _claim(self, name: str) -> tuple[Path, Path]:
        require_key_name(name)
        private_path, public_path = self._paths(name)
        if self.store.get(_store_key(name)) is not None or private_path.exists() or public_path.exists():
            raise ConflictError(f"SSH key with name \"{name}\" already exists", entity_type="key", entity_id=name)
        self._ensure_dir()
        return private_path, public_path

    def _register(
        self,
        name: str,
        key: asyncssh.SSHKey,
        private_data: bytes,
        origin: KeyOrigin,
        has_passphrase: bool,
        comment: Optional[str],
    ) -> KeyRecord:
        private_path, public_path = self._paths(name)
        public_key = key.export_public_key("openssh").decode().strip()

        record = KeyRecord(
            name=name,
            algorithm=key.get_algorithm(),
            public_key=public_key,
            fingerprint=key.get_fingerprint("sha256"),
            created_at=utcnow(),
            origin=origin,
            private_key_path=str(private_path),
            public_key_path=str(public_path),
            has_passphrase=has_passphrase,
            comment=comment,
        )
        with self._lock:
            # a concurrent call may have taken the name while this key was being generated
            self._claim(name)
            try:
                _write_exclusive(private_path, private_data, PRIVATE_MODE)
            except FileExistsError as e:
                raise ConflictError(
                    f"SSH key with name \"{name}\" already exists", entity_type="key", entity_id=name
                ) from e
            try:
                _write_exclusive(public_path, (public_key + "\n").encode(), PUBLIC_MODE)
            except OSError:
                private_path.unlink(missing_ok=True)
                raise
            self.store.put(_store_key(name), record.model_dump(mode="json"))
        return record

    def generate(
        self,
        name: str,
        algorithm: KeyAlgorithm = KeyAlgorithm.ED25519,
        bits: Optional[int] = None,
        comment: Optional[str] = None,
        passphrase: Optional[str] = None,
    ) -> KeyRecord:
        """Generates a key pair under ``name``.

        Raises:
            ValidationError: bad name or unsupported algorithm/size.
            ConflictError: ``name`` is already taken.
        """
        alg_name, options = resolve_algorithm(KeyAlgorithm(algorithm), bits)
        self._claim(name)
        comment = comment or f"fleetdeck-{name}"

        key = asyncssh.generate_private_key(alg_name, comment=comment, **options)
        private_data = key.export_private_key("openssh", passphrase=passphrase or None)
        record = self._register(name, key, private_data, KeyOrigin.GENERATED, bool(passphrase), comment)
        logger.info(f"Generated {record.algorithm} key '{name}' ({record.fingerprint})")
        return record

    def import_key(self, name: str, private_key_path: str, passphrase: Optional[str] = None) -> KeyRecord:
        """Copies an existing private key into the key store after checking it parses."""
        private_path, _ = self._claim(name)
        source = Path(private_key_path).expanduser()
        if not source.is_file() or not os.access(source, os.R_OK):
            raise ValidationError(f"Private key file {source} is not readable", entity_type="key", entity_id=name)
        try:
            data = source.read_bytes()
            key = asyncssh.import_private_key(data, passphrase=passphrase or None)
        except OSError as e:
            raise ValidationError(f"Failed to read private key {source}: {e}", entity_type="key", entity_id=name) from e
        except (asyncssh.KeyImportError, asyncssh.KeyEncryptionError) as e:
            raise ValidationError(
                f"{source} is not a valid private key: {e}", entity_type="key", entity_id=name
            ) from e

        comment = key.get_comment() or None
        record = self._register(name, key, data, KeyOrigin.IMPORTED, bool(passphrase), comment)
        logger.info(f"Imported {record.algorithm} key '{name}' from {source}")
        return record

    def list_keys(self) -> list[KeyRecord]:
        entries = self.store.scan("key:")
        return [KeyRecord.model_validate(value) for value in entries.values()]

    def get_key(self, name: str) -> KeyRecord:
        require_key_name(name)
        data = self.store.get(_store_key(name))
        if data is None:
            raise NotFoundError(f"SSH key \"{name}\" not found", entity_type="key", entity_id=name)
        return KeyRecord.model_validate(data)

    def public_key(self, name: str) -> str:
        """OpenSSH public key text, as registered by a repository host as a deploy key."""
        return self.get_key(name).public_key

    def delete_key(self, name: str) -> None:
        require_key_name(name)
        private_path, public_path = self._paths(name)
        existed = self.store.delete(_store_key(name))
        for path in (private_path, public_path):
            if path.exists():
                path.unlink()
                existed = True
        if not existed:
            raise NotFoundError(f"SSH key \"{name}\" not found", entity_type="key", entity_id=name)
        logger.info(f"Deleted SSH key '{name}'")
