import stat
from concurrent.futures import ThreadPoolExecutor

import asyncssh
import pytest
from sqlmodel import create_engine

from fleetdeck.core.database import create_db_and_tables
from fleetdeck.core.errors import ConflictError, NotFoundError, ValidationError
from fleetdeck.models.key import KeyAlgorithm, KeyOrigin
from fleetdeck.services import KeyManager, KeyValueStore


def mode_of(path) -> int:
    return stat.S_IMODE(path.stat().st_mode)


def test_generate_ed25519(keys, tmp_path):
    record = keys.generate("deploy")
    private_path = tmp_path / "keys" / "deploy"
    public_path = tmp_path / "keys" / "deploy.pub"

    assert record.algorithm == "ssh-ed25519"
    assert record.origin == KeyOrigin.GENERATED
    assert record.fingerprint.startswith("SHA256:")
    assert record.public_key.startswith("ssh-ed25519 ")
    assert record.comment == "fleetdeck-deploy"
    assert mode_of(private_path) == 0o600
    assert mode_of(public_path) == 0o644
    assert mode_of(tmp_path / "keys") == 0o700
    assert public_path.read_text().strip() == record.public_key
    assert asyncssh.read_private_key(str(private_path)).get_fingerprint("sha256") == record.fingerprint


def test_duplicate_name_keeps_first_key(keys, tmp_path):
    first = keys.generate("deploy")
    before = (tmp_path / "keys" / "deploy").read_bytes()
    with pytest.raises(ConflictError, match='SSH key with name "deploy" already exists'):
        keys.generate("deploy", algorithm=KeyAlgorithm.ECDSA)
    assert (tmp_path / "keys" / "deploy").read_bytes() == before
    assert keys.get_key("deploy").fingerprint == first.fingerprint


def test_ecdsa_384(keys):
    assert keys.generate("edge", algorithm=KeyAlgorithm.ECDSA, bits=384).algorithm == "ecdsa-sha2-nistp384"


@pytest.mark.parametrize(
    "algorithm, bits",
    [(KeyAlgorithm.RSA, 1024), (KeyAlgorithm.RSA, 16384), (KeyAlgorithm.ECDSA, 512), (KeyAlgorithm.ED25519, 4096)],
)
def test_unsupported_sizes(keys, algorithm, bits):
    with pytest.raises(ValidationError):
        keys.generate("k", algorithm=algorithm, bits=bits)
    assert keys.list_keys() == []


@pytest.mark.parametrize("name", ["", "../escape", "has space", ".hidden"])
def test_bad_names(keys, name):
    with pytest.raises(ValidationError):
        keys.generate(name)


def test_passphrase_protected_key(keys, tmp_path):
    record = keys.generate("locked", passphrase="hunter22")
    assert record.has_passphrase
    with pytest.raises(asyncssh.KeyImportError):
        asyncssh.read_private_key(str(tmp_path / "keys" / "locked"))
    assert asyncssh.read_private_key(str(tmp_path / "keys" / "locked"), passphrase="hunter22")


def test_import_valid_key_copies_bytes(keys, tmp_path):
    source = tmp_path / "id_ed25519"
    key = asyncssh.generate_private_key("ssh-ed25519", comment="laptop")
    key.write_private_key(str(source))

    record = keys.import_key("laptop", str(source))

    assert record.origin == KeyOrigin.IMPORTED
    assert record.comment == "laptop"
    assert record.fingerprint == key.get_fingerprint("sha256")
    assert (tmp_path / "keys" / "laptop").read_bytes() == source.read_bytes()
    assert mode_of(tmp_path / "keys" / "laptop") == 0o600


def test_import_garbage(keys, tmp_path):
    source = tmp_path / "notakey"
    source.write_text("hello world\n")
    with pytest.raises(ValidationError, match="not a valid private key"):
        keys.import_key("junk", str(source))
    assert not (tmp_path / "keys" / "junk").exists()


def test_import_missing_file(keys, tmp_path):
    with pytest.raises(ValidationError, match="not readable"):
        keys.import_key("ghost", str(tmp_path / "nope"))


def test_list_get_and_delete(keys, tmp_path):
    keys.generate("b-key")
    keys.generate("a-key")
    assert [r.name for r in keys.list_keys()] == ["a-key", "b-key"]
    assert keys.public_key("a-key").startswith("ssh-ed25519 ")

    keys.delete_key("a-key")
    assert not (tmp_path / "keys" / "a-key").exists()
    assert not (tmp_path / "keys" / "a-key.pub").exists()
    with pytest.raises(NotFoundError):
        keys.get_key("a-key")
    with pytest.raises(NotFoundError):
        keys.delete_key("a-key")
    # the name is free again once deleted
    keys.generate("a-key")


def test_name_taken_during_generation_is_a_conflict(keys, tmp_path, monkeypatch):
    real_generate = asyncssh.generate_private_key
    private_path = tmp_path / "keys" / "race"

    def generate_while_another_writes(*args, **kwargs):
        key = real_generate(*args, **kwargs)
        private_path.write_bytes(b"other key\n")
        return key

    monkeypatch.setattr(asyncssh, "generate_private_key", generate_while_another_writes)
    with pytest.raises(ConflictError):
        keys.generate("race")
    assert private_path.read_bytes() == b"other key\n"
    assert not (tmp_path / "keys" / "race.pub").exists()


def test_concurrent_generation_under_one_name(tmp_path):
    # file-backed so each worker thread gets its own connection
    engine = create_engine(f"sqlite:///{tmp_path / 'store.db'}", connect_args={"check_same_thread": False})
    create_db_and_tables(engine)
    keys = KeyManager(tmp_path / "keys", KeyValueStore(engine))

    def attempt(_):
        try:
            return keys.generate("dup")
        except ConflictError as e:
            return e

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(attempt, range(8)))

    created = [o for o in outcomes if not isinstance(o, ConflictError)]
    assert len(created) == 1
    assert sum(isinstance(o, ConflictError) for o in outcomes) == 7
    assert keys.get_key("dup").fingerprint == created[0].fingerprint
