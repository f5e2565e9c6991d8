import os
import tempfile

# Settings are read at import time, so point them at throwaway locations first.
_DATA_DIR = tempfile.mkdtemp(prefix="fleetdeck-tests-")
os.environ["FLEETDECK_DATA_PATH"] = _DATA_DIR
os.environ["FLEETDECK_DATA_DIR"] = _DATA_DIR
os.environ["FLEETDECK_KEYS_DIR"] = os.path.join(_DATA_DIR, "keys")
os.environ["FLEETDECK_DATABASE_URL"] = "sqlite://"
os.environ.pop("FLEETDECK_NOTIFY_URL", None)

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Optional

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine

from fleetdeck.core.database import create_db_and_tables
from fleetdeck.models.remote import CommandResult
from fleetdeck.services import (
    CommandDispatcher,
    ConnectionTester,
    KeyManager,
    KeyValueStore,
    RemoteExecutor,
    ServerRegistry,
)


@dataclass
class Rule:
    needle: str
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    error: Optional[Exception] = None
    delay: float = 0.0
    handler: Optional[Callable[[str], str]] = None


class FakeExecutor(RemoteExecutor):
    """Scripted stand-in for SSH: the newest rule whose needle occurs in the command wins."""

    def __init__(self):
        super().__init__(connect_timeout=2.0, command_timeout=5.0)
        self.rules: list[Rule] = []
        self.calls: list[tuple[str, str]] = []

    def on(self, needle: str, stdout: str = "", stderr: str = "", exit_code: int = 0,
           error: Optional[Exception] = None, delay: float = 0.0,
           handler: Optional[Callable[[str], str]] = None) -> "FakeExecutor":
        self.rules.insert(0, Rule(needle, stdout, stderr, exit_code, error, delay, handler))
        return self

    async def execute(self, host, command, timeout=None, connect_timeout=None) -> CommandResult:
        self.calls.append((host.id, command))
        for rule in self.rules:
            if rule.needle in command:
                if rule.delay:
                    await asyncio.sleep(rule.delay)
                if rule.error is not None:
                    raise rule.error
                stdout = rule.handler(command) if rule.handler else rule.stdout
                return CommandResult(
                    command=command, stdout=stdout, stderr=rule.stderr, exit_code=rule.exit_code, duration_ms=1.0
                )
        return CommandResult(command=command, duration_ms=1.0)

    def commands_for(self, host_id: str) -> list[str]:
        return [command for target, command in self.calls if target == host_id]


async def open_port(address: str, port: int, timeout: float) -> tuple[bool, float, Any]:
    return True, 0.5, None


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    create_db_and_tables(engine)
    return engine


@pytest.fixture
def store(engine):
    return KeyValueStore(engine)


@pytest.fixture
def executor():
    executor = FakeExecutor()
    executor.on("uname -s", stdout="Linux\n")
    return executor


@pytest.fixture
def registry(store, executor):
    return ServerRegistry(store, executor, tester=ConnectionTester(executor, probe=open_port))


@pytest.fixture
def host(registry):
    return registry.add_host(
        id="web-1", name="Web 1", address="10.0.0.5", username="deploy", password="s3cret"
    )


@pytest_asyncio.fixture
async def connected_host(registry, host):
    await registry.connect(host.id)
    return registry.get_host(host.id)


@pytest.fixture
def keys(tmp_path, store):
    return KeyManager(tmp_path / "keys", store)


@pytest.fixture
def dispatcher(registry, keys):
    return CommandDispatcher(registry, keys)


@pytest.fixture
def client(registry, dispatcher):
    from fleetdeck.dependencies import get_dispatcher, get_events, get_registry
    from fleetdeck.main import app

    app.dependency_overrides[get_registry] = lambda: registry
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_events] = lambda: registry.events
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
