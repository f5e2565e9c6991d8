"""One-shot SSH sessions to managed hosts.

Each ``execute`` call opens its own connection, runs a single command and
closes the connection again. Raw transport and protocol failures are turned
into the ``fleetdeck.core.errors`` taxonomy here and nowhere else. There are
no retries at this layer.
"""
import asyncio
import logging
import socket
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import asyncssh

from fleetdeck.core.config import get_settings
from fleetdeck.core.errors import (
    AuthError,
    ConnectTimeoutError,
    ConnectivityError,
    FleetError,
    HandshakeError,
    OperationTimeoutError,
)
from fleetdeck.models.host import Host
from fleetdeck.models.remote import CommandResult
from fleetdeck.models.store import utcnow

settings = get_settings()
logger = logging.getLogger(__name__)

# Bound on the polite close after a finished command
CLOSE_TIMEOUT = 5.0


def classify_error(exc: BaseException, host: Host, phase: str = "connect") -> FleetError:
    """Maps an asyncssh/socket failure onto the error taxonomy.

    ``phase`` is ``"connect"`` while the session is being established and
    ``"run"`` once it is up; a dropped connection means a failed handshake in
    the first case and a lost link in the second.
    """
    if isinstance(exc, FleetError):
        return exc

    target = f"{host.username}@{host.address}:{host.port}"
    ref = {"entity_type": "host", "entity_id": host.id}

    if isinstance(exc, asyncssh.PermissionDenied):
        return AuthError(f"Authentication failed for {target}: {exc.reason}", **ref)
    if isinstance(exc, asyncssh.HostKeyNotVerifiable):
        return HandshakeError(f"Host key for {target} could not be verified: {exc.reason}", **ref)
    if isinstance(exc, asyncssh.DisconnectError):
        if phase == "connect":
            return HandshakeError(f"SSH handshake with {target} failed: {exc.reason}", **ref)
        return ConnectivityError(f"Connection to {target} lost: {exc.reason}", **ref)
    if isinstance(exc, asyncio.TimeoutError):
        return ConnectTimeoutError(f"Timed out connecting to {target}", **ref)
    if isinstance(exc, socket.gaierror):
        return ConnectivityError(f"Could not resolve {host.address}: {exc.strerror or exc}", **ref)
    if isinstance(exc, ConnectionRefusedError):
        return ConnectivityError(f"Connection refused by {target}", **ref)
    if isinstance(exc, OSError):
        return ConnectivityError(f"Cannot reach {target}: {exc.strerror or exc}", **ref)
    if isinstance(exc, asyncssh.Error):
        return ConnectivityError(f"SSH error talking to {target}: {exc.reason}", **ref)
    return FleetError(f"Unexpected error talking to {target}: {exc!r}", **ref)


class RemoteExecutor:
    def __init__(
        self,
        connect_timeout: Optional[float] = None,
        command_timeout: Optional[float] = None,
        known_hosts: Optional[str] = None,
    ):
        self.connect_timeout = connect_timeout or settings.CONNECT_TIMEOUT
        self.command_timeout = command_timeout or settings.COMMAND_TIMEOUT
        self.known_hosts = known_hosts if known_hosts is not None else settings.KNOWN_HOSTS_PATH

    def connect_options(self, host: Host) -> dict:
        """Builds asyncssh.connect keyword arguments for ``host``.

        Raises:
            AuthError: no credential configured, or the private key is unreadable.
        """
        options = {
            "host": host.address,
            "port": host.port,
            "username": host.username,
            "known_hosts": self.known_hosts,
            # only the credential configured on the host is ever offered
            "agent_path": None,
        }
        if host.private_key_path:
            try:
                key = asyncssh.read_private_key(host.private_key_path, passphrase=host.private_key_passphrase)
            except (OSError, asyncssh.KeyImportError, asyncssh.KeyEncryptionError) as e:
                raise AuthError(
                    f"Failed to read private key {host.private_key_path}: {e}",
                    entity_type="host",
                    entity_id=host.id,
                ) from e
            options["client_keys"] = [key]
        elif host.password:
            options["password"] = host.password
            options["client_keys"] = None
        else:
            raise AuthError("No authentication method provided", entity_type="host", entity_id=host.id)
        return options

    async def connect(self, host: Host, connect_timeout: Optional[float] = None) -> asyncssh.SSHClientConnection:
        timeout = connect_timeout or self.connect_timeout
        options = self.connect_options(host)
        try:
            return await asyncio.wait_for(asyncssh.connect(**options), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise ConnectTimeoutError(
                f"Timed out after {timeout}s connecting to {host.address}:{host.port}",
                entity_type="host",
                entity_id=host.id,
                details={"timeout": timeout},
            ) from e
        except (OSError, asyncssh.Error) as e:
            error = classify_error(e, host, phase="connect")
            logger.info(f"Connect to host {host.id} failed ({error.kind.value}): {error.message}")
            raise error from e

    @asynccontextmanager
    async def session(self, host: Host, connect_timeout: Optional[float] = None) -> AsyncIterator[asyncssh.SSHClientConnection]:
        """Yields a live connection that is aborted on error and closed otherwise."""
        conn = await self.connect(host, connect_timeout)
        try:
            yield conn
        except BaseException:
            conn.abort()
            raise
        else:
            conn.close()
            try:
                await asyncio.wait_for(conn.wait_closed(), timeout=CLOSE_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning(f"Session to host {host.id} did not close cleanly")

    async def execute(
        self,
        host: Host,
        command: str,
        timeout: Optional[float] = None,
        connect_timeout: Optional[float] = None,
    ) -> CommandResult:
        """Runs ``command`` on ``host`` in a fresh session.

        A non-zero exit status is returned, not raised. On timeout the session
        is force-closed and ``OperationTimeoutError`` is raised; the remote
        process may keep running.
        """
        timeout = timeout or self.command_timeout
        async with self.session(host, connect_timeout) as conn:
            started = time.perf_counter()
            try:
                completed = await asyncio.wait_for(
                    conn.run(command, check=False, errors="replace"),
                    timeout=timeout,
                )
            except asyncio.TimeoutError as e:
                logger.warning(f"Command on host {host.id} exceeded {timeout}s; session aborted")
                raise OperationTimeoutError(
                    f"Command timed out after {timeout}s on {host.address}",
                    timeout=timeout,
                    entity_type="host",
                    entity_id=host.id,
                ) from e
            except (OSError, asyncssh.Error) as e:
                raise classify_error(e, host, phase="run") from e

        exit_code = completed.exit_status
        if exit_code is None:
            # terminated by a signal
            exit_code = -1
        return CommandResult(
            command=command,
            stdout=str(completed.stdout or ""),
            stderr=str(completed.stderr or ""),
            exit_code=exit_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
            finished_at=utcnow(),
        )
