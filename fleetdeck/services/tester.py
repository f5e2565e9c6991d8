import logging
import time
from typing import Awaitable, Callable, Optional

from fleetdeck.core.errors import (
    AuthError,
    ConnectTimeoutError,
    ConnectivityError,
    FleetError,
    HandshakeError,
    OperationTimeoutError,
)
from fleetdeck.models.host import Host
from fleetdeck.models.remote import ConnectionErrorKind, ConnectionTestResult
from fleetdeck.models.store import utcnow
from fleetdeck.services.executor import RemoteExecutor
from fleetdeck.utils.network import probe_port

logger = logging.getLogger(__name__)

PROBE_COMMAND = 'echo "$SHELL"; uname -s'

PortProbe = Callable[[str, int, float], Awaitable[tuple[bool, float, Optional[str]]]]

_PROBE_FAILURES = {
    "timeout": ConnectionErrorKind.TIMEOUT,
    "unresolved": ConnectionErrorKind.UNREACHABLE,
    "refused": ConnectionErrorKind.UNREACHABLE,
    "unreachable": ConnectionErrorKind.UNREACHABLE,
}


def error_kind_for(error: FleetError) -> ConnectionErrorKind:
    # subclasses before ConnectivityError
    if isinstance(error, AuthError):
        return ConnectionErrorKind.AUTH_FAILED
    if isinstance(error, HandshakeError):
        return ConnectionErrorKind.HANDSHAKE_ERROR
    if isinstance(error, (ConnectTimeoutError, OperationTimeoutError)):
        return ConnectionErrorKind.TIMEOUT
    if isinstance(error, ConnectivityError):
        return ConnectionErrorKind.UNREACHABLE
    return ConnectionErrorKind.UNKNOWN


class ConnectionTester:
    """Classifies whether a host is reachable and accepts our credentials.

    A TCP probe runs first so that a dead address is reported as unreachable
    without going through SSH at all. Then a full session runs a trivial
    command, which covers handshake, authentication and a working shell.
    Failures are reported in the result, never raised.
    """

    def __init__(self, executor: RemoteExecutor, probe: PortProbe = probe_port):
        self.executor = executor
        self.probe = probe

    async def test(self, host: Host, timeout: Optional[float] = None) -> ConnectionTestResult:
        timeout = timeout or self.executor.connect_timeout

        is_open, _, failure = await self.probe(host.address, host.port, timeout)
        if not is_open:
            kind = _PROBE_FAILURES.get(failure, ConnectionErrorKind.UNKNOWN)
            return self._failed(host, kind, f"Port {host.port} on {host.address} is not reachable ({failure})")

        started = time.perf_counter()
        try:
            result = await self.executor.execute(host, PROBE_COMMAND, timeout=timeout, connect_timeout=timeout)
        except FleetError as e:
            return self._failed(host, error_kind_for(e), e.message)
        latency = round((time.perf_counter() - started) * 1000, 2)

        if not result.success:
            return self._failed(
                host,
                ConnectionErrorKind.UNKNOWN,
                f"Probe command exited with {result.exit_code}: {result.stderr.strip()}",
            )

        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        shell = lines[0] if lines else None
        os_name = lines[1] if len(lines) > 1 else None
        logger.info(f"Connection test for host {host.id} succeeded in {latency}ms")
        return ConnectionTestResult(
            host_id=host.id,
            success=True,
            latency_ms=latency,
            shell=shell,
            os=os_name,
            auth_method=host.auth_method,
            tested_at=utcnow(),
        )

    def _failed(self, host: Host, kind: ConnectionErrorKind, message: str) -> ConnectionTestResult:
        logger.info(f"Connection test for host {host.id} failed: {kind.value}: {message}")
        return ConnectionTestResult(
            host_id=host.id,
            success=False,
            auth_method=host.auth_method,
            error_kind=kind,
            message=message,
            tested_at=utcnow(),
        )
