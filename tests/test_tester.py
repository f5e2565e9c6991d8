import pytest

from fleetdeck.core.errors import AuthError, ConnectTimeoutError, ConnectivityError, HandshakeError
from fleetdeck.models.host import Host
from fleetdeck.models.remote import ConnectionErrorKind
from fleetdeck.services.tester import PROBE_COMMAND, ConnectionTester


def make_host() -> Host:
    return Host(id="h1", name="h1", address="10.0.0.5", username="deploy", password="pw")


async def refused(address, port, timeout):
    return False, 1.0, "refused"


async def silent(address, port, timeout):
    return False, timeout * 1000, "timeout"


async def open_port(address, port, timeout):
    return True, 1.0, None


@pytest.mark.asyncio
async def test_successful_probe_reports_shell_and_os(executor):
    executor.on(PROBE_COMMAND, stdout="/bin/bash\nLinux\n")
    result = await ConnectionTester(executor, probe=open_port).test(make_host())
    assert result.success
    assert result.shell == "/bin/bash"
    assert result.os == "Linux"
    assert result.auth_method == "password"
    assert result.latency_ms is not None
    assert result.error_kind is None


@pytest.mark.asyncio
async def test_unreachable_is_not_auth_failed(executor):
    result = await ConnectionTester(executor, probe=refused).test(make_host())
    assert not result.success
    assert result.error_kind == ConnectionErrorKind.UNREACHABLE
    # no SSH attempt once the port is closed
    assert executor.calls == []


@pytest.mark.asyncio
async def test_port_probe_timeout(executor):
    result = await ConnectionTester(executor, probe=silent).test(make_host(), timeout=0.1)
    assert result.error_kind == ConnectionErrorKind.TIMEOUT


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error, kind",
    [
        (AuthError("denied"), ConnectionErrorKind.AUTH_FAILED),
        (HandshakeError("kex failed"), ConnectionErrorKind.HANDSHAKE_ERROR),
        (ConnectTimeoutError("slow"), ConnectionErrorKind.TIMEOUT),
        (ConnectivityError("reset"), ConnectionErrorKind.UNREACHABLE),
    ],
)
async def test_session_failures_are_classified(executor, error, kind):
    executor.on(PROBE_COMMAND, error=error)
    result = await ConnectionTester(executor, probe=open_port).test(make_host())
    assert not result.success
    assert result.error_kind == kind
    assert result.message == error.message


@pytest.mark.asyncio
async def test_broken_shell_is_unknown(executor):
    executor.on(PROBE_COMMAND, stderr="sh: not found", exit_code=127)
    result = await ConnectionTester(executor, probe=open_port).test(make_host())
    assert result.error_kind == ConnectionErrorKind.UNKNOWN
