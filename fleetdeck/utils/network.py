import asyncio
import socket
import time
import logging
from typing import Optional

logger = logging.getLogger(__name__)


async def probe_port(address: str, port: int, timeout: float = 3.0) -> tuple[bool, float, Optional[str]]:
    """
    Checks whether a TCP port accepts connections.
    Returns (is_open, latency_ms, failure) where failure is one of
    'timeout', 'unresolved', 'refused', 'unreachable' or None.
    """
    start_time = time.perf_counter()
    try:
        conn = asyncio.open_connection(address, port)
        reader, writer = await asyncio.wait_for(conn, timeout=timeout)

        latency = (time.perf_counter() - start_time) * 1000
        writer.close()
        await writer.wait_closed()
        return True, round(latency, 2), None
    except asyncio.TimeoutError:
        failure = "timeout"
    except socket.gaierror:
        failure = "unresolved"
    except ConnectionRefusedError:
        failure = "refused"
    except OSError as e:
        logger.debug(f"Port probe {address}:{port} failed: {e}")
        failure = "unreachable"
    latency = (time.perf_counter() - start_time) * 1000
    return False, round(latency, 2), failure
