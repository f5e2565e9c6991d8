import logging
import shlex
from typing import Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from fleetdeck.core.config import get_settings
from fleetdeck.models.host import Host, HostLogs, HostMetrics, ResourceUsage
from fleetdeck.models.store import utcnow
from fleetdeck.services.executor import RemoteExecutor
from fleetdeck.services.scripts import ScriptBuilder

settings = get_settings()
logger = logging.getLogger(__name__)

REFRESH_JOB_ID = "refresh_host_stats"


def build_stats_script() -> ScriptBuilder:
    """Prints one labelled line per metric: cpu, mem, disk, uptime, load."""
    script = ScriptBuilder(fail_fast=False)
    script.raw("echo \"cpu $(top -bn1 | grep 'Cpu(s)' | awk '{print 100 - $8}')\"")
    script.raw("free -b | awk '/^Mem:/ {print \"mem\", $2, $3}'")
    script.raw("df -B1 / | awk 'NR==2 {print \"disk\", $2, $3}'")
    script.raw("awk '{print \"uptime\", int($1)}' /proc/uptime")
    script.raw("awk '{print \"load\", $1, $2, $3}' /proc/loadavg")
    return script


def _usage(total: int, used: int) -> ResourceUsage:
    percentage = round(used / total * 100, 2) if total > 0 else 0.0
    return ResourceUsage(used=used, total=total, percentage=percentage)


def parse_stats(stdout: str) -> HostMetrics:
    """Parses the stats script output. Missing or garbled lines leave zeros."""
    metrics = HostMetrics(collected_at=utcnow())
    for line in stdout.splitlines():
        label, _, rest = line.strip().partition(" ")
        values = rest.split()
        try:
            if label == "cpu" and values:
                metrics.cpu_percent = round(min(max(float(values[0]), 0.0), 100.0), 2)
            elif label == "mem" and len(values) >= 2:
                metrics.memory = _usage(int(values[0]), int(values[1]))
            elif label == "disk" and len(values) >= 2:
                metrics.disk = _usage(int(values[0]), int(values[1]))
            elif label == "uptime" and values:
                metrics.uptime_seconds = int(values[0])
            elif label == "load" and len(values) >= 3:
                metrics.load_average = [float(v) for v in values[:3]]
        except ValueError:
            logger.debug(f"Ignoring unparsable stats line: {line!r}")
    return metrics


async def collect_metrics(executor: RemoteExecutor, host: Host) -> HostMetrics:
    result = await executor.execute(host, build_stats_script().as_command())
    result.check(entity_id=host.id)
    return parse_stats(result.stdout)


async def tail_logs(
    executor: RemoteExecutor,
    host: Host,
    lines: Optional[int] = None,
    path: Optional[str] = None,
) -> HostLogs:
    lines = lines or settings.LOG_LINES
    path = path or settings.LOG_FILE
    command = shlex.join(["tail", "-n", str(lines), path])
    result = await executor.execute(host, command)
    result.check(entity_id=host.id)
    return HostLogs(path=path, lines=lines, content=result.stdout, fetched_at=utcnow())


class StatsPoller:
    """Periodic, low-priority refresh of connected hosts.

    The job itself lives in the registry; this only owns the APScheduler
    instance and its interval.
    """

    def __init__(self, refresh: Callable[[], Awaitable[None]], interval: Optional[int] = None):
        self.refresh = refresh
        self.interval = interval or settings.STATS_INTERVAL
        self.scheduler = AsyncIOScheduler()

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            self.scheduler.add_job(
                self.refresh,
                IntervalTrigger(seconds=self.interval),
                id=REFRESH_JOB_ID,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            logger.info(f"Stats poller started (every {self.interval}s)")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Stats poller stopped")

    @property
    def running(self) -> bool:
        return self.scheduler.running
