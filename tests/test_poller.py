import pytest

from fleetdeck.core.errors import RemoteExecutionError
from fleetdeck.services.poller import REFRESH_JOB_ID, StatsPoller, parse_stats, tail_logs

SAMPLE = """cpu 37.4
mem 8242233344 2060558336
disk 52710469632 13177617408
uptime 86523
load 0.52 0.61 0.70
"""


def test_parse_stats():
    metrics = parse_stats(SAMPLE)
    assert metrics.cpu_percent == 37.4
    assert metrics.memory.total == 8242233344
    assert metrics.memory_percent == 25.0
    assert metrics.disk_percent == 25.0
    assert metrics.uptime_seconds == 86523
    assert metrics.load_average == [0.52, 0.61, 0.7]
    assert metrics.collected_at is not None


def test_parse_stats_tolerates_garbage():
    metrics = parse_stats("cpu -3\nmem lots used\ndisk 0 0\nbogus line\n")
    assert metrics.cpu_percent == 0.0
    assert metrics.memory.total == 0
    assert metrics.disk_percent == 0.0


@pytest.mark.asyncio
async def test_tail_logs_defaults(executor, connected_host):
    executor.on("tail -n", stdout="Oct 18 10:00:01 web-1 CRON[1]: ok\n")
    logs = await tail_logs(executor, connected_host)
    assert logs.path == "/var/log/syslog"
    assert logs.lines == 100
    assert "CRON" in logs.content
    assert executor.commands_for(connected_host.id)[-1] == "tail -n 100 /var/log/syslog"


@pytest.mark.asyncio
async def test_tail_logs_quotes_path_and_checks_exit(executor, connected_host):
    executor.on("tail -n", stderr="tail: cannot open", exit_code=1)
    with pytest.raises(RemoteExecutionError):
        await tail_logs(executor, connected_host, lines=5, path="/var/log/my app.log")
    assert executor.commands_for(connected_host.id)[-1] == "tail -n 5 '/var/log/my app.log'"


@pytest.mark.asyncio
async def test_poller_schedules_single_job():
    async def refresh():
        return None

    poller = StatsPoller(refresh, interval=60)
    poller.start()
    try:
        assert poller.running
        job = poller.scheduler.get_job(REFRESH_JOB_ID)
        assert job is not None
        assert job.max_instances == 1
        poller.start()
        assert len(poller.scheduler.get_jobs()) == 1
    finally:
        poller.shutdown()
