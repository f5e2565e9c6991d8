import pytest

from fleetdeck.models.deployment import DeploymentRepository, DeploymentRequest, DeploymentState
from fleetdeck.services.orchestrator import DeploymentOrchestrator, plan

SHA = "3f2a9c0d1e4b5a6978c0d1e2f3a4b5c6d7e8f901\n"


def make_request(**overrides) -> DeploymentRequest:
    data = {
        "host_id": "web-1",
        "repository": DeploymentRepository(name="shop", clone_url="https://git.example.com/acme/shop.git"),
        "target_path": "/var/www/shop",
        "build_command": "npm ci && npm run build",
        "environment": {"NODE_ENV": "production"},
    }
    data.update(overrides)
    return DeploymentRequest(**data)


def test_plan_step_order():
    request = make_request(pre_deploy_script="systemctl stop shop", post_deploy_script="systemctl start shop",
                           clean=True)
    steps = plan(request)
    assert [s.id for s in steps] == ["prepare", "pre-deploy", "source", "build", "post-deploy"]
    assert "rm -rf -- /var/www/shop" in steps[0].script
    assert "mkdir -p /var/www" in steps[0].script
    assert "git clone --branch main --single-branch -- https://git.example.com/acme/shop.git /var/www/shop" in steps[2].script
    assert "export NODE_ENV=production" in steps[3].script
    assert "cd /var/www/shop" in steps[3].script
    assert all(s.script.startswith("set -e\n") for s in steps)


def test_plan_skips_optional_steps_and_uses_branch():
    steps = plan(make_request(build_command=None, environment={}, branch="release/2.1"))
    assert [s.id for s in steps] == ["prepare", "source"]
    assert "rm -rf" not in steps[0].script
    assert "git fetch --prune origin release/2.1" in steps[1].script


def test_plan_quotes_hostile_paths():
    steps = plan(make_request(target_path="/srv/my app; rm -rf ~"))
    assert "'/srv/my app; rm -rf ~'" in steps[1].script


@pytest.mark.asyncio
async def test_successful_run_records_every_step(executor, connected_host):
    executor.on("git clone", stdout=SHA)
    executor.on("npm run build", stdout="built in 2.1s\n")
    seen = []

    result = await DeploymentOrchestrator(executor).run(connected_host, make_request(), on_step=seen.append)

    assert result.state == DeploymentState.SUCCEEDED
    assert [s.id for s in result.steps] == ["prepare", "source", "build"]
    assert [s.id for s in seen] == ["prepare", "source", "build"]
    assert result.finished_at is not None
    assert SHA.strip() in result.transcript
    assert "built in 2.1s" in result.transcript


@pytest.mark.asyncio
async def test_transcript_is_deterministic(executor, connected_host):
    executor.on("git clone", stdout=SHA)
    orchestrator = DeploymentOrchestrator(executor)
    first = await orchestrator.run(connected_host, make_request())
    second = await orchestrator.run(connected_host, make_request())
    assert first.transcript == second.transcript


@pytest.mark.asyncio
async def test_failed_step_halts_the_run(executor, connected_host):
    executor.on("npm run build", stderr="npm ERR! missing script: build\n", exit_code=1)
    request = make_request(post_deploy_script="systemctl restart shop")

    result = await DeploymentOrchestrator(executor).run(connected_host, request)

    assert result.state == DeploymentState.FAILED
    assert [s.id for s in result.steps] == ["prepare", "source", "build"]
    assert result.steps[-1].exit_code == 1
    assert not result.steps[-1].success
    assert result.error["kind"] == "remote_execution"
    assert not any("systemctl restart" in command for command in executor.commands_for(connected_host.id))


@pytest.mark.asyncio
async def test_overall_timeout_is_indeterminate(executor, connected_host):
    executor.on("git clone", delay=1.0)
    result = await DeploymentOrchestrator(executor, deploy_timeout=0.2).run(connected_host, make_request())
    assert result.state == DeploymentState.FAILED
    assert result.error["kind"] == "timeout"
    assert result.error["details"]["indeterminate"] is True
    assert [s.id for s in result.steps] == ["prepare"]
