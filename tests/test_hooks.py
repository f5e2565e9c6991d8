import pytest

from fleetdeck.core.errors import PartialEffectError, RemoteExecutionError
from fleetdeck.models.remote import GitHook
from fleetdeck.services.hooks import GitHookInstaller, normalize_hook

HOOKS_DIR = "/srv/app/.git/hooks"
POST_RECEIVE = "#!/bin/sh\nexec make deploy\n"
PRE_PUSH = "exit 0"


def locate(executor, stdout=HOOKS_DIR + "\n", **kwargs):
    executor.on("Not a git repository", stdout=stdout, **kwargs)


@pytest.mark.asyncio
async def test_all_hooks_installed(executor, connected_host):
    locate(executor)
    executor.on("hooks/post-receive", stdout=POST_RECEIVE)
    executor.on("hooks/pre-push", stdout=normalize_hook(PRE_PUSH))

    hooks = [GitHook(name="post-receive", script=POST_RECEIVE), GitHook(name="pre-push", script=PRE_PUSH)]
    result = await GitHookInstaller(executor).install(connected_host, "/srv/app/", hooks)

    assert result.success
    assert result.repo_path == "/srv/app"
    assert result.installed == ["post-receive", "pre-push"]
    assert result.outcomes[0].path == f"{HOOKS_DIR}/post-receive"


@pytest.mark.asyncio
async def test_one_failing_hook_keeps_the_others(executor, connected_host):
    locate(executor)
    executor.on("hooks/post-receive", stdout=POST_RECEIVE)
    executor.on("hooks/pre-push", stderr="No space left on device", exit_code=1)

    hooks = [GitHook(name="pre-push", script=PRE_PUSH), GitHook(name="post-receive", script=POST_RECEIVE)]
    result = await GitHookInstaller(executor).install(connected_host, "/srv/app", hooks)

    assert not result.success
    assert result.installed == ["post-receive"]
    assert result.outcomes[0].error == "No space left on device"


@pytest.mark.asyncio
async def test_read_back_mismatch_fails_the_hook(executor, connected_host):
    locate(executor)
    executor.on("hooks/post-receive", stdout="#!/bin/sh\n")
    result = await GitHookInstaller(executor).install(
        connected_host, "/srv/app", [GitHook(name="post-receive", script=POST_RECEIVE)]
    )
    assert result.installed == []
    assert "does not match" in result.outcomes[0].error


@pytest.mark.asyncio
async def test_not_a_repository(executor, connected_host):
    locate(executor, stdout="", stderr="Not a git repository: /tmp", exit_code=2)
    with pytest.raises(RemoteExecutionError, match="Not a git repository"):
        await GitHookInstaller(executor).install(
            connected_host, "/tmp", [GitHook(name="post-receive", script=POST_RECEIVE)]
        )


@pytest.mark.asyncio
async def test_registry_reports_partial_install(registry, executor, connected_host):
    locate(executor)
    executor.on("hooks/post-receive", stdout=POST_RECEIVE)
    executor.on("hooks/pre-push", exit_code=1)
    hooks = [GitHook(name="post-receive", script=POST_RECEIVE), GitHook(name="pre-push", script=PRE_PUSH)]

    with pytest.raises(PartialEffectError) as exc_info:
        await registry.create_git_hooks(connected_host.id, "/srv/app", hooks)
    assert exc_info.value.completed_steps == ["post-receive"]
    assert exc_info.value.failed_step == "pre-push"
    assert len(exc_info.value.details["outcomes"]) == 2


@pytest.mark.asyncio
async def test_registry_reports_total_failure(registry, executor, connected_host):
    locate(executor)
    executor.on("hooks/pre-push", exit_code=1)
    with pytest.raises(RemoteExecutionError):
        await registry.create_git_hooks(connected_host.id, "/srv/app", [GitHook(name="pre-push", script=PRE_PUSH)])
