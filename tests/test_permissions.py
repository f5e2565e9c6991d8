import pytest

from fleetdeck.core.errors import PartialEffectError, RemoteExecutionError, ValidationError
from fleetdeck.models.remote import PermissionSpec
from fleetdeck.services.permissions import PermissionSetup

MARK = "__fleetdeck_step__"


def markers(*events: str) -> str:
    return "".join(f"{MARK} {event}\n" for event in events)


@pytest.mark.asyncio
async def test_success_lists_every_step(executor, connected_host):
    executor.on("chmod", stdout=markers("begin check", "done check", "begin chown", "done chown",
                                        "begin chmod", "done chmod"))
    spec = PermissionSpec(owner="www-data", group="www-data", mode="755", recursive=True)
    result = await PermissionSetup(executor).apply(connected_host, "/var/www/app", spec)
    assert result.success
    assert result.completed_steps == ["check", "chown", "chmod"]
    assert MARK not in result.stdout


@pytest.mark.asyncio
async def test_recursive_chmod_failure_after_chown_is_partial(executor, connected_host):
    executor.on(
        "chmod",
        stdout=markers("begin check", "done check", "begin chown", "done chown", "begin chmod"),
        stderr="chmod: changing permissions of '/var/www/app/cache': Operation not permitted",
        exit_code=1,
    )
    spec = PermissionSpec(owner="www-data", mode="755", recursive=True)
    with pytest.raises(PartialEffectError) as exc_info:
        await PermissionSetup(executor).apply(connected_host, "/var/www/app", spec)
    error = exc_info.value
    assert error.completed_steps == ["chown"]
    assert error.failed_step == "chmod"
    assert "Operation not permitted" in error.message
    # the script stops at the failing step; nothing is rolled back
    command = executor.commands_for(connected_host.id)[-1]
    assert "chown -R www-data" in command
    assert "chmod -R 755" in command


@pytest.mark.asyncio
async def test_missing_path_fails_without_effects(executor, connected_host):
    executor.on("chmod", stdout=markers("begin check"), exit_code=1)
    with pytest.raises(RemoteExecutionError) as exc_info:
        await PermissionSetup(executor).apply(connected_host, "/srv/missing", PermissionSpec(mode="700"))
    assert exc_info.value.details["failed_step"] == "check"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "path, spec",
    [
        ("relative/path", PermissionSpec(mode="755")),
        ("/srv/../etc", PermissionSpec(mode="755")),
        ("/srv/app", PermissionSpec(mode="rwx")),
        ("/srv/app", PermissionSpec(owner="root; rm -rf /")),
    ],
)
async def test_invalid_input_never_reaches_the_host(executor, connected_host, path, spec):
    before = len(executor.calls)
    with pytest.raises(ValidationError):
        await PermissionSetup(executor).apply(connected_host, path, spec)
    assert len(executor.calls) == before
