import logging

from fleetdeck.core.errors import PartialEffectError, RemoteExecutionError
from fleetdeck.models.host import Host
from fleetdeck.models.remote import PermissionResult, PermissionSpec
from fleetdeck.services.executor import RemoteExecutor
from fleetdeck.services.scripts import ScriptBuilder, parse_step_markers
from fleetdeck.utils.validation import require_account, require_mode, require_remote_path

logger = logging.getLogger(__name__)


def build_permission_script(path: str, spec: PermissionSpec) -> ScriptBuilder:
    """Ownership first, then mode, stopping at the first failing step."""
    recursive = ["-R"] if spec.recursive else []
    script = ScriptBuilder()
    script.step("check", "test", "-e", path)
    if spec.owner:
        owner = f"{spec.owner}:{spec.group}" if spec.group else spec.owner
        script.step("chown", "chown", *recursive, owner, path)
    elif spec.group:
        script.step("chgrp", "chgrp", *recursive, spec.group, path)
    if spec.mode:
        script.step("chmod", "chmod", *recursive, spec.mode, path)
    return script


class PermissionSetup:
    """Applies a PermissionSpec to a remote path.

    Reporting is all-or-nothing, execution is not: when a later step fails,
    earlier chown/chmod changes stay in place and are listed in the
    PartialEffectError.
    """

    def __init__(self, executor: RemoteExecutor):
        self.executor = executor

    async def apply(self, host: Host, path: str, spec: PermissionSpec) -> PermissionResult:
        path = require_remote_path(path)
        if spec.owner:
            require_account(spec.owner, "owner")
        if spec.group:
            require_account(spec.group, "group")
        if spec.mode:
            require_mode(spec.mode)

        result = await self.executor.execute(host, build_permission_script(path, spec).as_command())
        progress = parse_step_markers(result.stdout)

        if result.success:
            logger.info(f"Permissions applied to {path} on host {host.id}: {', '.join(progress.completed)}")
            return PermissionResult(
                path=path,
                success=True,
                completed_steps=progress.completed,
                stdout=progress.output,
                stderr=result.stderr,
            )

        applied = [name for name in progress.completed if name != "check"]
        failed = progress.failed or "unknown"
        message = f"Permission setup on {path} failed at step '{failed}': {result.stderr.strip() or 'no output'}"
        logger.warning(f"Host {host.id}: {message}")
        if applied:
            raise PartialEffectError(
                message,
                completed_steps=applied,
                failed_step=failed,
                entity_type="host",
                entity_id=host.id,
                details={"path": path, "stderr": result.stderr, "exit_code": result.exit_code},
            )
        raise RemoteExecutionError(
            message,
            result=result,
            entity_type="host",
            entity_id=host.id,
            details={"path": path, "failed_step": failed},
        )
