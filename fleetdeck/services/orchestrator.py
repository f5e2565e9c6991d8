"""Multi-step deployments over the Remote Executor.

``plan`` turns a DeploymentRequest into a fixed list of shell steps. The
orchestrator runs them in order, stops at the first failure, and hands every
finished step to an ``on_step`` callback so the registry can publish
progress. The whole run sits under one ceiling; when it is hit the active
session is aborted and the run is reported as failed with indeterminate
remote effects.
"""
import asyncio
import logging
import posixpath
import shlex
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from fleetdeck.core.config import get_settings
from fleetdeck.core.errors import FleetError, OperationTimeoutError, RemoteExecutionError
from fleetdeck.models.deployment import (
    DeploymentRequest,
    DeploymentResult,
    DeploymentState,
    DeploymentStepResult,
)
from fleetdeck.models.host import Host
from fleetdeck.models.store import utcnow
from fleetdeck.services.executor import RemoteExecutor
from fleetdeck.services.scripts import ScriptBuilder

settings = get_settings()
logger = logging.getLogger(__name__)

StepCallback = Callable[[DeploymentStepResult], None]


@dataclass(frozen=True)
class PlannedStep:
    id: str
    name: str
    script: str


def _with_environment(request: DeploymentRequest) -> ScriptBuilder:
    script = ScriptBuilder()
    for name in sorted(request.environment):
        script.export(name, request.environment[name])
    return script


def plan(request: DeploymentRequest) -> list[PlannedStep]:
    target = request.target_path.rstrip("/") or "/"
    parent = posixpath.dirname(target) or "/"
    branch = request.effective_branch
    steps = []

    prepare = ScriptBuilder()
    if request.clean:
        prepare.command("rm", "-rf", "--", target)
    prepare.command("mkdir", "-p", parent)
    steps.append(PlannedStep("prepare", "Prepare target directory", prepare.render()))

    if request.pre_deploy_script:
        pre = _with_environment(request)
        pre.cd(parent)
        pre.raw(request.pre_deploy_script)
        steps.append(PlannedStep("pre-deploy", "Pre-deploy script", pre.render()))

    source = ScriptBuilder()
    source.raw(f"if [ -d {shlex.quote(target + '/.git')} ]; then")
    source.raw("  " + shlex.join(["cd", target]))
    source.raw("  " + shlex.join(["git", "fetch", "--prune", "origin", branch]))
    source.raw("  " + shlex.join(["git", "checkout", "-B", branch, "FETCH_HEAD"]))
    source.raw("  " + shlex.join(["git", "reset", "--hard", "FETCH_HEAD"]))
    source.raw("else")
    source.raw("  " + shlex.join(["git", "clone", "--branch", branch, "--single-branch", "--", request.repository.clone_url, target]))
    source.raw("fi")
    source.command("git", "-C", target, "rev-parse", "HEAD")
    steps.append(PlannedStep("source", "Fetch source", source.render()))

    if request.build_command:
        build = _with_environment(request)
        build.cd(target)
        build.raw(request.build_command)
        steps.append(PlannedStep("build", "Build", build.render()))

    if request.post_deploy_script:
        post = _with_environment(request)
        post.cd(target)
        post.raw(request.post_deploy_script)
        steps.append(PlannedStep("post-deploy", "Post-deploy script", post.render()))

    return steps


class DeploymentOrchestrator:
    def __init__(
        self,
        executor: RemoteExecutor,
        deploy_timeout: Optional[float] = None,
        step_timeout: Optional[float] = None,
    ):
        self.executor = executor
        self.deploy_timeout = deploy_timeout or settings.DEPLOY_TIMEOUT
        self.step_timeout = step_timeout or settings.DEPLOY_STEP_TIMEOUT

    async def run(
        self,
        host: Host,
        request: DeploymentRequest,
        on_step: Optional[StepCallback] = None,
        started_at: Optional[datetime] = None,
    ) -> DeploymentResult:
        """Runs the planned steps and returns the finished result.

        Step failures and the overall timeout are recorded on the result,
        not raised. Cancellation propagates. ``started_at`` lets a caller that
        already announced the run keep its start time.
        """
        result = DeploymentResult(
            host_id=host.id,
            repository=request.repository,
            branch=request.effective_branch,
            target_path=request.target_path,
            state=DeploymentState.RUNNING,
            started_at=started_at or utcnow(),
        )
        steps = plan(request)
        logger.info(f"Deploying {request.repository.name}@{result.branch} to host {host.id}:{request.target_path}")

        try:
            await asyncio.wait_for(self._run_steps(host, steps, result, on_step), timeout=self.deploy_timeout)
        except asyncio.TimeoutError:
            error = OperationTimeoutError(
                f"Deployment exceeded {self.deploy_timeout}s; remote state is indeterminate",
                timeout=self.deploy_timeout,
                entity_type="deployment",
                entity_id=host.id,
            )
            result.state = DeploymentState.FAILED
            result.error = error.to_info().model_dump(mode="json")

        if result.state == DeploymentState.RUNNING:
            result.state = DeploymentState.SUCCEEDED
        result.finished_at = utcnow()
        logger.info(f"Deployment to host {host.id} finished: {result.state.value}")
        return result

    async def _run_steps(
        self,
        host: Host,
        steps: list[PlannedStep],
        result: DeploymentResult,
        on_step: Optional[StepCallback],
    ) -> None:
        for planned in steps:
            started = utcnow()
            error: Optional[FleetError] = None
            try:
                output = await self.executor.execute(
                    host, ScriptBuilder.wrap(planned.script), timeout=self.step_timeout
                )
                stdout, stderr, exit_code = output.stdout, output.stderr, output.exit_code
                if not output.success:
                    error = RemoteExecutionError(
                        f"Step '{planned.name}' failed with exit code {exit_code}",
                        result=output,
                        entity_type="deployment",
                        entity_id=host.id,
                        details={"step": planned.id},
                    )
            except FleetError as e:
                error = e
                stdout, stderr, exit_code = "", e.message, -1

            step = DeploymentStepResult(
                id=planned.id,
                name=planned.name,
                command=planned.script,
                stdout=stdout,
                stderr=stderr,
                exit_code=exit_code,
                started_at=started,
                finished_at=utcnow(),
                success=error is None,
            )
            result.steps.append(step)
            if on_step:
                on_step(step)

            if error is not None:
                logger.warning(f"Deployment to host {host.id} halted at step {planned.id}: {error.message}")
                result.state = DeploymentState.FAILED
                result.error = error.to_info().model_dump(mode="json")
                return
