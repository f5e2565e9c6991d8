"""The host catalog and every piece of per-host state.

``ServerRegistry`` is the only writer. Components (tester, detector,
permission setup, hook installer, orchestrator, poller helpers) receive a
snapshot of the host, do their network I/O, and hand a result back; the
registry then checks that the host still exists and that its in-flight marker
still matches before applying anything. Removing or disconnecting a host
clears those markers, so late results from the old entry are discarded.

All per-host caches live on one ``HostState``; removing a host is a single
dict pop.
"""
import asyncio
import itertools
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar

from fleetdeck.core.config import get_settings
from fleetdeck.core.errors import (
    ConflictError,
    ConnectivityError,
    FleetError,
    NotFoundError,
    PartialEffectError,
    RegistryCorruptionError,
    RemoteExecutionError,
)
from fleetdeck.models.deployment import DeploymentRequest, DeploymentResult, DeploymentState
from fleetdeck.models.events import EventType
from fleetdeck.models.host import Host, HostLogs, HostMetrics, HostStatus, OperationKind
from fleetdeck.models.remote import (
    CommandResult,
    ConnectionTestResult,
    DeployPathCandidate,
    GitHook,
    HookInstallResult,
    PermissionResult,
    PermissionSpec,
)
from fleetdeck.models.store import utcnow
from fleetdeck.services import poller
from fleetdeck.services.authorized_keys import authorize_key
from fleetdeck.services.events import EventBus
from fleetdeck.services.executor import RemoteExecutor
from fleetdeck.services.hooks import GitHookInstaller
from fleetdeck.services.orchestrator import DeploymentOrchestrator
from fleetdeck.services.paths import DeployPathDetector
from fleetdeck.services.permissions import PermissionSetup
from fleetdeck.services.store import KeyValueStore
from fleetdeck.services.tester import ConnectionTester
from fleetdeck.utils.validation import require_host_id

settings = get_settings()
logger = logging.getLogger(__name__)

T = TypeVar("T")

CONNECT_PROBE = "uname -s"
PERSISTED_EXCLUDE = {"status", "metrics", "last_error"}


def _host_key(host_id: str) -> str:
    return f"host:{host_id}"


def _history_key(host_id: str) -> str:
    return f"deployments:{host_id}"


@dataclass
class DeploymentRun:
    token: int
    result: DeploymentResult
    task: Optional[asyncio.Task] = None
    # set by whoever cancels the task, returned to callers waiting on it
    outcome: Optional[DeploymentResult] = None


@dataclass
class HostState:
    host: Host
    in_flight: dict[OperationKind, int] = field(default_factory=dict)
    logs: Optional[HostLogs] = None
    command_outputs: deque = field(default_factory=lambda: deque(maxlen=settings.COMMAND_HISTORY))
    last_test: Optional[ConnectionTestResult] = None
    path_candidates: list[DeployPathCandidate] = field(default_factory=list)
    deployment_state: DeploymentState = DeploymentState.IDLE
    deployment: Optional[DeploymentResult] = None
    run: Optional[DeploymentRun] = None


class ServerRegistry:
    def __init__(
        self,
        store: KeyValueStore,
        executor: RemoteExecutor,
        events: Optional[EventBus] = None,
        orchestrator: Optional[DeploymentOrchestrator] = None,
        tester: Optional[ConnectionTester] = None,
    ):
        self.store = store
        self.executor = executor
        self.events = events or EventBus()
        self.tester = tester or ConnectionTester(executor)
        self.detector = DeployPathDetector(executor)
        self.permissions = PermissionSetup(executor)
        self.hooks = GitHookInstaller(executor)
        self.orchestrator = orchestrator or DeploymentOrchestrator(executor)
        self._hosts: dict[str, HostState] = {}
        self._tokens = itertools.count(1)

    # ------------------------------------------------------------------ catalog

    def load(self) -> int:
        """Loads the persisted catalog. Every host starts out disconnected."""
        for key, data in self.store.scan("host:").items():
            try:
                host = Host.model_validate(data)
            except ValueError as e:
                logger.error(f"Skipping unreadable stored host {key}: {e}")
                continue
            host.status = HostStatus.DISCONNECTED
            self._hosts[host.id] = HostState(host=host)
        logger.info(f"Loaded {len(self._hosts)} hosts")
        return len(self._hosts)

    def _persist(self, host: Host) -> None:
        self.store.put(_host_key(host.id), host.model_dump(mode="json", exclude=PERSISTED_EXCLUDE))

    def _state(self, host_id: str) -> HostState:
        require_host_id(host_id)
        state = self._hosts.get(host_id)
        if state is None:
            raise NotFoundError(f"Host {host_id} not found", entity_type="host", entity_id=host_id)
        self._check_consistency(state)
        return state

    def _check_consistency(self, state: HostState) -> None:
        problem = None
        if state.host.status == HostStatus.CONNECTING and OperationKind.CONNECT not in state.in_flight:
            problem = "status is connecting without a connect in flight"
        elif (state.deployment_state == DeploymentState.RUNNING) != (state.run is not None):
            problem = "deployment state and active run disagree"
        if problem:
            logger.critical(f"Registry state corrupted for host {state.host.id}: {problem}")
            raise RegistryCorruptionError(
                f"Registry state corrupted: {problem}; restart required",
                entity_type="host",
                entity_id=state.host.id,
            )

    def list_hosts(self) -> list[Host]:
        return [state.host for state in self._hosts.values()]

    def get_host(self, host_id: str) -> Host:
        return self._state(host_id).host

    def snapshot(self, host_id: str) -> dict[str, Any]:
        """Host record plus its transient sub-state, safe to serialize."""
        state = self._state(host_id)
        return {
            "host": state.host.public_view(),
            "in_flight": sorted(kind.value for kind in state.in_flight),
            "logs": state.logs.model_dump(mode="json") if state.logs else None,
            "command_outputs": [r.model_dump(mode="json") for r in state.command_outputs],
            "last_test": state.last_test.model_dump(mode="json") if state.last_test else None,
            "path_candidates": [c.model_dump(mode="json") for c in state.path_candidates],
            "deployment_state": state.deployment_state.value,
            "deployment": state.deployment.summary() if state.deployment else None,
        }

    def in_flight(self, host_id: str) -> set[OperationKind]:
        state = self._hosts.get(host_id)
        return set(state.in_flight) if state else set()

    def add_host(self, **fields: Any) -> Host:
        host_id = fields.pop("id", None) or uuid.uuid4().hex[:12]
        require_host_id(host_id)
        if host_id in self._hosts:
            raise ConflictError(f"Host {host_id} already exists", entity_type="host", entity_id=host_id)
        host = Host(id=host_id, status=HostStatus.DISCONNECTED, **fields)
        self._hosts[host_id] = HostState(host=host)
        self._persist(host)
        self.events.emit(EventType.HOST_ADDED, host_id, host=host.public_view())
        logger.info(f"Added host {host_id} ({host.username}@{host.address}:{host.port})")
        return host

    def update_host(self, host_id: str, **changes: Any) -> Host:
        """Merges connection fields. Status and metrics are left alone."""
        state = self._state(host_id)
        if changes.get("password"):
            changes.setdefault("private_key_path", None)
            changes.setdefault("private_key_passphrase", None)
        elif changes.get("private_key_path"):
            changes.setdefault("password", None)
        host = state.host.model_copy(update=changes)
        Host.model_validate(host.model_dump())
        state.host = host
        self._persist(host)
        self.events.emit(EventType.HOST_UPDATED, host_id, host=host.public_view())
        return host

    async def remove_host(self, host_id: str) -> None:
        state = self._state(host_id)
        # one pop drops metrics, logs, outputs, deployment state and markers together
        del self._hosts[host_id]
        self.store.delete(_host_key(host_id))
        self.store.delete(_history_key(host_id))
        self.events.emit(EventType.HOST_REMOVED, host_id)
        logger.info(f"Removed host {host_id}")
        if state.run is not None:
            error = NotFoundError(
                f"Host {host_id} was removed during deployment", entity_type="deployment", entity_id=host_id
            )
            await self._abort_run(state.run, error)

    # ------------------------------------------------------------- markers

    def _begin(self, state: HostState, kind: OperationKind) -> int:
        if kind in state.in_flight:
            raise ConflictError(
                f"{kind.value} already in progress for host {state.host.id}",
                entity_type="host",
                entity_id=state.host.id,
            )
        token = next(self._tokens)
        state.in_flight[kind] = token
        return token

    def _current(self, host_id: str, kind: OperationKind, token: int) -> Optional[HostState]:
        state = self._hosts.get(host_id)
        if state is None or state.in_flight.get(kind) != token:
            return None
        return state

    def _finish(self, host_id: str, kind: OperationKind, token: int) -> HostState:
        """Clears the marker if it is still ours; otherwise the result is stale."""
        state = self._hosts.get(host_id)
        if state is None:
            logger.info(f"Discarding {kind.value} result for removed host {host_id}")
            raise NotFoundError(
                f"Host {host_id} was removed while {kind.value} was in progress",
                entity_type="host",
                entity_id=host_id,
            )
        if state.in_flight.get(kind) != token:
            logger.info(f"Discarding stale {kind.value} result for host {host_id}")
            raise ConflictError(
                f"{kind.value} result for host {host_id} was discarded; the host changed while it ran",
                entity_type="host",
                entity_id=host_id,
            )
        del state.in_flight[kind]
        return state

    def _release(self, host_id: str, kind: OperationKind, token: int) -> None:
        state = self._current(host_id, kind, token)
        if state is not None:
            del state.in_flight[kind]

    def _require_connected(self, state: HostState) -> None:
        if state.host.status != HostStatus.CONNECTED:
            raise ConnectivityError(
                f"Host {state.host.id} is not connected (status: {state.host.status.value})",
                entity_type="host",
                entity_id=state.host.id,
            )

    def _set_status(self, state: HostState, status: HostStatus) -> None:
        previous = state.host.status
        if previous == status:
            return
        state.host.status = status
        self.events.emit(
            EventType.STATUS_CHANGED, state.host.id, previous=previous.value, status=status.value
        )
        logger.info(f"Host {state.host.id}: {previous.value} -> {status.value}")

    async def _run(
        self,
        host_id: str,
        kind: OperationKind,
        work: Callable[[Host], Awaitable[T]],
        require_connected: bool = True,
    ) -> tuple[HostState, T]:
        """Runs ``work`` on a host snapshot under the ``kind`` marker.

        Returns the live state together with the result, or raises if the
        result has to be discarded.
        """
        state = self._state(host_id)
        if require_connected:
            self._require_connected(state)
        token = self._begin(state, kind)
        try:
            outcome = await work(state.host.model_copy(deep=True))
        except BaseException:
            self._release(host_id, kind, token)
            raise
        return self._finish(host_id, kind, token), outcome

    # ---------------------------------------------------------- connection

    async def connect(self, host_id: str, timeout: Optional[float] = None) -> Host:
        """disconnected/error -> connecting -> connected | error."""
        state = self._state(host_id)
        if state.host.status == HostStatus.CONNECTED:
            return state.host
        token = self._begin(state, OperationKind.CONNECT)
        self._set_status(state, HostStatus.CONNECTING)
        snapshot = state.host.model_copy(deep=True)
        try:
            result = await self.executor.execute(
                snapshot, CONNECT_PROBE, timeout=timeout, connect_timeout=timeout
            )
        except FleetError as e:
            current = self._current(host_id, OperationKind.CONNECT, token)
            if current is not None:
                del current.in_flight[OperationKind.CONNECT]
                current.host.last_error = e.message
                self._set_status(current, HostStatus.ERROR)
            raise
        except BaseException:
            current = self._current(host_id, OperationKind.CONNECT, token)
            if current is not None:
                del current.in_flight[OperationKind.CONNECT]
                self._set_status(current, HostStatus.DISCONNECTED)
            raise

        state = self._finish(host_id, OperationKind.CONNECT, token)
        now = utcnow()
        state.host.last_connected = now
        state.host.last_seen = now
        state.host.last_error = None
        if result.success and result.stdout.strip():
            state.host.os = result.stdout.strip().splitlines()[0]
        self._set_status(state, HostStatus.CONNECTED)
        self._persist(state.host)
        return state.host

    async def disconnect(self, host_id: str) -> Host:
        """Back to disconnected. In-flight results for this host are discarded."""
        state = self._state(host_id)
        state.in_flight.clear()
        state.host.last_error = None
        self._set_status(state, HostStatus.DISCONNECTED)
        if state.run is not None:
            error = ConnectivityError(
                f"Host {host_id} was disconnected during deployment", entity_type="deployment", entity_id=host_id
            )
            run = state.run
            self._settle_deployment(state, self._aborted_result(run, error))
            await self._abort_run(run, error, settled=True)
        return state.host

    async def test_connection(self, host_id: str) -> ConnectionTestResult:
        state, result = await self._run(
            host_id, OperationKind.TEST, self.tester.test, require_connected=False
        )
        state.last_test = result
        if result.success:
            state.host.last_seen = result.tested_at
            if result.os:
                state.host.os = result.os
        return result

    # ------------------------------------------------------- remote operations

    async def execute_command(self, host_id: str, command: str, timeout: Optional[float] = None) -> CommandResult:
        async def work(host: Host) -> CommandResult:
            return await self.executor.execute(host, command, timeout=timeout)

        state, result = await self._run(host_id, OperationKind.COMMAND, work)
        state.command_outputs.append(result)
        state.host.last_seen = utcnow()
        self.events.emit(EventType.COMMAND_EXECUTED, host_id, command=command, exit_code=result.exit_code)
        return result.check(entity_id=host_id)

    async def refresh_stats(self, host_id: str) -> HostMetrics:
        async def work(host: Host) -> HostMetrics:
            return await poller.collect_metrics(self.executor, host)

        state, metrics = await self._run(host_id, OperationKind.STATS, work)
        state.host.metrics = metrics
        state.host.last_seen = metrics.collected_at
        self.events.emit(EventType.STATS_UPDATED, host_id, metrics=metrics.model_dump(mode="json"))
        return metrics

    async def refresh_logs(self, host_id: str, lines: Optional[int] = None, path: Optional[str] = None) -> HostLogs:
        async def work(host: Host) -> HostLogs:
            return await poller.tail_logs(self.executor, host, lines=lines, path=path)

        state, logs = await self._run(host_id, OperationKind.LOGS, work)
        state.logs = logs
        state.host.last_seen = logs.fetched_at
        self.events.emit(EventType.LOGS_UPDATED, host_id, path=logs.path, lines=logs.lines)
        return logs

    async def refresh_connected_hosts(self) -> None:
        """Poller job. Failures are logged; host status is never touched here."""
        host_ids = [
            host_id
            for host_id, state in self._hosts.items()
            if state.host.status == HostStatus.CONNECTED and OperationKind.STATS not in state.in_flight
        ]
        if not host_ids:
            return
        results = await asyncio.gather(*(self.refresh_stats(h) for h in host_ids), return_exceptions=True)
        for host_id, result in zip(host_ids, results):
            if isinstance(result, Exception):
                logger.warning(f"Stats refresh failed for host {host_id}: {result}")

    async def detect_deploy_paths(self, host_id: str) -> list[DeployPathCandidate]:
        state, candidates = await self._run(host_id, OperationKind.DETECT_PATHS, self.detector.detect)
        state.path_candidates = candidates
        self.events.emit(
            EventType.DEPLOY_PATHS_DETECTED, host_id, candidates=[c.model_dump(mode="json") for c in candidates]
        )
        return candidates

    async def setup_permissions(self, host_id: str, path: str, spec: PermissionSpec) -> PermissionResult:
        async def work(host: Host) -> PermissionResult:
            return await self.permissions.apply(host, path, spec)

        _, result = await self._run(host_id, OperationKind.PERMISSIONS, work)
        return result

    async def create_git_hooks(self, host_id: str, repo_path: str, hooks: list[GitHook]) -> HookInstallResult:
        async def work(host: Host) -> HookInstallResult:
            return await self.hooks.install(host, repo_path, hooks)

        _, result = await self._run(host_id, OperationKind.HOOKS, work)
        if result.success:
            return result
        failed = [o.name for o in result.outcomes if not o.success]
        details = {"outcomes": [o.model_dump(mode="json") for o in result.outcomes]}
        if result.installed:
            raise PartialEffectError(
                f"Installed {len(result.installed)} of {len(result.outcomes)} hooks; failed: {', '.join(failed)}",
                completed_steps=result.installed,
                failed_step=failed[0],
                entity_type="host",
                entity_id=host_id,
                details=details,
            )
        raise RemoteExecutionError(
            f"No hooks installed in {result.repo_path}", entity_type="host", entity_id=host_id, details=details
        )

    async def upload_public_key(self, host_id: str, public_key: str) -> CommandResult:
        async def work(host: Host) -> CommandResult:
            return await authorize_key(self.executor, host, public_key)

        _, result = await self._run(host_id, OperationKind.AUTHORIZE_KEY, work)
        return result

    # ---------------------------------------------------------- deployments

    async def deploy(self, request: DeploymentRequest, wait: bool = True) -> DeploymentResult:
        """Starts a run; with ``wait`` returns its final result.

        A second request while a run is active is rejected unless it asks to
        supersede, in which case the active run is cancelled and recorded as
        failed first.
        """
        host_id = request.host_id
        state = self._state(host_id)
        self._require_connected(state)
        if state.run is not None:
            if not request.supersede:
                raise ConflictError(
                    f"A deployment is already running on host {host_id}",
                    entity_type="deployment",
                    entity_id=host_id,
                )
            error = ConflictError("Deployment superseded by a newer request", entity_type="deployment", entity_id=host_id)
            run = state.run
            self._settle_deployment(state, self._aborted_result(run, error))
            await self._abort_run(run, error, settled=True)
            # the host may have been disconnected or removed while the old run wound down
            state = self._state(host_id)
            self._require_connected(state)

        token = self._begin(state, OperationKind.DEPLOY)
        result = DeploymentResult(
            host_id=host_id,
            repository=request.repository,
            branch=request.effective_branch,
            target_path=request.target_path,
            state=DeploymentState.RUNNING,
            started_at=utcnow(),
        )
        run = DeploymentRun(token=token, result=result)
        state.run = run
        state.deployment = result
        state.deployment_state = DeploymentState.RUNNING
        run.task = asyncio.create_task(self._deploy(state.host.model_copy(deep=True), request, run))
        self.events.emit(EventType.DEPLOYMENT_STARTED, host_id, deployment=result.summary())

        if not wait:
            return result
        try:
            return await asyncio.shield(run.task)
        except asyncio.CancelledError:
            if run.outcome is not None and not asyncio.current_task().cancelling():
                return run.outcome
            raise

    async def _deploy(self, host: Host, request: DeploymentRequest, run: DeploymentRun) -> DeploymentResult:
        def on_step(step) -> None:
            state = self._current(host.id, OperationKind.DEPLOY, run.token)
            if state is None:
                return
            run.result.steps.append(step)
            self.events.emit(EventType.DEPLOYMENT_STEP, host.id, step=step.model_dump(mode="json"))

        try:
            final = await self.orchestrator.run(
                host, request, on_step=on_step, started_at=run.result.started_at
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Deployment to host {host.id} crashed")
            final = self._aborted_result(run, FleetError(f"Deployment crashed: {e}", entity_type="deployment", entity_id=host.id))

        state = self._current(host.id, OperationKind.DEPLOY, run.token)
        if state is None or state.run is not run:
            logger.info(f"Discarding result of superseded deployment on host {host.id}")
            return run.outcome or final
        self._settle_deployment(state, final)
        return final

    def _aborted_result(self, run: DeploymentRun, error: FleetError) -> DeploymentResult:
        return run.result.model_copy(
            update={
                "state": DeploymentState.FAILED,
                "finished_at": utcnow(),
                "error": error.to_info().model_dump(mode="json"),
                "steps": list(run.result.steps),
            }
        )

    def _settle_deployment(self, state: HostState, final: DeploymentResult) -> None:
        """running -> succeeded | failed, recorded in history and announced."""
        run = state.run
        if run is not None:
            state.in_flight.pop(OperationKind.DEPLOY, None)
            run.outcome = final
        state.run = None
        state.deployment = final
        state.deployment_state = final.state
        self._record_history(state.host.id, final)
        self.events.emit(EventType.DEPLOYMENT_FINISHED, state.host.id, deployment=final.summary())

    async def _abort_run(self, run: DeploymentRun, error: FleetError, settled: bool = False) -> None:
        if not settled:
            run.outcome = self._aborted_result(run, error)
        if run.task is not None and not run.task.done():
            run.task.cancel()
            # wait for the session to be torn down before anything else touches the host
            await asyncio.gather(run.task, return_exceptions=True)

    def _record_history(self, host_id: str, result: DeploymentResult) -> None:
        history = self.store.get(_history_key(host_id)) or []
        history.append(result.summary())
        self.store.put(_history_key(host_id), history[-settings.DEPLOY_HISTORY:])

    def get_deployment(self, host_id: str) -> dict[str, Any]:
        state = self._state(host_id)
        return {
            "host_id": host_id,
            "state": state.deployment_state.value,
            "deployment": state.deployment.summary() if state.deployment else None,
        }

    def list_deployments(self, host_id: str) -> list[dict[str, Any]]:
        self._state(host_id)
        return self.store.get(_history_key(host_id)) or []
