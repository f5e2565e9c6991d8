"""Named commands over the registry and key manager.

``CommandDispatcher.dispatch`` is the control boundary: it validates the
payload against the command's request schema, runs the handler, and always
returns a ``CommandResponse``. Nothing raised by the core escapes it.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from fleetdeck.core.errors import ErrorKind, FleetError
from fleetdeck.models.deployment import DeploymentRepository, DeploymentRequest, DeploymentState
from fleetdeck.models.events import EventType
from fleetdeck.models.remote import ConnectionErrorKind, GitHook, PermissionSpec
from fleetdeck.schemas import commands as req
from fleetdeck.schemas.envelope import CommandResponse, ErrorInfo
from fleetdeck.services.keys import KeyManager
from fleetdeck.services.registry import ServerRegistry

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[Any]]

_TEST_ERROR_KINDS = {
    ConnectionErrorKind.UNREACHABLE: ErrorKind.CONNECTIVITY,
    ConnectionErrorKind.HANDSHAKE_ERROR: ErrorKind.CONNECTIVITY,
    ConnectionErrorKind.AUTH_FAILED: ErrorKind.AUTH,
    ConnectionErrorKind.TIMEOUT: ErrorKind.TIMEOUT,
    ConnectionErrorKind.UNKNOWN: ErrorKind.CONNECTIVITY,
}


def schema_error_info(exc: SchemaError, payload: Any) -> ErrorInfo:
    errors = exc.errors(include_url=False, include_context=False, include_input=False)
    first = errors[0] if errors else {"loc": (), "msg": str(exc)}
    location = ".".join(str(part) for part in first.get("loc", ())) or "payload"
    message = first["msg"].removeprefix("Value error, ")
    entity_id = payload.get("host_id") if isinstance(payload, dict) else None
    return ErrorInfo(
        kind=ErrorKind.VALIDATION,
        message=f"{location}: {message}",
        entity_type="host" if entity_id else None,
        entity_id=entity_id if isinstance(entity_id, str) else None,
        details={"errors": [{"loc": list(e["loc"]), "msg": e["msg"], "type": e["type"]} for e in errors]},
    )


class CommandDispatcher:
    def __init__(self, registry: ServerRegistry, keys: KeyManager):
        self.registry = registry
        self.keys = keys
        self._commands: dict[str, tuple[Optional[type[BaseModel]], Handler]] = {
            "list-hosts": (None, self._list_hosts),
            "get-host": (req.HostRef, self._get_host),
            "add-host": (req.HostCreate, self._add_host),
            "update-host": (req.HostUpdate, self._update_host),
            "remove-host": (req.HostRef, self._remove_host),
            "connect": (req.ConnectRequest, self._connect),
            "disconnect": (req.HostRef, self._disconnect),
            "test-connection": (req.HostRef, self._test_connection),
            "execute-command": (req.ExecuteCommandRequest, self._execute_command),
            "get-stats": (req.HostRef, self._get_stats),
            "get-logs": (req.LogsRequest, self._get_logs),
            "detect-deploy-paths": (req.HostRef, self._detect_deploy_paths),
            "setup-permissions": (req.PermissionsRequest, self._setup_permissions),
            "create-git-hooks": (req.HooksRequest, self._create_git_hooks),
            "upload-public-key": (req.UploadKeyRequest, self._upload_public_key),
            "direct-deploy": (req.DeployRequestIn, self._direct_deploy),
            "get-deployment": (req.HostRef, self._get_deployment),
            "list-deployments": (req.HostRef, self._list_deployments),
            "generate-key": (req.GenerateKeyRequest, self._generate_key),
            "import-key": (req.ImportKeyRequest, self._import_key),
            "list-keys": (None, self._list_keys),
            "get-key": (req.KeyRef, self._get_key),
            "delete-key": (req.KeyRef, self._delete_key),
        }

    @property
    def names(self) -> list[str]:
        return sorted(self._commands)

    def has(self, name: str) -> bool:
        return name in self._commands

    async def dispatch(self, name: str, payload: Optional[dict[str, Any]] = None) -> CommandResponse:
        entry = self._commands.get(name)
        if entry is None:
            return CommandResponse.fail(
                ErrorInfo(kind=ErrorKind.NOT_FOUND, message=f"Unknown command: {name}", entity_type="command", entity_id=name)
            )
        schema, handler = entry
        try:
            request = schema.model_validate(payload or {}) if schema else None
            data = await handler(request)
        except SchemaError as e:
            info = schema_error_info(e, payload)
            logger.info(f"Command {name} rejected: {info.message}")
            return CommandResponse.fail(info)
        except FleetError as e:
            if e.kind == ErrorKind.INTERNAL:
                logger.error(f"Command {name} failed: {e.message}")
            else:
                logger.info(f"Command {name} failed ({e.kind.value}): {e.message}")
            return CommandResponse.fail(e.to_info())
        except Exception:
            logger.exception(f"Unhandled error in command {name}")
            return CommandResponse.fail(ErrorInfo(kind=ErrorKind.INTERNAL, message=f"Internal error while running {name}"))

        if isinstance(data, CommandResponse):
            return data
        return CommandResponse.ok(data)

    # hosts

    async def _list_hosts(self, _) -> list[dict]:
        return [host.public_view() for host in self.registry.list_hosts()]

    async def _get_host(self, request: req.HostRef) -> dict:
        return self.registry.snapshot(request.host_id)

    async def _add_host(self, request: req.HostCreate) -> dict:
        return self.registry.add_host(**request.model_dump()).public_view()

    async def _update_host(self, request: req.HostUpdate) -> dict:
        return self.registry.update_host(request.host_id, **request.changes()).public_view()

    async def _remove_host(self, request: req.HostRef) -> dict:
        await self.registry.remove_host(request.host_id)
        return {"host_id": request.host_id, "removed": True}

    async def _connect(self, request: req.ConnectRequest) -> dict:
        host = await self.registry.connect(request.host_id, timeout=request.timeout)
        return host.public_view()

    async def _disconnect(self, request: req.HostRef) -> dict:
        host = await self.registry.disconnect(request.host_id)
        return host.public_view()

    async def _test_connection(self, request: req.HostRef) -> CommandResponse:
        result = await self.registry.test_connection(request.host_id)
        data = result.model_dump(mode="json")
        if result.success:
            return CommandResponse.ok(data)
        error = ErrorInfo(
            kind=_TEST_ERROR_KINDS[result.error_kind],
            message=result.message or result.error_kind.value,
            entity_type="host",
            entity_id=request.host_id,
            details={"error_kind": result.error_kind.value},
        )
        return CommandResponse.fail(error, data=data)

    # remote operations

    async def _execute_command(self, request: req.ExecuteCommandRequest) -> dict:
        result = await self.registry.execute_command(request.host_id, request.command, timeout=request.timeout)
        return result.model_dump(mode="json")

    async def _get_stats(self, request: req.HostRef) -> dict:
        metrics = await self.registry.refresh_stats(request.host_id)
        return metrics.model_dump(mode="json")

    async def _get_logs(self, request: req.LogsRequest) -> dict:
        logs = await self.registry.refresh_logs(request.host_id, lines=request.lines, path=request.path)
        return logs.model_dump(mode="json")

    async def _detect_deploy_paths(self, request: req.HostRef) -> list[dict]:
        candidates = await self.registry.detect_deploy_paths(request.host_id)
        return [c.model_dump(mode="json") for c in candidates]

    async def _setup_permissions(self, request: req.PermissionsRequest) -> dict:
        spec = PermissionSpec(owner=request.owner, group=request.group, mode=request.mode, recursive=request.recursive)
        result = await self.registry.setup_permissions(request.host_id, request.path, spec)
        return result.model_dump(mode="json")

    async def _create_git_hooks(self, request: req.HooksRequest) -> dict:
        hooks = [GitHook(name=h.name, script=h.script) for h in request.hooks]
        result = await self.registry.create_git_hooks(request.host_id, request.repo_path, hooks)
        return result.model_dump(mode="json")

    async def _upload_public_key(self, request: req.UploadKeyRequest) -> dict:
        public_key = self.keys.public_key(request.key_name) if request.key_name else request.public_key
        await self.registry.upload_public_key(request.host_id, public_key)
        return {"host_id": request.host_id, "authorized": True, "key_name": request.key_name}

    # deployments

    async def _direct_deploy(self, request: req.DeployRequestIn) -> CommandResponse:
        deployment = DeploymentRequest(
            host_id=request.host_id,
            repository=DeploymentRepository(**request.repository.model_dump()),
            branch=request.branch,
            target_path=request.target_path,
            clean=request.clean,
            pre_deploy_script=request.pre_deploy_script,
            build_command=request.build_command,
            post_deploy_script=request.post_deploy_script,
            environment=request.environment,
            supersede=request.supersede,
        )
        result = await self.registry.deploy(deployment, wait=request.wait)
        if result.state != DeploymentState.FAILED:
            return CommandResponse.ok(result.summary())
        return CommandResponse.fail(ErrorInfo.model_validate(result.error), data=result.summary())

    async def _get_deployment(self, request: req.HostRef) -> dict:
        return self.registry.get_deployment(request.host_id)

    async def _list_deployments(self, request: req.HostRef) -> list[dict]:
        return self.registry.list_deployments(request.host_id)

    # keys

    async def _generate_key(self, request: req.GenerateKeyRequest) -> dict:
        # RSA generation can take seconds
        record = await asyncio.to_thread(
            self.keys.generate,
            request.name,
            request.algorithm,
            request.bits,
            request.comment,
            request.passphrase,
        )
        self.registry.events.emit(EventType.KEY_GENERATED, name=record.name, fingerprint=record.fingerprint)
        return record.model_dump(mode="json")

    async def _import_key(self, request: req.ImportKeyRequest) -> dict:
        record = await asyncio.to_thread(
            self.keys.import_key, request.name, request.private_key_path, request.passphrase
        )
        self.registry.events.emit(EventType.KEY_IMPORTED, name=record.name, fingerprint=record.fingerprint)
        return record.model_dump(mode="json")

    async def _list_keys(self, _) -> list[dict]:
        return [record.model_dump(mode="json") for record in self.keys.list_keys()]

    async def _get_key(self, request: req.KeyRef) -> dict:
        return self.keys.get_key(request.name).model_dump(mode="json")

    async def _delete_key(self, request: req.KeyRef) -> dict:
        self.keys.delete_key(request.name)
        self.registry.events.emit(EventType.KEY_DELETED, name=request.name)
        return {"name": request.name, "deleted": True}
