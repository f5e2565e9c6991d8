import logging

from fleetdeck.core.errors import FleetError, RemoteExecutionError
from fleetdeck.models.host import Host
from fleetdeck.models.remote import GitHook, HookInstallResult, HookOutcome
from fleetdeck.services.executor import RemoteExecutor
from fleetdeck.services.scripts import ScriptBuilder, quote
from fleetdeck.utils.validation import require_hook_name, require_remote_path, require_script

logger = logging.getLogger(__name__)

DEFAULT_SHEBANG = "#!/bin/sh\n"


def normalize_hook(script: str) -> str:
    """LF line endings, a trailing newline, and a shebang if none was given."""
    content = script.replace("\r\n", "\n").replace("\r", "\n")
    if not content.startswith("#!"):
        content = DEFAULT_SHEBANG + content
    if not content.endswith("\n"):
        content += "\n"
    return content


def build_locate_script(repo_path: str) -> ScriptBuilder:
    """Prints the hooks directory of a working tree or bare repository."""
    repo = quote(repo_path)
    script = ScriptBuilder()
    script.raw(f"if [ -d {repo}/.git ]; then printf '%s\\n' {quote(repo_path + '/.git/hooks')}")
    script.raw(f"elif [ -f {repo}/HEAD ] && [ -d {repo}/objects ]; then printf '%s\\n' {quote(repo_path + '/hooks')}")
    script.raw(f"else echo {quote('Not a git repository: ' + repo_path)} >&2; exit 2; fi")
    return script


def build_hook_script(hooks_dir: str, hook: GitHook) -> ScriptBuilder:
    """Writes one hook, marks it executable, and echoes it back for verification."""
    hook_path = f"{hooks_dir}/{hook.name}"
    script = ScriptBuilder()
    script.command("mkdir", "-p", hooks_dir)
    script.write_file(hook_path, hook.script)
    script.command("chmod", "+x", hook_path)
    script.command("test", "-x", hook_path)
    script.command("cat", hook_path)
    return script


class GitHookInstaller:
    """Installs hooks one at a time.

    A failed hook does not undo the hooks written before it; every hook gets
    its own HookOutcome.
    """

    def __init__(self, executor: RemoteExecutor):
        self.executor = executor

    async def install(self, host: Host, repo_path: str, hooks: list[GitHook]) -> HookInstallResult:
        repo_path = require_remote_path(repo_path, "repo_path").rstrip("/")
        prepared = [
            GitHook(name=require_hook_name(hook.name), script=normalize_hook(require_script(hook.script)))
            for hook in hooks
        ]

        located = await self.executor.execute(host, build_locate_script(repo_path).as_command())
        if not located.success or not located.stdout.strip():
            raise RemoteExecutionError(
                located.stderr.strip() or f"Could not locate hooks directory in {repo_path}",
                result=located,
                entity_type="host",
                entity_id=host.id,
            )
        hooks_dir = located.stdout.strip().splitlines()[0]

        result = HookInstallResult(repo_path=repo_path)
        for hook in prepared:
            result.outcomes.append(await self._install_one(host, hooks_dir, hook))
        logger.info(
            f"Installed {len(result.installed)}/{len(prepared)} git hooks in {repo_path} on host {host.id}"
        )
        return result

    async def _install_one(self, host: Host, hooks_dir: str, hook: GitHook) -> HookOutcome:
        hook_path = f"{hooks_dir}/{hook.name}"
        try:
            written = await self.executor.execute(host, build_hook_script(hooks_dir, hook).as_command())
        except FleetError as e:
            return HookOutcome(name=hook.name, success=False, path=hook_path, error=e.message)
        if not written.success:
            return HookOutcome(
                name=hook.name,
                success=False,
                path=hook_path,
                error=written.stderr.strip() or f"exit code {written.exit_code}",
            )
        if written.stdout != hook.script:
            return HookOutcome(name=hook.name, success=False, path=hook_path, error="Read-back content does not match")
        return HookOutcome(name=hook.name, success=True, path=hook_path)
