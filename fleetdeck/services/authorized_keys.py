import logging

from fleetdeck.models.host import Host
from fleetdeck.models.remote import CommandResult
from fleetdeck.services.executor import RemoteExecutor
from fleetdeck.services.scripts import ScriptBuilder, quote

logger = logging.getLogger(__name__)


def build_authorize_script(public_key: str) -> ScriptBuilder:
    """Appends ``public_key`` to ~/.ssh/authorized_keys unless it is already present."""
    key = quote(public_key)
    script = ScriptBuilder()
    script.raw("umask 077")
    script.raw('mkdir -p "$HOME/.ssh"')
    script.raw('chmod 700 "$HOME/.ssh"')
    script.raw('touch "$HOME/.ssh/authorized_keys"')
    script.raw('chmod 600 "$HOME/.ssh/authorized_keys"')
    script.raw(f'grep -qxF {key} "$HOME/.ssh/authorized_keys" || printf \'%s\\n\' {key} >> "$HOME/.ssh/authorized_keys"')
    return script


async def authorize_key(executor: RemoteExecutor, host: Host, public_key: str) -> CommandResult:
    result = await executor.execute(host, build_authorize_script(public_key.strip()).as_command())
    result.check(entity_id=host.id)
    logger.info(f"Authorized public key on host {host.id} for {host.username}")
    return result
