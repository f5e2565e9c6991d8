import pytest

from fleetdeck.core.errors import ValidationError
from fleetdeck.models.remote import GitHook, PermissionSpec
from fleetdeck.services.authorized_keys import build_authorize_script
from fleetdeck.services.hooks import build_hook_script, build_locate_script, normalize_hook
from fleetdeck.services.permissions import build_permission_script
from fleetdeck.services.scripts import STEP_MARKER, ScriptBuilder, parse_step_markers


def test_arguments_are_quoted():
    script = ScriptBuilder().command("echo", "$(rm -rf /)", "a b").render()
    assert script == "set -e\necho '$(rm -rf /)' 'a b'\n"


def test_render_is_deterministic():
    def build():
        return (
            ScriptBuilder()
            .comment("deploy\nsomething")
            .cd("/srv/app")
            .export("NODE_ENV", "production")
            .step("build", "npm", "run", "build")
            .render()
        )

    assert build() == build()
    assert build().splitlines()[1] == "# deploy something"


def test_export_rejects_bad_names():
    with pytest.raises(ValidationError):
        ScriptBuilder().export("BAD-NAME", "x")


def test_write_file_keeps_content_literal():
    script = ScriptBuilder(fail_fast=False).write_file("/tmp/hook", "echo '$HOME'\n").render()
    assert script.startswith("printf '%s' ")
    assert "'\"'\"'$HOME'\"'\"'" in script
    assert script.rstrip().endswith("> /tmp/hook")


def test_as_command_wraps_in_sh():
    builder = ScriptBuilder().command("true")
    assert builder.as_command() == "sh -c 'set -e\ntrue\n'"


def test_parse_step_markers_reports_failed_step():
    stdout = "\n".join([
        f"{STEP_MARKER} begin check",
        f"{STEP_MARKER} done check",
        f"{STEP_MARKER} begin chown",
        "some output",
        f"{STEP_MARKER} done chown",
        f"{STEP_MARKER} begin chmod",
    ])
    progress = parse_step_markers(stdout)
    assert progress.completed == ["check", "chown"]
    assert progress.failed == "chmod"
    assert progress.output == "some output"


def test_parse_step_markers_all_done():
    stdout = f"{STEP_MARKER} begin a\n{STEP_MARKER} done a\n"
    progress = parse_step_markers(stdout)
    assert progress.completed == ["a"]
    assert progress.failed is None


def test_permission_script_applies_ownership_then_mode():
    spec = PermissionSpec(owner="deploy", group="www-data", mode="755", recursive=True)
    lines = build_permission_script("/var/www/app", spec).render().splitlines()
    commands = [line for line in lines if STEP_MARKER not in line]
    assert commands == [
        "set -e",
        "test -e /var/www/app",
        "chown -R deploy:www-data /var/www/app",
        "chmod -R 755 /var/www/app",
    ]


def test_permission_script_group_only_uses_chgrp():
    spec = PermissionSpec(group="www-data")
    script = build_permission_script("/srv/app", spec).render()
    assert "chgrp www-data /srv/app" in script
    assert "chown" not in script
    assert "chmod" not in script


def test_hook_script_writes_marks_and_reads_back():
    hook = GitHook(name="post-receive", script=normalize_hook("echo deployed"))
    lines = build_hook_script("/srv/app/.git/hooks", hook).render().splitlines()
    assert lines[1] == "mkdir -p /srv/app/.git/hooks"
    assert lines[-3] == "chmod +x /srv/app/.git/hooks/post-receive"
    assert lines[-2] == "test -x /srv/app/.git/hooks/post-receive"
    assert lines[-1] == "cat /srv/app/.git/hooks/post-receive"


def test_normalize_hook():
    assert normalize_hook("echo hi") == "#!/bin/sh\necho hi\n"
    assert normalize_hook("#!/bin/bash\r\necho hi\r\n") == "#!/bin/bash\necho hi\n"


def test_locate_script_quotes_repo_path():
    script = build_locate_script("/srv/my app").render()
    assert "'/srv/my app'/.git" in script
    assert "'/srv/my app/hooks'" in script


def test_authorize_script_is_idempotent_append():
    script = build_authorize_script("ssh-ed25519 AAAAC3Nza test@host").render()
    assert "grep -qxF 'ssh-ed25519 AAAAC3Nza test@host'" in script
    assert ">> \"$HOME/.ssh/authorized_keys\"" in script
    assert 'chmod 600 "$HOME/.ssh/authorized_keys"' in script
