"""Typed builder for the shell scripts sent to remote hosts.

Every argument passes through ``shlex.quote``; only ``raw`` accepts trusted
text verbatim. Rendering is a pure function of the calls made, so two
builders fed the same calls produce byte-identical scripts.
"""
import re
import shlex
from dataclasses import dataclass, field
from typing import Optional

from fleetdeck.utils.validation import require_env_name

STEP_MARKER = "__fleetdeck_step__"
_MARKER_LINE = re.compile(rf"^{STEP_MARKER} (begin|done) (\S+)$")


def quote(value) -> str:
    return shlex.quote(str(value))


class ScriptBuilder:
    def __init__(self, fail_fast: bool = True):
        self._lines: list[str] = []
        if fail_fast:
            self._lines.append("set -e")

    def comment(self, text: str) -> "ScriptBuilder":
        self._lines.append("# " + " ".join(text.split()))
        return self

    def command(self, *argv) -> "ScriptBuilder":
        if not argv:
            raise ValueError("command needs at least one argument")
        self._lines.append(" ".join(quote(arg) for arg in argv))
        return self

    def raw(self, text: str) -> "ScriptBuilder":
        self._lines.append(text)
        return self

    def cd(self, path: str) -> "ScriptBuilder":
        return self.command("cd", path)

    def export(self, name: str, value: str) -> "ScriptBuilder":
        require_env_name(name)
        self._lines.append(f"export {name}={quote(value)}")
        return self

    def write_file(self, path: str, content: str) -> "ScriptBuilder":
        self._lines.append(f"printf '%s' {quote(content)} > {quote(path)}")
        return self

    def begin_step(self, name: str) -> "ScriptBuilder":
        return self.command("echo", f"{STEP_MARKER} begin {name}")

    def end_step(self, name: str) -> "ScriptBuilder":
        return self.command("echo", f"{STEP_MARKER} done {name}")

    def step(self, name: str, *argv) -> "ScriptBuilder":
        """Runs one command between begin/done markers."""
        return self.begin_step(name).command(*argv).end_step(name)

    def render(self) -> str:
        return "\n".join(self._lines) + "\n"

    def as_command(self) -> str:
        return self.wrap(self.render())

    @staticmethod
    def wrap(body: str) -> str:
        """A rendered script as a single ``sh -c`` invocation, independent of the login shell."""
        return "sh -c " + quote(body)


@dataclass
class StepProgress:
    completed: list[str] = field(default_factory=list)
    failed: Optional[str] = None
    output: str = ""


def parse_step_markers(stdout: str) -> StepProgress:
    """Recovers which marked steps finished, and which one was running when the script stopped."""
    progress = StepProgress()
    kept = []
    started = None
    for line in stdout.splitlines():
        match = _MARKER_LINE.match(line.strip())
        if not match:
            kept.append(line)
            continue
        action, name = match.groups()
        if action == "begin":
            started = name
        elif name == started:
            progress.completed.append(name)
            started = None
    progress.failed = started
    progress.output = "\n".join(kept)
    return progress
