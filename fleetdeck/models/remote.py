from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


class CommandResult(BaseModel):
    """Captured output of one remote command."""

    command: str
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    duration_ms: float = 0.0
    finished_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def check(self, entity_type: str = "host", entity_id: Optional[str] = None) -> "CommandResult":
        """Raises RemoteExecutionError unless the command exited with 0."""
        if not self.success:
            from fleetdeck.core.errors import RemoteExecutionError
            detail = self.stderr.strip() or self.stdout.strip() or "no output"
            raise RemoteExecutionError(
                f"Remote command failed with exit code {self.exit_code}: {detail[:200]}",
                result=self,
                entity_type=entity_type,
                entity_id=entity_id,
            )
        return self


class ConnectionErrorKind(str, Enum):
    UNREACHABLE = "unreachable"
    AUTH_FAILED = "auth-failed"
    HANDSHAKE_ERROR = "handshake-error"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class ConnectionTestResult(BaseModel):
    host_id: str
    success: bool
    latency_ms: Optional[float] = None
    shell: Optional[str] = None
    os: Optional[str] = None
    auth_method: Optional[str] = None
    error_kind: Optional[ConnectionErrorKind] = None
    message: Optional[str] = None
    tested_at: datetime


class PathConfidence(str, Enum):
    EXISTING_REPO = "existing-repo"
    WRITABLE_WEB_ROOT = "writable-web-root"
    HOME_FALLBACK = "home-fallback"


CONFIDENCE_RANK = {
    PathConfidence.EXISTING_REPO: 0,
    PathConfidence.WRITABLE_WEB_ROOT: 1,
    PathConfidence.HOME_FALLBACK: 2,
}


class DeployPathCandidate(BaseModel):
    path: str
    confidence: PathConfidence
    reason: str


class PermissionSpec(BaseModel):
    owner: Optional[str] = None
    group: Optional[str] = None
    mode: Optional[str] = None
    recursive: bool = False


class PermissionResult(BaseModel):
    path: str
    success: bool
    completed_steps: list[str] = Field(default_factory=list)
    failed_step: Optional[str] = None
    stdout: str = ""
    stderr: str = ""


class GitHook(BaseModel):
    name: str
    script: str


class HookOutcome(BaseModel):
    name: str
    success: bool
    path: Optional[str] = None
    error: Optional[str] = None


class HookInstallResult(BaseModel):
    repo_path: str
    outcomes: list[HookOutcome] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return bool(self.outcomes) and all(o.success for o in self.outcomes)

    @property
    def installed(self) -> list[str]:
        return [o.name for o in self.outcomes if o.success]
