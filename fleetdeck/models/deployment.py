from datetime import datetime
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field


class DeploymentState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class DeploymentRepository(BaseModel):
    name: str
    clone_url: str
    default_branch: str = "main"


class DeploymentRequest(BaseModel):
    host_id: str
    repository: DeploymentRepository
    branch: Optional[str] = None
    target_path: str
    clean: bool = False
    pre_deploy_script: Optional[str] = None
    build_command: Optional[str] = None
    post_deploy_script: Optional[str] = None
    environment: dict[str, str] = Field(default_factory=dict)
    supersede: bool = False

    @property
    def effective_branch(self) -> str:
        return self.branch or self.repository.default_branch


class DeploymentStepResult(BaseModel):
    id: str
    name: str
    command: str
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    started_at: datetime
    finished_at: datetime
    success: bool


class DeploymentResult(BaseModel):
    host_id: str
    repository: DeploymentRepository
    branch: str
    target_path: str
    state: DeploymentState = DeploymentState.RUNNING
    steps: list[DeploymentStepResult] = Field(default_factory=list)
    started_at: datetime
    finished_at: Optional[datetime] = None
    error: Optional[dict[str, Any]] = None

    @property
    def success(self) -> bool:
        return self.state == DeploymentState.SUCCEEDED

    @property
    def transcript(self) -> str:
        """stdout/stderr of every executed step, in execution order."""
        parts = []
        for step in self.steps:
            parts.append(f"$ [{step.name}] {step.command}")
            if step.stdout:
                parts.append(step.stdout.rstrip("\n"))
            if step.stderr:
                parts.append(step.stderr.rstrip("\n"))
        return "\n".join(parts)

    def summary(self) -> dict:
        data = self.model_dump(mode="json")
        data["success"] = self.success
        data["transcript"] = self.transcript
        return data
