from typing import Any, Optional
from pydantic import BaseModel, Field

from fleetdeck.core.errors import ErrorKind


class ErrorInfo(BaseModel):
    kind: ErrorKind
    message: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)


class CommandResponse(BaseModel):
    """Uniform result of every command crossing the control boundary."""

    success: bool
    data: Any = None
    error: Optional[ErrorInfo] = None

    @classmethod
    def ok(cls, data: Any = None) -> "CommandResponse":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: ErrorInfo, data: Any = None) -> "CommandResponse":
        return cls(success=False, error=error, data=data)
