"""Failure taxonomy shared by every component.

Each error carries a ``kind`` used for routing and user messaging, plus the
entity (host, key, deployment) the failure concerns. The command dispatcher
turns these into response envelopes; nothing here is allowed to cross the
control boundary as an exception.
"""
from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    CONNECTIVITY = "connectivity"
    AUTH = "auth"
    REMOTE_EXECUTION = "remote_execution"
    PARTIAL_EFFECT = "partial_effect"
    TIMEOUT = "timeout"
    INTERNAL = "internal"


class FleetError(Exception):
    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        message: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.details = details or {}

    def to_info(self):
        from fleetdeck.schemas.envelope import ErrorInfo
        return ErrorInfo(
            kind=self.kind,
            message=self.message,
            entity_type=self.entity_type,
            entity_id=self.entity_id,
            details=self.details,
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.kind.value}: {self.message!r})"


class ValidationError(FleetError, ValueError):
    """Bad input. Also a ValueError so pydantic validators can raise it directly."""
    kind = ErrorKind.VALIDATION


class NotFoundError(FleetError):
    kind = ErrorKind.NOT_FOUND


class ConflictError(FleetError):
    kind = ErrorKind.CONFLICT


class ConnectivityError(FleetError):
    kind = ErrorKind.CONNECTIVITY


class HandshakeError(ConnectivityError):
    """SSH transport came up but the protocol exchange failed."""

    def __init__(self, message: str, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.details.setdefault("handshake", True)


class ConnectTimeoutError(ConnectivityError):
    """The connect phase did not complete within its bound."""

    def __init__(self, message: str, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.details.setdefault("timed_out", True)


class AuthError(FleetError):
    kind = ErrorKind.AUTH


class RemoteExecutionError(FleetError):
    kind = ErrorKind.REMOTE_EXECUTION

    def __init__(self, message: str, result=None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.result = result
        if result is not None:
            self.details.setdefault("exit_code", result.exit_code)
            self.details.setdefault("stdout", result.stdout)
            self.details.setdefault("stderr", result.stderr)


class PartialEffectError(FleetError):
    """A later step failed after earlier steps already changed remote state.

    Nothing is rolled back; ``completed_steps`` names what was applied.
    """
    kind = ErrorKind.PARTIAL_EFFECT

    def __init__(
        self,
        message: str,
        completed_steps: Optional[list[str]] = None,
        failed_step: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.completed_steps = list(completed_steps or [])
        self.failed_step = failed_step
        self.details.setdefault("completed_steps", self.completed_steps)
        self.details.setdefault("failed_step", failed_step)


class OperationTimeoutError(FleetError):
    """A command or deployment exceeded its ceiling.

    The session is force-closed; whatever the remote side was doing may still
    be running or may have been half applied.
    """
    kind = ErrorKind.TIMEOUT

    def __init__(self, message: str, timeout: Optional[float] = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.timeout = timeout
        self.details.setdefault("timeout", timeout)
        self.details.setdefault("indeterminate", True)


class RegistryCorruptionError(FleetError):
    """Registry internal state is inconsistent. Requires a process restart."""
    kind = ErrorKind.INTERNAL
