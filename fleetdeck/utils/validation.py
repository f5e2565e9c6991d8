import re
from pathlib import PurePosixPath
from typing import Optional

from fleetdeck.core.errors import ValidationError

HOST_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")
KEY_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$")
ENV_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
# user/group names, or numeric ids
ACCOUNT_PATTERN = re.compile(r"^(?:[A-Za-z_][A-Za-z0-9_.-]{0,31}|[0-9]+)$")
MODE_PATTERN = re.compile(r"^[0-7]{3,4}$")
GIT_REF_PATTERN = re.compile(r"^(?!-)(?!.*\.\.)[A-Za-z0-9._/-]{1,200}$")

GIT_HOOK_NAMES = frozenset({
    "applypatch-msg", "pre-applypatch", "post-applypatch",
    "pre-commit", "prepare-commit-msg", "commit-msg", "post-commit",
    "pre-rebase", "post-checkout", "post-merge", "pre-push",
    "pre-receive", "update", "post-receive", "post-update",
    "push-to-checkout", "pre-auto-gc", "post-rewrite",
})


def require_host_id(value: str) -> str:
    if not isinstance(value, str) or not HOST_ID_PATTERN.match(value):
        raise ValidationError(
            f"Invalid host id {value!r}: use letters, digits, '_' or '-' (max 64)",
            entity_type="host",
            entity_id=value if isinstance(value, str) else None,
        )
    return value


def require_key_name(value: str) -> str:
    if not isinstance(value, str) or not KEY_NAME_PATTERN.match(value):
        raise ValidationError(
            f"Invalid key name {value!r}: use letters, digits, '.', '_' or '-' (max 64)",
            entity_type="key",
            entity_id=value if isinstance(value, str) else None,
        )
    return value


def require_remote_path(value: str, field: str = "path") -> str:
    """Absolute POSIX path without '..' components or control characters."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} must be a non-empty path")
    if "\x00" in value or "\n" in value or "\r" in value:
        raise ValidationError(f"{field} contains control characters")
    path = PurePosixPath(value)
    if not path.is_absolute():
        raise ValidationError(f"{field} must be absolute: {value!r}")
    if ".." in path.parts:
        raise ValidationError(f"{field} must not contain '..': {value!r}")
    return str(path)


def require_script(value: str, field: str = "script") -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} must be a non-empty string")
    if "\x00" in value:
        raise ValidationError(f"{field} contains a NUL byte")
    return value


def optional_script(value: Optional[str], field: str = "script") -> Optional[str]:
    if value is None:
        return None
    return require_script(value, field)


def require_env_name(value: str) -> str:
    if not isinstance(value, str) or not ENV_NAME_PATTERN.match(value):
        raise ValidationError(f"Invalid environment variable name {value!r}")
    return value


def require_account(value: str, field: str) -> str:
    if not ACCOUNT_PATTERN.match(value):
        raise ValidationError(f"Invalid {field} {value!r}")
    return value


def require_mode(value: str) -> str:
    if not MODE_PATTERN.match(value):
        raise ValidationError(f"Invalid mode {value!r}: expected 3 or 4 octal digits")
    return value


def require_git_ref(value: str, field: str = "branch") -> str:
    if not GIT_REF_PATTERN.match(value):
        raise ValidationError(f"Invalid {field} {value!r}")
    return value


def require_hook_name(value: str) -> str:
    if value not in GIT_HOOK_NAMES:
        raise ValidationError(f"Unknown git hook {value!r}")
    return value
