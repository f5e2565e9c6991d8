"""Request shapes for every registry command.

These run before a command reaches the core: ids, paths, scripts and names
are checked here so that services can assume well-formed input.
"""
from typing import Optional
from pydantic import BaseModel, Field, field_validator, model_validator

from fleetdeck.core.errors import ValidationError
from fleetdeck.models.host import Environment
from fleetdeck.models.key import KeyAlgorithm
from fleetdeck.utils import validation as v


class HostRef(BaseModel):
    host_id: str

    @field_validator("host_id")
    @classmethod
    def _host_id(cls, value: str) -> str:
        return v.require_host_id(value)


class ConnectRequest(HostRef):
    timeout: Optional[float] = Field(default=None, gt=0)


class HostCreate(BaseModel):
    id: Optional[str] = None
    name: str = Field(min_length=1, max_length=128)
    address: str = Field(min_length=1, max_length=255)
    port: int = Field(default=22, ge=1, le=65535)
    username: str = Field(default="root", min_length=1, max_length=64)
    password: Optional[str] = None
    private_key_path: Optional[str] = None
    private_key_passphrase: Optional[str] = None
    environment: Environment = Environment.DEVELOPMENT
    tags: list[str] = Field(default_factory=list)

    @field_validator("id")
    @classmethod
    def _id(cls, value: Optional[str]) -> Optional[str]:
        return v.require_host_id(value) if value is not None else None

    @field_validator("address")
    @classmethod
    def _address(cls, value: str) -> str:
        value = value.strip()
        if not value or any(ch.isspace() for ch in value):
            raise ValidationError(f"Invalid address {value!r}")
        return value

    @model_validator(mode="after")
    def _one_credential(self):
        if self.password and self.private_key_path:
            raise ValidationError("Provide either a password or a private key path, not both")
        return self


class HostUpdate(HostRef):
    name: Optional[str] = Field(default=None, min_length=1, max_length=128)
    address: Optional[str] = Field(default=None, min_length=1, max_length=255)
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    username: Optional[str] = Field(default=None, min_length=1, max_length=64)
    password: Optional[str] = None
    private_key_path: Optional[str] = None
    private_key_passphrase: Optional[str] = None
    environment: Optional[Environment] = None
    tags: Optional[list[str]] = None

    @model_validator(mode="after")
    def _one_credential(self):
        if self.password and self.private_key_path:
            raise ValidationError("Provide either a password or a private key path, not both")
        return self

    def changes(self) -> dict:
        return self.model_dump(exclude={"host_id"}, exclude_unset=True)


class ExecuteCommandRequest(HostRef):
    command: str
    timeout: Optional[float] = Field(default=None, gt=0)

    @field_validator("command")
    @classmethod
    def _command(cls, value: str) -> str:
        return v.require_script(value, "command")


class LogsRequest(HostRef):
    lines: Optional[int] = Field(default=None, ge=1, le=10000)
    path: Optional[str] = None

    @field_validator("path")
    @classmethod
    def _path(cls, value: Optional[str]) -> Optional[str]:
        return v.require_remote_path(value, "path") if value is not None else None


class PermissionsRequest(HostRef):
    path: str
    owner: Optional[str] = None
    group: Optional[str] = None
    mode: Optional[str] = None
    recursive: bool = False

    @field_validator("path")
    @classmethod
    def _path(cls, value: str) -> str:
        return v.require_remote_path(value)

    @field_validator("owner", "group")
    @classmethod
    def _account(cls, value: Optional[str], info) -> Optional[str]:
        return v.require_account(value, info.field_name) if value is not None else None

    @field_validator("mode")
    @classmethod
    def _mode(cls, value: Optional[str]) -> Optional[str]:
        return v.require_mode(value) if value is not None else None

    @model_validator(mode="after")
    def _something_to_do(self):
        if not (self.owner or self.group or self.mode):
            raise ValidationError("At least one of owner, group or mode is required")
        return self


class HookIn(BaseModel):
    name: str
    script: str

    @field_validator("name")
    @classmethod
    def _name(cls, value: str) -> str:
        return v.require_hook_name(value)

    @field_validator("script")
    @classmethod
    def _script(cls, value: str) -> str:
        return v.require_script(value, "script")


class HooksRequest(HostRef):
    repo_path: str
    hooks: list[HookIn] = Field(min_length=1)

    @field_validator("repo_path")
    @classmethod
    def _repo_path(cls, value: str) -> str:
        return v.require_remote_path(value, "repo_path")

    @model_validator(mode="after")
    def _unique_names(self):
        names = [hook.name for hook in self.hooks]
        if len(names) != len(set(names)):
            raise ValidationError("Hook names must be unique")
        return self


class UploadKeyRequest(HostRef):
    key_name: Optional[str] = None
    public_key: Optional[str] = None

    @field_validator("key_name")
    @classmethod
    def _key_name(cls, value: Optional[str]) -> Optional[str]:
        return v.require_key_name(value) if value is not None else None

    @field_validator("public_key")
    @classmethod
    def _public_key(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        if not value or "\n" in value or not value.startswith(("ssh-", "ecdsa-")):
            raise ValidationError("public_key must be a single-line OpenSSH public key")
        return value

    @model_validator(mode="after")
    def _exactly_one(self):
        if bool(self.key_name) == bool(self.public_key):
            raise ValidationError("Provide exactly one of key_name or public_key")
        return self


class RepositoryIn(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    clone_url: str = Field(min_length=1)
    default_branch: str = "main"

    @field_validator("clone_url")
    @classmethod
    def _clone_url(cls, value: str) -> str:
        if value.startswith("-") or any(ch.isspace() for ch in value):
            raise ValidationError(f"Invalid clone URL {value!r}")
        return value

    @field_validator("default_branch")
    @classmethod
    def _branch(cls, value: str) -> str:
        return v.require_git_ref(value, "default_branch")


class DeployRequestIn(HostRef):
    repository: RepositoryIn
    branch: Optional[str] = None
    target_path: str
    clean: bool = False
    pre_deploy_script: Optional[str] = None
    build_command: Optional[str] = None
    post_deploy_script: Optional[str] = None
    environment: dict[str, str] = Field(default_factory=dict)
    supersede: bool = False
    wait: bool = True

    @field_validator("branch")
    @classmethod
    def _branch(cls, value: Optional[str]) -> Optional[str]:
        return v.require_git_ref(value) if value is not None else None

    @field_validator("target_path")
    @classmethod
    def _target_path(cls, value: str) -> str:
        path = v.require_remote_path(value, "target_path")
        if path == "/":
            raise ValidationError("target_path must not be the filesystem root")
        return path

    @field_validator("pre_deploy_script", "build_command", "post_deploy_script")
    @classmethod
    def _scripts(cls, value: Optional[str], info) -> Optional[str]:
        return v.optional_script(value, info.field_name)

    @field_validator("environment")
    @classmethod
    def _environment(cls, value: dict[str, str]) -> dict[str, str]:
        for name in value:
            v.require_env_name(name)
        return value


class KeyRef(BaseModel):
    name: str

    @field_validator("name")
    @classmethod
    def _name(cls, value: str) -> str:
        return v.require_key_name(value)


class GenerateKeyRequest(KeyRef):
    algorithm: KeyAlgorithm = KeyAlgorithm.ED25519
    bits: Optional[int] = None
    comment: Optional[str] = Field(default=None, max_length=255)
    passphrase: Optional[str] = None


class ImportKeyRequest(KeyRef):
    private_key_path: str = Field(min_length=1)
    passphrase: Optional[str] = None
