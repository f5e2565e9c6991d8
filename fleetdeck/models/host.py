from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


class HostStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class OperationKind(str, Enum):
    """Kinds of per-host work. Two operations of the same kind never overlap on one host."""
    CONNECT = "connect"
    TEST = "test"
    COMMAND = "command"
    STATS = "stats"
    LOGS = "logs"
    DETECT_PATHS = "detect_paths"
    PERMISSIONS = "permissions"
    HOOKS = "hooks"
    AUTHORIZE_KEY = "authorize_key"
    DEPLOY = "deploy"


class ResourceUsage(BaseModel):
    used: int = 0
    total: int = 0
    percentage: float = 0.0


class HostMetrics(BaseModel):
    cpu_percent: float = 0.0
    memory: ResourceUsage = Field(default_factory=ResourceUsage)
    disk: ResourceUsage = Field(default_factory=ResourceUsage)
    uptime_seconds: int = 0
    load_average: list[float] = Field(default_factory=lambda: [0.0, 0.0, 0.0])
    collected_at: Optional[datetime] = None

    @property
    def memory_percent(self) -> float:
        return self.memory.percentage

    @property
    def disk_percent(self) -> float:
        return self.disk.percentage


class HostLogs(BaseModel):
    path: str
    lines: int
    content: str
    fetched_at: datetime


class Host(BaseModel):
    id: str
    name: str
    address: str  # IP or FQDN
    port: int = 22
    username: str = "root"
    password: Optional[str] = None
    private_key_path: Optional[str] = None
    private_key_passphrase: Optional[str] = None
    status: HostStatus = HostStatus.DISCONNECTED
    environment: Environment = Environment.DEVELOPMENT
    os: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    last_connected: Optional[datetime] = None
    last_seen: Optional[datetime] = None
    metrics: Optional[HostMetrics] = None
    last_error: Optional[str] = None

    @property
    def auth_method(self) -> Optional[str]:
        if self.private_key_path:
            return "publickey"
        if self.password:
            return "password"
        return None

    def public_view(self) -> dict:
        """Serializable view without credential material."""
        data = self.model_dump(mode="json", exclude={"password", "private_key_passphrase"})
        data["has_password"] = bool(self.password)
        data["auth_method"] = self.auth_method
        return data
