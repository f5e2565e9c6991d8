from datetime import datetime
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field


class EventType(str, Enum):
    HOST_ADDED = "host-added"
    HOST_UPDATED = "host-updated"
    HOST_REMOVED = "host-removed"
    STATUS_CHANGED = "status-changed"
    STATS_UPDATED = "stats-updated"
    LOGS_UPDATED = "logs-updated"
    COMMAND_EXECUTED = "command-executed"
    DEPLOY_PATHS_DETECTED = "deploy-paths-detected"
    DEPLOYMENT_STARTED = "deployment-started"
    DEPLOYMENT_STEP = "deployment-step"
    DEPLOYMENT_FINISHED = "deployment-finished"
    KEY_GENERATED = "key-generated"
    KEY_IMPORTED = "key-imported"
    KEY_DELETED = "key-deleted"


class RegistryEvent(BaseModel):
    type: EventType
    host_id: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    at: datetime
