from .store import StoreEntry
from .host import Host, HostStatus, HostMetrics, HostLogs, ResourceUsage, Environment, OperationKind
from .remote import (
    CommandResult, ConnectionErrorKind, ConnectionTestResult, PathConfidence, CONFIDENCE_RANK,
    DeployPathCandidate, PermissionSpec, PermissionResult, GitHook, HookOutcome, HookInstallResult,
)
from .key import KeyAlgorithm, KeyOrigin, KeyRecord
from .deployment import (
    DeploymentState, DeploymentRepository, DeploymentRequest, DeploymentStepResult, DeploymentResult,
)
from .events import EventType, RegistryEvent
