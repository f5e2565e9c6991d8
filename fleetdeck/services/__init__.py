from .store import KeyValueStore
from .events import EventBus
from .executor import RemoteExecutor
from .tester import ConnectionTester
from .paths import DeployPathDetector
from .permissions import PermissionSetup
from .hooks import GitHookInstaller
from .orchestrator import DeploymentOrchestrator
from .keys import KeyManager
from .poller import StatsPoller
from .registry import ServerRegistry
from .commands import CommandDispatcher
from .notifications import NotificationService
