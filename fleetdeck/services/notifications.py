import asyncio
import logging
from typing import Optional

from fleetdeck.core.config import get_settings
from fleetdeck.models.events import EventType, RegistryEvent

settings = get_settings()
logger = logging.getLogger(__name__)


def format_deployment_message(deployment: dict) -> tuple[str, str]:
    """Returns (title, body) for a finished deployment summary."""
    success = deployment.get("state") == "succeeded"
    status = "SUCCESS" if success else "FAILED"
    emoji = "✅" if success else "🚨"
    repository = deployment.get("repository", {}).get("name", "unknown")
    lines = [
        f"{emoji} Deployment: {repository}@{deployment.get('branch')}",
        f"Host: {deployment.get('host_id')}",
        f"Target: {deployment.get('target_path')}",
        f"Status: {status}",
        f"Started: {deployment.get('started_at') or 'N/A'}",
        f"Finished: {deployment.get('finished_at') or 'N/A'}",
    ]
    error = deployment.get("error")
    if error:
        lines.append(f"Error: {error.get('message')}")
    return f"FleetDeck: {repository} [{status}]", "\n".join(lines)


class NotificationService:
    """Sends apprise notifications when deployments finish."""

    def __init__(self, url: Optional[str] = None):
        self.url = url if url is not None else settings.NOTIFY_URL

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def send_notification(self, message: str, title: str = "FleetDeck Alert") -> bool:
        import apprise
        if not self.url:
            return False

        apobj = apprise.Apprise()

        # Support both direct service URLs (tgram://) and config URLs (http://)
        config = apprise.AppriseConfig()
        if config.add(self.url):
            apobj.add(config)
        else:
            apobj.add(self.url)

        return bool(apobj.notify(body=message, title=title))

    async def on_event(self, event: RegistryEvent) -> None:
        if event.type != EventType.DEPLOYMENT_FINISHED or not self.enabled:
            return
        title, body = format_deployment_message(event.payload.get("deployment", {}))
        # apprise is blocking
        sent = await asyncio.to_thread(self.send_notification, body, title)
        if not sent:
            logger.warning(f"Deployment notification for host {event.host_id} was not delivered")
