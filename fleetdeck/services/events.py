import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

from fleetdeck.models.events import EventType, RegistryEvent
from fleetdeck.models.store import utcnow

logger = logging.getLogger(__name__)

Subscriber = Callable[[RegistryEvent], Any]


class EventBus:
    """Fan-out of registry change notifications.

    Subscribers are called in registration order. A failing subscriber is
    logged and skipped; publishers never see its exception. Coroutine
    subscribers are scheduled on the running loop.
    """

    def __init__(self):
        self._subscribers: list[Subscriber] = []
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, type: EventType, host_id: Optional[str] = None, **payload: Any) -> RegistryEvent:
        event = RegistryEvent(type=type, host_id=host_id, payload=payload, at=utcnow())
        self.publish(event)
        return event

    def publish(self, event: RegistryEvent) -> None:
        for callback in list(self._subscribers):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._task_done)
            except Exception:
                logger.exception(f"Event subscriber failed on {event.type.value}")

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Async event subscriber failed: {task.exception()!r}")

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
