import asyncio
from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from fleetdeck.dependencies import get_events
from fleetdeck.models.events import RegistryEvent
from fleetdeck.services import EventBus

router = APIRouter(prefix="/api")

# Events buffered per client before the oldest are dropped
QUEUE_SIZE = 256


@router.get("/events")
async def stream_events(events: EventBus = Depends(get_events)) -> StreamingResponse:
    """Streams registry events as Server-Sent Events.

    Each event is sent with its type as the SSE event name and the full
    event as JSON data, so clients can subscribe instead of polling.
    """
    queue: asyncio.Queue[RegistryEvent] = asyncio.Queue(maxsize=QUEUE_SIZE)

    def enqueue(event: RegistryEvent) -> None:
        if queue.full():
            queue.get_nowait()
        queue.put_nowait(event)

    unsubscribe = events.subscribe(enqueue)

    async def event_generator():
        try:
            yield "event: connected\ndata: {}\n\n"
            while True:
                event = await queue.get()
                yield f"event: {event.type.value}\ndata: {event.model_dump_json()}\n\n"
        finally:
            unsubscribe()

    return StreamingResponse(event_generator(), media_type="text/event-stream")
