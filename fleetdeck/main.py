import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from fleetdeck.core.config import get_settings
from fleetdeck.core.database import create_db_and_tables, engine
from fleetdeck.core.errors import ErrorKind, FleetError
from fleetdeck.core.logging import setup_logging
from fleetdeck.schemas.envelope import CommandResponse, ErrorInfo
from fleetdeck.services import (
    CommandDispatcher,
    EventBus,
    KeyManager,
    KeyValueStore,
    NotificationService,
    RemoteExecutor,
    ServerRegistry,
    StatsPoller,
)
from fleetdeck.routers import commands, core, events, hosts

settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)

STATUS_CODES = {
    ErrorKind.VALIDATION: 422,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.CONNECTIVITY: 502,
    ErrorKind.AUTH: 502,
    ErrorKind.REMOTE_EXECUTION: 502,
    ErrorKind.PARTIAL_EFFECT: 502,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.INTERNAL: 500,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manages FleetDeck application lifecycle events.

    On Startup:
    - Creates the store table if missing.
    - Builds the registry, key manager and command dispatcher.
    - Loads the host catalog (every host starts disconnected).
    - Subscribes deployment notifications when NOTIFY_URL is set.
    - Starts the stats poller.

    On Shutdown:
    - Stops the poller.
    """
    logger.info("FleetDeck starting up...")
    create_db_and_tables()

    store = KeyValueStore(engine)
    bus = EventBus()
    registry = ServerRegistry(store, RemoteExecutor(), bus)
    registry.load()
    keys = KeyManager(settings.KEYS_DIR, store)

    notifier = NotificationService()
    if notifier.enabled:
        bus.subscribe(notifier.on_event)

    poller = StatsPoller(registry.refresh_connected_hosts)
    app.state.registry = registry
    app.state.dispatcher = CommandDispatcher(registry, keys)
    app.state.poller = poller
    poller.start()
    logger.info("FleetDeck started successfully.")

    yield

    logger.info("FleetDeck shutting down...")
    poller.shutdown()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan,
)


@app.exception_handler(FleetError)
async def fleet_error_handler(request: Request, exc: FleetError):
    """Errors raised outside the dispatcher still leave as an envelope."""
    body = CommandResponse.fail(exc.to_info())
    return JSONResponse(status_code=STATUS_CODES[exc.kind], content=body.model_dump(mode="json"))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    kind = ErrorKind.NOT_FOUND if exc.status_code == 404 else ErrorKind.VALIDATION
    body = CommandResponse.fail(ErrorInfo(kind=kind, message=str(exc.detail)))
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json"))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception")
    body = CommandResponse.fail(ErrorInfo(kind=ErrorKind.INTERNAL, message="Internal Server Error"))
    return JSONResponse(status_code=500, content=body.model_dump(mode="json"))


app.include_router(core.router)
app.include_router(commands.router)
app.include_router(hosts.router)
app.include_router(events.router)
