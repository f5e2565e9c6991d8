from fastapi import Request
from fleetdeck.services import CommandDispatcher, EventBus, ServerRegistry


def get_registry(request: Request) -> ServerRegistry:
    return request.app.state.registry


def get_dispatcher(request: Request) -> CommandDispatcher:
    return request.app.state.dispatcher


def get_events(request: Request) -> EventBus:
    return request.app.state.registry.events
