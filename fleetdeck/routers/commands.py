from typing import Any, Optional
from fastapi import APIRouter, Body, Depends, HTTPException
from fleetdeck.dependencies import get_dispatcher
from fleetdeck.schemas.envelope import CommandResponse
from fleetdeck.services import CommandDispatcher

router = APIRouter(prefix="/api/commands")


@router.get("")
async def list_commands(dispatcher: CommandDispatcher = Depends(get_dispatcher)) -> list[str]:
    return dispatcher.names


@router.post("/{name}", response_model=CommandResponse)
async def run_command(
    name: str,
    payload: Optional[dict[str, Any]] = Body(default=None),
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
) -> CommandResponse:
    """Runs one registry command.

    Handled failures come back as HTTP 200 with ``success: false``; only an
    unknown command name is an HTTP error.
    """
    if not dispatcher.has(name):
        raise HTTPException(status_code=404, detail=f"Unknown command: {name}")
    return await dispatcher.dispatch(name, payload)
