from fastapi import APIRouter, Depends
from fleetdeck.dependencies import get_dispatcher
from fleetdeck.schemas.envelope import CommandResponse
from fleetdeck.services import CommandDispatcher

router = APIRouter(prefix="/api/hosts")


@router.get("", response_model=CommandResponse)
async def list_hosts(dispatcher: CommandDispatcher = Depends(get_dispatcher)) -> CommandResponse:
    return await dispatcher.dispatch("list-hosts")


@router.get("/{host_id}", response_model=CommandResponse)
async def get_host(host_id: str, dispatcher: CommandDispatcher = Depends(get_dispatcher)) -> CommandResponse:
    return await dispatcher.dispatch("get-host", {"host_id": host_id})
