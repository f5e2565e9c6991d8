from fastapi import APIRouter, Depends
from fleetdeck.core.config import get_settings
from fleetdeck.dependencies import get_registry
from fleetdeck.services import ServerRegistry

settings_conf = get_settings()
router = APIRouter(prefix="/api")


@router.get("/health")
async def health_check(registry: ServerRegistry = Depends(get_registry)):
    """Health check endpoint for Docker and monitoring.

    Returns:
        Status, version and catalog size.
    """
    return {
        "status": "ok",
        "name": settings_conf.APP_NAME,
        "version": settings_conf.VERSION,
        "hosts": len(registry.list_hosts()),
    }
