import uvicorn
from fleetdeck.core.config import get_settings


def main():
    settings = get_settings()
    settings.DATA_DIR.mkdir(parents=True, exist_ok=True)

    uvicorn.run(
        "fleetdeck.main:app",
        host="127.0.0.1",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info",
    )


if __name__ == "__main__":
    main()
