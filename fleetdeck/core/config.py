from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional
from pathlib import Path
import os

class Settings(BaseSettings):
    APP_NAME: str = "FleetDeck"
    VERSION: str = "1.0.0"
    BASE_DIR: Path = Path(__file__).resolve().parent.parent.parent
    DATA_DIR: Path = Path(os.getenv("FLEETDECK_DATA_PATH", str(Path.home() / ".fleetdeck")))
    KEYS_DIR: Path = DATA_DIR / "keys"
    DATABASE_URL: str = f"sqlite:///{DATA_DIR / 'fleetdeck.db'}"
    SECRET_KEY: str = "fleetdeck-secret-key-change-me"
    DEBUG: bool = False

    # Timeouts (seconds)
    CONNECT_TIMEOUT: float = 15.0
    COMMAND_TIMEOUT: float = 60.0
    DEPLOY_TIMEOUT: float = 600.0
    DEPLOY_STEP_TIMEOUT: float = 300.0

    # Poller
    STATS_INTERVAL: int = 30
    LOG_LINES: int = 100
    LOG_FILE: str = "/var/log/syslog"

    # Retention
    COMMAND_HISTORY: int = 20
    DEPLOY_HISTORY: int = 20

    KNOWN_HOSTS_PATH: Optional[str] = None
    NOTIFY_URL: Optional[str] = None

    class Config:
        env_file = ".env"
        env_prefix = "FLEETDECK_"

@lru_cache()
def get_settings():
    return Settings()
