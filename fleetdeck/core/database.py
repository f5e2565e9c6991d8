from sqlmodel import SQLModel, create_engine
from sqlalchemy.pool import StaticPool
from fleetdeck.core.config import get_settings
import logging
import os

settings = get_settings()
logger = logging.getLogger(__name__)

connect_args = {"check_same_thread": False}
engine_kwargs = {}
if settings.DATABASE_URL in ("sqlite://", "sqlite:///:memory:"):
    # A single shared connection, otherwise every session sees an empty database
    engine_kwargs["poolclass"] = StaticPool

engine = create_engine(settings.DATABASE_URL, connect_args=connect_args, **engine_kwargs)

def create_db_and_tables(bind=None):
    # Ensure database directory exists
    if settings.DATABASE_URL.startswith("sqlite:///") and bind is None:
        db_path = settings.DATABASE_URL.replace("sqlite:///", "")
        if db_path and db_path != ":memory:":
            db_dir = os.path.dirname(os.path.abspath(db_path))
            if db_dir:
                try:
                    os.makedirs(db_dir, exist_ok=True)
                except OSError as e:
                    logger.error(f"Could not create database directory {db_dir}: {e}")

    # Import models here to ensure they are registered with SQLModel metadata
    from fleetdeck.models.store import StoreEntry
    SQLModel.metadata.create_all(bind or engine)
