import logging
import sys
from typing import Optional
from fleetdeck.core.config import get_settings

settings = get_settings()

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Libraries that log every connection, job run or request at INFO
QUIET_LOGGERS = ("asyncssh", "apscheduler", "uvicorn.access", "sqlalchemy.engine")


def setup_logging(debug: Optional[bool] = None) -> int:
    """Configures stdout logging for the service and returns the root level.

    Safe to call more than once; the handler is only attached the first time.
    """
    debug = settings.DEBUG if debug is None else debug
    log_level = logging.DEBUG if debug else logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    if not root_logger.handlers:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root_logger.addHandler(console_handler)

    # asyncssh stays chatty when debugging connection problems
    for name in QUIET_LOGGERS:
        if debug and name == "asyncssh":
            continue
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(f"Logging initialized with level: {logging.getLevelName(log_level)}")
    return log_level
