import logging
from typing import Literal

LOG_FORMAT_DEBUG = (
    "[%(levelname)7s]: %(name)s - %(message)s --- %(pathname)s:%(lineno)d"
)
LOG_FORMAT_PROD = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

SECURITY_LOGGER_NAME = "download_guard.security"

_QUIET_LOGGERS = ("httpx", "aiosqlite", "sqlalchemy.engine")


def get_security_logger() -> logging.Logger:
    """Logger for integrity failures, state transitions and blocks."""
    return logging.getLogger(SECURITY_LOGGER_NAME)


def setup_logging(env: Literal["local", "dev", "prod"]) -> None:
    """Setup logging configuration based on the environment."""
    if env in ("local", "dev"):
        logging.basicConfig(level=logging.DEBUG, format=LOG_FORMAT_DEBUG)
    else:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT_PROD)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    # Suspected attacks stay visible even when the root level is raised.
    get_security_logger().setLevel(logging.INFO)
