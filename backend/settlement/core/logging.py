"""Logging configuration for the application"""
import logging
from typing import Dict

from settlement.core.config import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Client libraries that log every HTTP round trip at INFO
QUIET_LOGGERS: Dict[str, int] = {
    "stripe": logging.WARNING,
    "resend": logging.WARNING,
    "urllib3": logging.WARNING,
    "httpx": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
}


def resolve_level(name: str, default: int = logging.INFO) -> int:
    """Map a level name such as 'debug' to its number; unknown names fall back to default"""
    level = logging.getLevelName(name.strip().upper()) if name else default
    return level if isinstance(level, int) else default


def setup_logging():
    """Configure the root logger from LOG_LEVEL.

    WEBHOOK_LOG_LEVEL, when set, overrides the level of the "webhook" logger
    only, so delivery handling can be traced without debug output from
    everything else.
    """
    logging.basicConfig(
        level=resolve_level(settings.LOG_LEVEL),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )

    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    if settings.WEBHOOK_LOG_LEVEL:
        webhook_logger.setLevel(resolve_level(settings.WEBHOOK_LOG_LEVEL))


webhook_logger = logging.getLogger("webhook")
