"""
Logging setup shared by every ads_auth module.

Import ``logger`` from here; token values must go through ``mask_secret``
before they reach a log line.
"""
import logging
import sys
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Third-party loggers that are chatty at INFO
NOISY_LOGGERS = ("apscheduler", "aiohttp.access")


def setup_logger(name: str = "ads-auth", level: Optional[str] = None) -> logging.Logger:
    """
    Configure the service logger with a stdout handler.

    Calling it again for the same name returns the existing logger untouched.

    Args:
        name: Logger name
        level: Log level name (defaults to LOG_LEVEL)

    Returns:
        Configured logger instance
    """
    if level is None:
        from ..config.settings import settings
        level = settings.log_level

    service_logger = logging.getLogger(name)
    if service_logger.handlers:
        return service_logger

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    service_logger.setLevel(numeric_level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    service_logger.addHandler(handler)

    if numeric_level > logging.DEBUG:
        for noisy in NOISY_LOGGERS:
            logging.getLogger(noisy).setLevel(logging.WARNING)

    return service_logger


def mask_secret(value: Optional[str], visible: int = 6) -> str:
    """Return a log-safe rendering of a token: its first few characters only."""
    if not value:
        return "<none>"
    if len(value) <= visible:
        return "***"
    return f"{value[:visible]}..."


logger = setup_logger()
