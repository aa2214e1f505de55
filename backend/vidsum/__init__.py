"""Video Summary - staged video processing jobs with live status streaming.

This module exposes the package version and the logging setup shared by
the API server and CLI entry points.
Call configure_logging() once during application startup.
"""

import logging
from typing import Optional

__version__ = "0.1.0"

LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"

logger = logging.getLogger(__name__)


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging for server and CLI processes.

    Args:
        level: Log level name. Defaults to settings.logging.level.
    """
    if level is None:
        from vidsum.config import settings

        level = settings.logging.level

    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    logger.debug(f"Logging configured at {level.upper()}")
