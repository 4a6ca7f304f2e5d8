"""Logging setup shared by the API process and the scripts."""

import logging

from leave_engine.config import Settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s — %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def configure_logging(settings: Settings) -> None:
    """Install the root handler at ``settings.LOG_LEVEL``."""
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
    logging.getLogger("leave_engine").setLevel(level)
