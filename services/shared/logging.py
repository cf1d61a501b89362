"""Logging setup shared by the API and the worker."""

import logging

from services.shared.config import Settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(settings: Settings) -> None:
    """Configure root logging from settings.

    Args:
        settings: Application settings (uses log_level)
    """
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    # httpx logs every request URL at INFO, which includes platform references
    logging.getLogger("httpx").setLevel(logging.WARNING)
