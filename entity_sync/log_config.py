"""Logging configuration.

Usage:
    from entity_sync.log_config import setup_logging
    setup_logging()   # once at startup (the API app does this on import)
"""

import logging
import sys

from entity_sync.config import get_settings

_HTTP_LOGGERS = ["httpx", "httpcore"]


def setup_logging() -> None:
    """Configure the root level from settings and quiet outbound HTTP loggers."""
    settings = get_settings()

    root = logging.getLogger()
    root.setLevel(_parse_level(settings.log_level))

    if not root.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(levelname)-8s %(name)s: %(message)s"))
        root.addHandler(handler)

    for name in _HTTP_LOGGERS:
        logging.getLogger(name).setLevel(_parse_level(settings.log_level_http))

    logging.getLogger(__name__).debug(
        "Logging configured: root=%s, http=%s", settings.log_level, settings.log_level_http
    )


def _parse_level(raw: str) -> int:
    """Level name to a logging constant, defaulting to INFO."""
    numeric = getattr(logging, raw.upper(), None)
    if isinstance(numeric, int):
        return numeric
    return logging.INFO
