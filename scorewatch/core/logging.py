from __future__ import annotations

import logging

from scorewatch.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Configure root logging once per process; repeated calls only adjust the level.
    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
    root.setLevel(level)
    # Keep per-request access noise out of batch and limiter logs.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
