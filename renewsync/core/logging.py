from __future__ import annotations

import logging

from renewsync.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Configure root logging once per process; repeated calls only adjust the level.
    level = getattr(logging, get_settings().log_level.upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
    root.setLevel(level)
    # Partner API request lines are noisy at INFO.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
