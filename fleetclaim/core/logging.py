from __future__ import annotations

import logging

from fleetclaim.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Third-party loggers that drown out pipeline events at INFO.
_NOISY_LOGGERS = ("httpx", "httpcore", "arq.jobs")


def configure_logging() -> None:
    # Configure root logging once per process from settings.
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
    root.setLevel(level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
