from __future__ import annotations

import logging

from dust_connectors.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging() -> None:
    # Configure the root logger once per process (API, worker, scripts).
    global _configured
    if _configured:
        return
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=_LOG_FORMAT)
    # httpx logs every request at INFO; provider calls are too chatty for that.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
    _configured = True
