from __future__ import annotations

import logging

from tenantfleet.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Configure root logging once for scripts and workers; library code only uses module loggers.
    resolved = (level or get_settings().log_level).upper()
    logging.basicConfig(level=resolved, format=_LOG_FORMAT)
    # SQLAlchemy pool chatter drowns lifecycle events at INFO.
    logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)
