import hashlib
import logging
import sys
from typing import Optional

import structlog
from pythonjsonlogger import jsonlogger

from ..config import Settings, get_settings


def setup_logging(settings: Optional[Settings] = None):
    """Structured logging setup for the flagging engine"""
    settings = settings or get_settings()

    # JSON formatter for production
    json_formatter = jsonlogger.JsonFormatter(
        fmt="%(asctime)s %(name)s %(levelname)s %(message)s"
    )

    renderer = structlog.processors.JSONRenderer() if settings.log_json else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Setup root logger once; repeated calls only adjust the level
    logger = logging.getLogger()
    if not any(getattr(h, "_medflag", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stdout)
        if settings.log_json:
            handler.setFormatter(json_formatter)
        handler._medflag = True
        logger.addHandler(handler)
    logger.setLevel(settings.log_level.upper())

    return structlog.get_logger("medflag")


def hash_identifier(value: Optional[str]) -> str:
    """Short digest of a patient identifier for log lines."""
    if not value:
        return "N/A"
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:12]
