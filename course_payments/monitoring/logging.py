"""
Structured logging for the API and the worker.

Both processes log JSON: structlog events carry the request id bound by the
API middleware, and the stdlib loggers of uvicorn, SQLAlchemy and httpx go
through python-json-logger.
"""
import logging
import sys
from typing import Any, Dict, MutableMapping

import structlog
from pythonjsonlogger import jsonlogger

from course_payments import __version__
from course_payments.config import get_settings

# Event fields whose values must never reach the logs
SECRET_FIELDS = frozenset(
    {"authorization", "signature", "x_signature", "api_key", "access_token", "webhook_secret"}
)

# Third-party loggers and the level they are capped at
LIBRARY_LEVELS: Dict[str, int] = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "aiosqlite": logging.WARNING,
    "uvicorn.access": logging.WARNING,
}


def add_service_context(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Stamp every event with the service name, environment and version."""
    settings = get_settings()
    event_dict.setdefault("service", settings.app_name)
    event_dict.setdefault("env", settings.app_env)
    event_dict.setdefault("version", __version__)
    return event_dict


def redact_secrets(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    for key in SECRET_FIELDS.intersection(event_dict):
        event_dict[key] = "[redacted]"
    return event_dict


def _json_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )
    return handler


def setup_logging() -> None:
    """
    Configure structlog and the stdlib root logger.

    Safe to call more than once; each call replaces the root handlers.
    """
    settings = get_settings()
    level = getattr(logging, settings.log_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            add_service_context,
            redact_secrets,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.handlers = [_json_handler()]
    root_logger.setLevel(level)

    for name, cap in LIBRARY_LEVELS.items():
        logging.getLogger(name).setLevel(max(level, cap))
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
    )
