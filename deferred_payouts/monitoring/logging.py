"""
Structured logging configuration.

structlog renders every event; stdlib loggers from dependencies are routed
through a JSON handler. Request IDs and seller IDs travel in contextvars, so
anything logged while a seller is locked carries ``seller_id``.
"""
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Dict, Optional

import structlog
from pythonjsonlogger import jsonlogger

from deferred_payouts.config import Settings, get_settings

REDACTED = "[redacted]"
SENSITIVE_FIELDS = frozenset({"email", "buyer_email", "signature", "stripe_signature"})

DEPENDENCY_LOG_LEVELS: Dict[str, int] = {
    "urllib3": logging.WARNING,
    "stripe": logging.INFO,
    "aiosqlite": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
}


@contextmanager
def seller_context(seller_id: str) -> Iterator[None]:
    """Bind ``seller_id`` to every event logged inside the block."""
    with structlog.contextvars.bound_contextvars(seller_id=seller_id):
        yield


def redact_sensitive_fields(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask contact details and webhook signatures."""
    for key in SENSITIVE_FIELDS.intersection(event_dict):
        if event_dict[key] is not None:
            event_dict[key] = REDACTED
    return event_dict


def _app_context_processor(settings: Settings) -> Any:
    def add_app_context(
        logger: Any, method_name: str, event_dict: Dict[str, Any]
    ) -> Dict[str, Any]:
        event_dict["app_name"] = settings.app_name
        event_dict["app_env"] = settings.app_env
        return event_dict

    return add_app_context


def build_processors(settings: Settings) -> list[Any]:
    """Processor chain; the last one renders."""
    renderer: Any = (
        structlog.dev.ConsoleRenderer()
        if settings.app_env == "development"
        else structlog.processors.JSONRenderer()
    )
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        redact_sensitive_fields,
        _app_context_processor(settings),
        renderer,
    ]


def _json_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )
    return handler


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Events render as JSON everywhere except local development, where the
    console renderer is used.
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=build_processors(settings),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(settings.log_level)
    root_logger.handlers[:] = [_json_handler()]

    for name, level in DEPENDENCY_LOG_LEVELS.items():
        logging.getLogger(name).setLevel(level)

    structlog.get_logger(__name__).info(
        "logging_configured", log_level=settings.log_level, app_env=settings.app_env
    )
