"""
Structured logging configuration.

structlog builds the event dict; the stdlib root logger's python-json-logger
handler writes it out, so structlog events and third-party records (uvicorn,
httpx, SQLAlchemy) share one JSON line format.
"""
import logging
import sys
from typing import Any, Callable, Optional

import structlog
from pythonjsonlogger import jsonlogger

from sandbox_gateway.config import Settings, get_settings

EventDict = dict[str, Any]


def service_context(settings: Settings, component: str) -> Callable[[Any, str, EventDict], EventDict]:
    """
    Build a processor stamping which deployment and process emitted the event.

    Args:
        settings: Application settings (name and environment are read once)
        component: ``api``, ``renewal-worker`` or ``webhook-retry-worker``
    """
    app_name = settings.app_name
    app_env = settings.app_env

    def processor(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("app_name", app_name)
        event_dict.setdefault("app_env", app_env)
        event_dict.setdefault("component", component)
        return event_dict

    return processor


def setup_logging(settings: Optional[Settings] = None, component: str = "api") -> None:
    """Configure structlog to hand its fields to a JSON-formatted root logger."""
    settings = settings or get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            service_context(settings, component),
            structlog.stdlib.render_to_log_kwargs,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    # The event name arrives as the record message
    handler.setFormatter(jsonlogger.JsonFormatter("%(message)s", rename_fields={"message": "event"}))
    root_logger.addHandler(handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured", log_level=settings.log_level, app_env=settings.app_env
    )
