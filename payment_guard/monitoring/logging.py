"""
Structured logging configuration.

Uses structlog for JSON-formatted logs. Secrets and raw PII never reach
the output: known sensitive keys are scrubbed before rendering.
"""
import logging
import sys
from typing import Any, Callable, Optional

import structlog
from pythonjsonlogger import jsonlogger

from payment_guard.config import Settings, get_settings

SENSITIVE_KEYS = frozenset(
    {
        "card_number",
        "card_token",
        "national_id",
        "cpf",
        "email",
        "phone",
        "password",
        "secret",
        "webhook_secret",
        "encryption_key",
        "api_key",
        "signature",
    }
)

security_logger = structlog.get_logger("payment_guard.security")


def scrub_sensitive_data(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Redact sensitive fields from log events.

    Strings longer than 8 characters keep their last 4 characters so
    operators can still correlate; everything else is fully redacted.
    """
    for key in SENSITIVE_KEYS.intersection(event_dict):
        value = event_dict[key]
        if isinstance(value, str) and len(value) > 8:
            event_dict[key] = f"***{value[-4:]}"
        else:
            event_dict[key] = "***REDACTED***"
    return event_dict


def app_context_processor(settings: Settings) -> Callable[..., dict[str, Any]]:
    """
    Build a processor that adds application context to log events.

    Args:
        settings: Loaded settings

    Returns:
        Callable: structlog processor
    """

    def add_app_context(
        logger: Any, method_name: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        event_dict["app_name"] = settings.app_name
        event_dict["app_env"] = settings.app_env
        return event_dict

    return add_app_context


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structured logging with JSON formatter.

    Sets up:
    - JSON-formatted logs
    - Context variables (request / correlation ids)
    - Sensitive field scrubbing
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            scrub_sensitive_data,
            app_context_processor(settings),
            structlog.processors.JSONRenderer(),
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

    json_handler = logging.StreamHandler(sys.stdout)
    formatter = jsonlogger.JsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s",
        rename_fields={
            "timestamp": "@timestamp",
            "level": "level",
            "name": "logger",
            "message": "message",
        },
    )
    json_handler.setFormatter(formatter)
    root_logger.addHandler(json_handler)

    # Suppress noisy loggers
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("stripe").setLevel(logging.INFO)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)

    logger = structlog.get_logger(__name__)
    logger.info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
    )


def log_security_event(event: str, reason: str, **details: Any) -> None:
    """
    Record a security-relevant rejection.

    Security events always go out at WARNING so they survive any INFO
    filtering in production.
    """
    security_logger.warning(event, security_event=True, reason=reason, **details)


def get_logger(name: str) -> Any:
    """
    Get a structured logger instance.

    Args:
        name: Logger name

    Returns:
        Any: Structured logger
    """
    return structlog.get_logger(name)
