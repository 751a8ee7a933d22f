"""
Structured logging configuration.

structlog renders JSON events; request and correlation ids bound with
``structlog.contextvars`` are merged into every event of a request.
Payer phone numbers and provider credentials are masked before rendering.
"""
import logging
import sys
from typing import Any, MutableMapping

import structlog
from pythonjsonlogger import jsonlogger

from ticket_payments.config import get_settings

SECRET_KEYS = frozenset(
    {
        "access_token",
        "authorization",
        "client_secret",
        "consumer_secret",
        "passkey",
        "password",
        "smtp_password",
    }
)
PHONE_KEYS = frozenset({"phone", "phone_number", "payer"})


def mask_phone(value: Any) -> Any:
    """``254712345678`` -> ``2547****5678``; short values are left alone."""
    text = str(value)
    if len(text) < 8:
        return value
    return f"{text[:4]}{'*' * (len(text) - 8)}{text[-4:]}"


def mask_sensitive(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Mask credentials outright and keep only the ends of phone numbers."""
    for key in list(event_dict):
        if key in SECRET_KEYS and event_dict[key]:
            event_dict[key] = "***"
        elif key in PHONE_KEYS and event_dict[key]:
            event_dict[key] = mask_phone(event_dict[key])
    return event_dict


def add_app_context(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Tag every event with the service name, environment and Daraja environment."""
    settings = get_settings()
    event_dict["app_name"] = settings.app_name
    event_dict["app_env"] = settings.app_env
    event_dict.setdefault("mpesa_env", settings.mpesa_env)
    return event_dict


def setup_logging() -> None:
    """Configure structlog and the stdlib root logger for JSON output."""
    settings = get_settings()

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
            mask_sensitive,
            add_app_context,
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

    # structlog hands over an already rendered JSON message; stdlib records
    # from uvicorn and the SDKs are formatted here
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger.addHandler(handler)

    # Provider SDK and HTTP client chatter
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("stripe").setLevel(logging.INFO)
    if not settings.database_echo:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
        mpesa_env=settings.mpesa_env,
    )
