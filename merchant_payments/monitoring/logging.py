"""
Structured logging for the payment service.

structlog renders every event as JSON through a python-json-logger handler
on stdout. Two processors are specific to this service:

- `add_service_context` stamps the app and Daraja environment on each
  event, so sandbox and production traffic can be told apart in one index
- `redact_sensitive` masks payer phone numbers and drops credentials
  (API keys, the Daraja passkey and secret, access tokens) before
  rendering

Request ids and the calling merchant are bound through contextvars by the
API layer, so they appear on every event of a request.
"""
import logging
import re
import sys
from typing import Any, Dict

import structlog
from pythonjsonlogger import jsonlogger

from merchant_payments.config import get_settings

EventDict = Dict[str, Any]

PHONE_FIELDS = frozenset({"phone_number", "payer_phone", "phone", "PhoneNumber", "PartyA"})
SECRET_FIELDS = frozenset(
    {
        "api_key",
        "admin_key",
        "access_token",
        "token",
        "password",
        "passkey",
        "consumer_secret",
        "Password",
    }
)
REDACTED = "[redacted]"

_MSISDN = re.compile(r"\b(254\d)\d{5}(\d{3})\b")

# Chatty third-party loggers and the level they are held at
QUIET_LOGGERS = {"httpx": logging.WARNING, "httpcore": logging.WARNING}


def mask_phone(value: Any) -> Any:
    """`254712345678` -> `2547*****678`; anything else passes through."""
    if value is None:
        return None
    return _MSISDN.sub(lambda m: f"{m.group(1)}*****{m.group(2)}", str(value))


def redact_sensitive(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    for key in list(event_dict):
        if key in SECRET_FIELDS:
            event_dict[key] = REDACTED
        elif key in PHONE_FIELDS:
            event_dict[key] = mask_phone(event_dict[key])
    return event_dict


def add_service_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    settings = get_settings()
    event_dict.setdefault("service", settings.app_name)
    event_dict.setdefault("app_env", settings.app_env)
    event_dict.setdefault("mpesa_environment", settings.mpesa_environment)
    return event_dict


def build_processors() -> list:
    """The structlog pipeline, ending in the JSON renderer."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
        add_service_context,
        redact_sensitive,
        structlog.processors.JSONRenderer(),
    ]


def setup_logging() -> None:
    """Route structlog through stdlib logging with a JSON handler on stdout."""
    settings = get_settings()

    structlog.configure(
        processors=build_processors(),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)

    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        mpesa_environment=settings.mpesa_environment,
    )
