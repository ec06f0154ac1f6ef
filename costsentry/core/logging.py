import sys
import logging
from typing import Optional

import structlog

from costsentry.core.config import Settings, get_settings

# Keys that may carry provider credentials. Values are never rendered.
SECRET_FIELDS = {
    "password", "token", "secret", "api_key", "apikey", "api_token",
    "access_token", "client_secret", "secret_access_key", "aws_secret_access_key",
    "session_token", "private_key", "privatekey", "service_account_key",
    "credentials",
}


def secret_redactor(logger, method_name, event_dict):
    """
    Redact credential material from log events.
    Provider credentials are opaque to the engine and must never reach telemetry.
    """
    for field in list(event_dict):
        if field.lower() in SECRET_FIELDS:
            event_dict[field] = "[REDACTED]"

    # Redact nested fields in common containers
    for container in ["metadata", "payload", "details", "extra"]:
        nested = event_dict.get(container)
        if isinstance(nested, dict):
            event_dict[container] = {
                k: ("[REDACTED]" if k.lower() in SECRET_FIELDS else v)
                for k, v in nested.items()
            }

    return event_dict


def setup_logging(settings: Optional[Settings] = None):
    settings = settings or get_settings()

    if settings.DEBUG:
        renderer = structlog.dev.ConsoleRenderer()
        min_level = logging.DEBUG
    else:
        renderer = structlog.processors.JSONRenderer()
        min_level = logging.INFO

    processors = [
        structlog.contextvars.merge_contextvars,  # account_id / provider bound per sync
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        secret_redactor,
        renderer,
    ]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Route library logs (httpx, botocore, apscheduler) through stdout as well.
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=min_level,
    )
