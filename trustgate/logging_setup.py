"""
Structured logging configuration.

structlog over the stdlib logging backend. Challenge responses (OTP, TOTP,
biometric payloads) flow through the engine, so a redaction processor
strips them from every event before rendering.
"""

import logging
import sys

import structlog

from trustgate.config import settings

SENSITIVE_KEYS = {
    "password", "secret", "token", "otp", "totp", "code",
    "response", "push_token", "smtp_password", "api_key",
}

REDACTED = "[REDACTED]"


def redact_sensitive(logger, method_name, event_dict):
    """Replace values of sensitive keys with a placeholder."""
    for key in list(event_dict.keys()):
        if key.lower() in SENSITIVE_KEYS:
            event_dict[key] = REDACTED
    return event_dict


def configure_logging(level: str | None = None, json_logs: bool | None = None) -> None:
    """Configure structlog + stdlib logging once at process start."""
    level_name = (level or settings.log_level).upper()
    use_json = settings.log_json if json_logs is None else json_logs

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level_name, logging.INFO),
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            redact_sensitive,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if use_json
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
