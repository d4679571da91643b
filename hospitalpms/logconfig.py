"""
Structured logging configuration with national ID redaction.

Modules obtain loggers with ``structlog.get_logger(__name__)``.  Call
``configure_logging()`` once at process start; it is safe to call again
(for example from tests) and simply re-applies the configuration.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Optional

import structlog

from hospitalpms.config import AppSettings, get_app_settings


# Keys whose values are always replaced, matched as substrings.
PII_FIELDS = {
    "ssn",
    "plaintext",
    "national_id",
    "resident_number",
    "phone",
    "email",
    "password",
    "secret",
    "token",
}

# Keys that merely contain a PII word but hold safe derived values.
SAFE_FIELDS = {"ssn_hash", "masked_ssn", "token_count"}

PII_PATTERNS = [
    (re.compile(r"\b\d{6}-?\d{7}\b"), "[RRN_REDACTED]"),
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[EMAIL_REDACTED]"),
    (re.compile(r"\b01[016789]-?\d{3,4}-?\d{4}\b"), "[PHONE_REDACTED]"),
]


def redact_value(value: Any, field_name: str = "") -> Any:
    """Redact PII from a value based on its key name or content."""
    field_lower = field_name.lower()
    if field_lower not in SAFE_FIELDS:
        for pii_field in PII_FIELDS:
            if pii_field in field_lower:
                return "[REDACTED]"

    if isinstance(value, str):
        result = value
        for pattern, replacement in PII_PATTERNS:
            result = pattern.sub(replacement, result)
        return result
    if isinstance(value, dict):
        return {k: redact_value(v, str(k)) for k, v in value.items()}
    return value


def pii_redactor(logger, method_name: str, event_dict: dict) -> dict:
    """Structlog processor that redacts PII from log events."""
    for key in list(event_dict.keys()):
        if key in ("timestamp", "level", "service", "environment"):
            continue
        if key == "event":
            event_dict[key] = redact_value(event_dict[key])
            continue
        event_dict[key] = redact_value(event_dict[key], key)
    return event_dict


def _service_info(environment: str):
    def add_service_info(logger, method_name: str, event_dict: dict) -> dict:
        event_dict["service"] = "hospital-pms"
        event_dict["environment"] = environment
        return event_dict

    return add_service_info


def configure_logging(settings: Optional[AppSettings] = None) -> None:
    """Configure structlog processors and level filtering."""
    settings = settings or get_app_settings()

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.log_json
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            _service_info(settings.environment),
            pii_redactor,
            structlog.processors.EventRenamer("message"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )
