"""
Structured Logging

Features:
- JSON or console rendering
- Log levels
- Redaction of encrypted payload references and contact data
"""

import logging
import sys

import structlog

from chaincare.config import get_settings


REDACTED = "[REDACTED]"

# Keys whose values point at encrypted blobs or personal contact data
_SENSITIVE_SUFFIXES = ("_ref", "_info")
_SENSITIVE_PREFIXES = ("encrypted_",)
_SENSITIVE_KEYS = {"contact_info", "emergency_contact", "attachments", "documents"}


def _is_sensitive(key: str) -> bool:
    if key in _SENSITIVE_KEYS:
        return True
    return key.endswith(_SENSITIVE_SUFFIXES) or key.startswith(_SENSITIVE_PREFIXES)


def redaction_processor(logger, method_name, event_dict):
    """Mask sensitive values before rendering."""
    for key in list(event_dict.keys()):
        if key in ("event", "level", "logger", "timestamp"):
            continue
        if _is_sensitive(key) and event_dict[key] is not None:
            event_dict[key] = REDACTED
    return event_dict


def configure_logging(level: str | None = None, json_output: bool | None = None) -> None:
    """
    Configure structlog for the ledger process.

    Args:
        level: Log level name; defaults to CHAINCARE_LOG_LEVEL
        json_output: Render JSON instead of console output; defaults to CHAINCARE_LOG_JSON
    """
    settings = get_settings().ledger
    level = (level or settings.log_level).upper()
    if json_output is None:
        json_output = settings.log_json

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    logging.getLogger().setLevel(level)

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            redaction_processor,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
