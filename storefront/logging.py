"""structlog setup for the storefront service.

Log lines are JSON by default (``LOG_FORMAT=console`` for local work) and
carry the request's correlation id. Credential material never reaches the
renderer: secret values become ``***`` and contact details are masked.
"""
from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation ID, set by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Replaced outright
_SECRET_KEYS = frozenset(
    {
        "password",
        "new_password",
        "password_hash",
        "token",
        "raw_token",
        "access_token",
        "refresh_token",
        "jwt",
        "authorization",
        "cookie",
    }
)
# Identify a person; keep enough to correlate
_CONTACT_KEYS = frozenset({"email", "identifier", "recipient"})


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh UUID) to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def mask_contact(value: str) -> str:
    """``alice@x.com`` -> ``al***@x.com``; bare identifiers keep two chars."""
    local, sep, domain = value.partition("@")
    if not sep:
        return f"{value[:2]}***" if len(value) > 2 else "***"
    return f"{local[:2]}***@{domain}"


def _scrub(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    for key, value in event_dict.items():
        if key == "event" or not isinstance(value, str):
            continue
        lowered = key.lower()
        if lowered in _SECRET_KEYS or lowered.endswith("_secret"):
            event_dict[key] = "***"
        elif lowered in _CONTACT_KEYS:
            event_dict[key] = mask_contact(value)
    return event_dict


def configure_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    console = (fmt or os.getenv("LOG_FORMAT", "json")).lower() == "console"
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _scrub,
    ]
    if console:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
