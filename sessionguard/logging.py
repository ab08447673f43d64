from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# X-Request-ID of the identity-provider call in progress, if any
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Field names whose values are credentials or one-time codes; never logged
SECRET_FIELD_MARKERS = ("password", "secret", "token", "otp", "authorization", "csrf")
_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return request_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Start a new request scope; returns the id sent as X-Request-ID."""
    request_id = correlation_id or uuid.uuid4().hex
    request_id_var.set(request_id)
    return request_id


def redact_email(email: Optional[str]) -> str:
    """Keep the domain and the first two characters of the local part."""
    if not email or "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def _add_request_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    request_id = get_correlation_id()
    if request_id:
        event_dict.setdefault("request_id", request_id)
    return event_dict


def _scrub_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask secret-looking fields entirely and reduce emails to a hint.

    Partial reveals are not safe here: two leading and trailing characters of
    a six digit code would disclose most of it.
    """
    for key, value in list(event_dict.items()):
        if key == "event" or not isinstance(value, str):
            continue
        lowered = key.lower()
        if "email" in lowered:
            event_dict[key] = redact_email(value)
        elif any(marker in lowered for marker in SECRET_FIELD_MARKERS):
            event_dict[key] = "***"
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the processor chain.

    JSON lines by default; a colored console renderer when ``development_mode``
    is set or JSON output is switched off.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_request_id,
        _scrub_secrets,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
