"""Structured logging for the service and the client library.

Events are snake_case strings with keyword context. Every event passes
through :func:`_mask_sensitive` so credentials never reach the log sink.
"""

from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Mapping, Optional

import structlog

_request_id: ContextVar[Optional[str]] = ContextVar("novo_request_id", default=None)

# Substring match on the (lower-cased) field name
_SENSITIVE_FIELDS = (
    "password",
    "secret",
    "token",
    "authorization",
    "cookie",
    "session_id",
    "email",
    "code",
)
# Error codes are public identifiers, not OAuth codes
_PUBLIC_FIELDS = frozenset({"error_code", "status_code"})


def bind_request_id(request_id: Optional[str] = None) -> str:
    """Attach a request id to log events emitted in the current context."""
    value = request_id or uuid.uuid4().hex
    _request_id.set(value)
    return value


def mask_value(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _is_sensitive(field: str) -> bool:
    lowered = field.lower()
    if lowered in _PUBLIC_FIELDS:
        return False
    return any(marker in lowered for marker in _SENSITIVE_FIELDS)


def _masked(data: Mapping[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for field, value in data.items():
        if isinstance(value, Mapping):
            result[field] = _masked(value)
        elif isinstance(value, str) and _is_sensitive(field):
            result[field] = mask_value(value)
        else:
            result[field] = value
    return result


def _mask_sensitive(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    event = event_dict.pop("event", None)
    masked = _masked(event_dict)
    if event is not None:
        masked["event"] = event
    return masked


def _add_request_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    request_id = _request_id.get()
    if request_id and "request_id" not in event_dict:
        event_dict["request_id"] = request_id
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(level: str = "INFO", *, json_output: bool = True) -> None:
    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _add_request_id,
            _mask_sensitive,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true") and not _env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
