from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, MutableMapping, Optional

import structlog

# Set per request by the HTTP middleware; attached to every log line.
_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_correlation_id() -> Optional[str]:
    return _request_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context."""
    value = correlation_id or str(uuid.uuid4())
    _request_id.set(value)
    return value


_SECRET_FIELDS = ("password", "secret", "token", "api_key", "authorization", "email", "encryption_key")
_DSN_FIELDS = ("database_url", "connection_string", "postgres_uri", "dsn")

_URL_USERINFO = re.compile(r"(?i)\b(postgres(?:ql)?|redis|https?)://[^\s/@]+@")

_ERROR_SCRUBBERS = [
    re.compile(r"(?i)(password|secret|token|api.?key|encryption.?key)\s*[:=]\s*[^\s,]+"),
    re.compile(r"(?i)traceback\s*\(most recent call last\)"),
    re.compile(r"(?i)/(?:home|var|etc|usr|opt|tmp)/[^\s]+"),
]

MAX_ERROR_LENGTH = 500


def mask_dsn(value: str) -> str:
    """Replace the userinfo part of any URL in ``value`` with ``***``."""
    return _URL_USERINFO.sub(lambda m: f"{m.group(1)}://***@", value)


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip credentials, connection strings and paths from an error message.

    The result is safe to place in the ``details`` field of an error
    envelope or in a persisted ``setup_error`` column. Long messages are
    truncated.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"
    cleaned = mask_dsn(error)
    for scrubber in _ERROR_SCRUBBERS:
        cleaned = scrubber.sub(replacement, cleaned)
    if len(cleaned) > MAX_ERROR_LENGTH:
        cleaned = cleaned[: MAX_ERROR_LENGTH - 3] + "..."
    return cleaned


def _with_request_id(_: Any, __: str, event: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    request_id = get_correlation_id()
    if request_id:
        event.setdefault("correlation_id", request_id)
    return event


def _scrub_fields(_: Any, __: str, event: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    for field, value in event.items():
        if not isinstance(value, str):
            continue
        name = field.lower()
        if any(marker in name for marker in _DSN_FIELDS):
            event[field] = mask_dsn(value)
        elif any(marker in name for marker in _SECRET_FIELDS) and len(value) > 4:
            event[field] = f"{value[:2]}***{value[-2:]}"
    return event


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: Optional[str] = None,
    *,
    json_output: Optional[bool] = None,
    pretty: Optional[bool] = None,
) -> None:
    """Configure structlog from arguments, falling back to the environment.

    ``LOG_LEVEL`` picks the threshold, ``LOG_JSON`` selects JSON lines and
    ``LOG_DEV_MODE`` switches to the coloured console renderer.
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", "true")
    if pretty is None:
        pretty = _env_flag("LOG_DEV_MODE", "false")

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _with_request_id,
        _scrub_fields,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if pretty or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=pretty))
    else:
        processors.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level, logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
