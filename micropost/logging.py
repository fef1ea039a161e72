from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, set by the HTTP middleware from X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}

# Values under these key fragments never reach the log
_SECRET_KEY_PARTS = ("password", "secret", "authorization", "cookie")
# Bearer, refresh and reset tokens keep a short prefix so entries can be correlated
_TOKEN_KEY_PARTS = ("token", "jti")
_TOKEN_PREFIX_LENGTH = 6
# Exact keys that carry an account address
_EMAIL_KEYS = frozenset({"email", "to", "to_email", "from_email", "username"})
_MAX_DEPTH = 5


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def mask_email(address: str) -> str:
    """``annabel@example.com`` -> ``an***@example.com``."""
    if "@" not in address:
        return "[REDACTED]"
    local, domain = address.rsplit("@", 1)
    return f"{local[:2]}***@{domain}"


def _scrub(key: str, value: Any, depth: int = 0) -> Any:
    if depth > _MAX_DEPTH:
        return "[REDACTED]"
    if isinstance(value, dict):
        return {k: _scrub(str(k), v, depth + 1) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_scrub(key, item, depth + 1) for item in value]
    if not isinstance(value, str):
        return value
    lower_key = key.lower().replace("-", "_")
    if any(part in lower_key for part in _SECRET_KEY_PARTS):
        return "[REDACTED]"
    if any(part in lower_key for part in _TOKEN_KEY_PARTS):
        return value[:_TOKEN_PREFIX_LENGTH] + "***" if len(value) > _TOKEN_PREFIX_LENGTH else "***"
    if lower_key in _EMAIL_KEYS:
        return mask_email(value)
    return value


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask passwords, tokens and addresses anywhere in the event context.

    Nested ``detail`` dicts from service errors are walked too, since
    validation failures echo field names next to submitted values.
    """
    for key in list(event_dict.keys()):
        if key == "event":
            continue
        event_dict[key] = _scrub(key, event_dict[key])
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors and renderer.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
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


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
