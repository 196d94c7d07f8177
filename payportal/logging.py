"""structlog setup for payportal.

Every entry carries the request's correlation id. Credentials never reach the
output, account numbers keep only their last four digits, and session ids and
tokens are replaced by a short digest so related entries can still be joined
without the log becoming a source of live session handles.
"""

from __future__ import annotations

import hashlib
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation ID, set by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

REDACTED = "[redacted]"

_DROPPED_KEYS = frozenset({"password", "jwt_secret", "secret", "authorization"})
_FINGERPRINTED_KEYS = frozenset({"session_id", "token", "access_token"})
_TAIL_MASKED_KEYS = frozenset(
    {"account_number", "customer_account_number", "recipient_account"}
)

_TRUE_VALUES = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set the correlation ID for the current request, generating one if absent."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def fingerprint(value: str) -> str:
    """Stable, non-reversible label for a secret handle."""
    return "fp:" + hashlib.sha256(value.encode("utf-8")).hexdigest()[:12]


def mask_account(value: str) -> str:
    return "****" + value[-4:] if len(value) > 4 else "****"


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _scrub_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        lowered = key.lower()
        if lowered in _DROPPED_KEYS:
            event_dict[key] = REDACTED
        elif not isinstance(value, str) or not value:
            continue
        elif lowered in _FINGERPRINTED_KEYS:
            event_dict[key] = fingerprint(value)
        elif lowered in _TAIL_MASKED_KEYS:
            event_dict[key] = mask_account(value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUE_VALUES


def configure_logging(
    level: Optional[str] = None,
    json_output: Optional[bool] = None,
    dev_mode: Optional[bool] = None,
) -> None:
    """Configure structlog; unset arguments come from LOG_LEVEL, LOG_JSON and LOG_DEV_MODE."""
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", "true")
    if dev_mode is None:
        dev_mode = _env_flag("LOG_DEV_MODE", "false")

    processors = [
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _scrub_sensitive,
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.typing.FilteringBoundLogger:
    return structlog.get_logger(name)
