from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, set by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Event keys whose values may carry credential material
_SENSITIVE_KEY_PARTS = ("token", "credential", "authorization", "secret", "cookie")

_TRUTHY = {"1", "true", "yes", "on"}


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the caller's request id, or a new one, to the current context."""
    cid = correlation_id or uuid.uuid4().hex
    correlation_id_var.set(cid)
    return cid


def _bind_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    return event_dict


def _mask_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Replace credential-looking string values with a short masked hint.

    Session events log user and session ids; a bearer credential or refresh
    token must never reach the output even if a caller passes one by mistake.
    """
    for key, value in event_dict.items():
        if not isinstance(value, str):
            continue
        if any(part in key.lower() for part in _SENSITIVE_KEY_PARTS):
            event_dict[key] = value[:2] + "***" if len(value) > 8 else "***"
    return event_dict


def configure_logging(level: str = "INFO", *, console: bool = False) -> None:
    """Route structlog output as JSON lines, or as a coloured console view."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _bind_correlation_id,
        _mask_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if console:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    console=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY
    or os.getenv("LOG_JSON", "true").lower() not in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
