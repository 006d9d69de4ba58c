"""Structured logging configuration."""

import logging
import re
import sys
from typing import Any

import structlog

_SENSITIVE_KEYS = ("api_key", "apikey", "authorization", "token", "password", "email")
_EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")


def _mask(value: Any) -> Any:
    if isinstance(value, str):
        return _EMAIL_RE.sub("[EMAIL_MASKED]", value)
    if isinstance(value, dict):
        return {k: "[MASKED]" if _is_sensitive(k) else _mask(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_mask(item) for item in value]
    return value


def _is_sensitive(key: Any) -> bool:
    lowered = str(key).lower().replace("-", "_")
    return any(marker in lowered for marker in _SENSITIVE_KEYS)


def mask_sensitive(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Redact credentials and e-mail addresses before rendering."""
    return {
        key: "[MASKED]" if _is_sensitive(key) else _mask(value)
        for key, value in event_dict.items()
    }


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structlog for production use."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            mask_sensitive,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


__all__ = ["configure_logging", "mask_sensitive"]
