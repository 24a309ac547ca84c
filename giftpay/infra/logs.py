"""Structured logging setup and redaction of payment data.

Every event passes through :func:`redact_processor` before it is rendered,
so card data, tax ids and holder names never reach a log sink no matter
which module emitted them.
"""

from __future__ import annotations

import logging
import re
from typing import Any

import structlog

SENSITIVE_FIELDS = (
    "creditcard", "ccv", "cvv", "number", "password",
    "taxid", "cpfcnpj", "holdername", "expirymonth", "expiryyear",
)
REDACTED = "[REDACTED]"

# 13-19 digits, optionally split by single spaces or dashes
_CARD_RUN = re.compile(r"(?<!\d)(?:\d[ -]?){12,18}\d(?!\d)")

# keys structlog itself owns
_RESERVED = frozenset(("event", "level", "timestamp", "logger"))


def _is_sensitive(key: str) -> bool:
    lower = key.lower()
    return any(s in lower for s in SENSITIVE_FIELDS)


def _mask_card_runs(text: str) -> str:
    def _mask(m: re.Match) -> str:
        digits = re.sub(r"\D", "", m.group(0))
        return f"****{digits[-4:]}"
    return _CARD_RUN.sub(_mask, text)


def redact(obj: Any) -> Any:
    """Return a copy of ``obj`` safe for logs and the webhook audit trail."""
    if obj is None:
        return obj
    if isinstance(obj, str):
        return _mask_card_runs(obj)
    if isinstance(obj, (list, tuple)):
        return [redact(item) for item in obj]
    if isinstance(obj, dict):
        out = {}
        for key, value in obj.items():
            if isinstance(key, str) and _is_sensitive(key):
                out[key] = REDACTED
            else:
                out[key] = redact(value)
        return out
    return obj


def redact_processor(logger, method_name, event_dict):
    for key, value in list(event_dict.items()):
        if key in _RESERVED:
            continue
        if _is_sensitive(key):
            event_dict[key] = REDACTED
        else:
            event_dict[key] = redact(value)
    if isinstance(event_dict.get("event"), str):
        event_dict["event"] = _mask_card_runs(event_dict["event"])
    return event_dict


def configure_logging(level: str = "INFO", json_logs: bool = True) -> None:
    renderer = (
        structlog.processors.JSONRenderer() if json_logs
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redact_processor,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )
