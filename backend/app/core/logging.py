"""
CallRoute - Structured Logging

Log records carry the call they belong to (tenant, call, routing session)
from context variables set around each engine operation. Caller numbers and
webhook secrets never reach the output: keyed fields are masked and any
E.164 number inside a message is redacted.
"""

from __future__ import annotations

import json
import logging
import re
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# =============================================================================
# Context Variables
# =============================================================================

tenant_id_var: ContextVar[Optional[str]] = ContextVar('tenant_id', default=None)
call_id_var: ContextVar[Optional[str]] = ContextVar('call_id', default=None)
session_id_var: ContextVar[Optional[str]] = ContextVar('session_id', default=None)

_CONTEXT_VARS = (
    ("tenant_id", tenant_id_var),
    ("call_id", call_id_var),
    ("session_id", session_id_var),
)


# =============================================================================
# Masking Utilities
# =============================================================================

_E164_IN_TEXT = re.compile(r"\+\d{7,15}\b")

_SENSITIVE_KEYS = frozenset({
    'phone', 'number', 'caller', 'callee', 'from', 'to',
    'dial_number', 'token', 'auth_token', 'secret', 'signature',
})


def mask_call_id(cid: Optional[str]) -> Optional[str]:
    """Mask call ID to last 4 characters."""
    if not cid:
        return None
    return f"***{cid[-4:]}" if len(cid) > 4 else "***"


def redact_numbers(text: str) -> str:
    """Replace E.164 numbers in free text with their masked form."""
    return _E164_IN_TEXT.sub(lambda m: f"***{m.group(0)[-2:]}", text)


def mask_sensitive_data(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Mask phone numbers and secrets in structured log data.

    A key is sensitive when it is, or ends with, one of the known names
    (to_number, from_number, webhook_secret, ...). Values already masked
    upstream ("***34") pass through unchanged.
    """
    masked: Dict[str, Any] = {}
    for key, value in data.items():
        key_lower = key.lower()
        sensitive = key_lower in _SENSITIVE_KEYS or any(
            key_lower.endswith(f"_{s}") for s in _SENSITIVE_KEYS
        )

        if sensitive:
            if isinstance(value, str):
                masked[key] = value if value.startswith("***") else f"***{value[-2:]}"
            else:
                masked[key] = "[REDACTED]"
        elif isinstance(value, dict):
            masked[key] = mask_sensitive_data(value)
        elif isinstance(value, str):
            masked[key] = redact_numbers(value)
        else:
            masked[key] = value

    return masked


# =============================================================================
# Filter and Formatters
# =============================================================================

class CallContextFilter(logging.Filter):
    """Copy the current call context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, var in _CONTEXT_VARS:
            if not hasattr(record, name):
                setattr(record, name, var.get())
        return True


def _record_context(record: logging.LogRecord) -> Dict[str, str]:
    context = {}
    for name, _ in _CONTEXT_VARS:
        value = getattr(record, name, None)
        if value:
            context[name] = mask_call_id(value) if name == "call_id" else value
    event_type = getattr(record, 'event_type', None)
    if event_type:
        context["event_type"] = event_type
    return context


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per line, for log shipping.

    {"timestamp": "...Z", "level": "INFO", "logger": "app.core.engine",
     "tenant_id": "tnt_bistro", "call_id": "***0001", "session_id": "ses_...",
     "event_type": "escalation", "message": "...", "data": {...}}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "logger": record.name,
        }
        entry.update(_record_context(record))
        entry["message"] = redact_numbers(record.getMessage())

        data = getattr(record, 'data', None)
        if data:
            entry["data"] = mask_sensitive_data(data)

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Single-line development format with the call context in brackets."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

        context = _record_context(record)
        context_str = ""
        if context:
            context_str = " [" + ", ".join(f"{k}={v}" for k, v in context.items()) + "]"

        line = (
            f"{timestamp} | {record.levelname:<8} | {record.name}{context_str} | "
            f"{redact_numbers(record.getMessage())}"
        )

        data = getattr(record, 'data', None)
        if data:
            line += f" | {json.dumps(mask_sensitive_data(data), default=str)}"

        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)

        return line


# =============================================================================
# Logger Setup
# =============================================================================

def setup_structured_logging(
    level: str = "INFO",
    json_format: bool = False,
) -> None:
    """
    Configure root logging for the service.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: JSON lines (production) or human-readable (development)
    """
    log_level = getattr(logging, level.upper())

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.addFilter(CallContextFilter())
    handler.setFormatter(StructuredFormatter() if json_format else HumanReadableFormatter())
    root_logger.addHandler(handler)

    # Webhook access lines include caller query strings on some providers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# =============================================================================
# Context Manager
# =============================================================================

class LogContext:
    """
    Bind call context for every log line emitted inside the block.

    Usage:
        with LogContext(tenant_id="tnt_bistro", call_id="CA123"):
            logger.info("Processing turn")

    Unset (None) values leave any outer binding in place.
    """

    def __init__(
        self,
        tenant_id: Optional[str] = None,
        call_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ):
        self._values = [
            (tenant_id_var, tenant_id),
            (call_id_var, call_id),
            (session_id_var, session_id),
        ]
        self._tokens = []

    def __enter__(self):
        for var, value in self._values:
            if value:
                self._tokens.append((var, var.set(value)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()
        return False


# =============================================================================
# Event Logger
# =============================================================================

class StructuredLogger:
    """
    Logger for routing events: a message plus an event type and a data dict.

    Usage:
        events_logger = get_logger(__name__)
        events_logger.info("Escalated", event_type="escalation", data={"to_level": "L3"})
    """

    def __init__(self, name: str):
        self._logger = logging.getLogger(name)

    def log(
        self,
        level: int,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        event_type: Optional[str] = None,
        exc_info: bool = False,
    ) -> None:
        if not self._logger.isEnabledFor(level):
            return
        extra: Dict[str, Any] = {}
        if data:
            extra['data'] = data
        if event_type:
            extra['event_type'] = event_type
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def info(self, message: str, data: Optional[Dict[str, Any]] = None, event_type: Optional[str] = None) -> None:
        self.log(logging.INFO, message, data, event_type)

    def warning(self, message: str, data: Optional[Dict[str, Any]] = None, event_type: Optional[str] = None) -> None:
        self.log(logging.WARNING, message, data, event_type)

    def error(self, message: str, data: Optional[Dict[str, Any]] = None, event_type: Optional[str] = None) -> None:
        self.log(logging.ERROR, message, data, event_type)


def get_logger(name: str) -> StructuredLogger:
    """Get a routing event logger."""
    return StructuredLogger(name)
