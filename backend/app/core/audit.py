"""
CallRoute - Escalation Audit Trail

Stores escalation events and closed session records for audit.

Notes:
    - Events are append-only; nothing here edits or deletes a stored event
    - In-memory store is bounded to prevent memory issues
    - AuditWriter retries failed writes with exponential backoff and raises
      an alert on exhaustion; it never fails the call
"""

from __future__ import annotations

import asyncio
import logging
from abc import abstractmethod
from threading import Lock
from typing import Any, Awaitable, Callable, Dict, List, Protocol, runtime_checkable

from app.config import Settings
from app.core.logging import get_logger
from app.core.types import EscalationEvent

logger = logging.getLogger(__name__)
events_logger = get_logger(__name__)


# =============================================================================
# Protocols
# =============================================================================

@runtime_checkable
class AuditLog(Protocol):
    """
    Protocol for the audit storage collaborator.

    Implementations must be safe for concurrent use and append-only.
    """

    @abstractmethod
    async def append_event(self, event: EscalationEvent) -> None:
        """Append an escalation event."""
        ...

    @abstractmethod
    async def record_session(self, record: Dict[str, Any]) -> None:
        """Store the final record of a closed call session."""
        ...

    @abstractmethod
    async def events_for(self, session_id: str) -> List[EscalationEvent]:
        """Events of one session, oldest first."""
        ...


@runtime_checkable
class AlertSink(Protocol):
    """Protocol for the alerting collaborator."""

    @abstractmethod
    async def alert(self, kind: str, message: str, data: Dict[str, Any]) -> None:
        ...


# =============================================================================
# In-Memory Implementation
# =============================================================================

class InMemoryAuditLog:
    """
    In-memory implementation of AuditLog.

    Bounded: once max_events is reached the oldest events are dropped from
    memory (a production store would have archived them already).
    """

    def __init__(self, max_events: int = 10000):
        self._max_events = max_events
        self._lock = Lock()
        self._events: List[EscalationEvent] = []
        self._sessions: List[Dict[str, Any]] = []

        logger.info("InMemoryAuditLog initialized: max_events=%d", max_events)

    async def append_event(self, event: EscalationEvent) -> None:
        with self._lock:
            self._events.append(event)

            if len(self._events) > self._max_events:
                excess = len(self._events) - self._max_events
                self._events = self._events[excess:]
                logger.debug("Trimmed %d old events from audit log", excess)

    async def record_session(self, record: Dict[str, Any]) -> None:
        with self._lock:
            self._sessions.append(dict(record))
            if len(self._sessions) > self._max_events:
                self._sessions = self._sessions[-self._max_events:]

    async def events_for(self, session_id: str) -> List[EscalationEvent]:
        with self._lock:
            return [e for e in self._events if e.session_id == session_id]

    async def session_records(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._sessions)


class NoOpAuditLog:
    """No-op implementation when auditing is disabled."""

    async def append_event(self, event: EscalationEvent) -> None:
        pass

    async def record_session(self, record: Dict[str, Any]) -> None:
        pass

    async def events_for(self, session_id: str) -> List[EscalationEvent]:
        return []


# =============================================================================
# Alerting
# =============================================================================

class LoggingAlertSink:
    """Alert sink that emits structured ERROR log lines."""

    async def alert(self, kind: str, message: str, data: Dict[str, Any]) -> None:
        events_logger.error(message, data={"kind": kind, **data}, event_type="alert")


class InMemoryAlertSink(LoggingAlertSink):
    """Logging alert sink that also keeps raised alerts for inspection."""

    def __init__(self):
        self.alerts: List[Dict[str, Any]] = []

    async def alert(self, kind: str, message: str, data: Dict[str, Any]) -> None:
        self.alerts.append({"kind": kind, "message": message, "data": dict(data)})
        await super().alert(kind, message, data)


# =============================================================================
# Retrying Writer
# =============================================================================

class AuditWriter:
    """
    Writes audit records with bounded retry.

    Up to max_attempts tries with exponential backoff (base, 2*base, ...).
    On exhaustion the failure goes to the alert sink and the write returns
    False; callers continue the call either way.
    """

    def __init__(
        self,
        audit_log: AuditLog,
        alerts: AlertSink,
        max_attempts: int = 3,
        backoff_base_seconds: float = 0.05,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._log = audit_log
        self._alerts = alerts
        self._max_attempts = max(1, max_attempts)
        self._backoff_base = backoff_base_seconds
        self._sleep = sleep

    @property
    def audit_log(self) -> AuditLog:
        return self._log

    async def write_event(self, event: EscalationEvent) -> bool:
        return await self._write_with_retry(
            "escalation_event",
            lambda: self._log.append_event(event),
            {"session_id": event.session_id, "to_level": event.to_level.value},
        )

    async def write_session(self, record: Dict[str, Any]) -> bool:
        return await self._write_with_retry(
            "call_session",
            lambda: self._log.record_session(record),
            {"session_id": record.get("session_id")},
        )

    async def _write_with_retry(
        self,
        record_type: str,
        write: Callable[[], Awaitable[None]],
        context: Dict[str, Any],
    ) -> bool:
        last_error = None

        for attempt in range(1, self._max_attempts + 1):
            try:
                await write()
                return True
            except Exception as e:
                last_error = e
                if attempt < self._max_attempts:
                    delay = self._backoff_base * (2 ** (attempt - 1))
                    events_logger.warning(
                        "Audit write failed, retrying",
                        data={"record": record_type, "attempt": attempt, "delay_s": delay, **context},
                        event_type="audit_retry",
                    )
                    await self._sleep(delay)

        await self._alerts.alert(
            "audit_write_failed",
            f"Audit write failed after {self._max_attempts} attempts",
            {
                "record": record_type,
                "error": type(last_error).__name__ if last_error else None,
                **context,
            },
        )
        return False


# =============================================================================
# Factory Function
# =============================================================================

def create_audit_log(settings: Settings) -> AuditLog:
    """
    Create an audit log based on settings.

    Currently only supports in-memory storage.
    """
    if not settings.enable_audit:
        logger.info("Audit disabled, using no-op audit log")
        return NoOpAuditLog()

    return InMemoryAuditLog(max_events=settings.audit_max_events)
