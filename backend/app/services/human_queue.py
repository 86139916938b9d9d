"""
CallRoute - Human Queue Service

Collaborator that receives L3 handoffs: the queue entry staff see, with the
handoff summary attached.
"""

from __future__ import annotations

import asyncio
import logging
from abc import abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Protocol, runtime_checkable

from app.core.types import HandoffSummary, utcnow

logger = logging.getLogger(__name__)


@dataclass
class QueueEntry:
    call_id: str
    tenant_id: str
    queue_name: str
    summary: Optional[HandoffSummary] = None
    enqueued_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "call_id": self.call_id,
            "tenant_id": self.tenant_id,
            "queue_name": self.queue_name,
            "enqueued_at": self.enqueued_at.isoformat(),
            "summary": self.summary.to_dict() if self.summary else None,
        }


@runtime_checkable
class HumanQueue(Protocol):
    """Protocol for the human handoff queue."""

    @abstractmethod
    async def enqueue(
        self,
        call_id: str,
        tenant_id: str,
        queue_name: str,
        summary: Optional[HandoffSummary],
    ) -> QueueEntry:
        """Add (or update) the queue entry for a call."""
        ...

    @abstractmethod
    async def get(self, call_id: str) -> Optional[QueueEntry]:
        ...

    @abstractmethod
    async def entries(self, queue_name: str) -> List[QueueEntry]:
        ...

    @abstractmethod
    async def remove(self, call_id: str) -> None:
        """Drop a call's entry (caller hung up)."""
        ...


class InMemoryHumanQueue:
    """
    In-memory human queue.

    Idempotent per call: enqueueing a call twice keeps its position and
    replaces the summary when a newer one is supplied.
    """

    def __init__(self):
        self._lock = asyncio.Lock()
        self._entries: Dict[str, QueueEntry] = {}

    async def enqueue(
        self,
        call_id: str,
        tenant_id: str,
        queue_name: str,
        summary: Optional[HandoffSummary],
    ) -> QueueEntry:
        async with self._lock:
            entry = self._entries.get(call_id)
            if entry is None:
                entry = QueueEntry(
                    call_id=call_id,
                    tenant_id=tenant_id,
                    queue_name=queue_name,
                    summary=summary,
                )
                self._entries[call_id] = entry
                logger.info(
                    "Call enqueued for human handoff: queue=%s, tenant=%s, waiting=%d",
                    queue_name,
                    tenant_id,
                    len(self._entries),
                )
            elif summary is not None:
                entry.summary = summary
            return entry

    async def get(self, call_id: str) -> Optional[QueueEntry]:
        async with self._lock:
            return self._entries.get(call_id)

    async def entries(self, queue_name: str) -> List[QueueEntry]:
        async with self._lock:
            matching = [e for e in self._entries.values() if e.queue_name == queue_name]
        return sorted(matching, key=lambda e: e.enqueued_at)

    async def remove(self, call_id: str) -> None:
        async with self._lock:
            self._entries.pop(call_id, None)
