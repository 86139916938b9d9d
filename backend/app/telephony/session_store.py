"""
CallRoute - Call Session Store

In-memory registry of routing engines keyed by provider call id, with
automatic cleanup. Bounded to prevent memory exhaustion.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from datetime import timedelta
from typing import Dict, List, Optional

from app.core.engine import RoutingEngine
from app.core.exceptions import CallLimitError, CallNotFoundError
from app.core.logging import mask_call_id
from app.core.types import utcnow

logger = logging.getLogger(__name__)


def generate_session_id() -> str:
    """Opaque routing session identifier."""
    return f"ses_{secrets.token_hex(8)}"


class CallSessionStore:
    """
    In-memory store for call routing engines.

    Privacy:
        - Caller numbers are masked before they reach a session
        - Sessions are ephemeral (memory-only)

    Lifecycle:
        - Active sessions older than the TTL are closed as an implied
          disconnect (the provider never reported the hang-up)
        - Terminated sessions stay queryable for retention_minutes

    Usage:
        store = CallSessionStore(max_sessions=500)
        await store.start()

        engine = await store.register(engine)

        await store.stop()
    """

    def __init__(
        self,
        max_sessions: int = 500,
        session_ttl_minutes: int = 120,
        cleanup_interval_seconds: int = 60,
        retention_minutes: int = 5,
    ):
        self._engines: Dict[str, RoutingEngine] = {}
        self._lock = asyncio.Lock()
        self._max_sessions = max_sessions
        self._session_ttl = timedelta(minutes=session_ttl_minutes)
        self._retention = timedelta(minutes=retention_minutes)
        self._cleanup_interval = cleanup_interval_seconds
        self._cleanup_task: Optional[asyncio.Task] = None
        self._started = False

    async def start(self) -> None:
        """Start background cleanup task."""
        if self._started:
            return

        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        self._started = True

        logger.info(
            "CallSessionStore started: max=%d, ttl=%s, cleanup_interval=%ds",
            self._max_sessions,
            self._session_ttl,
            self._cleanup_interval,
        )

    async def stop(self) -> None:
        """Stop background tasks, cancel engine work and clear sessions."""
        if not self._started:
            return

        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass

        async with self._lock:
            engines = list(self._engines.values())
            self._engines.clear()

        for engine in engines:
            await engine.aclose()

        self._started = False
        logger.info("CallSessionStore stopped: cleared %d sessions", len(engines))

    async def register(self, engine: RoutingEngine) -> RoutingEngine:
        """
        Register the engine for a new call.

        Idempotent on call id: a duplicate inbound webhook gets the engine
        already registered and the new one is discarded.

        Raises:
            CallLimitError: If at capacity
        """
        call_id = engine.call_id
        async with self._lock:
            existing = self._engines.get(call_id)
            if existing is not None:
                logger.warning("Duplicate call_id received: %s", mask_call_id(call_id))
                return existing

            active_count = sum(
                1 for e in self._engines.values() if not e.session.is_terminated
            )
            if active_count >= self._max_sessions:
                raise CallLimitError(
                    f"Maximum concurrent calls ({self._max_sessions}) reached"
                )

            self._engines[call_id] = engine

        logger.info(
            "Call session created: call=%s, session=%s, tenant=%s, from=%s",
            mask_call_id(call_id),
            engine.session.session_id,
            engine.session.tenant_id,
            engine.session.caller_masked,
        )
        return engine

    async def get(self, call_id: str) -> Optional[RoutingEngine]:
        async with self._lock:
            return self._engines.get(call_id)

    async def get_or_raise(self, call_id: str) -> RoutingEngine:
        """Get a call's engine or raise if not found."""
        engine = await self.get(call_id)
        if engine is None:
            raise CallNotFoundError(f"Call not found: {mask_call_id(call_id)}")
        return engine

    async def active_engines(self) -> List[RoutingEngine]:
        async with self._lock:
            return [e for e in self._engines.values() if not e.session.is_terminated]

    async def get_active_count(self) -> int:
        engines = await self.active_engines()
        return len(engines)

    def __len__(self) -> int:
        return len(self._engines)

    async def cleanup(self) -> int:
        """
        One cleanup pass.

        Returns:
            Number of sessions evicted from memory
        """
        now = utcnow()
        expired: List[RoutingEngine] = []
        stale_ids: List[str] = []

        async with self._lock:
            for call_id, engine in self._engines.items():
                session = engine.session
                if session.ended_at is not None:
                    if now - session.ended_at > self._retention:
                        stale_ids.append(call_id)
                elif now - session.started_at > self._session_ttl:
                    expired.append(engine)

            for call_id in stale_ids:
                del self._engines[call_id]

        # Disconnect writes the session audit record; keep it outside the lock
        for engine in expired:
            logger.warning(
                "Session exceeded TTL without a disconnect: call=%s",
                mask_call_id(engine.call_id),
            )
            await engine.disconnect(status="ttl_expired")

        if stale_ids or expired:
            logger.info(
                "Session cleanup: evicted=%d, expired=%d",
                len(stale_ids),
                len(expired),
            )
        return len(stale_ids)

    async def _cleanup_loop(self) -> None:
        """Background task to evict stale sessions."""
        while True:
            try:
                await asyncio.sleep(self._cleanup_interval)
                await self.cleanup()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in cleanup loop: %s", str(e))
