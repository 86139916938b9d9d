"""
CallRoute - Call Session Store Tests

Tests for the in-memory session registry:
- Idempotent registration on call id
- Concurrent call limit
- TTL expiry and retention eviction

Run with: pytest tests/test_session_store.py -v
"""

from datetime import timedelta

import pytest

from app.core.exceptions import CallLimitError, CallNotFoundError
from app.core.types import ResolvedOutcome, SessionState, utcnow
from app.telephony.session_store import CallSessionStore, generate_session_id


def test_generate_session_id_is_opaque():
    first, second = generate_session_id(), generate_session_id()

    assert first.startswith("ses_")
    assert len(first) == len("ses_") + 16
    assert first != second


class TestRegistration:

    @pytest.mark.asyncio
    async def test_register_and_get(self, make_engine):
        store = CallSessionStore(max_sessions=5)
        engine = make_engine(call_id="CA1")

        registered = await store.register(engine)

        assert registered is engine
        assert await store.get("CA1") is engine
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_duplicate_call_id_returns_existing(self, make_engine):
        store = CallSessionStore(max_sessions=5)
        first = await store.register(make_engine(call_id="CA1"))

        second = await store.register(make_engine(call_id="CA1"))

        assert second is first
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_capacity_limit(self, make_engine):
        store = CallSessionStore(max_sessions=2)
        await store.register(make_engine(call_id="CA1"))
        await store.register(make_engine(call_id="CA2"))

        with pytest.raises(CallLimitError):
            await store.register(make_engine(call_id="CA3"))

    @pytest.mark.asyncio
    async def test_terminated_sessions_free_capacity(self, make_engine):
        store = CallSessionStore(max_sessions=1)
        first = await store.register(make_engine(call_id="CA1"))
        await first.disconnect("completed")

        await store.register(make_engine(call_id="CA2"))

        assert await store.get_active_count() == 1
        assert len(store) == 2

    @pytest.mark.asyncio
    async def test_get_or_raise_unknown(self):
        store = CallSessionStore()

        with pytest.raises(CallNotFoundError):
            await store.get_or_raise("CA-missing")


class TestCleanup:

    @pytest.mark.asyncio
    async def test_ttl_expiry_is_an_implied_disconnect(self, make_engine, audit_log):
        store = CallSessionStore(session_ttl_minutes=120)
        engine = await store.register(make_engine(call_id="CA1"))
        await engine.start()
        engine.session.started_at = utcnow() - timedelta(hours=3)

        evicted = await store.cleanup()

        assert evicted == 0
        assert engine.session.state == SessionState.TERMINATED
        assert engine.session.resolved_outcome == ResolvedOutcome.ABANDONED
        records = await audit_log.session_records()
        assert records[-1]["call_id"] == "CA1"

    @pytest.mark.asyncio
    async def test_terminated_sessions_queryable_until_retention(self, make_engine):
        store = CallSessionStore(retention_minutes=5)
        engine = await store.register(make_engine(call_id="CA1"))
        await engine.disconnect("completed")

        assert await store.cleanup() == 0
        assert await store.get("CA1") is engine

        engine.session.ended_at = utcnow() - timedelta(minutes=6)

        assert await store.cleanup() == 1
        assert await store.get("CA1") is None

    @pytest.mark.asyncio
    async def test_stop_clears_sessions(self, make_engine):
        store = CallSessionStore()
        await store.start()
        await store.register(make_engine(call_id="CA1"))

        await store.stop()

        assert len(store) == 0
