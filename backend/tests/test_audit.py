"""
CallRoute - Audit Trail Tests

Tests the bounded audit log and the retrying writer.

Run with: pytest tests/test_audit.py -v
"""

import pytest

from app.core.audit import AuditWriter, InMemoryAlertSink, InMemoryAuditLog, NoOpAuditLog, create_audit_log
from app.core.types import EscalationEvent, Level, TriggerReason, TurnInput
from conftest import FlakyAuditLog


def make_event(session_id: str = "ses_a") -> EscalationEvent:
    return EscalationEvent(
        session_id=session_id,
        call_id="CA1",
        tenant_id="tnt_bistro",
        from_level=Level.L1,
        to_level=Level.L3,
        trigger_reason=TriggerReason.KEYWORD,
    )


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class TestInMemoryAuditLog:

    @pytest.mark.asyncio
    async def test_events_are_filtered_by_session(self):
        log = InMemoryAuditLog(max_events=10)
        await log.append_event(make_event("ses_a"))
        await log.append_event(make_event("ses_b"))

        events = await log.events_for("ses_a")

        assert len(events) == 1
        assert events[0].session_id == "ses_a"

    @pytest.mark.asyncio
    async def test_log_is_bounded(self):
        log = InMemoryAuditLog(max_events=3)
        for i in range(5):
            await log.append_event(make_event(f"ses_{i}"))

        assert await log.events_for("ses_0") == []
        assert len(await log.events_for("ses_4")) == 1

    def test_factory_respects_enable_flag(self, test_settings):
        disabled = test_settings.model_copy(update={"enable_audit": False})

        assert isinstance(create_audit_log(test_settings), InMemoryAuditLog)
        assert isinstance(create_audit_log(disabled), NoOpAuditLog)


class TestAuditWriter:

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        log = FlakyAuditLog(failures=2)
        alerts = InMemoryAlertSink()
        sleep = RecordingSleep()
        writer = AuditWriter(log, alerts, max_attempts=3, backoff_base_seconds=0.1, sleep=sleep)

        ok = await writer.write_event(make_event())

        assert ok is True
        assert log.attempts == 3
        assert sleep.delays == [pytest.approx(0.1), pytest.approx(0.2)]
        assert alerts.alerts == []

    @pytest.mark.asyncio
    async def test_alerts_after_exhaustion(self):
        log = FlakyAuditLog(failures=10)
        alerts = InMemoryAlertSink()
        writer = AuditWriter(log, alerts, max_attempts=3, backoff_base_seconds=0.0, sleep=RecordingSleep())

        ok = await writer.write_event(make_event())

        assert ok is False
        assert log.attempts == 3
        assert alerts.alerts[0]["kind"] == "audit_write_failed"
        assert alerts.alerts[0]["data"]["error"] == "ConnectionError"

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_fail_the_call(self, make_engine):
        alerts = InMemoryAlertSink()
        engine = make_engine(audit=AuditWriter(
            FlakyAuditLog(failures=10),
            alerts,
            backoff_base_seconds=0.0,
            sleep=RecordingSleep(),
        ))
        await engine.start()

        rendered = await engine.process_turn(TurnInput(speech_text="manager"))

        assert rendered.level == Level.L3
        assert len(engine.session.events) == 1
        assert alerts.alerts[0]["kind"] == "audit_write_failed"
