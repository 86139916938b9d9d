"""
CallRoute - Routing Engine Tests

Tests the per-call escalation state machine with test collaborators.
These tests verify:
- Level transitions and their trigger reasons
- Attempt counting and reset on transitions
- Classification timeouts and failures
- Capability degradation
- Disconnect and cancellation
- Handoff on L3

Run with: pytest tests/test_routing_engine.py -v
"""

import asyncio
import logging

import pytest

from app.core.exceptions import CallTerminatedError, HandoffNotReadyError
from app.core.types import (
    Level,
    ResolvedOutcome,
    SessionState,
    TriggerReason,
    TurnInput,
)
from conftest import BrokenHandoffBuilder, FailingClassifier, FixedClassifier, SlowClassifier


def speech(text: str, confidence=None) -> TurnInput:
    return TurnInput(speech_text=text, confidence=confidence)


class TestStart:

    @pytest.mark.asyncio
    async def test_start_serves_l1_gather(self, engine):
        rendered = await engine.start()

        assert rendered.level == Level.L1
        assert rendered.media_type == "application/xml"
        assert "<Gather" in rendered.content
        assert "Say reservation, order, hours, or menu." in rendered.content
        assert engine.session.state == SessionState.L1
        assert engine.session.attempt_count == 0

    @pytest.mark.asyncio
    async def test_start_records_agent_prompt(self, engine):
        await engine.start()

        assert engine.session.transcript[0].speaker == "agent"
        assert engine.session.transcript[0].level == Level.L1


class TestL1Transitions:

    @pytest.mark.asyncio
    async def test_confident_intent_moves_to_l2(self, engine):
        await engine.start()
        rendered = await engine.process_turn(speech("reservation"))

        assert rendered.level == Level.L2
        assert "<Stream" in rendered.content
        assert "session=ses_0123456789abcdef" in rendered.content
        assert engine.session.level == Level.L2
        assert engine.session.last_intent == "reservation"

        event = engine.session.events[-1]
        assert event.from_level == Level.L1
        assert event.to_level == Level.L2
        assert event.trigger_reason == TriggerReason.INTENT_CONFIDENT
        assert event.confidence == pytest.approx(0.95)

    @pytest.mark.asyncio
    async def test_low_confidence_replays_prompt(self, engine):
        await engine.start()
        rendered = await engine.process_turn(speech("um I was wondering"))

        assert rendered.level == Level.L1
        assert "<Gather" in rendered.content
        assert engine.session.attempt_count == 1
        assert engine.session.events == []

    @pytest.mark.asyncio
    async def test_three_failed_turns_escalate_with_max_attempts(self, engine):
        await engine.start()

        first = await engine.process_turn(speech("um"))
        second = await engine.process_turn(speech("what"))
        third = await engine.process_turn(speech("hello?"))

        assert first.level == Level.L1
        assert second.level == Level.L1
        assert third.level == Level.L3
        assert "<Enqueue" in third.content
        assert engine.session.level == Level.L3
        assert engine.session.events[-1].trigger_reason == TriggerReason.MAX_ATTEMPTS

    @pytest.mark.asyncio
    async def test_empty_turn_counts_as_attempt(self, make_engine):
        classifier = FixedClassifier(confidence=0.99)
        engine = make_engine(classifier=classifier)
        await engine.start()

        rendered = await engine.process_turn(TurnInput())

        assert rendered.level == Level.L1
        assert engine.session.attempt_count == 1
        assert classifier.calls == 0

    @pytest.mark.asyncio
    async def test_attempt_count_resets_on_transition(self, engine):
        await engine.start()
        await engine.process_turn(speech("um"))
        await engine.process_turn(speech("sorry"))
        assert engine.session.attempt_count == 2

        await engine.process_turn(speech("order"))

        assert engine.session.level == Level.L2
        assert engine.session.attempt_count == 0

    @pytest.mark.asyncio
    async def test_classifier_failure_counts_as_unrecognized(self, make_engine):
        engine = make_engine(classifier=FailingClassifier())
        await engine.start()

        rendered = await engine.process_turn(speech("reservation"))

        assert rendered.level == Level.L1
        assert engine.session.attempt_count == 1

    @pytest.mark.asyncio
    async def test_reported_confidence_is_ignored_at_l1(self, make_engine):
        classifier = FixedClassifier(confidence=0.2)
        engine = make_engine(classifier=classifier)
        await engine.start()

        rendered = await engine.process_turn(speech("something else entirely", confidence=0.9))

        assert classifier.calls == 1
        assert rendered.level == Level.L1
        assert engine.session.attempt_count == 1
        assert engine.session.events == []


class TestDtmf:

    @pytest.mark.asyncio
    async def test_mapped_digit_is_confident(self, make_engine):
        classifier = FixedClassifier(confidence=0.0)
        engine = make_engine(classifier=classifier)
        await engine.start()

        rendered = await engine.process_turn(TurnInput(dtmf="2"))

        assert rendered.level == Level.L2
        assert engine.session.last_intent == "order"
        assert classifier.calls == 0

    @pytest.mark.asyncio
    async def test_zero_reaches_a_human(self, engine):
        await engine.start()

        rendered = await engine.process_turn(TurnInput(dtmf="0"))

        assert rendered.level == Level.L3
        assert engine.session.events[-1].trigger_reason == TriggerReason.KEYWORD

    @pytest.mark.asyncio
    async def test_unmapped_digit_replays(self, engine):
        await engine.start()

        rendered = await engine.process_turn(TurnInput(dtmf="9"))

        assert rendered.level == Level.L1
        assert engine.session.attempt_count == 1


class TestL2Transitions:

    @pytest.mark.asyncio
    async def test_confident_conversation_stays_in_l2(self, engine):
        await engine.start()
        await engine.process_turn(speech("reservation"))

        rendered = await engine.process_turn(speech("for tomorrow evening please"))

        assert rendered.level == Level.L2
        assert len(engine.session.events) == 1

    @pytest.mark.asyncio
    async def test_orchestrator_low_confidence_escalates(self, engine):
        await engine.start()
        await engine.process_turn(speech("reservation"))

        rendered = await engine.process_turn(speech("it's complicated", confidence=0.3))

        assert rendered.level == Level.L3
        event = engine.session.events[-1]
        assert event.trigger_reason == TriggerReason.LOW_CONFIDENCE
        assert event.confidence == pytest.approx(0.3)

    @pytest.mark.asyncio
    async def test_keyword_in_l2_wins_over_low_confidence(self, make_engine):
        classifier = FixedClassifier(confidence=0.95, intent="reservation")
        engine = make_engine(classifier=classifier)
        await engine.start()
        await engine.process_turn(speech("book a table"))
        assert engine.session.level == Level.L2

        classifier.confidence = 0.1
        rendered = await engine.process_turn(speech("let me talk to a manager"))

        assert rendered.level == Level.L3
        assert engine.session.events[-1].trigger_reason == TriggerReason.KEYWORD
        assert engine.session.events[-1].detail == "manager"

    @pytest.mark.asyncio
    async def test_classification_timeout_escalates_low_confidence(self, make_engine):
        slow = SlowClassifier()
        engine = make_engine(classifier=slow, timeout=0.05)
        await engine.start()
        # DTMF skips the classifier, so the slow one only matters at L2
        await engine.process_turn(TurnInput(dtmf="1"))
        assert engine.session.level == Level.L2

        rendered = await engine.process_turn(speech("can you tell me more"))

        assert rendered.level == Level.L3
        event = engine.session.events[-1]
        assert event.trigger_reason == TriggerReason.LOW_CONFIDENCE
        assert event.detail == "classification timeout"
        assert event.confidence is None


class TestSafetyTriggers:

    @pytest.mark.asyncio
    async def test_policy_forces_human_regardless_of_confidence(self, make_engine):
        engine = make_engine(classifier=FixedClassifier(confidence=0.99, intent="menu"))
        await engine.start()

        rendered = await engine.process_turn(speech("does the risotto have gluten"))

        assert rendered.level == Level.L3
        event = engine.session.events[-1]
        assert event.trigger_reason == TriggerReason.POLICY_REQUIRED
        assert event.detail == "allergy_uncertainty"

    @pytest.mark.asyncio
    async def test_keyword_beats_max_attempts_on_same_turn(self, engine):
        await engine.start()
        await engine.process_turn(speech("um"))
        await engine.process_turn(speech("uh"))

        await engine.process_turn(speech("get me a human"))

        assert engine.session.events[-1].trigger_reason == TriggerReason.KEYWORD

    @pytest.mark.asyncio
    async def test_policy_beats_keyword(self, engine):
        await engine.start()

        await engine.process_turn(speech("manager, my son has a peanut allergy"))

        assert engine.session.events[-1].trigger_reason == TriggerReason.POLICY_REQUIRED


class TestLevelInvariants:

    @pytest.mark.asyncio
    async def test_levels_never_decrease(self, make_engine):
        classifier = FixedClassifier(confidence=0.9)
        engine = make_engine(classifier=classifier)
        await engine.start()

        levels = [engine.session.level.rank]
        for confidence in (0.1, 0.9, 0.9, 0.2, 0.99, 0.0, 0.95):
            classifier.confidence = confidence
            await engine.process_turn(speech("something"))
            levels.append(engine.session.level.rank)

        assert levels == sorted(levels)
        for event in engine.session.events:
            assert event.to_level.rank > event.from_level.rank

    @pytest.mark.asyncio
    async def test_l3_reemits_document_without_rules(self, make_engine):
        classifier = FixedClassifier(confidence=0.1)
        engine = make_engine(classifier=classifier)
        await engine.start()
        await engine.process_turn(speech("agent please"))
        calls_at_l3 = classifier.calls
        events_at_l3 = len(engine.session.events)

        rendered = await engine.process_turn(speech("hello? anyone?"))

        assert rendered.level == Level.L3
        assert classifier.calls == calls_at_l3
        assert len(engine.session.events) == events_at_l3

    @pytest.mark.asyncio
    async def test_transitions_are_audited(self, engine, audit_log):
        await engine.start()
        await engine.process_turn(speech("menu"))
        await engine.process_turn(speech("talk to an agent"))

        events = await audit_log.events_for(engine.session.session_id)

        assert [e.to_level for e in events] == [Level.L2, Level.L3]
        assert events == engine.session.events


class TestDegradedService:

    @pytest.mark.asyncio
    async def test_missing_stream_serves_l1_document(self, make_engine, streamless_adapter, caplog):
        engine = make_engine(adapter=streamless_adapter)
        await engine.start()

        with caplog.at_level(logging.WARNING, logger="app.core.engine"):
            rendered = await engine.process_turn(speech("reservation"))

        assert engine.session.level == Level.L2
        assert engine.session.degraded is True
        assert rendered.level == Level.L1
        assert rendered.degraded is True
        assert "<Gather" in rendered.content
        assert "<Stream" not in rendered.content
        assert any(getattr(r, "event_type", None) == "degraded_service" for r in caplog.records)

    @pytest.mark.asyncio
    async def test_degraded_call_can_still_reach_a_human(self, make_engine, streamless_adapter):
        engine = make_engine(adapter=streamless_adapter)
        await engine.start()
        await engine.process_turn(speech("reservation"))

        rendered = await engine.process_turn(speech("a manager please"))

        assert rendered.level == Level.L3
        assert "<Enqueue" in rendered.content


class TestDisconnect:

    @pytest.mark.asyncio
    async def test_disconnect_terminates_session(self, engine, audit_log):
        await engine.start()
        await engine.process_turn(speech("order"))

        session = await engine.disconnect("completed")

        assert session.state == SessionState.TERMINATED
        assert session.resolved_outcome == ResolvedOutcome.CONTAINED
        assert session.ended_at is not None
        records = await audit_log.session_records()
        assert records[-1]["state"] == "terminated"

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self, engine, audit_log):
        await engine.start()

        await engine.disconnect("completed")
        await engine.disconnect("completed")

        assert len(await audit_log.session_records()) == 1
        assert engine.session.resolved_outcome == ResolvedOutcome.ABANDONED

    @pytest.mark.asyncio
    async def test_turn_after_disconnect_is_rejected(self, engine):
        await engine.start()
        await engine.disconnect("completed")

        with pytest.raises(CallTerminatedError):
            await engine.process_turn(speech("reservation"))

    @pytest.mark.asyncio
    async def test_disconnect_cancels_inflight_classification(self, make_engine):
        slow = SlowClassifier()
        engine = make_engine(classifier=slow, timeout=5.0)
        await engine.start()

        turn = asyncio.create_task(engine.process_turn(speech("reservation")))
        await asyncio.wait_for(slow.started.wait(), timeout=1.0)

        await engine.disconnect("completed")

        with pytest.raises(CallTerminatedError):
            await turn
        assert slow.cancelled is True
        assert engine.session.level == Level.L1
        assert engine.session.events == []

    @pytest.mark.asyncio
    async def test_disconnect_at_l3_is_escalated(self, engine, human_queue):
        await engine.start()
        await engine.process_turn(speech("human"))
        await engine.handoff()

        await engine.disconnect("completed")

        assert engine.session.resolved_outcome == ResolvedOutcome.ESCALATED
        assert await human_queue.get(engine.call_id) is None

    @pytest.mark.asyncio
    async def test_disconnect_before_background_handoff_leaves_queue_empty(self, engine, human_queue):
        await engine.start()
        await engine.process_turn(speech("can I talk to a human"))
        assert engine.session.level == Level.L3

        await engine.disconnect("completed")
        await asyncio.sleep(0.05)

        assert await human_queue.get(engine.call_id) is None
        assert await human_queue.entries("level3_support") == []

    @pytest.mark.asyncio
    async def test_handoff_after_disconnect_is_rejected(self, engine, human_queue):
        await engine.start()
        await engine.process_turn(speech("agent"))
        await engine.disconnect("completed")

        with pytest.raises(CallTerminatedError):
            await engine.handoff()
        assert await human_queue.get(engine.call_id) is None


class TestHandoff:

    @pytest.mark.asyncio
    async def test_handoff_requires_l3(self, engine):
        await engine.start()

        with pytest.raises(HandoffNotReadyError):
            await engine.handoff()

    @pytest.mark.asyncio
    async def test_l3_entry_enqueues_with_summary(self, engine, human_queue):
        await engine.start()
        await engine.process_turn(speech("reservation"))
        await engine.process_turn(speech("party of four at 7 pm tomorrow"))
        await engine.process_turn(speech("can I speak to a manager"))

        entry = await engine.handoff()

        assert entry.queue_name == "level3_support"
        summary = entry.summary
        assert summary is not None
        assert summary.trigger_reason == TriggerReason.KEYWORD
        assert summary.intent == "reservation"
        assert summary.fields["party_size"] == 4
        assert summary.fields["requested_time"] == "19:00"
        assert summary.fields["requested_day"] == "tomorrow"
        assert "manager" in summary.transcript_excerpt
        assert engine.session.handoff_summary == summary
        assert await human_queue.get(engine.call_id) is entry

    @pytest.mark.asyncio
    async def test_handoff_is_idempotent(self, engine, human_queue):
        await engine.start()
        await engine.process_turn(speech("agent"))

        first = await engine.handoff()
        second = await engine.handoff()

        assert first is second
        assert len(await human_queue.entries("level3_support")) == 1

    @pytest.mark.asyncio
    async def test_summary_failure_does_not_block_l3(self, make_engine, human_queue):
        engine = make_engine(handoff_builder=BrokenHandoffBuilder())
        await engine.start()

        rendered = await engine.process_turn(speech("human"))
        await asyncio.sleep(0.05)

        assert rendered.level == Level.L3
        assert "<Enqueue" in rendered.content
        assert engine.session.handoff_summary is None
        entry = await human_queue.get(engine.call_id)
        assert entry is not None
        assert entry.summary is None

    @pytest.mark.asyncio
    async def test_handoff_without_summary_still_enqueues(self, make_engine):
        engine = make_engine(handoff_builder=BrokenHandoffBuilder())
        await engine.start()
        await engine.process_turn(speech("manager"))

        entry = await engine.handoff()

        assert entry.queue_name == "level3_support"
        assert entry.summary is None
