"""
CallRoute - Routing Engine

Per-call state machine driving escalation level transitions.

States:
    L1 -> L2 -> L3, plus TERMINATED on provider disconnect.
    Levels never decrease; L3 accepts no further transitions.

Turn processing:
    1. Derive turn text (speech, plus the intent of a mapped DTMF digit)
    2. Classify (bounded by a timeout; timeout = confidence unknown)
    3. Evaluate the ordered rule list (see app.core.rules)
    4. Apply the decision: transition (audit event, attempt reset, handoff on
       L3) or replay / stay
    5. Generate the control document and render it with the provider adapter,
       degrading to an L1 document when a capability is missing

Concurrency:
    One engine per call. Turns are serialized by a per-engine lock; disconnect
    bypasses the lock so it can cancel an in-flight classification at once.
    Anything computed after the disconnect is discarded.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Sequence

from app.core.audit import AuditWriter
from app.core.control_documents import (
    LEVEL_CAPABILITIES,
    DocumentContext,
    generate_control_document,
)
from app.core.exceptions import (
    CallTerminatedError,
    HandoffNotReadyError,
    UnsupportedCapabilityError,
)
from app.core.handoff import HandoffContextBuilder
from app.core.logging import LogContext, get_logger
from app.core.rules import DEFAULT_RULES, RoutingRule, TurnContext, evaluate_rules
from app.core.types import (
    CallSession,
    Classification,
    EscalationEvent,
    HandoffSummary,
    Level,
    ResolvedOutcome,
    Tenant,
    TranscriptTurn,
    TriggerReason,
    TurnInput,
    utcnow,
)
from app.services.classifier import IntentClassifier
from app.services.human_queue import HumanQueue, QueueEntry
from app.telephony.providers.base import ProviderAdapter, RenderedDocument

logger = logging.getLogger(__name__)
events_logger = get_logger(__name__)


_OUTCOME_BY_LEVEL = {
    Level.L1: ResolvedOutcome.ABANDONED,
    Level.L2: ResolvedOutcome.CONTAINED,
    Level.L3: ResolvedOutcome.ESCALATED,
}


class RoutingEngine:
    """
    Owns one CallSession for the lifetime of the call.

    Attributes:
        session: The call's routing state (mutated only here)
        tenant: Tenant configuration snapshot
        adapter: Provider adapter of the dialed number
    """

    def __init__(
        self,
        session: CallSession,
        tenant: Tenant,
        adapter: ProviderAdapter,
        classifier: IntentClassifier,
        audit: AuditWriter,
        handoff_builder: HandoffContextBuilder,
        human_queue: HumanQueue,
        action_url: str,
        stream_base_url: str,
        public_base_url: str = "",
        classification_timeout_seconds: float = 2.0,
        rules: Sequence[RoutingRule] = DEFAULT_RULES,
    ):
        self._session = session
        self._tenant = tenant
        self._adapter = adapter
        self._classifier = classifier
        self._audit = audit
        self._handoff_builder = handoff_builder
        self._human_queue = human_queue
        self._classification_timeout = classification_timeout_seconds
        self._rules = rules

        self._context = DocumentContext(
            flow=session.flow,
            tenant_id=session.tenant_id,
            session_id=session.session_id,
            action_url=action_url,
            stream_base_url=stream_base_url,
            public_base_url=public_base_url,
        )

        self._lock = asyncio.Lock()
        self._inflight: Optional[asyncio.Task] = None
        self._handoff_task: Optional[asyncio.Task] = None

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def session(self) -> CallSession:
        return self._session

    @property
    def tenant(self) -> Tenant:
        return self._tenant

    @property
    def adapter(self) -> ProviderAdapter:
        return self._adapter

    @property
    def call_id(self) -> str:
        return self._session.call_id

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def start(self) -> RenderedDocument:
        """Initial control document for the inbound call (L1)."""
        with self._log_context():
            self._ensure_active()
            logger.info(
                "Routing session started: session=%s, flow=%s, provider=%s",
                self._session.session_id,
                self._session.flow_version,
                self._adapter.name,
            )
            return self._render(self._session.level)

    async def current_document(self) -> RenderedDocument:
        """Re-render the document for the current level (duplicate webhooks)."""
        with self._log_context():
            self._ensure_active()
            return self._render(self._session.level)

    async def process_turn(self, turn: TurnInput) -> RenderedDocument:
        """
        Process one caller turn and return the next control document.

        Raises:
            CallTerminatedError: If the call was disconnected before or while
                the turn was processed
        """
        with self._log_context():
            async with self._lock:
                self._ensure_active()
                session = self._session

                text = self._turn_text(turn)
                self._record_caller_turn(turn, text)

                if session.level == Level.L3:
                    return self._render(Level.L3)

                classification = await self._classify(turn, text)
                self._ensure_active()

                session.last_confidence = classification.confidence
                if classification.intent:
                    session.last_intent = classification.intent

                decision = evaluate_rules(
                    self._rules,
                    TurnContext(
                        level=session.level,
                        attempt_count=session.attempt_count,
                        flow=session.flow,
                        tenant=self._tenant,
                        text=text,
                        classification=classification,
                    ),
                )

                logger.debug(
                    "Turn evaluated: level=%s, rule=%s, confidence=%s, intent=%s",
                    session.level.value,
                    decision.rule,
                    classification.confidence,
                    classification.intent,
                )

                if decision.is_transition:
                    await self._transition(
                        decision.target,
                        decision.reason,
                        confidence=classification.confidence,
                        detail=decision.detail,
                    )
                elif decision.replay:
                    session.attempt_count += 1
                    logger.info(
                        "L1 prompt replay: attempt=%d/%d",
                        session.attempt_count,
                        session.flow.max_attempts,
                    )

                self._ensure_active()
                return self._render(session.level)

    async def disconnect(self, status: str = "completed") -> CallSession:
        """
        Provider disconnect: cancel in-flight work and close the session.

        Idempotent; the only path to TERMINATED.
        """
        with self._log_context():
            session = self._session
            if session.is_terminated:
                return session

            session.ended_at = utcnow()
            session.resolved_outcome = _OUTCOME_BY_LEVEL[session.level]

            if self._inflight is not None and not self._inflight.done():
                self._inflight.cancel()
                logger.info("Cancelled in-flight classification on disconnect")

            await self._cancel_handoff()

            events_logger.info(
                "Call session closed",
                data={
                    "status": status,
                    "level": session.level.value,
                    "outcome": session.resolved_outcome.value,
                    "escalations": len(session.events),
                },
                event_type="session_closed",
            )

            await self._audit.write_session(session.to_dict())

            if session.level == Level.L3:
                try:
                    await self._human_queue.remove(session.call_id)
                except Exception as e:
                    logger.warning("Failed to remove queue entry on disconnect: %s", e)

            return session

    async def handoff(self) -> QueueEntry:
        """
        Enqueue the call for a human with its handoff summary.

        Raises:
            HandoffNotReadyError: If the call has not reached L3
            CallTerminatedError: If the call already ended
        """
        with self._log_context():
            self._ensure_active()
            session = self._session
            if session.level != Level.L3:
                raise HandoffNotReadyError(
                    f"Session is at {session.level.value}, handoff requires L3",
                    details={"level": session.level.value},
                )

            if self._handoff_task is not None:
                try:
                    await self._handoff_task
                except asyncio.CancelledError:
                    self._ensure_active()
                    raise
            self._ensure_active()

            summary = session.handoff_summary
            if summary is None:
                summary = self._build_summary()

            return await self._human_queue.enqueue(
                session.call_id,
                session.tenant_id,
                session.flow.human_queue,
                summary,
            )

    async def aclose(self) -> None:
        """Cancel background tasks (application shutdown)."""
        for task in (self._inflight, self._handoff_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    # -------------------------------------------------------------------------
    # Classification
    # -------------------------------------------------------------------------

    async def _classify(self, turn: TurnInput, text: str) -> Classification:
        """
        Resolve the turn's confidence.

        Orchestrator-reported confidence (L2 only) and mapped DTMF digits
        skip the classifier. Timeouts and classifier failures yield an unknown
        confidence, which every threshold treats as too low.
        """
        if turn.confidence is not None and self._session.level == Level.L2:
            return Classification(intent=None, confidence=turn.confidence, source="orchestrator")

        if turn.dtmf and not turn.text:
            intent = self._session.flow.intent_for_digit(turn.dtmf)
            return Classification(
                intent=intent,
                confidence=1.0 if intent else 0.0,
                source="dtmf",
            )

        if not text:
            return Classification(intent=None, confidence=0.0, source="no_input")

        self._inflight = asyncio.ensure_future(
            self._classifier.classify(text, self._session.flow, self._session.level)
        )
        try:
            return await asyncio.wait_for(self._inflight, timeout=self._classification_timeout)
        except asyncio.TimeoutError:
            events_logger.warning(
                "Classification timed out, treating confidence as unknown",
                data={"timeout_s": self._classification_timeout, "level": self._session.level.value},
                event_type="classification_timeout",
            )
            return Classification.unknown(source=self._classifier.classifier_id, timed_out=True)
        except asyncio.CancelledError:
            if self._session.is_terminated:
                raise CallTerminatedError("Call disconnected during classification")
            raise
        except Exception as e:
            logger.warning("Classification failed, treating confidence as unknown: %s", e)
            return Classification.unknown(source=self._classifier.classifier_id)
        finally:
            self._inflight = None

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def _transition(
        self,
        target: Level,
        reason: TriggerReason,
        confidence: Optional[float] = None,
        detail: Optional[str] = None,
    ) -> None:
        session = self._session
        from_level = session.level

        if target.rank <= from_level.rank:
            logger.error(
                "Refusing non-escalating transition %s -> %s",
                from_level.value,
                target.value,
            )
            return

        event = EscalationEvent(
            session_id=session.session_id,
            call_id=session.call_id,
            tenant_id=session.tenant_id,
            from_level=from_level,
            to_level=target,
            trigger_reason=reason,
            confidence=confidence,
            detail=detail,
        )

        session.level = target
        session.attempt_count = 0
        session.events.append(event)

        events_logger.info(
            "Level transition",
            data={
                "from": from_level.value,
                "to": target.value,
                "reason": reason.value,
                "confidence": confidence,
                "detail": detail,
            },
            event_type="escalation",
        )

        await self._audit.write_event(event)

        if target == Level.L3:
            self._handoff_task = asyncio.create_task(self._run_handoff())

    async def _run_handoff(self) -> Optional[HandoffSummary]:
        """Best-effort: build the summary and enqueue. Never raises."""
        try:
            if self._session.is_terminated:
                return None
            summary = self._build_summary()
            self._session.handoff_summary = summary
            await self._human_queue.enqueue(
                self._session.call_id,
                self._session.tenant_id,
                self._session.flow.human_queue,
                summary,
            )
            return summary
        except Exception as e:
            logger.warning("Handoff context build failed: %s", e, exc_info=True)
            return None

    async def _cancel_handoff(self) -> None:
        task = self._handoff_task
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Cancelled pending handoff on disconnect")

    def _build_summary(self) -> Optional[HandoffSummary]:
        try:
            return self._handoff_builder.build(self._session, self._tenant)
        except Exception as e:
            logger.warning("Handoff summary unavailable: %s", e)
            return None

    # -------------------------------------------------------------------------
    # Rendering
    # -------------------------------------------------------------------------

    def _render(self, level: Level) -> RenderedDocument:
        """Render the level's document, degrading to L1 on missing capability."""
        required = LEVEL_CAPABILITIES[level]
        if not self._adapter.supports(required):
            return self._render_degraded(level, required.value)

        try:
            rendered = self._adapter.render(generate_control_document(level, self._context))
        except UnsupportedCapabilityError as e:
            return self._render_degraded(level, e.details.get("capability", required.value))

        if level == Level.L1:
            self._record_agent_prompt(level)
        return rendered

    def _render_degraded(self, level: Level, capability: str) -> RenderedDocument:
        self._session.degraded = True
        events_logger.warning(
            "Degraded service: capability unsupported, serving L1 document",
            data={"provider": self._adapter.name, "capability": capability, "level": level.value},
            event_type="degraded_service",
        )
        self._record_agent_prompt(level)
        return self._adapter.render(
            generate_control_document(Level.L1, self._context, degraded=True)
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _ensure_active(self) -> None:
        if self._session.is_terminated:
            raise CallTerminatedError(
                "Call has been disconnected",
                details={"session_id": self._session.session_id},
            )

    def _turn_text(self, turn: TurnInput) -> str:
        parts = [turn.text] if turn.text else []
        if turn.dtmf:
            intent = self._session.flow.intent_for_digit(turn.dtmf)
            if intent:
                parts.append(intent)
        return " ".join(parts)

    def _record_caller_turn(self, turn: TurnInput, text: str) -> None:
        if turn.is_empty:
            return
        spoken = turn.text or f"[keypad {turn.dtmf}]"
        self._session.transcript.append(
            TranscriptTurn(speaker="caller", text=spoken, level=self._session.level)
        )

    def _record_agent_prompt(self, level: Level) -> None:
        self._session.transcript.append(
            TranscriptTurn(speaker="agent", text=self._session.flow.prompt, level=level)
        )

    def _log_context(self) -> LogContext:
        return LogContext(
            tenant_id=self._session.tenant_id,
            call_id=self._session.call_id,
            session_id=self._session.session_id,
        )
