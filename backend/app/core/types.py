"""
CallRoute - Core Domain Types

Internal type definitions for the routing engine. These are domain objects
used within the core and service layers, independent of API serialization.

Design Notes:
- Configuration objects (tenants, numbers, flow versions) are frozen
  dataclasses so cached snapshots can be shared across calls without locks.
- CallSession is the only mutable record and is owned by exactly one
  RoutingEngine for the lifetime of the call.
- EscalationEvent is frozen; the per-session event list is append-only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, NewType, Optional, Tuple


# =============================================================================
# Type Aliases
# =============================================================================

TenantId = NewType("TenantId", str)
"""Opaque tenant identifier (e.g. "tnt_bistro")."""

CallId = NewType("CallId", str)
"""Provider call identifier (Twilio CallSid, ACS callConnectionId)."""


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class Level(str, Enum):
    """Escalation level handling the caller. Ordered L1 < L2 < L3."""
    L1 = "L1"
    L2 = "L2"
    L3 = "L3"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]


_LEVEL_RANK = {Level.L1: 1, Level.L2: 2, Level.L3: 3}


class SessionState(str, Enum):
    """Routing state of a call session."""
    L1 = "L1"
    L2 = "L2"
    L3 = "L3"
    TERMINATED = "terminated"


class TriggerReason(str, Enum):
    """
    Why a level transition happened.

    INTENT_CONFIDENT marks the L1 -> L2 move on a confident intent; the other
    reasons are escalations to a human.
    """
    INTENT_CONFIDENT = "intent_confident"
    LOW_CONFIDENCE = "low_confidence"
    MAX_ATTEMPTS = "max_attempts"
    KEYWORD = "keyword"
    POLICY_REQUIRED = "policy_required"


class ResolvedOutcome(str, Enum):
    """How a call ended from the routing point of view."""
    CONTAINED = "contained"
    ESCALATED = "escalated"
    ABANDONED = "abandoned"


class NumberStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


# =============================================================================
# Tenant Configuration
# =============================================================================

@dataclass(frozen=True)
class TenantPolicy:
    """
    A tenant rule that can force a human handoff.

    Matches when the caller's input contains one of the trigger phrases or the
    classified intent is one of the trigger intents.

    Example: allergy uncertainty at a restaurant must always reach staff.
    """
    name: str
    trigger_phrases: Tuple[str, ...] = ()
    trigger_intents: Tuple[str, ...] = ()
    requires_human: bool = True

    def matches(self, text: str, intent: Optional[str] = None) -> bool:
        lowered = text.lower()
        if any(phrase.lower() in lowered for phrase in self.trigger_phrases):
            return True
        return intent is not None and intent in self.trigger_intents


@dataclass(frozen=True)
class Tenant:
    """A business using the platform."""
    tenant_id: str
    name: str
    default_flow_version: str
    time_zone: str = "UTC"
    policies: Tuple[TenantPolicy, ...] = ()

    def human_required_policy(self, text: str, intent: Optional[str]) -> Optional[TenantPolicy]:
        """Return the first policy requiring a human that matches, if any."""
        for policy in self.policies:
            if policy.requires_human and policy.matches(text, intent):
                return policy
        return None


@dataclass(frozen=True)
class PhoneNumberRecord:
    """Binding of an E.164 number to a tenant and flow version."""
    number_id: str
    e164: str
    provider: str
    tenant_id: str
    flow_version: str
    status: NumberStatus = NumberStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.number_id,
            "number": self.e164,
            "provider": self.provider,
            "tenant_id": self.tenant_id,
            "flow_version": self.flow_version,
            "status": self.status.value,
        }


@dataclass(frozen=True)
class CallFlowVersion:
    """
    Immutable snapshot of a tenant's call-flow configuration.

    Attributes:
        prompt: L1 greeting/prompt spoken inside the capture directive
        hints: Speech recognition hints (also the intents L1 can recognise)
        gather_timeout_seconds: Silence timeout for L1 capture
        t1: Minimum intent confidence to move L1 -> L2
        t2: Minimum confidence to stay in L2
        keyword_triggers: Phrases that send the caller straight to a human
        max_attempts: L1 prompt attempts before escalating to a human
        dtmf_intents: Keypad digit -> intent pairs
        human_queue: Queue name for L3
        wait_url: Hold experience while queued
        dial_number: Staff number to dial instead of queueing (optional)
    """
    tenant_id: str
    version: str
    prompt: str
    hints: Tuple[str, ...] = ()
    gather_timeout_seconds: int = 3
    t1: float = 0.7
    t2: float = 0.6
    keyword_triggers: Tuple[str, ...] = ()
    max_attempts: int = 3
    dtmf_intents: Tuple[Tuple[str, str], ...] = ()
    human_queue: str = "level3_support"
    wait_url: str = "/v1/voice/queue"
    dial_number: Optional[str] = None

    def __post_init__(self):
        if not 0.0 <= self.t1 <= 1.0 or not 0.0 <= self.t2 <= 1.0:
            raise ValueError(f"Thresholds must be within [0, 1]: t1={self.t1}, t2={self.t2}")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.gather_timeout_seconds < 1:
            raise ValueError(f"gather_timeout_seconds must be >= 1, got {self.gather_timeout_seconds}")

    def intent_for_digit(self, digit: str) -> Optional[str]:
        for key, intent in self.dtmf_intents:
            if key == digit:
                return intent
        return None

    def matched_keyword(self, text: str) -> Optional[str]:
        """First keyword trigger contained in the text (case-insensitive)."""
        lowered = text.lower()
        for keyword in self.keyword_triggers:
            if keyword.lower() in lowered:
                return keyword
        return None


# =============================================================================
# Turn Inputs and Classification
# =============================================================================

@dataclass(frozen=True)
class TurnInput:
    """
    One caller turn as reported by the telephony edge.

    confidence is set when the L2 orchestrator reports its own tool-call
    confidence; otherwise the engine classifies the input.
    """
    speech_text: Optional[str] = None
    dtmf: Optional[str] = None
    confidence: Optional[float] = None

    @property
    def text(self) -> str:
        return (self.speech_text or "").strip()

    @property
    def is_empty(self) -> bool:
        return not self.text and not self.dtmf


@dataclass(frozen=True)
class Classification:
    """
    Result of intent classification.

    confidence is None when the classifier timed out or failed; routing treats
    that as below any threshold.
    """
    intent: Optional[str]
    confidence: Optional[float]
    source: str = "unknown"
    timed_out: bool = False

    @property
    def effective_confidence(self) -> float:
        return self.confidence if self.confidence is not None else 0.0

    @classmethod
    def unknown(cls, source: str, timed_out: bool = False) -> "Classification":
        return cls(intent=None, confidence=None, source=source, timed_out=timed_out)


# =============================================================================
# Session Records
# =============================================================================

@dataclass(frozen=True)
class EscalationEvent:
    """Immutable audit record of one level transition."""
    session_id: str
    call_id: str
    tenant_id: str
    from_level: Level
    to_level: Level
    trigger_reason: TriggerReason
    timestamp: datetime = field(default_factory=utcnow)
    confidence: Optional[float] = None
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "from_level": self.from_level.value,
            "to_level": self.to_level.value,
            "trigger_reason": self.trigger_reason.value,
            "timestamp": self.timestamp.isoformat(),
            "confidence": self.confidence,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class TranscriptTurn:
    speaker: str  # "caller" | "agent"
    text: str
    level: Level
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class HandoffSummary:
    """Bounded context record attached to a human-queue entry."""
    call_id: str
    session_id: str
    tenant_id: str
    intent: Optional[str]
    trigger_reason: Optional[TriggerReason]
    transcript_excerpt: str
    fields: Dict[str, Any]
    created_at: datetime
    local_time: str
    caller: str = "unknown"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call_id": self.call_id,
            "session_id": self.session_id,
            "tenant_id": self.tenant_id,
            "intent": self.intent,
            "trigger_reason": self.trigger_reason.value if self.trigger_reason else None,
            "transcript_excerpt": self.transcript_excerpt,
            "fields": dict(self.fields),
            "created_at": self.created_at.isoformat(),
            "local_time": self.local_time,
            "caller": self.caller,
        }


@dataclass
class CallSession:
    """
    Per-call routing state.

    Mutated exclusively by the RoutingEngine that owns the call.
    """
    call_id: str
    session_id: str
    tenant_id: str
    flow: CallFlowVersion
    provider: str
    caller_masked: str = "unknown"
    started_at: datetime = field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    level: Level = Level.L1
    attempt_count: int = 0
    resolved_outcome: Optional[ResolvedOutcome] = None
    last_intent: Optional[str] = None
    last_confidence: Optional[float] = None
    degraded: bool = False
    transcript: List[TranscriptTurn] = field(default_factory=list)
    events: List[EscalationEvent] = field(default_factory=list)
    handoff_summary: Optional[HandoffSummary] = None

    @property
    def is_terminated(self) -> bool:
        return self.ended_at is not None

    @property
    def state(self) -> SessionState:
        if self.is_terminated:
            return SessionState.TERMINATED
        return SessionState(self.level.value)

    @property
    def flow_version(self) -> str:
        return self.flow.version

    @property
    def last_trigger_reason(self) -> Optional[TriggerReason]:
        return self.events[-1].trigger_reason if self.events else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call_id": self.call_id,
            "session_id": self.session_id,
            "tenant_id": self.tenant_id,
            "flow_version": self.flow_version,
            "provider": self.provider,
            "caller": self.caller_masked,
            "state": self.state.value,
            "level": self.level.value,
            "attempt_count": self.attempt_count,
            "degraded": self.degraded,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "resolved_outcome": self.resolved_outcome.value if self.resolved_outcome else None,
            "last_intent": self.last_intent,
            "events": [e.to_dict() for e in self.events],
            "handoff": self.handoff_summary.to_dict() if self.handoff_summary else None,
        }
