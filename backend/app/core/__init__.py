"""
CallRoute - Core Package

Contains the routing logic and domain types:
- types: Domain types (levels, sessions, flow versions)
- number_registry / flow_resolver: Configuration read path
- rules / engine: Per-call escalation state machine
- control_documents / handoff: Engine outputs
- routing: Orchestration across calls
"""

from .types import (
    CallFlowVersion,
    CallSession,
    Classification,
    EscalationEvent,
    HandoffSummary,
    Level,
    PhoneNumberRecord,
    ResolvedOutcome,
    SessionState,
    Tenant,
    TenantPolicy,
    TriggerReason,
    TurnInput,
)

__all__ = [
    "CallFlowVersion",
    "CallSession",
    "Classification",
    "EscalationEvent",
    "HandoffSummary",
    "Level",
    "PhoneNumberRecord",
    "ResolvedOutcome",
    "SessionState",
    "Tenant",
    "TenantPolicy",
    "TriggerReason",
    "TurnInput",
]
