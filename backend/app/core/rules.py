"""
CallRoute - Escalation Rules

Per-turn transition rules as an explicit ordered list. The engine evaluates
them top to bottom and applies the first decision returned:

    1. PolicyRule        tenant policy requires a human   -> L3 policy_required
    2. KeywordRule       keyword trigger in caller input   -> L3 keyword
    3. L1ConfidenceRule  confidence >= T1 -> L2, else replay / L3 max_attempts
    4. L2ConfidenceRule  confidence <  T2 -> L3 low_confidence, else stay

Safety triggers come first so they pre-empt purely statistical ones. Rules
only read the turn context; the engine applies the decision.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence

from app.core.types import (
    CallFlowVersion,
    Classification,
    Level,
    Tenant,
    TriggerReason,
)


@dataclass(frozen=True)
class TurnContext:
    """Read-only view of one turn handed to the rules."""
    level: Level
    attempt_count: int
    flow: CallFlowVersion
    tenant: Tenant
    text: str
    classification: Classification


@dataclass(frozen=True)
class RuleDecision:
    """
    Outcome of a rule.

    target is the level to move to (None = stay). replay asks the engine to
    re-issue the L1 prompt and count a failed attempt.
    """
    rule: str
    target: Optional[Level] = None
    reason: Optional[TriggerReason] = None
    replay: bool = False
    detail: Optional[str] = None

    @property
    def is_transition(self) -> bool:
        return self.target is not None


class RoutingRule(ABC):
    """One entry of the ordered rule list."""

    name: str = "rule"

    @abstractmethod
    def evaluate(self, ctx: TurnContext) -> Optional[RuleDecision]:
        """Return a decision, or None to defer to the next rule."""
        ...


class PolicyRule(RoutingRule):
    name = "policy"

    def evaluate(self, ctx: TurnContext) -> Optional[RuleDecision]:
        policy = ctx.tenant.human_required_policy(ctx.text, ctx.classification.intent)
        if policy is None:
            return None
        return RuleDecision(
            rule=self.name,
            target=Level.L3,
            reason=TriggerReason.POLICY_REQUIRED,
            detail=policy.name,
        )


class KeywordRule(RoutingRule):
    name = "keyword"

    def evaluate(self, ctx: TurnContext) -> Optional[RuleDecision]:
        keyword = ctx.flow.matched_keyword(ctx.text)
        if keyword is None:
            return None
        return RuleDecision(
            rule=self.name,
            target=Level.L3,
            reason=TriggerReason.KEYWORD,
            detail=keyword,
        )


class L1ConfidenceRule(RoutingRule):
    """
    Intent capture at L1.

    A failed turn counts one attempt; the turn that brings attempt_count to
    max_attempts escalates instead of replaying again.
    """

    name = "l1_confidence"

    def evaluate(self, ctx: TurnContext) -> Optional[RuleDecision]:
        if ctx.level != Level.L1:
            return None

        if ctx.classification.effective_confidence >= ctx.flow.t1:
            return RuleDecision(
                rule=self.name,
                target=Level.L2,
                reason=TriggerReason.INTENT_CONFIDENT,
                detail=ctx.classification.intent,
            )

        if ctx.attempt_count + 1 >= ctx.flow.max_attempts:
            return RuleDecision(
                rule=self.name,
                target=Level.L3,
                reason=TriggerReason.MAX_ATTEMPTS,
                detail=f"{ctx.attempt_count + 1} attempts",
            )

        return RuleDecision(rule=self.name, replay=True)


class L2ConfidenceRule(RoutingRule):
    name = "l2_confidence"

    def evaluate(self, ctx: TurnContext) -> Optional[RuleDecision]:
        if ctx.level != Level.L2:
            return None

        if ctx.classification.effective_confidence < ctx.flow.t2:
            detail = "classification timeout" if ctx.classification.timed_out else None
            return RuleDecision(
                rule=self.name,
                target=Level.L3,
                reason=TriggerReason.LOW_CONFIDENCE,
                detail=detail,
            )

        return RuleDecision(rule=self.name)


DEFAULT_RULES: Sequence[RoutingRule] = (
    PolicyRule(),
    KeywordRule(),
    L1ConfidenceRule(),
    L2ConfidenceRule(),
)


def evaluate_rules(rules: Sequence[RoutingRule], ctx: TurnContext) -> RuleDecision:
    """Apply rules in order; the first decision wins. Default: stay."""
    for rule in rules:
        decision = rule.evaluate(ctx)
        if decision is not None:
            return decision
    return RuleDecision(rule="default")
