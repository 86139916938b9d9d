"""
CallRoute - Handoff Context Builder

Builds the bounded summary staff see when a call reaches L3: a truncated
transcript excerpt, the classified intent, why the call escalated, and
structured fields pulled from what the caller said (party size, time, day,
tenant policies that matched).

Building is pure; the routing engine runs it as a best-effort background
task so a failure here can never block or fail the call.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.core.types import CallSession, HandoffSummary, Tenant, TranscriptTurn, utcnow

logger = logging.getLogger(__name__)


_NUMBER_WORDS = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5, "six": 6,
    "seven": 7, "eight": 8, "nine": 9, "ten": 10, "eleven": 11, "twelve": 12,
}
_COUNT = r"(\d{1,2}|" + "|".join(_NUMBER_WORDS) + r")"

_PARTY_PATTERNS = (
    re.compile(rf"\b(?:party|table|group|reservation|booking) (?:of|for) {_COUNT}\b"),
    re.compile(rf"\b{_COUNT} (?:people|persons|guests|adults|of us)\b"),
)
_TIME_PATTERN = re.compile(r"\b(\d{1,2})(?::(\d{2}))?\s*(am|pm|a\.m\.|p\.m\.)(?!\w)")
_DAY_PATTERN = re.compile(
    r"\b(today|tonight|tomorrow|monday|tuesday|wednesday|thursday|friday|saturday|sunday)\b"
)


class HandoffContextBuilder:
    """
    Builds HandoffSummary records.

    Args:
        max_chars: Maximum characters in the transcript excerpt
        max_turns: Number of most recent turns considered
    """

    def __init__(self, max_chars: int = 500, max_turns: int = 6):
        self._max_chars = max_chars
        self._max_turns = max_turns

    def build(self, session: CallSession, tenant: Tenant) -> HandoffSummary:
        created_at = utcnow()
        caller_text = " ".join(t.text for t in session.transcript if t.speaker == "caller")

        return HandoffSummary(
            call_id=session.call_id,
            session_id=session.session_id,
            tenant_id=session.tenant_id,
            intent=session.last_intent,
            trigger_reason=session.last_trigger_reason,
            transcript_excerpt=self.excerpt(session.transcript),
            fields=extract_structured_fields(caller_text, tenant),
            created_at=created_at,
            local_time=_local_time(created_at, tenant.time_zone),
            caller=session.caller_masked,
        )

    def excerpt(self, transcript: List[TranscriptTurn]) -> str:
        lines = [
            f"{turn.speaker.capitalize()} ({turn.level.value}): {turn.text}"
            for turn in transcript[-self._max_turns:]
        ]
        text = "\n".join(lines)
        if len(text) <= self._max_chars:
            return text
        # Keep the most recent context
        return "..." + text[-(self._max_chars - 3):]


def extract_structured_fields(text: str, tenant: Optional[Tenant] = None) -> Dict[str, Any]:
    """Pull reservation-style fields out of free caller text."""
    lowered = text.lower()
    fields: Dict[str, Any] = {}

    for pattern in _PARTY_PATTERNS:
        match = pattern.search(lowered)
        if match:
            fields["party_size"] = _to_int(match.group(1))
            break

    time_match = _TIME_PATTERN.search(lowered)
    if time_match:
        fields["requested_time"] = _normalize_time(*time_match.groups())

    day_match = _DAY_PATTERN.search(lowered)
    if day_match:
        fields["requested_day"] = day_match.group(1)

    if tenant is not None:
        matched = [p.name for p in tenant.policies if p.matches(text)]
        if matched:
            fields["policies_matched"] = matched

    return fields


def _to_int(token: str) -> int:
    return int(token) if token.isdigit() else _NUMBER_WORDS[token]


def _normalize_time(hour: str, minute: Optional[str], meridiem: str) -> str:
    h = int(hour) % 12
    if meridiem.startswith("p"):
        h += 12
    return f"{h:02d}:{minute or '00'}"


def _local_time(moment: datetime, time_zone: str) -> str:
    try:
        zone = ZoneInfo(time_zone)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown tenant time zone %r, using UTC", time_zone)
        zone = timezone.utc
    return moment.astimezone(zone).isoformat()
