"""
CallRoute - Control Document Generator

Pure mapping from (level, context) to a provider-agnostic control document.

    L1 -> GatherDirective   prompt-and-capture (speech + DTMF)
    L2 -> StreamDirective   bidirectional media stream to the agent orchestrator
    L3 -> EnqueueDirective  human queue with a wait experience (or dial staff)

HoldDirective is the wait experience itself, served from the wait URL while
the caller sits in a queue.

Documents are frozen dataclasses: identical inputs produce equal documents,
and provider adapters render them without mutating anything.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Optional, Tuple, Union
from urllib.parse import urlencode

from app.core.types import CallFlowVersion, Level


class Capability(str, Enum):
    """Telephony edge features a provider adapter may support."""
    GATHER = "gather"
    STREAM = "stream"
    ENQUEUE = "enqueue"


LEVEL_CAPABILITIES = {
    Level.L1: Capability.GATHER,
    Level.L2: Capability.STREAM,
    Level.L3: Capability.ENQUEUE,
}


# =============================================================================
# Directives
# =============================================================================

@dataclass(frozen=True)
class GatherDirective:
    prompt: str
    hints: Tuple[str, ...]
    timeout_seconds: int
    action_url: str
    input_modes: Tuple[str, ...] = ("speech", "dtmf")

    capability: ClassVar[Capability] = Capability.GATHER


@dataclass(frozen=True)
class StreamDirective:
    stream_base_url: str
    tenant_id: str
    session_id: str

    capability: ClassVar[Capability] = Capability.STREAM

    @property
    def url(self) -> str:
        query = urlencode({"tenant": self.tenant_id, "session": self.session_id})
        separator = "&" if "?" in self.stream_base_url else "?"
        return f"{self.stream_base_url}{separator}{query}"


@dataclass(frozen=True)
class EnqueueDirective:
    queue_name: str
    wait_url: str
    dial_number: Optional[str] = None

    capability: ClassVar[Capability] = Capability.ENQUEUE


@dataclass(frozen=True)
class HoldDirective:
    message: str
    pause_seconds: int

    capability: ClassVar[Capability] = Capability.ENQUEUE


Directive = Union[GatherDirective, StreamDirective, EnqueueDirective, HoldDirective]


@dataclass(frozen=True)
class ControlDocument:
    """Provider-agnostic instruction for the telephony edge."""
    level: Level
    directive: Directive
    degraded: bool = False

    @property
    def required_capability(self) -> Capability:
        return self.directive.capability


@dataclass(frozen=True)
class DocumentContext:
    """Everything the generator needs besides the level."""
    flow: CallFlowVersion
    tenant_id: str
    session_id: str
    action_url: str
    stream_base_url: str
    public_base_url: str = ""


# =============================================================================
# Generator
# =============================================================================

def generate_control_document(
    level: Level,
    context: DocumentContext,
    degraded: bool = False,
) -> ControlDocument:
    """
    Build the control document for a level.

    Args:
        level: Escalation level to serve
        context: Flow configuration and session references
        degraded: Mark an L1 document served in place of a richer one

    Returns:
        ControlDocument (deterministic for equal inputs)
    """
    flow = context.flow

    if level == Level.L1:
        directive: Directive = GatherDirective(
            prompt=flow.prompt,
            hints=flow.hints,
            timeout_seconds=flow.gather_timeout_seconds,
            action_url=context.action_url,
        )
    elif level == Level.L2:
        directive = StreamDirective(
            stream_base_url=context.stream_base_url,
            tenant_id=context.tenant_id,
            session_id=context.session_id,
        )
    elif level == Level.L3:
        directive = EnqueueDirective(
            queue_name=flow.human_queue,
            wait_url=absolute_url(context.public_base_url, flow.wait_url),
            dial_number=flow.dial_number,
        )
    else:
        raise ValueError(f"Unknown level: {level!r}")

    return ControlDocument(level=level, directive=directive, degraded=degraded)


def fallback_control_document(queue_name: str, wait_url: str) -> ControlDocument:
    """L3 document used when the dialed number cannot be resolved to a tenant."""
    return ControlDocument(
        level=Level.L3,
        directive=EnqueueDirective(queue_name=queue_name, wait_url=wait_url),
    )


def hold_control_document(message: str, pause_seconds: int) -> ControlDocument:
    """Wait experience played to a queued caller; the edge re-fetches it when done."""
    return ControlDocument(
        level=Level.L3,
        directive=HoldDirective(message=message, pause_seconds=pause_seconds),
    )


def absolute_url(base_url: str, path: str) -> str:
    """Prefix a relative webhook path with the public base URL, when one is set."""
    if not base_url or "://" in path:
        return path
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"
