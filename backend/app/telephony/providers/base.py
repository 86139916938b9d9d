"""
CallRoute - Provider Adapter Base

Provider differences are modeled as a capability set: each adapter advertises
which directives it can render, and the routing engine checks before asking
for a document that needs one.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import FrozenSet, Iterable, Mapping, Optional

from app.core.control_documents import (
    Capability,
    ControlDocument,
    EnqueueDirective,
    GatherDirective,
    HoldDirective,
    StreamDirective,
)
from app.core.exceptions import UnsupportedCapabilityError
from app.core.types import Level


@dataclass(frozen=True)
class RenderedDocument:
    """Wire-format control document ready to return to the telephony edge."""
    content: str
    media_type: str
    level: Level
    degraded: bool = False


class ProviderAdapter(ABC):
    """
    Abstract base class for telephony provider adapters.

    Implementations handle provider-specific:
    - Control document rendering (markup or JSON)
    - Webhook validation

    Every adapter must support GATHER, the capability degraded calls fall
    back to.
    """

    def __init__(self, capabilities: Iterable[Capability]):
        caps = frozenset(capabilities)
        if Capability.GATHER not in caps:
            raise ValueError(f"{type(self).__name__} must support {Capability.GATHER.value}")
        self._capabilities = caps

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name."""
        ...

    @property
    @abstractmethod
    def media_type(self) -> str:
        """HTTP content type of rendered documents."""
        ...

    @property
    def capabilities(self) -> FrozenSet[Capability]:
        return self._capabilities

    def supports(self, capability: Capability) -> bool:
        return capability in self._capabilities

    def render(self, document: ControlDocument) -> RenderedDocument:
        """
        Render a control document in the provider's wire format.

        Raises:
            UnsupportedCapabilityError: If the document needs a capability
                this adapter does not advertise
        """
        capability = document.required_capability
        if not self.supports(capability):
            raise UnsupportedCapabilityError(
                f"{self.name} does not support {capability.value}",
                details={"provider": self.name, "capability": capability.value},
            )

        directive = document.directive
        if isinstance(directive, GatherDirective):
            content = self.render_gather(directive)
        elif isinstance(directive, StreamDirective):
            content = self.render_stream(directive)
        elif isinstance(directive, EnqueueDirective):
            content = self.render_enqueue(directive)
        elif isinstance(directive, HoldDirective):
            content = self.render_hold(directive)
        else:
            raise TypeError(f"Unknown directive: {type(directive).__name__}")

        return RenderedDocument(
            content=content,
            media_type=self.media_type,
            level=document.level,
            degraded=document.degraded,
        )

    @abstractmethod
    def render_gather(self, directive: GatherDirective) -> str:
        ...

    @abstractmethod
    def render_stream(self, directive: StreamDirective) -> str:
        ...

    @abstractmethod
    def render_enqueue(self, directive: EnqueueDirective) -> str:
        ...

    @abstractmethod
    def render_hold(self, directive: HoldDirective) -> str:
        ...

    @abstractmethod
    def validate_webhook(
        self,
        url: str,
        params: Mapping[str, str],
        headers: Mapping[str, str],
    ) -> bool:
        """
        Validate webhook request authenticity.

        Args:
            url: Full URL the provider posted to
            params: Parsed request parameters
            headers: Request headers (case-insensitive mapping)

        Returns:
            True if request is valid
        """
        ...

    @staticmethod
    def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
        value = headers.get(name)
        if value is None:
            value = headers.get(name.lower())
        return value
