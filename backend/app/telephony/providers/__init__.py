"""
CallRoute - Telephony Providers

Provider-specific control document rendering.

Supported Providers:
- twilio: TwiML markup
- acs: Azure Communication Services style JSON
"""

from __future__ import annotations

import logging
from typing import Dict

from app.config import Settings
from app.core.control_documents import Capability
from app.core.exceptions import UnknownProviderError
from .acs import AcsAdapter
from .base import ProviderAdapter, RenderedDocument
from .twilio import TwilioAdapter

logger = logging.getLogger(__name__)


def build_provider_adapters(settings: Settings) -> Dict[str, ProviderAdapter]:
    """
    Create one adapter per supported provider, honouring capability switches.

    Accounts without media streaming lose STREAM; the engine then serves L1
    documents in place of L2 streams.
    """
    twilio_caps = {Capability.GATHER, Capability.ENQUEUE}
    if settings.twilio_media_streams_enabled:
        twilio_caps.add(Capability.STREAM)

    acs_caps = {Capability.GATHER, Capability.ENQUEUE}
    if settings.acs_media_streaming_enabled:
        acs_caps.add(Capability.STREAM)

    adapters: Dict[str, ProviderAdapter] = {
        "twilio": TwilioAdapter(auth_token=settings.twilio_auth_token, capabilities=twilio_caps),
        "acs": AcsAdapter(webhook_secret=settings.acs_webhook_secret, capabilities=acs_caps),
    }

    for name, adapter in adapters.items():
        logger.info(
            "Provider adapter ready: %s capabilities=%s",
            name,
            sorted(c.value for c in adapter.capabilities),
        )

    return adapters


def get_adapter(adapters: Dict[str, ProviderAdapter], provider: str) -> ProviderAdapter:
    """Look up an adapter by provider name."""
    adapter = adapters.get(provider.lower())
    if adapter is None:
        raise UnknownProviderError(
            f"No adapter for provider: {provider}",
            details={"provider": provider},
        )
    return adapter


__all__ = [
    "ProviderAdapter",
    "RenderedDocument",
    "TwilioAdapter",
    "AcsAdapter",
    "build_provider_adapters",
    "get_adapter",
]
