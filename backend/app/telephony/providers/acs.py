"""
CallRoute - Azure Communication Services Provider Adapter

Renders control documents as ACS Call Automation style JSON action lists.
The edge worker translating these into Call Automation SDK calls posts
recognize results back to the route webhook.
"""

from __future__ import annotations

import hmac
import json
from typing import Any, Dict, Iterable, Mapping, Optional

from app.core.control_documents import (
    Capability,
    EnqueueDirective,
    GatherDirective,
    HoldDirective,
    StreamDirective,
)
from .base import ProviderAdapter

SECRET_HEADER = "X-ACS-Webhook-Secret"

_INPUT_TYPES = {
    ("speech",): "speech",
    ("dtmf",): "dtmf",
    ("dtmf", "speech"): "speechOrDtmf",
}


class AcsAdapter(ProviderAdapter):
    """ACS-style JSON adapter."""

    def __init__(
        self,
        webhook_secret: str = "",
        capabilities: Optional[Iterable[Capability]] = None,
    ):
        super().__init__(capabilities if capabilities is not None else set(Capability))
        self._webhook_secret = webhook_secret

    @property
    def name(self) -> str:
        return "acs"

    @property
    def media_type(self) -> str:
        return "application/json"

    def render_gather(self, directive: GatherDirective) -> str:
        input_type = _INPUT_TYPES.get(tuple(sorted(directive.input_modes)), "speechOrDtmf")
        action: Dict[str, Any] = {
            "action": "recognize",
            "inputType": input_type,
            "playPrompt": {"kind": "text", "text": directive.prompt},
            "initialSilenceTimeoutInSeconds": directive.timeout_seconds,
            "speechHints": list(directive.hints),
            "callbackUri": directive.action_url,
        }
        return self._serialize([action])

    def render_stream(self, directive: StreamDirective) -> str:
        action = {
            "action": "startMediaStreaming",
            "transportUrl": directive.url,
            "transportType": "websocket",
            "contentType": "audio",
            "audioChannelType": "mixed",
            "bidirectional": True,
        }
        return self._serialize([action])

    def render_enqueue(self, directive: EnqueueDirective) -> str:
        if directive.dial_number:
            action: Dict[str, Any] = {
                "action": "transferCallToParticipant",
                "targetParticipant": {"phoneNumber": directive.dial_number},
            }
        else:
            action = {
                "action": "enqueue",
                "queueId": directive.queue_name,
                "waitExperience": {"playMediaUri": directive.wait_url, "loop": True},
            }
        return self._serialize([action])

    def render_hold(self, directive: HoldDirective) -> str:
        action = {
            "action": "playMedia",
            "playSources": [{"kind": "text", "text": directive.message}],
            "pauseSeconds": directive.pause_seconds,
        }
        return self._serialize([action])

    def validate_webhook(
        self,
        url: str,
        params: Mapping[str, str],
        headers: Mapping[str, str],
    ) -> bool:
        """Compare the shared-secret header configured on the event subscription."""
        provided = self._header(headers, SECRET_HEADER)
        if not provided or not self._webhook_secret:
            return False
        return hmac.compare_digest(provided, self._webhook_secret)

    @staticmethod
    def _serialize(actions: list) -> str:
        return json.dumps({"actions": actions}, separators=(",", ":"))
