"""
CallRoute - Twilio Provider Adapter

Renders control documents as TwiML:

    L1  <Gather input="speech dtmf" ...><Say>prompt</Say></Gather><Redirect/>
    L2  <Connect><Stream url="wss://...?tenant=..&session=.."/></Connect>
    L3  <Enqueue waitUrl="...">queue</Enqueue>  or  <Dial>number</Dial>
    hold  <Say>message</Say><Pause/>  (Twilio re-requests the waitUrl when it ends)

The Redirect after Gather makes a silent caller come back to the route
webhook as an empty turn instead of dropping out of the flow.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from typing import Iterable, Mapping, Optional
from xml.etree.ElementTree import Element, SubElement, tostring

from app.core.control_documents import (
    Capability,
    EnqueueDirective,
    GatherDirective,
    HoldDirective,
    StreamDirective,
)
from .base import ProviderAdapter

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'
SIGNATURE_HEADER = "X-Twilio-Signature"


class TwilioAdapter(ProviderAdapter):
    """TwiML markup adapter."""

    def __init__(
        self,
        auth_token: str = "",
        capabilities: Optional[Iterable[Capability]] = None,
    ):
        super().__init__(capabilities if capabilities is not None else set(Capability))
        self._auth_token = auth_token

    @property
    def name(self) -> str:
        return "twilio"

    @property
    def media_type(self) -> str:
        return "application/xml"

    def render_gather(self, directive: GatherDirective) -> str:
        response = Element("Response")

        attrs = {
            "input": " ".join(directive.input_modes),
            "action": directive.action_url,
            "method": "POST",
            "timeout": str(directive.timeout_seconds),
        }
        if directive.hints:
            attrs["hints"] = ",".join(directive.hints)

        gather = SubElement(response, "Gather", attrs)
        say = SubElement(gather, "Say")
        say.text = directive.prompt

        redirect = SubElement(response, "Redirect", {"method": "POST"})
        redirect.text = directive.action_url

        return self._serialize(response)

    def render_stream(self, directive: StreamDirective) -> str:
        response = Element("Response")
        connect = SubElement(response, "Connect")
        SubElement(connect, "Stream", {"url": directive.url})
        return self._serialize(response)

    def render_enqueue(self, directive: EnqueueDirective) -> str:
        response = Element("Response")

        if directive.dial_number:
            dial = SubElement(response, "Dial")
            dial.text = directive.dial_number
        else:
            enqueue = SubElement(response, "Enqueue", {"waitUrl": directive.wait_url})
            enqueue.text = directive.queue_name

        return self._serialize(response)

    def render_hold(self, directive: HoldDirective) -> str:
        response = Element("Response")
        say = SubElement(response, "Say")
        say.text = directive.message
        SubElement(response, "Pause", {"length": str(directive.pause_seconds)})
        return self._serialize(response)

    def validate_webhook(
        self,
        url: str,
        params: Mapping[str, str],
        headers: Mapping[str, str],
    ) -> bool:
        """
        Validate X-Twilio-Signature.

        Twilio signs the full URL followed by every POST parameter name and
        value, sorted by name, with HMAC-SHA1 keyed by the account auth token.
        """
        signature = self._header(headers, SIGNATURE_HEADER)
        if not signature or not self._auth_token:
            return False

        expected = compute_twilio_signature(self._auth_token, url, params)
        return hmac.compare_digest(expected, signature)

    @staticmethod
    def _serialize(root: Element) -> str:
        return XML_DECLARATION + tostring(root, encoding="unicode")


def compute_twilio_signature(auth_token: str, url: str, params: Mapping[str, str]) -> str:
    """Compute the base64 HMAC-SHA1 request signature Twilio would send."""
    payload = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), payload.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")
