"""
CallRoute - Intent Classification Service

Provides intent + confidence for a caller turn. The routing engine compares
the confidence against the flow's T1 (L1 -> L2) and T2 (stay in L2)
thresholds.

Architecture:
    - Protocol defines the interface for classifiers
    - KeywordIntentClassifier: deterministic hint matching (default)
    - HttpIntentClassifier: external AI classifier reached over HTTP

The engine bounds every call with a timeout; implementations do not need to
handle their own deadline.
"""

from __future__ import annotations

import asyncio
import logging
import re
from abc import abstractmethod
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import httpx

from app.config import Settings
from app.core.exceptions import ClassificationError
from app.core.types import CallFlowVersion, Classification, Level

logger = logging.getLogger(__name__)


# =============================================================================
# Protocol (Interface)
# =============================================================================

@runtime_checkable
class IntentClassifier(Protocol):
    """Protocol for intent classifiers."""

    @property
    @abstractmethod
    def classifier_id(self) -> str:
        """Return classifier identifier."""
        ...

    @abstractmethod
    async def classify(
        self,
        text: str,
        flow: CallFlowVersion,
        level: Level,
    ) -> Classification:
        """
        Classify one caller utterance.

        Args:
            text: Caller speech (or DTMF-mapped intent)
            flow: Active flow configuration (hints are the candidate intents)
            level: Level the call is at

        Returns:
            Classification with intent and confidence in [0, 1]
        """
        ...

    async def close(self) -> None:
        ...


# =============================================================================
# Keyword Implementation (Default)
# =============================================================================

class KeywordIntentClassifier:
    """
    Hint-matching classifier.

    Scores:
        exactly one hint, short utterance   0.95
        exactly one hint                    0.85
        several hints (ambiguous)           0.5
        no hint                             0.2
        empty input                         0.0

    At L2 the agent orchestrator normally reports its own confidence; without
    it any non-empty utterance counts as conversational (0.75).
    """

    SHORT_UTTERANCE_WORDS = 3

    def __init__(self, simulated_latency_ms: float = 0.0):
        self._simulated_latency_ms = simulated_latency_ms

    @property
    def classifier_id(self) -> str:
        return "keyword-v1"

    async def classify(
        self,
        text: str,
        flow: CallFlowVersion,
        level: Level,
    ) -> Classification:
        if self._simulated_latency_ms > 0:
            await asyncio.sleep(self._simulated_latency_ms / 1000)

        words = re.findall(r"[a-z0-9']+", text.lower())
        if not words:
            return Classification(intent=None, confidence=0.0, source=self.classifier_id)

        joined = " ".join(words)
        matched = [hint for hint in flow.hints if _contains_phrase(joined, hint.lower())]

        if level == Level.L2:
            intent = matched[0] if matched else None
            return Classification(intent=intent, confidence=0.75, source=self.classifier_id)

        if len(matched) == 1:
            confidence = 0.95 if len(words) <= self.SHORT_UTTERANCE_WORDS else 0.85
            return Classification(intent=matched[0], confidence=confidence, source=self.classifier_id)

        if len(matched) > 1:
            return Classification(intent=matched[0], confidence=0.5, source=self.classifier_id)

        return Classification(intent=None, confidence=0.2, source=self.classifier_id)

    async def close(self) -> None:
        pass


def _contains_phrase(text: str, phrase: str) -> bool:
    return re.search(rf"\b{re.escape(phrase)}\b", text) is not None


# =============================================================================
# HTTP Implementation
# =============================================================================

class HttpIntentClassifier:
    """
    Classifier backed by an external AI service.

    Request:  POST {url} {"text", "tenant_id", "flow_version", "level", "hints"}
    Response: {"intent": str | null, "confidence": float}
    """

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not url:
            raise ValueError("classifier_url must be set for the http classifier")
        self._url = url
        self._client = httpx.AsyncClient(
            timeout=timeout_seconds,
            limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
            transport=transport,
        )

    @property
    def classifier_id(self) -> str:
        return "http"

    async def classify(
        self,
        text: str,
        flow: CallFlowVersion,
        level: Level,
    ) -> Classification:
        payload = {
            "text": text,
            "tenant_id": flow.tenant_id,
            "flow_version": flow.version,
            "level": level.value,
            "hints": list(flow.hints),
        }

        try:
            response = await self._client.post(self._url, json=payload)
            response.raise_for_status()
            body: Dict[str, Any] = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ClassificationError(f"Classifier request failed: {type(e).__name__}")

        confidence = _parse_confidence(body.get("confidence"))
        if confidence is None:
            raise ClassificationError("Classifier returned no usable confidence")

        return Classification(
            intent=body.get("intent"),
            confidence=confidence,
            source=self.classifier_id,
        )

    async def close(self) -> None:
        await self._client.aclose()


def _parse_confidence(value: Any) -> Optional[float]:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return None
    if not 0.0 <= confidence <= 1.0:
        return None
    return confidence


# =============================================================================
# Factory Function
# =============================================================================

def create_intent_classifier(settings: Settings) -> IntentClassifier:
    """
    Select the classifier implementation from settings.

    - classifier_backend="keyword": KeywordIntentClassifier (default)
    - classifier_backend="http": HttpIntentClassifier at classifier_url

    Misconfiguration falls back to the keyword classifier.
    """
    backend = settings.classifier_backend.lower()

    if backend == "http":
        try:
            classifier = HttpIntentClassifier(
                url=settings.classifier_url,
                timeout_seconds=settings.classification_timeout_seconds + 1.0,
            )
            logger.info("Using HttpIntentClassifier")
            return classifier
        except ValueError as e:
            logger.error(
                "Failed to initialize HttpIntentClassifier: %s. "
                "Falling back to KeywordIntentClassifier.",
                str(e),
            )

    logger.info("Using KeywordIntentClassifier")
    return KeywordIntentClassifier()
