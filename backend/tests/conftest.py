"""
CallRoute - Test Configuration and Fixtures

Shared fixtures for all test modules.
"""

import asyncio
import os
import sys
from typing import Callable, Generator, Optional

import pytest
from fastapi.testclient import TestClient

# Ensure backend package is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.config import DEFAULT_SEED_PATH, Settings
from app.core.audit import AuditWriter, InMemoryAlertSink, InMemoryAuditLog
from app.core.catalog import RoutingCatalog, load_routing_catalog
from app.core.control_documents import Capability
from app.core.engine import RoutingEngine
from app.core.handoff import HandoffContextBuilder
from app.core.types import (
    CallFlowVersion,
    CallSession,
    Classification,
    Level,
    Tenant,
    TenantPolicy,
)
from app.services.classifier import KeywordIntentClassifier
from app.services.human_queue import InMemoryHumanQueue
from app.telephony.providers import AcsAdapter, TwilioAdapter
from app.telephony.providers.base import ProviderAdapter


ACTION_URL = "https://edge.example.com/v1/voice/route"
STREAM_URL = "wss://orchestrator.example.com/stream"


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")


# =============================================================================
# Fake Collaborators
# =============================================================================

class FixedClassifier:
    """Classifier returning a preset result for every utterance."""

    def __init__(self, confidence: Optional[float], intent: Optional[str] = None):
        self.confidence = confidence
        self.intent = intent
        self.calls = 0

    @property
    def classifier_id(self) -> str:
        return "fixed"

    async def classify(self, text: str, flow: CallFlowVersion, level: Level) -> Classification:
        self.calls += 1
        return Classification(intent=self.intent, confidence=self.confidence, source=self.classifier_id)

    async def close(self) -> None:
        pass


class SlowClassifier:
    """Classifier that never answers within any sensible timeout."""

    def __init__(self, delay_seconds: float = 30.0):
        self.delay_seconds = delay_seconds
        self.started = asyncio.Event()
        self.cancelled = False

    @property
    def classifier_id(self) -> str:
        return "slow"

    async def classify(self, text: str, flow: CallFlowVersion, level: Level) -> Classification:
        self.started.set()
        try:
            await asyncio.sleep(self.delay_seconds)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return Classification(intent=None, confidence=0.99, source=self.classifier_id)

    async def close(self) -> None:
        pass


class FailingClassifier:
    @property
    def classifier_id(self) -> str:
        return "failing"

    async def classify(self, text: str, flow: CallFlowVersion, level: Level) -> Classification:
        raise RuntimeError("classifier backend unavailable")

    async def close(self) -> None:
        pass


class FlakyAuditLog(InMemoryAuditLog):
    """Audit log whose first `failures` writes raise."""

    def __init__(self, failures: int):
        super().__init__(max_events=100)
        self.failures = failures
        self.attempts = 0

    async def append_event(self, event) -> None:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ConnectionError("audit store unavailable")
        await super().append_event(event)


class BrokenHandoffBuilder(HandoffContextBuilder):
    """Handoff builder that fails on every summary."""

    def build(self, session, tenant):
        raise RuntimeError("summary store unavailable")


async def no_sleep(_: float) -> None:
    return None


# =============================================================================
# Settings Fixtures
# =============================================================================

@pytest.fixture
def test_settings() -> Settings:
    """
    Create test settings with safe defaults.

    Short classification timeout and no audit backoff keep tests fast.
    """
    return Settings(
        app_env="testing",
        app_debug=True,
        app_log_level="WARNING",  # Reduce noise in tests
        telephony_provider="twilio",
        public_base_url="https://edge.example.com",
        stream_base_url=STREAM_URL,
        classifier_backend="keyword",
        classification_timeout_seconds=0.2,
        routing_seed_path=DEFAULT_SEED_PATH,
        audit_backoff_base_seconds=0.0,
        validate_webhook_signatures=False,
    )


@pytest.fixture
def catalog() -> RoutingCatalog:
    return load_routing_catalog(DEFAULT_SEED_PATH)


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture
def tenant() -> Tenant:
    return Tenant(
        tenant_id="tnt_bistro",
        name="Bistro Verde",
        default_flow_version="v2",
        time_zone="America/New_York",
        policies=(
            TenantPolicy(
                name="allergy_uncertainty",
                trigger_phrases=("allergy", "allergic", "gluten", "peanut"),
                trigger_intents=("allergy_question",),
            ),
        ),
    )


@pytest.fixture
def flow() -> CallFlowVersion:
    return CallFlowVersion(
        tenant_id="tnt_bistro",
        version="v2",
        prompt="Hi, thanks for calling Bistro Verde. Say reservation, order, hours, or menu.",
        hints=("reservation", "order", "hours", "menu"),
        gather_timeout_seconds=3,
        t1=0.7,
        t2=0.6,
        keyword_triggers=("human", "agent", "manager"),
        max_attempts=3,
        dtmf_intents=(("1", "reservation"), ("2", "order"), ("0", "human")),
        human_queue="level3_support",
        wait_url="/v1/voice/queue",
    )


# =============================================================================
# Collaborator Fixtures
# =============================================================================

@pytest.fixture
def audit_log() -> InMemoryAuditLog:
    return InMemoryAuditLog(max_events=100)


@pytest.fixture
def alerts() -> InMemoryAlertSink:
    return InMemoryAlertSink()


@pytest.fixture
def audit_writer(audit_log: InMemoryAuditLog, alerts: InMemoryAlertSink) -> AuditWriter:
    return AuditWriter(audit_log, alerts, max_attempts=3, backoff_base_seconds=0.0, sleep=no_sleep)


@pytest.fixture
def human_queue() -> InMemoryHumanQueue:
    return InMemoryHumanQueue()


@pytest.fixture
def twilio_adapter() -> TwilioAdapter:
    return TwilioAdapter(auth_token="test-token")


@pytest.fixture
def acs_adapter() -> AcsAdapter:
    return AcsAdapter(webhook_secret="test-secret")


@pytest.fixture
def streamless_adapter() -> TwilioAdapter:
    """Twilio account without media streams."""
    return TwilioAdapter(capabilities={Capability.GATHER, Capability.ENQUEUE})


# =============================================================================
# Engine Fixtures
# =============================================================================

@pytest.fixture
def make_engine(
    flow: CallFlowVersion,
    tenant: Tenant,
    twilio_adapter: TwilioAdapter,
    audit_writer: AuditWriter,
    human_queue: InMemoryHumanQueue,
) -> Callable[..., RoutingEngine]:
    """
    Factory for routing engines with test collaborators.

    Keyword arguments override collaborators, the flow or the timeout.
    """

    def _make(
        classifier=None,
        adapter: Optional[ProviderAdapter] = None,
        call_flow: Optional[CallFlowVersion] = None,
        timeout: float = 0.2,
        call_id: str = "CA0000000000000001",
        audit: Optional[AuditWriter] = None,
        handoff_builder: Optional[HandoffContextBuilder] = None,
    ) -> RoutingEngine:
        call_flow = call_flow or flow
        session = CallSession(
            call_id=call_id,
            session_id="ses_0123456789abcdef",
            tenant_id=tenant.tenant_id,
            flow=call_flow,
            provider=(adapter or twilio_adapter).name,
            caller_masked="***34",
        )
        return RoutingEngine(
            session=session,
            tenant=tenant,
            adapter=adapter or twilio_adapter,
            classifier=classifier or KeywordIntentClassifier(),
            audit=audit or audit_writer,
            handoff_builder=handoff_builder or HandoffContextBuilder(max_chars=500, max_turns=6),
            human_queue=human_queue,
            action_url=ACTION_URL,
            stream_base_url=STREAM_URL,
            classification_timeout_seconds=timeout,
        )

    return _make


@pytest.fixture
def engine(make_engine) -> RoutingEngine:
    return make_engine()


# =============================================================================
# FastAPI App Fixture
# =============================================================================

@pytest.fixture
def app(test_settings: Settings):
    """Create a FastAPI app instance with test settings."""
    # Import here to avoid circular imports
    from main import create_app

    return create_app(test_settings)


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    """Create a test client for the FastAPI app."""
    with TestClient(app) as c:
        yield c
