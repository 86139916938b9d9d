"""
CallRoute - Call Routing Service

Central orchestration layer between the webhook endpoints and the per-call
routing engines. This is the single entry point for inbound, turn and status
webhooks from every telephony provider.

Architecture:
    Inbound call:
    1. NUMBER STAGE: Number Registry resolves the dialed number to its binding
    2. CONFIG STAGE: Flow Resolver loads the tenant and its flow version
    3. SESSION STAGE: A RoutingEngine is created and registered for the call
    4. OUTPUT STAGE: The engine renders the initial L1 document

    Any failure in stages 1-3 (unknown number, missing configuration, call
    limit) produces the generic fallback document instead, plus an alert.
    The caller always gets a valid response.

    Turns and status callbacks are forwarded to the call's engine.

Usage:
    from app.core.routing import create_routing_service
    from app.config import get_settings

    service = create_routing_service(get_settings())
    await service.startup()

    rendered = await service.handle_inbound("CA123", "+14155550100", "+14155551234")
    rendered = await service.handle_turn("CA123", TurnInput(speech_text="reservation"))
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from app.config import Settings
from app.core.audit import AlertSink, AuditWriter, InMemoryAlertSink, create_audit_log
from app.core.catalog import RoutingCatalog, load_routing_catalog
from app.core.control_documents import (
    absolute_url,
    fallback_control_document,
    hold_control_document,
)
from app.core.engine import RoutingEngine
from app.core.exceptions import (
    CallLimitError,
    ConfigurationMissing,
    InvalidNumberError,
    UnknownProviderError,
)
from app.core.flow_resolver import FlowResolver, InMemoryFlowStore
from app.core.handoff import HandoffContextBuilder
from app.core.logging import LogContext, mask_call_id
from app.core.number_registry import NumberRegistry
from app.core.types import CallSession, TurnInput
from app.services.classifier import IntentClassifier, create_intent_classifier
from app.services.human_queue import HumanQueue, InMemoryHumanQueue, QueueEntry
from app.services.provisioning import ProvisioningClient, RegistryProvisioningClient
from app.telephony.privacy import mask_phone_number
from app.telephony.providers import ProviderAdapter, RenderedDocument, build_provider_adapters, get_adapter
from app.telephony.session_store import CallSessionStore, generate_session_id

logger = logging.getLogger(__name__)


# Provider call states that end the call (Twilio CallStatus, ACS event names)
TERMINAL_STATUSES = frozenset({
    "completed",
    "failed",
    "busy",
    "no-answer",
    "canceled",
    "disconnected",
    "calldisconnected",
})


class CallRoutingService:
    """
    Coordinates number lookup, flow resolution and per-call engines.

    Attributes:
        registry: Number Registry (read path)
        resolver: Flow Resolver
        adapters: Provider adapters by name
        sessions: Store owning one RoutingEngine per call
    """

    def __init__(
        self,
        registry: NumberRegistry,
        resolver: FlowResolver,
        adapters: Dict[str, ProviderAdapter],
        classifier: IntentClassifier,
        audit: AuditWriter,
        alerts: AlertSink,
        human_queue: HumanQueue,
        sessions: CallSessionStore,
        provisioning: ProvisioningClient,
        settings: Settings,
    ):
        self._registry = registry
        self._resolver = resolver
        self._adapters = adapters
        self._classifier = classifier
        self._audit = audit
        self._alerts = alerts
        self._human_queue = human_queue
        self._sessions = sessions
        self._provisioning = provisioning
        self._settings = settings

        self._default_adapter = get_adapter(adapters, settings.telephony_provider)
        self._handoff_builder = HandoffContextBuilder(
            max_chars=settings.handoff_transcript_max_chars,
            max_turns=settings.handoff_transcript_max_turns,
        )

        logger.info(
            "CallRoutingService initialized: numbers=%d, providers=%s, classifier=%s, default_provider=%s",
            len(registry),
            sorted(adapters),
            classifier.classifier_id,
            self._default_adapter.name,
        )

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def registry(self) -> NumberRegistry:
        return self._registry

    @property
    def resolver(self) -> FlowResolver:
        return self._resolver

    @property
    def default_adapter(self) -> ProviderAdapter:
        return self._default_adapter

    @property
    def sessions(self) -> CallSessionStore:
        return self._sessions

    @property
    def audit(self) -> AuditWriter:
        return self._audit

    @property
    def alerts(self) -> AlertSink:
        return self._alerts

    @property
    def human_queue(self) -> HumanQueue:
        return self._human_queue

    @property
    def provisioning(self) -> ProvisioningClient:
        return self._provisioning

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def handle_inbound(
        self,
        call_id: str,
        to_number: str,
        from_number: Optional[str] = None,
    ) -> RenderedDocument:
        """
        Start routing a new call.

        Idempotent on call_id: a retried inbound webhook gets the current
        document of the existing session.

        Returns:
            Initial L1 document, or the fallback L3 document when the call
            cannot be routed to a tenant
        """
        with LogContext(call_id=call_id):
            existing = await self._sessions.get(call_id)
            if existing is not None:
                logger.info("Inbound webhook retried for existing call %s", mask_call_id(call_id))
                return await existing.current_document()

            try:
                record = self._registry.get(to_number)
                adapter = get_adapter(self._adapters, record.provider)

                tenant = await self._resolver.load_tenant(record.tenant_id)
                flow = await self._resolver.load(record.tenant_id, record.flow_version)
            except InvalidNumberError as e:
                return await self._fallback(call_id, to_number, "invalid_number", e)
            except ConfigurationMissing as e:
                return await self._fallback(call_id, to_number, "configuration_missing", e)
            except UnknownProviderError as e:
                return await self._fallback(call_id, to_number, "unknown_provider", e)

            session = CallSession(
                call_id=call_id,
                session_id=generate_session_id(),
                tenant_id=tenant.tenant_id,
                flow=flow,
                provider=adapter.name,
                caller_masked=mask_phone_number(from_number),
            )

            engine = RoutingEngine(
                session=session,
                tenant=tenant,
                adapter=adapter,
                classifier=self._classifier,
                audit=self._audit,
                handoff_builder=self._handoff_builder,
                human_queue=self._human_queue,
                action_url=self._settings.route_action_url,
                stream_base_url=self._settings.stream_base_url,
                public_base_url=self._settings.public_base_url,
                classification_timeout_seconds=self._settings.classification_timeout_seconds,
            )

            try:
                registered = await self._sessions.register(engine)
            except CallLimitError as e:
                return await self._fallback(call_id, to_number, "call_limit", e)

            if registered is not engine:
                return await registered.current_document()

            return await engine.start()

    async def handle_turn(self, call_id: str, turn: TurnInput) -> RenderedDocument:
        """
        Forward one caller turn to the call's engine.

        Raises:
            CallNotFoundError: Unknown call id
            CallTerminatedError: Call already disconnected
        """
        engine = await self._sessions.get_or_raise(call_id)
        return await engine.process_turn(turn)

    async def handle_status(self, call_id: str, status: str) -> Optional[CallSession]:
        """
        Apply a provider status callback.

        Terminal statuses close the session. Callbacks for unknown calls are
        ignored (providers report statuses for calls that never routed).
        """
        normalized = status.strip().lower()
        engine = await self._sessions.get(call_id)
        if engine is None:
            logger.info(
                "Status callback for unknown call %s: %s",
                mask_call_id(call_id),
                normalized,
            )
            return None

        if normalized not in TERMINAL_STATUSES:
            logger.debug("Non-terminal call status %s for %s", normalized, mask_call_id(call_id))
            return engine.session

        return await engine.disconnect(status=normalized)

    async def handoff(self, call_id: str) -> QueueEntry:
        """
        Enqueue an L3 call for a human.

        Raises:
            CallNotFoundError: Unknown call id
            HandoffNotReadyError: Session is not at L3
        """
        engine = await self._sessions.get_or_raise(call_id)
        return await engine.handoff()

    async def get_session(self, call_id: str) -> CallSession:
        engine = await self._sessions.get_or_raise(call_id)
        return engine.session

    def adapter_for_number(self, to_number: str) -> ProviderAdapter:
        """Adapter of the dialed number, or the default one if it does not resolve."""
        try:
            record = self._registry.get(to_number)
        except InvalidNumberError:
            return self._default_adapter
        return self._adapters.get(record.provider, self._default_adapter)

    async def adapter_for_call(self, call_id: str) -> ProviderAdapter:
        engine = await self._sessions.get(call_id)
        return engine.adapter if engine is not None else self._default_adapter

    async def hold_document(self, call_id: Optional[str], fallback: bool = False) -> RenderedDocument:
        """
        Wait experience for a queued caller, fetched from the wait URL.

        Calls without a routing session (fallback calls) hear the fallback
        message through the default adapter.
        """
        message = self._settings.fallback_hold_message if fallback else self._settings.hold_message
        adapter = await self.adapter_for_call(call_id) if call_id else self._default_adapter
        return adapter.render(hold_control_document(message, self._settings.hold_pause_seconds))

    def apply_catalog(self, catalog: RoutingCatalog) -> None:
        """
        Publish a new catalog: flows, tenants and number bindings.

        Active sessions keep the flow version they resolved at start.
        """
        store = self._resolver.store
        if isinstance(store, InMemoryFlowStore):
            store.replace_all(catalog.tenants, catalog.flows)
        self._registry.replace_all(catalog.phone_numbers)

        stale = self._resolver.cached_tenant_ids | {t.tenant_id for t in catalog.tenants}
        for tenant_id in sorted(stale):
            self._resolver.invalidate(tenant_id)

    # -------------------------------------------------------------------------
    # Fallback
    # -------------------------------------------------------------------------

    async def _fallback(
        self,
        call_id: str,
        to_number: str,
        reason: str,
        error: Exception,
    ) -> RenderedDocument:
        """Generic L3 document for calls that cannot be routed to a tenant."""
        await self._alerts.alert(
            "inbound_fallback",
            f"Inbound call routed to fallback: {error}",
            {
                "reason": reason,
                "call_id": mask_call_id(call_id),
                "number": mask_phone_number(to_number),
            },
        )
        document = fallback_control_document(
            queue_name=self._settings.fallback_queue_name,
            wait_url=absolute_url(self._settings.public_base_url, self._settings.fallback_wait_url),
        )
        return self._default_adapter.render(document)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def startup(self) -> None:
        """Start the session store's cleanup loop."""
        logger.info("Routing service startup")
        await self._sessions.start()

    async def shutdown(self) -> None:
        """Stop sessions and close the classifier."""
        logger.info("Routing service shutdown: cleaning up...")
        await self._sessions.stop()
        await self._classifier.close()
        logger.info("Routing service shutdown complete")


# =============================================================================
# Factory Function
# =============================================================================

def create_routing_service(
    settings: Settings,
    catalog: Optional[RoutingCatalog] = None,
    classifier: Optional[IntentClassifier] = None,
    alerts: Optional[AlertSink] = None,
) -> CallRoutingService:
    """
    Factory function to create a configured CallRoutingService.

    Loads the routing catalog (tenants, flows, numbers) from
    settings.routing_seed_path unless one is passed in, and selects
    collaborator implementations from settings:
    - classifier_backend: "keyword" | "http"
    - enable_audit: in-memory audit log or no-op

    Args:
        settings: Application settings
        catalog: Pre-built catalog (tests, provisioning sync)
        classifier: Override the configured classifier
        alerts: Override the alert sink

    Returns:
        Configured CallRoutingService instance

    Raises:
        ConfigurationError: If the seed file is missing or invalid
    """
    if catalog is None:
        catalog = load_routing_catalog(settings.routing_seed_path)

    registry = NumberRegistry(catalog.phone_numbers)
    resolver = FlowResolver(InMemoryFlowStore(catalog.tenants, catalog.flows))

    if alerts is None:
        alerts = InMemoryAlertSink()

    audit = AuditWriter(
        create_audit_log(settings),
        alerts,
        max_attempts=settings.audit_max_attempts,
        backoff_base_seconds=settings.audit_backoff_base_seconds,
    )

    sessions = CallSessionStore(
        max_sessions=settings.max_concurrent_calls,
        session_ttl_minutes=settings.session_ttl_minutes,
    )

    if classifier is None:
        classifier = create_intent_classifier(settings)

    service = CallRoutingService(
        registry=registry,
        resolver=resolver,
        adapters=build_provider_adapters(settings),
        classifier=classifier,
        audit=audit,
        alerts=alerts,
        human_queue=InMemoryHumanQueue(),
        sessions=sessions,
        provisioning=RegistryProvisioningClient(registry),
        settings=settings,
    )

    logger.info(
        "Routing service configured: classifier=%s, audit=%s, alerts=%s",
        classifier.classifier_id,
        type(audit.audit_log).__name__,
        type(alerts).__name__,
    )
    return service
