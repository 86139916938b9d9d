"""
CallRoute - Telephony HTTP Endpoints

HTTP webhooks for telephony provider integration plus the internal call API.

Webhooks respond with a provider control document (TwiML or ACS JSON). Both
JSON and form-encoded (Twilio default) bodies are accepted.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Tuple, Type, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import BaseModel, ValidationError

from app.config import Settings
from app.core.exceptions import WebhookSignatureError
from app.core.logging import LogContext, mask_call_id
from app.core.routing import CallRoutingService
from app.core.types import TurnInput
from app.telephony.providers import ProviderAdapter, RenderedDocument
from .models import (
    CallSessionResponse,
    HandoffResponse,
    HoldRequest,
    InboundCallRequest,
    PhoneNumberListResponse,
    PhoneNumberResponse,
    RouteRequest,
    StatusUpdateRequest,
    StatusUpdateResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["voice"])

ModelT = TypeVar("ModelT", bound=BaseModel)


# =============================================================================
# Dependencies
# =============================================================================

def get_routing_service(request: Request) -> CallRoutingService:
    """Dependency to get the routing service from app state."""
    return request.app.state.routing


def get_app_settings(request: Request) -> Settings:
    """Dependency to get settings from app state."""
    return request.app.state.settings


# =============================================================================
# Helpers
# =============================================================================

async def _parse_body(request: Request, model: Type[ModelT]) -> Tuple[ModelT, Dict[str, str]]:
    """
    Parse a JSON or form-encoded webhook body.

    Returns:
        (validated model, form parameters used for signature validation)
    """
    content_type = request.headers.get("content-type", "")
    params: Dict[str, str] = {}

    try:
        if "application/json" in content_type:
            body: Any = await request.json()
        else:
            form = await request.form()
            params = {key: str(value) for key, value in form.items()}
            body = params
        return model.model_validate(body), params
    except ValidationError as e:
        errors = [
            {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]}
            for err in e.errors(include_url=False)
        ]
        logger.warning("Invalid %s: %s", model.__name__, errors)
        raise HTTPException(status_code=422, detail=errors)
    except ValueError as e:
        logger.warning("Unparseable %s body: %s", model.__name__, str(e))
        raise HTTPException(status_code=400, detail="Invalid request body")


def _webhook_url(request: Request, settings: Settings) -> str:
    """URL the provider signed; the public base URL when behind a proxy."""
    if settings.public_base_url:
        url = settings.public_base_url.rstrip("/") + request.url.path
        if request.url.query:
            url = f"{url}?{request.url.query}"
        return url
    return str(request.url)


def _verify_webhook(
    adapter: ProviderAdapter,
    request: Request,
    params: Mapping[str, str],
    settings: Settings,
) -> None:
    if not settings.validate_webhook_signatures:
        return

    if not adapter.validate_webhook(_webhook_url(request, settings), params, request.headers):
        logger.warning(
            "Webhook signature rejected: provider=%s, path=%s",
            adapter.name,
            request.url.path,
        )
        raise WebhookSignatureError(
            "Webhook signature validation failed",
            details={"provider": adapter.name},
        )


def _document_response(rendered: RenderedDocument) -> Response:
    return Response(content=rendered.content, media_type=rendered.media_type)


# =============================================================================
# Webhook Endpoints
# =============================================================================

@router.post(
    "/voice/inbound",
    summary="Handle inbound call",
    description="Webhook for a new inbound call; returns the initial control document.",
)
async def handle_inbound_call(
    request: Request,
    routing: CallRoutingService = Depends(get_routing_service),
    settings: Settings = Depends(get_app_settings),
) -> Response:
    """
    Resolve the dialed number and start routing the call.

    Idempotent: a retried webhook with the same call_id gets the current
    document of the existing session. Unroutable calls get the fallback
    document (still 200, so the caller hears something).
    """
    inbound, params = await _parse_body(request, InboundCallRequest)

    _verify_webhook(routing.adapter_for_number(inbound.to_number), request, params, settings)

    rendered = await routing.handle_inbound(
        call_id=inbound.call_id,
        to_number=inbound.to_number,
        from_number=inbound.from_number,
    )
    return _document_response(rendered)


@router.post(
    "/voice/route",
    summary="Process a caller turn",
    description="Webhook for each caller turn (speech, DTMF or silence); returns the next document.",
)
async def handle_route(
    request: Request,
    routing: CallRoutingService = Depends(get_routing_service),
    settings: Settings = Depends(get_app_settings),
) -> Response:
    turn_request, params = await _parse_body(request, RouteRequest)

    _verify_webhook(await routing.adapter_for_call(turn_request.call_id), request, params, settings)

    rendered = await routing.handle_turn(
        turn_request.call_id,
        TurnInput(
            speech_text=turn_request.speech_text,
            dtmf=turn_request.dtmf,
            confidence=turn_request.confidence,
        ),
    )
    return _document_response(rendered)


@router.post(
    "/voice/status",
    response_model=StatusUpdateResponse,
    summary="Handle call status update",
    description="Provider status callback; terminal statuses close the session.",
)
async def handle_status_update(
    request: Request,
    routing: CallRoutingService = Depends(get_routing_service),
    settings: Settings = Depends(get_app_settings),
) -> StatusUpdateResponse:
    update, params = await _parse_body(request, StatusUpdateRequest)

    _verify_webhook(await routing.adapter_for_call(update.call_id), request, params, settings)

    session = await routing.handle_status(update.call_id, update.status)
    if session is None:
        return StatusUpdateResponse(status="ignored")

    return StatusUpdateResponse(
        call_state=session.state.value,
        resolved_outcome=session.resolved_outcome.value if session.resolved_outcome else None,
    )


@router.post(
    "/voice/queue",
    summary="Queue wait experience",
    description="Wait URL of L3 queue documents; returns the hold document.",
)
async def handle_queue_wait(
    request: Request,
    routing: CallRoutingService = Depends(get_routing_service),
    settings: Settings = Depends(get_app_settings),
) -> Response:
    hold, params = await _parse_body(request, HoldRequest)

    adapter = await routing.adapter_for_call(hold.call_id) if hold.call_id else routing.default_adapter
    _verify_webhook(adapter, request, params, settings)

    return _document_response(await routing.hold_document(hold.call_id))


@router.post(
    "/voice/fallback-wait",
    summary="Fallback wait experience",
    description="Wait URL of the fallback document for calls that could not be routed.",
)
async def handle_fallback_wait(
    request: Request,
    routing: CallRoutingService = Depends(get_routing_service),
    settings: Settings = Depends(get_app_settings),
) -> Response:
    _, params = await _parse_body(request, HoldRequest)

    _verify_webhook(routing.default_adapter, request, params, settings)

    return _document_response(await routing.hold_document(None, fallback=True))


# =============================================================================
# Call Management Endpoints
# =============================================================================

@router.post(
    "/call/{call_id}/handoff",
    response_model=HandoffResponse,
    summary="Hand a call off to a human",
    description="Enqueue an L3 call with its handoff summary. 409 if the call is not at L3.",
)
async def handoff_call(
    call_id: str,
    routing: CallRoutingService = Depends(get_routing_service),
) -> HandoffResponse:
    with LogContext(call_id=call_id):
        entry = await routing.handoff(call_id)
        logger.info("Handoff requested: call=%s, queue=%s", mask_call_id(call_id), entry.queue_name)

    return HandoffResponse(
        call_id=entry.call_id,
        queue_name=entry.queue_name,
        enqueued_at=entry.enqueued_at,
        summary=entry.summary.to_dict() if entry.summary else None,
    )


@router.get(
    "/calls/{call_id}",
    response_model=CallSessionResponse,
    summary="Get call details",
    description="Session state and escalation audit trail for a call.",
)
async def get_call_details(
    call_id: str,
    routing: CallRoutingService = Depends(get_routing_service),
) -> CallSessionResponse:
    session = await routing.get_session(call_id)
    return CallSessionResponse.from_session(session.to_dict())


@router.get(
    "/phone-numbers",
    response_model=PhoneNumberListResponse,
    summary="List phone numbers",
    description="Provisioned numbers and their tenant bindings.",
)
async def list_phone_numbers(
    routing: CallRoutingService = Depends(get_routing_service),
) -> PhoneNumberListResponse:
    records = await routing.provisioning.list_numbers()
    return PhoneNumberListResponse(
        count=len(records),
        numbers=[PhoneNumberResponse(**record) for record in records],
    )
