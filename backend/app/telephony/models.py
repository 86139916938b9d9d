"""
CallRoute - Telephony Data Models

Pydantic models for webhook requests and API responses.

Webhooks accept both generic snake_case fields and provider field names
(Twilio CallSid / To / From / SpeechResult / Digits / CallStatus, ACS
callConnectionId).
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class WebhookModel(BaseModel):
    """Base for provider webhooks: unknown provider fields are ignored."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class InboundCallRequest(WebhookModel):
    """
    Request body for POST /v1/voice/inbound
    """

    call_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("call_id", "CallSid", "callConnectionId"),
        description="Provider's call ID",
    )
    to_number: str = Field(
        ...,
        validation_alias=AliasChoices("to", "To", "to_number"),
        description="Dialed number (E.164)",
    )
    from_number: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("from", "From", "from_number"),
        description="Caller number",
    )


class RouteRequest(WebhookModel):
    """
    Request body for POST /v1/voice/route

    Both inputs empty is a valid turn (silence after a gather redirect).
    """

    call_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("call_id", "CallSid", "callConnectionId"),
    )
    speech_text: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("speech_text", "SpeechResult", "speechText"),
    )
    dtmf: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("dtmf", "Digits", "tones"),
    )
    confidence: Optional[float] = Field(
        None,
        ge=0.0,
        le=1.0,
        description="Confidence reported by the agent orchestrator (L2)",
    )

    @field_validator("speech_text", "dtmf", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("dtmf")
    @classmethod
    def _valid_digits(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not all(c in "0123456789*#" for c in value):
            raise ValueError("dtmf must contain only 0-9, * and #")
        return value


class StatusUpdateRequest(WebhookModel):
    """
    Request body for POST /v1/voice/status
    """

    call_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("call_id", "CallSid", "callConnectionId"),
    )
    status: str = Field(
        ...,
        validation_alias=AliasChoices("status", "CallStatus", "type"),
    )


class HoldRequest(WebhookModel):
    """
    Request body for the wait URLs (POST /v1/voice/queue, /v1/voice/fallback-wait)

    Twilio posts CallSid plus queue statistics; all fields are optional.
    """

    call_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("call_id", "CallSid", "callConnectionId"),
    )
    queue_position: Optional[int] = Field(
        None,
        validation_alias=AliasChoices("queue_position", "QueuePosition"),
    )


# =============================================================================
# Responses
# =============================================================================

class StatusUpdateResponse(BaseModel):
    status: str = "acknowledged"
    call_state: Optional[str] = None
    resolved_outcome: Optional[str] = None


class EscalationEventResponse(BaseModel):
    from_level: str
    to_level: str
    trigger_reason: str
    timestamp: datetime
    confidence: Optional[float] = None
    detail: Optional[str] = None


class CallSessionResponse(BaseModel):
    """API response for GET /v1/calls/{call_id}."""

    call_id: str
    session_id: str
    tenant_id: str
    flow_version: str
    provider: str
    caller: str
    state: str
    level: str
    attempt_count: int
    degraded: bool
    started_at: datetime
    ended_at: Optional[datetime] = None
    resolved_outcome: Optional[str] = None
    last_intent: Optional[str] = None
    events: List[EscalationEventResponse] = Field(default_factory=list)
    handoff: Optional[Dict[str, Any]] = None

    @classmethod
    def from_session(cls, data: Dict[str, Any]) -> "CallSessionResponse":
        return cls.model_validate(data)


class HandoffResponse(BaseModel):
    call_id: str
    queue_name: str
    enqueued_at: datetime
    summary: Optional[Dict[str, Any]] = None


class PhoneNumberResponse(BaseModel):
    id: str
    number: str
    provider: str
    tenant_id: str
    flow_version: str
    status: str


class PhoneNumberListResponse(BaseModel):
    count: int
    numbers: List[PhoneNumberResponse]
