from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

ConversationState = Literal["awaiting_intent_selection"]
ConversationEvent = Literal["inbound_message"]
MessageDirection = Literal["inbound", "outbound"]
MenuTemplateKey = Literal["global.menu", "global.menu_short"]
DeliveryAttemptStatus = Literal["sent", "failed"]

CONVERSATION_STATES: frozenset[str] = frozenset({"awaiting_intent_selection"})

_E164_RE = re.compile(r"^\+[1-9]\d{1,14}$")


def normalize_e164(value: str) -> str:
    """Strip formatting from a phone number, keeping the leading ``+`` and digits.

    Bare 10-digit numbers are treated as North American numbers.
    """
    stripped = value.strip()
    digits = "".join(ch for ch in stripped if ch.isdigit())
    if not digits:
        return stripped
    if not stripped.startswith("+") and len(digits) == 10:
        return f"+1{digits}"
    return f"+{digits}"


def is_e164(value: str) -> bool:
    return bool(_E164_RE.match(value))


class InboundWebhookResponse(BaseModel):
    accepted: bool
    deduped: bool
    message_id: str | None = None


class DeliveryStatusWebhookResponse(BaseModel):
    updated: bool
    message_id: str | None = None
    delivery_state: str | None = None


class AgencyUpsertRequest(BaseModel):
    name: str = Field(min_length=1, max_length=256)
    sms_phone_number: str = Field(min_length=2, max_length=32)
    active: bool = True

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("name cannot be blank")
        return normalized

    @field_validator("sms_phone_number")
    @classmethod
    def _normalize_phone(cls, value: str) -> str:
        normalized = normalize_e164(value)
        if not is_e164(normalized):
            raise ValueError("sms_phone_number must be an E.164 phone number")
        return normalized


class AgencyItem(BaseModel):
    agency_id: str
    name: str
    sms_phone_number: str
    active: bool
    created_at: datetime
    updated_at: datetime


class ConversationSessionItem(BaseModel):
    session_id: str
    agency_id: str
    from_phone_masked: str
    state: ConversationState | None = None
    context: dict[str, Any]
    last_activity_at: datetime | None = None
    expires_at: datetime | None = None
    expired: bool
    created_at: datetime
    updated_at: datetime


class ConversationSessionListResponse(BaseModel):
    items: list[ConversationSessionItem]


class AuditEventItem(BaseModel):
    event_id: str
    agency_id: str
    event_type: str
    metadata: dict[str, Any]
    created_at: datetime


class AuditEventListResponse(BaseModel):
    items: list[AuditEventItem]


class HealthResponse(BaseModel):
    status: Literal["ok"] = "ok"
    app_name: str
    conversation_store_backend: str
    messenger_type: str
