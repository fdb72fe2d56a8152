from __future__ import annotations

import hmac
import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request

from .config import Settings, get_settings
from .conversation_manager import ConversationManager
from .conversation_policy import session_expired
from .jobs import process_inbound_message_job
from .message_log import (
    AgencyRecord,
    MessageLogRepository,
    NotFoundError,
    create_message_log_repository,
)
from .messenger import OutboundMessenger, create_outbound_messenger, mask_phone
from .models import (
    AgencyItem,
    AgencyUpsertRequest,
    AuditEventItem,
    AuditEventListResponse,
    ConversationSessionItem,
    ConversationSessionListResponse,
    DeliveryStatusWebhookResponse,
    HealthResponse,
    InboundWebhookResponse,
    normalize_e164,
)
from .sessions import ConversationSessionRecord, SessionStore, create_session_store
from .webhook_security import public_webhook_url, verify_twilio_signature

logger = logging.getLogger(__name__)

DELIVERY_STATUS_EVENT = "twilio.delivery_status"
MAX_DELIVERY_STATE_LENGTH = 32

_settings = get_settings()
router = APIRouter(prefix=_settings.api_prefix, tags=["covertext"])


def _create_message_log_repo(settings: Settings) -> MessageLogRepository:
    return create_message_log_repository(
        backend=settings.conversation_store_backend,
        database_url=settings.database_url,
    )


def _create_session_store(settings: Settings) -> SessionStore:
    return create_session_store(
        backend=settings.conversation_store_backend,
        database_url=settings.database_url,
    )


def _create_messenger(settings: Settings, repository: MessageLogRepository) -> OutboundMessenger:
    return create_outbound_messenger(
        messenger_type=settings.messenger_type,
        repository=repository,
        enabled=settings.messenger_enabled,
        base_url=settings.telnyx_api_base_url,
        api_key=settings.telnyx_api_key,
        timeout_seconds=settings.telnyx_timeout_seconds,
    )


def _create_manager(
    settings: Settings,
    *,
    sessions: SessionStore,
    repository: MessageLogRepository,
    messenger: OutboundMessenger,
) -> ConversationManager:
    return ConversationManager(
        sessions=sessions,
        message_log=repository,
        messenger=messenger,
        session_expiry=timedelta(minutes=settings.conversation_session_expiry_minutes),
        menu_rate_limit=timedelta(seconds=settings.conversation_menu_rate_limit_seconds),
    )


message_log_repo: MessageLogRepository = _create_message_log_repo(_settings)
session_store: SessionStore = _create_session_store(_settings)
outbound_messenger: OutboundMessenger = _create_messenger(_settings, message_log_repo)
conversation_manager: ConversationManager = _create_manager(
    _settings,
    sessions=session_store,
    repository=message_log_repo,
    messenger=outbound_messenger,
)


def configure_runtime(settings: Settings | None = None) -> None:
    """Rebuild the module-level stores from ``settings`` (fresh env when omitted)."""
    global _settings, message_log_repo, session_store, outbound_messenger, conversation_manager

    _settings = settings or get_settings()
    message_log_repo = _create_message_log_repo(_settings)
    session_store = _create_session_store(_settings)
    outbound_messenger = _create_messenger(_settings, message_log_repo)
    conversation_manager = _create_manager(
        _settings,
        sessions=session_store,
        repository=message_log_repo,
        messenger=outbound_messenger,
    )


def reset_runtime_state_for_tests() -> None:
    message_log_repo.reset()
    session_store.reset()


def _require_admin(request: Request) -> None:
    configured = _settings.admin_api_token.strip()
    if not configured:
        raise HTTPException(401, "admin api is not configured")
    token = request.headers.get("Authorization", "").removeprefix("Bearer ").strip()
    if not token:
        raise HTTPException(401, "admin token required")
    if not hmac.compare_digest(token, configured):
        raise HTTPException(401, "invalid admin token")


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _twilio_form(request: Request) -> dict[str, str]:
    form = await request.form()
    form_data = {key: str(value) for key, value in form.items()}
    url = public_webhook_url(
        settings=_settings,
        request_url=str(request.url),
        path=request.url.path,
        query=request.url.query,
    )
    verification = verify_twilio_signature(
        settings=_settings,
        url=url,
        form_data=form_data,
        headers=request.headers,
    )
    if not verification.verified:
        if _settings.twilio_webhook_signature_mode == "enforce":
            logger.warning(
                "rejected twilio webhook from %s: %s",
                _client_ip(request),
                verification.reason,
            )
            raise HTTPException(403, "invalid webhook signature")
        logger.warning(
            "twilio webhook signature check failed (%s); accepting in log_only mode",
            verification.reason,
        )
    return form_data


def _as_media_count(value: str | None) -> int:
    if value is None:
        return 0
    try:
        return max(0, int(value.strip()))
    except ValueError:
        return 0


@router.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(
        app_name=_settings.app_name,
        conversation_store_backend=_settings.conversation_store_backend,
        messenger_type=_settings.messenger_type,
    )


@router.post("/webhooks/twilio/inbound", response_model=InboundWebhookResponse)
async def ingest_twilio_inbound(request: Request, background_tasks: BackgroundTasks) -> InboundWebhookResponse:
    form_data = await _twilio_form(request)
    from_phone = normalize_e164(form_data.get("From", ""))
    to_phone = normalize_e164(form_data.get("To", ""))
    message_sid = form_data.get("MessageSid", "").strip()
    if not from_phone or not to_phone or not message_sid:
        raise HTTPException(400, "From, To and MessageSid are required")

    agency = message_log_repo.find_agency_by_sms_number(to_phone)
    if agency is None:
        logger.info("inbound sms for unknown number %s", mask_phone(to_phone))
        raise HTTPException(404, "no agency owns the destination number")

    record, deduped = message_log_repo.register_inbound(
        agency_id=agency.agency_id,
        from_phone=from_phone,
        to_phone=to_phone,
        body=form_data.get("Body", ""),
        provider_message_id=message_sid,
        media_count=_as_media_count(form_data.get("NumMedia")),
    )
    if deduped:
        logger.info("duplicate inbound webhook for %s ignored", message_sid)
        return InboundWebhookResponse(accepted=True, deduped=True, message_id=record.message_id)

    background_tasks.add_task(process_inbound_message_job, record.message_id, manager=conversation_manager)
    return InboundWebhookResponse(accepted=True, deduped=False, message_id=record.message_id)


@router.post("/webhooks/twilio/status", response_model=DeliveryStatusWebhookResponse)
async def ingest_twilio_status(request: Request) -> DeliveryStatusWebhookResponse:
    form_data = await _twilio_form(request)
    message_sid = form_data.get("MessageSid", "").strip()
    message_status = form_data.get("MessageStatus", "").strip().lower()
    if not message_sid or not message_status:
        raise HTTPException(400, "MessageSid and MessageStatus are required")
    if len(message_status) > MAX_DELIVERY_STATE_LENGTH:
        raise HTTPException(400, f"MessageStatus longer than {MAX_DELIVERY_STATE_LENGTH} characters")

    record = message_log_repo.update_delivery_status(
        provider_message_id=message_sid,
        delivery_state=message_status,
    )
    if record is None:
        return DeliveryStatusWebhookResponse(updated=False)

    message_log_repo.record_audit_event(
        agency_id=record.agency_id,
        event_type=DELIVERY_STATUS_EVENT,
        metadata={
            "message_sid": message_sid,
            "message_status": message_status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )
    return DeliveryStatusWebhookResponse(
        updated=True,
        message_id=record.message_id,
        delivery_state=record.delivery_state,
    )


@router.put("/admin/agencies/{agency_id}", response_model=AgencyItem)
def upsert_agency(agency_id: str, payload: AgencyUpsertRequest, request: Request) -> AgencyItem:
    _require_admin(request)
    normalized_id = agency_id.strip()
    if not normalized_id:
        raise HTTPException(400, "agency_id is required")
    for existing in message_log_repo.list_agencies():
        if existing.sms_phone_number == payload.sms_phone_number and existing.agency_id != normalized_id:
            raise HTTPException(409, f"sms number already assigned to agency {existing.agency_id}")
    record = message_log_repo.upsert_agency(
        agency_id=normalized_id,
        name=payload.name,
        sms_phone_number=payload.sms_phone_number,
        active=payload.active,
    )
    return _to_agency_item(record)


@router.get("/admin/agencies/{agency_id}/sessions", response_model=ConversationSessionListResponse)
def list_agency_sessions(
    agency_id: str,
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
) -> ConversationSessionListResponse:
    _require_admin(request)
    _get_agency_or_404(agency_id)
    now = datetime.now(timezone.utc)
    records = session_store.list_sessions(agency_id=agency_id, limit=limit)
    return ConversationSessionListResponse(items=[_to_session_item(value, now=now) for value in records])


@router.get("/admin/agencies/{agency_id}/audit-events", response_model=AuditEventListResponse)
def list_agency_audit_events(
    agency_id: str,
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
) -> AuditEventListResponse:
    _require_admin(request)
    _get_agency_or_404(agency_id)
    events = message_log_repo.list_audit_events(agency_id=agency_id, limit=limit)
    return AuditEventListResponse(
        items=[
            AuditEventItem(
                event_id=event.event_id,
                agency_id=event.agency_id,
                event_type=event.event_type,
                metadata=event.metadata,
                created_at=event.created_at,
            )
            for event in events
        ]
    )


def _get_agency_or_404(agency_id: str) -> AgencyRecord:
    try:
        return message_log_repo.get_agency(agency_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"agency not found: {agency_id}") from exc


def _to_agency_item(record: AgencyRecord) -> AgencyItem:
    return AgencyItem(
        agency_id=record.agency_id,
        name=record.name,
        sms_phone_number=record.sms_phone_number,
        active=record.active,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _to_session_item(record: ConversationSessionRecord, *, now: datetime) -> ConversationSessionItem:
    return ConversationSessionItem(
        session_id=record.session_id or "",
        agency_id=record.agency_id,
        from_phone_masked=mask_phone(record.from_phone_e164),
        state=record.state,
        context=record.context.to_dict(),
        last_activity_at=record.last_activity_at,
        expires_at=record.expires_at,
        expired=session_expired(record, now=now),
        created_at=record.created_at or now,
        updated_at=record.updated_at or now,
    )
