from __future__ import annotations

import json
import logging
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol
from uuid import uuid4

from .message_log import AgencyRecord, MessageLogRecord, MessageLogRepository
from .models import DeliveryAttemptStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryAttempt:
    status: DeliveryAttemptStatus
    attempted_at: datetime
    message: MessageLogRecord
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class DeliverySendError(RuntimeError):
    """Raised when the carrier rejects or never receives an outbound message.

    The outbound message log row is written before this is raised.
    """

    def __init__(self, error_code: str, message: str, *, attempt: DeliveryAttempt | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.attempt = attempt


class OutboundMessenger(Protocol):
    def send_sms(self, *, agency: AgencyRecord, to_phone: str, body: str) -> DeliveryAttempt: ...


class StubOutboundMessenger:
    """Messenger for local runs and tests: records the attempt, sends nothing."""

    def __init__(self, *, repository: MessageLogRepository, enabled: bool = True) -> None:
        self._repository = repository
        self._enabled = enabled

    def send_sms(self, *, agency: AgencyRecord, to_phone: str, body: str) -> DeliveryAttempt:
        attempted_at = datetime.now(timezone.utc)

        if not self._enabled:
            message = self._repository.append_outbound(
                agency_id=agency.agency_id,
                from_phone=agency.sms_phone_number,
                to_phone=to_phone,
                body=body,
                provider_message_id=None,
                delivery_state="failed",
            )
            logger.info("stub messenger disabled; dropped sms to %s", mask_phone(to_phone))
            return DeliveryAttempt(
                status="failed",
                attempted_at=attempted_at,
                message=message,
                error_code="messenger_disabled",
                error_message="outbound delivery is disabled",
            )

        provider_message_id = f"stub-{uuid4().hex[:20]}"
        message = self._repository.append_outbound(
            agency_id=agency.agency_id,
            from_phone=agency.sms_phone_number,
            to_phone=to_phone,
            body=body,
            provider_message_id=provider_message_id,
            delivery_state="sent",
        )
        return DeliveryAttempt(
            status="sent",
            attempted_at=attempted_at,
            message=message,
            provider_message_id=provider_message_id,
        )


class TelnyxHttpMessenger:
    """Sends SMS through the Telnyx v2 messages API."""

    def __init__(
        self,
        *,
        repository: MessageLogRepository,
        base_url: str,
        api_key: str,
        timeout_seconds: int = 30,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._repository = repository
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._timeout_seconds = timeout_seconds

    def send_sms(self, *, agency: AgencyRecord, to_phone: str, body: str) -> DeliveryAttempt:
        attempted_at = datetime.now(timezone.utc)
        request_payload = {
            "from": agency.sms_phone_number,
            "to": to_phone,
            "text": body,
        }

        try:
            response_data = self._post(request_payload)
        except DeliverySendError as exc:
            logger.error(
                "sms send failed for agency %s to %s: %s",
                agency.agency_id,
                mask_phone(to_phone),
                exc.message,
            )
            message = self._repository.append_outbound(
                agency_id=agency.agency_id,
                from_phone=agency.sms_phone_number,
                to_phone=to_phone,
                body=body,
                provider_message_id=None,
                delivery_state="failed",
            )
            exc.attempt = DeliveryAttempt(
                status="failed",
                attempted_at=attempted_at,
                message=message,
                error_code=exc.error_code,
                error_message=exc.message,
            )
            raise

        data = response_data.get("data") if isinstance(response_data, dict) else None
        provider_message_id = data.get("id") if isinstance(data, dict) else None
        message = self._repository.append_outbound(
            agency_id=agency.agency_id,
            from_phone=agency.sms_phone_number,
            to_phone=to_phone,
            body=body,
            provider_message_id=provider_message_id,
            delivery_state="sent",
        )
        return DeliveryAttempt(
            status="sent",
            attempted_at=attempted_at,
            message=message,
            provider_message_id=provider_message_id,
        )

    def _post(self, body: dict[str, str]) -> dict[str, Any]:
        """Send a POST request to the Telnyx messages endpoint."""
        url = f"{self._base_url}/v2/messages"
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise DeliverySendError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise DeliverySendError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise DeliverySendError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        except ValueError as exc:
            raise DeliverySendError(
                error_code="invalid_response",
                message=f"Unreadable provider response: {exc}",
            ) from exc


def mask_phone(phone: str) -> str:
    normalized = phone.strip()
    if not normalized:
        return "***"
    digits = "".join(ch for ch in normalized if ch.isdigit())
    if len(digits) >= 4:
        return f"***{digits[-4:]}"
    return "*" * len(normalized)


def create_outbound_messenger(
    *,
    messenger_type: str,
    repository: MessageLogRepository,
    enabled: bool,
    base_url: str = "",
    api_key: str = "",
    timeout_seconds: int = 30,
) -> OutboundMessenger:
    normalized = messenger_type.strip().lower()
    if normalized == "telnyx":
        return TelnyxHttpMessenger(
            repository=repository,
            base_url=base_url,
            api_key=api_key,
            timeout_seconds=timeout_seconds,
        )
    if normalized == "stub":
        return StubOutboundMessenger(repository=repository, enabled=enabled)
    raise RuntimeError(f"unsupported MESSENGER_TYPE: {messenger_type}")
