from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from twilio.request_validator import RequestValidator

from .config import Settings


@dataclass(frozen=True)
class WebhookVerification:
    verified: bool
    reason: str | None = None


def _normalize_header_value(headers: Mapping[str, str], key: str) -> str | None:
    value = headers.get(key)
    if value is None:
        lowered_key = key.lower()
        for header_key, header_value in headers.items():
            if header_key.lower() == lowered_key:
                value = header_value
                break
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


def public_webhook_url(*, settings: Settings, request_url: str, path: str, query: str) -> str:
    """URL Twilio signed; rebuilt from the configured base when behind a proxy."""
    base = settings.twilio_webhook_base_url.strip().rstrip("/")
    if not base:
        return request_url
    url = f"{base}{path}"
    return f"{url}?{query}" if query else url


def verify_twilio_signature(
    *,
    settings: Settings,
    url: str,
    form_data: Mapping[str, str],
    headers: Mapping[str, str],
) -> WebhookVerification:
    mode = settings.twilio_webhook_signature_mode
    if mode == "off":
        return WebhookVerification(verified=True)

    auth_token = settings.twilio_auth_token.strip()
    if not auth_token:
        return WebhookVerification(verified=False, reason="twilio_auth_token_missing")

    provided = _normalize_header_value(headers, "X-Twilio-Signature")
    if provided is None:
        return WebhookVerification(verified=False, reason="signature_missing")

    validator = RequestValidator(auth_token)
    if not validator.validate(url, dict(form_data), provided):
        return WebhookVerification(verified=False, reason="signature_mismatch")

    return WebhookVerification(verified=True)
