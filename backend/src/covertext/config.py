from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "CoverText Conversations"
    api_prefix: str = "/api/v1"
    database_url: str = ""
    conversation_store_backend: str = "inmemory"
    conversation_session_expiry_minutes: int = 15
    conversation_menu_rate_limit_seconds: int = 60
    messenger_type: str = "stub"
    messenger_enabled: bool = True
    telnyx_api_base_url: str = "https://api.telnyx.com"
    telnyx_api_key: str = ""
    telnyx_timeout_seconds: int = 30
    twilio_webhook_signature_mode: str = "log_only"
    twilio_auth_token: str = ""
    twilio_webhook_base_url: str = ""
    admin_api_token: str = ""
    runtime_secret_guard_mode: str = "warn"
    log_level: str = "INFO"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("COVERTEXT_APP_NAME", "CoverText Conversations"),
        api_prefix=os.getenv("COVERTEXT_API_PREFIX", "/api/v1"),
        database_url=os.getenv("DATABASE_URL", ""),
        conversation_store_backend=os.getenv("CONVERSATION_STORE_BACKEND", "inmemory"),
        conversation_session_expiry_minutes=_as_int(os.getenv("CONVERSATION_SESSION_EXPIRY_MINUTES"), 15),
        conversation_menu_rate_limit_seconds=_as_int(os.getenv("CONVERSATION_MENU_RATE_LIMIT_SECONDS"), 60),
        messenger_type=_normalize_mode(
            os.getenv("MESSENGER_TYPE"),
            default="stub",
            allowed={"stub", "telnyx"},
        ),
        messenger_enabled=_as_bool(os.getenv("MESSENGER_ENABLED"), True),
        telnyx_api_base_url=os.getenv("TELNYX_API_BASE_URL", "https://api.telnyx.com"),
        telnyx_api_key=os.getenv("TELNYX_API_KEY", ""),
        telnyx_timeout_seconds=_as_int(os.getenv("TELNYX_TIMEOUT_SECONDS"), 30),
        twilio_webhook_signature_mode=_normalize_mode(
            os.getenv("TWILIO_WEBHOOK_SIGNATURE_MODE"),
            default="log_only",
            allowed={"off", "log_only", "enforce"},
        ),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_webhook_base_url=os.getenv("TWILIO_WEBHOOK_BASE_URL", ""),
        admin_api_token=os.getenv("ADMIN_API_TOKEN", ""),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
        log_level=_normalize_mode(
            os.getenv("LOG_LEVEL"),
            default="info",
            allowed={"debug", "info", "warning", "error", "critical"},
        ).upper(),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(
        settings.admin_api_token,
        defaults={"dev-admin-token", "change-me-in-production", "admin"},
    ):
        issues.append("ADMIN_API_TOKEN is empty or uses a placeholder value")
    if settings.twilio_webhook_signature_mode == "enforce" and not settings.twilio_auth_token.strip():
        issues.append("TWILIO_AUTH_TOKEN is required when TWILIO_WEBHOOK_SIGNATURE_MODE=enforce")
    if settings.messenger_type == "telnyx" and not settings.telnyx_api_key.strip():
        issues.append("TELNYX_API_KEY is required when MESSENGER_TYPE=telnyx")
    if settings.conversation_store_backend.strip().lower() == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when CONVERSATION_STORE_BACKEND=postgres")
    if settings.conversation_session_expiry_minutes <= 0:
        issues.append("CONVERSATION_SESSION_EXPIRY_MINUTES must be positive")
    if settings.conversation_menu_rate_limit_seconds < 0:
        issues.append("CONVERSATION_MENU_RATE_LIMIT_SECONDS must not be negative")
    return tuple(issues)
