"""Application configuration loaded from environment variables.

Everything is validated when the process starts (``load_settings``); a bad
secret or malformed window aborts startup instead of failing on first use.
"""

from __future__ import annotations

from datetime import time
from functools import lru_cache
from typing import Any, Literal

from pydantic import ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings

from src.core.crypto import decode_key
from src.core.errors import ConfigurationError
from src.core.timectx import parse_zone

REMINDER_SLOT_NAMES = ("morning", "afternoon", "evening")
PROVIDER_NAMES = ("oura", "whoop", "fitbit")


def parse_window(spec: str) -> tuple[time, time]:
    """Parse ``"HH:MM-HH:MM"`` into a (start, end) pair with start < end."""
    try:
        start_text, end_text = (part.strip() for part in spec.split("-"))
        start, end = time.fromisoformat(start_text), time.fromisoformat(end_text)
    except (AttributeError, ValueError) as exc:
        raise ValueError(f"window {spec!r} must look like 'HH:MM-HH:MM'") from exc
    if start >= end:
        raise ValueError(f"window {spec!r} must start before it ends")
    return start, end


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "Cadence"
    app_version: str = "0.1.0"
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Secrets ---
    field_encryption_key: str  # base64, 32 bytes: openssl rand -base64 32

    # --- Time ---
    default_timezone: str = "America/New_York"

    # --- Token lifecycle ---
    token_refresh_ahead_seconds: int = 600
    token_refresh_interval_seconds: int = 300
    token_retry_base_seconds: int = 60
    token_retry_max_seconds: int = 6 * 3600

    # --- Wearable sync ---
    sync_interval_seconds: int = 3600
    sync_tick_seconds: int = 300
    sync_initial_lookback_days: int = 7
    provider_http_timeout_seconds: float = 30.0
    provider_default_concurrency: int = 4
    provider_concurrency: dict[str, int] = {}

    # --- Provider OAuth clients (a provider is enabled only when both are set) ---
    oura_client_id: str = ""
    oura_client_secret: str = ""
    whoop_client_id: str = ""
    whoop_client_secret: str = ""
    fitbit_client_id: str = ""
    fitbit_client_secret: str = ""

    # --- Reminders ---
    reminder_tick_seconds: int = 60
    reminder_concurrency: int = 10
    # A claim left pending longer than this (worker crashed mid-send) may be taken over.
    reminder_claim_lease_seconds: int = 600
    reminder_slots: dict[str, str] = {
        "morning": "07:00-11:00",
        "afternoon": "12:00-16:00",
        "evening": "18:00-21:00",
    }

    # --- SMS ---
    sms_backend: Literal["twilio", "log"] = "log"
    sms_max_attempts: int = 3
    sms_retry_base_seconds: float = 2.0
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""

    # --- Scheduler ---
    scheduler_jitter_seconds: float = 30.0
    scheduler_shutdown_timeout_seconds: float = 30.0

    # --- Storage ---
    storage_backend: Literal["memory", "postgres"] = "memory"
    database_url: str = ""  # postgres connection string for asyncpg

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("field_encryption_key")
    @classmethod
    def _check_encryption_key(cls, value: str) -> str:
        try:
            decode_key(value)
        except ConfigurationError as exc:
            raise ValueError(str(exc)) from None
        return value.strip()

    @field_validator("default_timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        if parse_zone(value) is None:
            raise ValueError(f"{value!r} is not a valid IANA timezone")
        return value

    @field_validator(
        "token_refresh_ahead_seconds",
        "token_refresh_interval_seconds",
        "token_retry_base_seconds",
        "token_retry_max_seconds",
        "sync_interval_seconds",
        "sync_tick_seconds",
        "sync_initial_lookback_days",
        "provider_default_concurrency",
        "reminder_tick_seconds",
        "reminder_concurrency",
        "reminder_claim_lease_seconds",
        "sms_max_attempts",
    )
    @classmethod
    def _check_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("scheduler_jitter_seconds", "scheduler_shutdown_timeout_seconds",
                     "sms_retry_base_seconds")
    @classmethod
    def _check_non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("provider_concurrency")
    @classmethod
    def _check_provider_caps(cls, value: dict[str, int]) -> dict[str, int]:
        for provider, cap in value.items():
            if provider not in PROVIDER_NAMES:
                raise ValueError(f"unknown provider {provider!r} (expected one of {PROVIDER_NAMES})")
            if cap <= 0:
                raise ValueError(f"concurrency cap for {provider} must be positive")
        return value

    @field_validator("reminder_slots")
    @classmethod
    def _check_reminder_slots(cls, value: dict[str, str]) -> dict[str, str]:
        windows = []
        for slot, spec in value.items():
            if slot not in REMINDER_SLOT_NAMES:
                raise ValueError(f"unknown reminder slot {slot!r} (expected {REMINDER_SLOT_NAMES})")
            windows.append((slot, *parse_window(spec)))
        windows.sort(key=lambda w: w[1])
        for (name_a, _, end_a), (name_b, start_b, _) in zip(windows, windows[1:]):
            if start_b < end_a:
                raise ValueError(f"reminder windows {name_a} and {name_b} overlap")
        return value

    @model_validator(mode="after")
    def _check_backends(self) -> "Settings":
        if self.sms_backend == "twilio":
            missing = [
                name for name in ("twilio_account_sid", "twilio_auth_token", "twilio_from_number")
                if not getattr(self, name)
            ]
            if missing:
                raise ValueError(f"sms_backend=twilio requires {', '.join(missing)}")
        if self.storage_backend == "postgres" and not self.database_url:
            raise ValueError("storage_backend=postgres requires database_url")
        if self.token_retry_max_seconds < self.token_retry_base_seconds:
            raise ValueError("token_retry_max_seconds must be >= token_retry_base_seconds")
        return self

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def provider_credentials(self, provider: str) -> tuple[str, str] | None:
        client_id = getattr(self, f"{provider}_client_id", "")
        client_secret = getattr(self, f"{provider}_client_secret", "")
        if client_id and client_secret:
            return client_id, client_secret
        return None

    def concurrency_for(self, provider: str) -> int:
        return self.provider_concurrency.get(provider, self.provider_default_concurrency)

    def reminder_windows(self) -> dict[str, tuple[time, time]]:
        return {slot: parse_window(spec) for slot, spec in self.reminder_slots.items()}


def load_settings(**overrides: Any) -> Settings:
    """Build and validate Settings, turning validation failures into ConfigurationError."""
    try:
        return Settings(**overrides)  # type: ignore[call-arg]
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'settings'}: {err['msg']}"
            for err in exc.errors()
        )
        raise ConfigurationError(f"Invalid configuration: {problems}") from exc


@lru_cache
def get_settings() -> Settings:
    return load_settings()
