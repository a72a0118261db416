"""Tests for startup configuration validation."""

from __future__ import annotations

from datetime import time

import pytest

from src.config import Settings, load_settings, parse_window
from src.core.errors import ConfigurationError


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("FIELD_ENCRYPTION_KEY", "SMS_BACKEND", "STORAGE_BACKEND", "DEFAULT_TIMEZONE"):
        monkeypatch.delenv(name, raising=False)


def _settings(encryption_key: str, **overrides) -> Settings:
    return load_settings(field_encryption_key=encryption_key, _env_file=None, **overrides)


class TestDefaults:
    def test_valid_minimal_configuration(self, encryption_key: str) -> None:
        settings = _settings(encryption_key)
        assert settings.default_timezone == "America/New_York"
        assert settings.sms_backend == "log"
        assert settings.storage_backend == "memory"
        assert settings.reminder_claim_lease_seconds == 600

    def test_reminder_windows_parsed(self, encryption_key: str) -> None:
        windows = _settings(encryption_key).reminder_windows()
        assert windows["morning"] == (time(7, 0), time(11, 0))
        assert set(windows) == {"morning", "afternoon", "evening"}

    def test_provider_credentials_require_both_halves(self, encryption_key: str) -> None:
        settings = _settings(encryption_key, oura_client_id="id", fitbit_client_id="id",
                             fitbit_client_secret="secret")
        assert settings.provider_credentials("oura") is None
        assert settings.provider_credentials("fitbit") == ("id", "secret")

    def test_concurrency_caps(self, encryption_key: str) -> None:
        settings = _settings(encryption_key, provider_concurrency={"whoop": 2},
                             provider_default_concurrency=6)
        assert settings.concurrency_for("whoop") == 2
        assert settings.concurrency_for("oura") == 6


class TestRejected:
    def test_missing_encryption_key(self) -> None:
        with pytest.raises(ConfigurationError):
            load_settings(_env_file=None)

    def test_short_encryption_key(self) -> None:
        with pytest.raises(ConfigurationError, match="field_encryption_key"):
            load_settings(field_encryption_key="c2hvcnQ=", _env_file=None)

    def test_invalid_default_timezone(self, encryption_key: str) -> None:
        with pytest.raises(ConfigurationError, match="default_timezone"):
            _settings(encryption_key, default_timezone="America/Atlantis")

    def test_overlapping_reminder_windows(self, encryption_key: str) -> None:
        with pytest.raises(ConfigurationError, match="overlap"):
            _settings(
                encryption_key,
                reminder_slots={"morning": "07:00-12:30", "afternoon": "12:00-16:00"},
            )

    def test_unknown_reminder_slot(self, encryption_key: str) -> None:
        with pytest.raises(ConfigurationError):
            _settings(encryption_key, reminder_slots={"midnight": "00:00-01:00"})

    def test_twilio_requires_credentials(self, encryption_key: str) -> None:
        with pytest.raises(ConfigurationError, match="twilio_auth_token"):
            _settings(encryption_key, sms_backend="twilio", twilio_account_sid="AC123",
                      twilio_from_number="+15550100")

    def test_non_positive_claim_lease(self, encryption_key: str) -> None:
        with pytest.raises(ConfigurationError, match="reminder_claim_lease_seconds"):
            _settings(encryption_key, reminder_claim_lease_seconds=0)

    def test_postgres_requires_database_url(self, encryption_key: str) -> None:
        with pytest.raises(ConfigurationError, match="database_url"):
            _settings(encryption_key, storage_backend="postgres")

    def test_unknown_provider_cap(self, encryption_key: str) -> None:
        with pytest.raises(ConfigurationError):
            _settings(encryption_key, provider_concurrency={"garmin": 2})

    def test_non_positive_interval(self, encryption_key: str) -> None:
        with pytest.raises(ConfigurationError, match="sync_interval_seconds"):
            _settings(encryption_key, sync_interval_seconds=0)


class TestParseWindow:
    def test_parses_hours_and_minutes(self) -> None:
        assert parse_window("18:30-21:00") == (time(18, 30), time(21, 0))

    @pytest.mark.parametrize("spec", ["", "7am-11am", "11:00-07:00", "09:00-09:00", "morning"])
    def test_rejects_malformed(self, spec: str) -> None:
        with pytest.raises(ValueError):
            parse_window(spec)
