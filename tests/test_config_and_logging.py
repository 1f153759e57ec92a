import pydantic
import pytest

from homeops.config import Environment, Settings
from homeops.logging import _redact_pii, sanitize_error_message


class TestSettings:
    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("AI_MONTHLY_CAP", "12.50")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.test, https://b.test")
        monkeypatch.setenv("APP_ENV", "Staging")
        settings = Settings.from_env()
        assert str(settings.ai_monthly_cap) == "12.50"
        assert settings.cors_allow_origins == ["https://a.test", "https://b.test"]
        assert settings.environment is Environment.STAGING

    def test_blank_redis_url_disables_cache(self, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "  ")
        assert Settings.from_env().redis_url is None

    def test_production_requires_secret(self, monkeypatch, tmp_path):
        monkeypatch.delenv("SECRET_KEY", raising=False)
        monkeypatch.setenv("STATE_DIR", str(tmp_path))
        monkeypatch.setenv("APP_ENV", "production")
        with pytest.raises(pydantic.ValidationError):
            Settings.from_env()

    def test_dev_secret_is_persisted(self, monkeypatch, tmp_path):
        monkeypatch.delenv("SECRET_KEY", raising=False)
        monkeypatch.setenv("STATE_DIR", str(tmp_path))
        monkeypatch.setenv("APP_ENV", "development")
        first = Settings.from_env().jwt_secret
        second = Settings.from_env().jwt_secret
        assert first == second
        assert (tmp_path / ".jwt_secret").read_text().strip() == first


class TestRedaction:
    def test_credentials_are_masked(self):
        event = _redact_pii(
            None,
            "info",
            {
                "event": "login_failed",
                "email": "ada@x.io",
                "refresh_token": "abcdefghijkl",
                "error_code": "INVALID_CREDENTIALS",
                "user_id": 7,
            },
        )
        assert event["email"] == "ad***io"
        assert event["refresh_token"] == "ab***kl"
        assert event["error_code"] == "INVALID_CREDENTIALS"
        assert event["user_id"] == 7

    def test_tickets_codes_and_short_values_are_masked(self):
        event = _redact_pii(
            None,
            "info",
            {"event": "mfa_failed", "mfa_ticket": "eyJhbGciOi", "backup_code": "1234"},
        )
        assert event["mfa_ticket"] == "ey***Oi"
        assert event["backup_code"] == "***"

    def test_upstream_messages_are_sanitized(self):
        cleaned = sanitize_error_message("connect failed: Bearer sk-abc123 at /var/lib/x")
        assert "sk-abc123" not in cleaned
        assert "/var/lib/x" not in cleaned
