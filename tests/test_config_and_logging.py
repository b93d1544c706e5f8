"""Tests for settings loading and credential redaction in logs."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from quillpress.config import Settings, get_settings, reset_settings_cache
import structlog

from quillpress.logging import (
    _redact_credentials,
    configure_logging,
    get_correlation_id,
    set_correlation_id,
)


class TestSettings:
    def test_defaults(self):
        settings = Settings(jwt_secret="x" * 32)
        assert settings.access_token_ttl_seconds == 900
        assert settings.refresh_token_ttl_seconds == 604800
        assert settings.oauth_state_ttl_seconds == 600
        assert settings.session_cookie_name == "next-auth.session-token"
        assert settings.api_prefix == "/api"

    def test_from_env_reads_overrides(self, monkeypatch):
        monkeypatch.setenv("ACCESS_TOKEN_TTL_SECONDS", "120")
        monkeypatch.setenv("ADMIN_EMAILS", '["a@example.com", "b@example.com"]')
        settings = Settings.from_env()
        assert settings.access_token_ttl_seconds == 120
        assert settings.admin_emails == ["a@example.com", "b@example.com"]

    def test_admin_emails_accepts_csv(self):
        settings = Settings(jwt_secret="x" * 32, admin_emails="a@example.com, b@example.com,")
        assert settings.admin_emails == ["a@example.com", "b@example.com"]

    def test_admin_emails_rejects_bad_json(self):
        with pytest.raises(PydanticValidationError):
            Settings(jwt_secret="x" * 32, admin_emails="[not json")

    def test_non_positive_ttl_rejected(self):
        with pytest.raises(PydanticValidationError):
            Settings(jwt_secret="x" * 32, access_token_ttl_seconds=0)

    def test_missing_secret_is_generated_and_persisted(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
        first = Settings(jwt_secret=None)
        second = Settings(jwt_secret=None)
        assert len(first.jwt_secret) >= 32
        assert first.jwt_secret == second.jwt_secret
        assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret

    def test_github_redirect_uri_defaults_to_frontend(self):
        settings = Settings(jwt_secret="x" * 32, frontend_url="https://blog.example.com/")
        assert settings.github_redirect_uri == (
            "https://blog.example.com/api/auth/callback/github"
        )
        explicit = Settings(jwt_secret="x" * 32, oauth_redirect_uri="https://cb.example.com")
        assert explicit.github_redirect_uri == "https://cb.example.com"

    def test_get_settings_is_cached(self, monkeypatch):
        first = get_settings()
        assert get_settings() is first
        monkeypatch.setenv("ACCESS_TOKEN_TTL_SECONDS", "60")
        reset_settings_cache()
        assert get_settings().access_token_ttl_seconds == 60


class TestRedaction:
    def test_tokens_and_secrets_fully_masked(self):
        event = _redact_credentials(
            None,
            "info",
            {
                "event": "x",
                "access_token": "eyJhbGciOi.payload.sig",
                "jwt_secret": "super-secret-value",
                "authorization": "Bearer abc.def.ghi",
            },
        )
        assert event["access_token"] == "***"
        assert event["jwt_secret"] == "***"
        assert "abc.def" not in event["authorization"]

    def test_email_partially_masked(self):
        event = _redact_credentials(None, "info", {"email": "writer@example.com"})
        assert event["email"] == "wr***om"

    def test_safe_keys_untouched(self):
        event = _redact_credentials(
            None,
            "info",
            {"token_kind": "refresh", "reason": "bad_signature", "user_id": "u-1"},
        )
        assert event == {"token_kind": "refresh", "reason": "bad_signature", "user_id": "u-1"}


class TestCorrelationId:
    def test_set_and_get(self):
        assert set_correlation_id("req-9") == "req-9"
        assert get_correlation_id() == "req-9"

    def test_generated_when_missing(self):
        assert set_correlation_id(None)


class TestConfigureLogging:
    def test_console_format_keeps_redaction(self):
        try:
            configure_logging("DEBUG", "console")
            processors = structlog.get_config()["processors"]
            assert _redact_credentials in processors
            assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)
        finally:
            configure_logging()

    def test_json_is_default(self):
        configure_logging()
        assert isinstance(
            structlog.get_config()["processors"][-1], structlog.processors.JSONRenderer
        )
