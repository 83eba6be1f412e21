import pytest
from pydantic import ValidationError

from storefront.config import Environment, Settings

SECRETS = {"access_token_secret": "access-a", "refresh_token_secret": "refresh-b"}


class TestSecrets:
    def test_missing_secret_aborts(self):
        with pytest.raises((RuntimeError, ValidationError)) as excinfo:
            Settings(access_token_secret="only-one")
        assert "REFRESH_TOKEN_SECRET" in str(excinfo.value)

    def test_identical_secrets_abort(self):
        with pytest.raises((RuntimeError, ValidationError)):
            Settings(access_token_secret="same", refresh_token_secret="same")


class TestFromEnv:
    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "Production")
        monkeypatch.setenv("LOGIN_RATE_LIMIT", "7")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
        settings = Settings.from_env()
        assert settings.environment is Environment.PRODUCTION
        assert settings.is_production
        assert settings.login_rate_limit == 7
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]

    def test_defaults(self):
        settings = Settings(**SECRETS)
        assert settings.access_token_ttl_minutes == 15
        assert settings.refresh_token_ttl_minutes == 24 * 60
        assert settings.email_verification_ttl_hours == 24
        assert settings.password_reset_ttl_minutes == 60
        assert settings.login_rate_limit == 5
        assert settings.login_rate_limit_window_seconds == 15 * 60
        assert settings.revoke_session_on_refresh_reuse is False
        assert not settings.is_production

    def test_non_positive_ttl_rejected(self):
        with pytest.raises(ValidationError):
            Settings(access_token_ttl_minutes=0, **SECRETS)
