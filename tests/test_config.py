"""Tests for settings loading from the environment."""

import os
import stat

import pytest
from pydantic import ValidationError

from authgate.config import IdentifierMode, SessionBackend, Settings, get_settings


class TestFromEnv:
    """Tests for environment and .env parsing."""

    def test_reads_environment(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("TOKEN_SECRET", "env-secret")
        monkeypatch.setenv("SESSION_TTL_MINUTES", "15")
        monkeypatch.setenv("LOGIN_IDENTIFIER", "email")
        monkeypatch.setenv("SESSION_BACKEND", "redis")
        monkeypatch.setenv("REQUIRE_EMAIL_CONFIRM", "true")
        monkeypatch.setenv("ENABLED_PROVIDERS", "Google, github,,")

        settings = Settings.from_env()

        assert settings.token_secret == "env-secret"
        assert settings.session_ttl_minutes == 15
        assert settings.login_identifier == IdentifierMode.EMAIL
        assert settings.session_backend == SessionBackend.REDIS
        assert settings.require_email_confirm is True
        assert settings.provider_names == ["google", "github"]

    def test_dotenv_file_fills_gaps(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("PASSWORD_MIN_LENGTH", raising=False)
        (tmp_path / ".env").write_text("PASSWORD_MIN_LENGTH=12\nTOKEN_SECRET=from-file\n")
        monkeypatch.setenv("TOKEN_SECRET", "from-env")

        settings = Settings.from_env()

        assert settings.password_min_length == 12
        assert settings.token_secret == "from-env"

    def test_invalid_values_rejected(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("LOGIN_IDENTIFIER", "phone")

        with pytest.raises(ValidationError):
            Settings.from_env()

    def test_settings_are_cached(self):
        assert get_settings() is get_settings()


class TestDerivedValues:
    def test_csv_properties(self):
        settings = Settings(
            token_secret="s",
            token_secret_fallbacks="old1, old2",
            cors_allow_origins="https://a.example,https://b.example",
        )

        assert settings.secret_fallbacks == ["old1", "old2"]
        assert settings.allowed_origins == ["https://a.example", "https://b.example"]

    def test_non_positive_ttl_rejected(self):
        with pytest.raises(ValidationError):
            Settings(token_secret="s", session_ttl_minutes=0)


class TestGeneratedSecret:
    """Tests for the persisted fallback token secret."""

    def test_secret_generated_once_and_reused(self, tmp_path):
        first = Settings(state_dir=str(tmp_path))
        second = Settings(state_dir=str(tmp_path))

        secret_path = tmp_path / ".token_secret"
        assert first.token_secret == second.token_secret
        assert len(first.token_secret) >= 32
        assert secret_path.read_text() == first.token_secret
        assert stat.S_IMODE(os.stat(secret_path).st_mode) == 0o600
