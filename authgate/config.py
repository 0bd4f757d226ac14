from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authgate.logging import get_logger

logger = get_logger(__name__)


class IdentifierMode(str, Enum):
    """Which user attribute a local login identifier is matched against."""

    USERNAME = "username"
    EMAIL = "email"
    EITHER = "either"


class SessionBackend(str, Enum):
    """Where session records live."""

    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(raw: str | None) -> List[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings(BaseModel):
    """Runtime settings for the session and credential-token service."""

    state_dir: str = env_field(
        "/srv/authgate",
        "STATE_DIR",
        description="Directory for the generated token secret and persisted memory store state",
    )
    persist_memory_store: bool = env_field(False, "PERSIST_MEMORY_STORE")
    session_backend: SessionBackend = env_field(SessionBackend.MEMORY, "SESSION_BACKEND")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors",
    )

    token_secret: str = env_field(None, "TOKEN_SECRET", validate_default=True)
    token_secret_fallbacks: str = env_field(
        "",
        "TOKEN_SECRET_FALLBACKS",
        description="Comma separated retired secrets still accepted for validation",
    )

    # Session lifetime
    session_ttl_minutes: int = env_field(24 * 60, "SESSION_TTL_MINUTES", gt=0)
    session_max_lifetime_minutes: int = env_field(
        30 * 24 * 60,
        "SESSION_MAX_LIFETIME_MINUTES",
        gt=0,
        description="Absolute cap on a session token regardless of refreshes",
    )
    session_rotate_on_refresh: bool = env_field(False, "SESSION_ROTATE_ON_REFRESH")

    # Action tokens
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES", gt=0)
    email_confirm_ttl_minutes: int = env_field(24 * 60, "EMAIL_CONFIRM_TTL_MINUTES", gt=0)

    # Local credential policy
    login_identifier: IdentifierMode = env_field(IdentifierMode.EITHER, "LOGIN_IDENTIFIER")
    email_username: bool = env_field(
        False,
        "EMAIL_USERNAME",
        description="Use the email address as the username",
    )
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH", ge=1)
    require_email_confirm: bool = env_field(False, "REQUIRE_EMAIL_CONFIRM")
    require_password_on_email_change: bool = env_field(
        False, "REQUIRE_PASSWORD_ON_EMAIL_CHANGE"
    )
    confirm_email_redirect_url: str | None = env_field(None, "CONFIRM_EMAIL_REDIRECT_URL")

    # Session policy around credential changes
    login_on_registration: bool = env_field(False, "LOGIN_ON_REGISTRATION")
    login_on_password_reset: bool = env_field(False, "LOGIN_ON_PASSWORD_RESET")
    logout_all_on_password_reset: bool = env_field(True, "LOGOUT_ALL_ON_PASSWORD_RESET")
    logout_others_on_password_change: bool = env_field(
        True, "LOGOUT_OTHERS_ON_PASSWORD_CHANGE"
    )

    # External identity providers
    enabled_providers: str = env_field(
        "",
        "ENABLED_PROVIDERS",
        description="Comma separated provider names accepted for provider login",
    )
    provider_auto_register: bool = env_field(True, "PROVIDER_AUTO_REGISTER")
    provider_timeout_seconds: float = env_field(10.0, "PROVIDER_TIMEOUT_SECONDS", gt=0)

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("AuthGate", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # Operations
    operation_timeout_seconds: float = env_field(
        10.0,
        "OPERATION_TIMEOUT_SECONDS",
        gt=0,
        description="Default deadline applied to every gateway operation",
    )
    cleanup_interval_seconds: int = env_field(300, "CLEANUP_INTERVAL_SECONDS", gt=0)
    cors_allow_origins: str = env_field("", "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def secret_fallbacks(self) -> List[str]:
        return _split_csv(self.token_secret_fallbacks)

    @property
    def provider_names(self) -> List[str]:
        return [name.lower() for name in _split_csv(self.enabled_providers)]

    @property
    def allowed_origins(self) -> List[str]:
        return _split_csv(self.cors_allow_origins)

    @field_validator("login_identifier")
    @classmethod
    def _validate_identifier_mode(cls, value: IdentifierMode) -> IdentifierMode:
        return IdentifierMode(value)

    @field_validator("session_backend")
    @classmethod
    def _validate_session_backend(cls, value: SessionBackend) -> SessionBackend:
        return SessionBackend(value)

    @field_validator("token_secret", mode="before")
    @classmethod
    def _ensure_token_secret(cls, value: str | None, info) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        state_root = Path(info.data.get("state_dir") or os.getenv("STATE_DIR", "/srv/authgate"))
        secret_path = state_root / ".token_secret"

        try:
            state_root.mkdir(parents=True, exist_ok=True)
            os.chmod(state_root, 0o700)
        except PermissionError:
            # Directory may already exist with different ownership (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "token_secret_dir_setup",
                error=str(exc),
                path=str(state_root),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("token_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            # Write to a temp file then rename so readers never see a partial secret
            fd, tmp_path = tempfile.mkstemp(
                dir=str(state_root), prefix=".token_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("token_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist token secret; set TOKEN_SECRET or make STATE_DIR writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
