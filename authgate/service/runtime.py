from __future__ import annotations

from datetime import timedelta
from typing import Dict, Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from authgate.config import SessionBackend, Settings
from authgate.logging import get_logger
from authgate.service.action_tokens import ActionTokenFlow
from authgate.service.clock import Clock, SystemClock
from authgate.service.credentials import CredentialVerifier
from authgate.service.email import EmailService, Notifier
from authgate.service.gateway import AuthGateway
from authgate.service.passwords import PasswordHasher
from authgate.service.providers import ProviderAdapter, build_provider_adapters
from authgate.service.sessions import SessionRegistry
from authgate.service.tokens import TokenCodec
from authgate.storage.common import SessionStore
from authgate.storage.memory import MemoryStore
from authgate.storage.redis_store import RedisSessionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if port:
        netloc = f"{netloc}:{port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Composition root: builds every service from one ``Settings`` instance.

    Nothing here is global. The app receives a ``Runtime`` explicitly (see
    ``create_app``) and tests build their own with fakes for the clock, the
    notifier or the provider adapters.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        notifier: Optional[Notifier] = None,
        providers: Optional[Dict[str, ProviderAdapter]] = None,
        password_hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.settings = settings
        self.clock: Clock = clock or SystemClock()
        logger.info(
            "runtime_init_started",
            session_backend=settings.session_backend.value,
            test_mode=settings.test_mode,
        )

        state_dir = settings.state_dir if settings.persist_memory_store else None
        self.store = MemoryStore(state_dir=state_dir)
        self.session_store: SessionStore = self._build_session_store(settings)

        self.codec = TokenCodec(
            settings.token_secret,
            fallback_secrets=settings.secret_fallbacks,
            clock=self.clock,
        )
        self.hasher = password_hasher or PasswordHasher()
        self.notifier: Notifier = notifier or EmailService(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
            reset_ttl_minutes=settings.password_reset_ttl_minutes,
            confirm_ttl_minutes=settings.email_confirm_ttl_minutes,
            log_links=settings.test_mode,
        )
        if providers is None:
            providers = build_provider_adapters(
                settings.provider_names, timeout=settings.provider_timeout_seconds
            )
        self.providers = providers

        self.sessions = SessionRegistry(
            self.session_store,
            self.codec,
            ttl=timedelta(minutes=settings.session_ttl_minutes),
            max_lifetime=timedelta(minutes=settings.session_max_lifetime_minutes),
            rotate_on_refresh=settings.session_rotate_on_refresh,
            clock=self.clock,
        )
        self.verifier = CredentialVerifier(
            self.store,
            self.hasher,
            identifier_mode=settings.login_identifier,
            providers=self.providers,
            provider_auto_register=settings.provider_auto_register,
        )
        self.actions = ActionTokenFlow(
            self.store,
            self.store,
            self.sessions,
            self.codec,
            self.hasher,
            self.notifier,
            reset_ttl=timedelta(minutes=settings.password_reset_ttl_minutes),
            confirm_ttl=timedelta(minutes=settings.email_confirm_ttl_minutes),
            logout_all_on_reset=settings.logout_all_on_password_reset,
            clock=self.clock,
        )
        self.gateway = AuthGateway(
            settings,
            users=self.store,
            sessions=self.sessions,
            verifier=self.verifier,
            actions=self.actions,
            hasher=self.hasher,
        )
        logger.info(
            "runtime_init_completed",
            providers=sorted(self.providers),
            identifier_mode=settings.login_identifier.value,
        )

    def _build_session_store(self, settings: Settings) -> SessionStore:
        if settings.session_backend != SessionBackend.REDIS:
            return self.store
        store = RedisSessionStore(
            settings.redis_url, socket_timeout=settings.operation_timeout_seconds
        )
        try:
            store.verify_connection()
        except (RedisError, OSError) as exc:
            logger.error(
                "runtime_session_store_init_failed",
                redis_url=_mask_url_password(settings.redis_url),
                error_type=type(exc).__name__,
            )
            raise RuntimeError(
                "Redis session backend selected but Redis is unreachable; start Redis or "
                "set SESSION_BACKEND=memory."
            ) from exc
        logger.info(
            "runtime_session_store_initialized",
            store_type="redis",
            redis_url=_mask_url_password(settings.redis_url),
        )
        return store

    async def close(self) -> None:
        if isinstance(self.session_store, RedisSessionStore):
            await self.session_store.close()
