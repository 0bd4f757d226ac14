from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Dict, List, Optional, TypeVar, Union

from authgate.config import IdentifierMode, Settings
from authgate.logging import get_logger, hash_identifier
from authgate.service.action_tokens import ActionTokenFlow, EmailChangeOutcome
from authgate.service.credentials import CredentialVerifier
from authgate.service.errors import (
    AuthFailedError,
    ConflictError,
    NotFoundError,
    OperationTimeout,
    SessionNotFoundError,
    UnavailableError,
    ValidationError,
)
from authgate.service.passwords import PasswordHasher
from authgate.service.sessions import ClientMeta, SessionRegistry
from authgate.service.validation import validate_email, validate_password, validate_username
from authgate.storage.common import CredentialStore, normalize_email
from authgate.storage.errors import ConstraintViolation, StoreUnavailable
from authgate.storage.models import LOCAL_METHOD, Session, User

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class LocalCredential:
    identifier: str
    password: str


@dataclass(frozen=True)
class BearerCredential:
    token: str


@dataclass(frozen=True)
class ProviderCredential:
    provider: str
    assertion: str


Credential = Union[LocalCredential, BearerCredential, ProviderCredential]


@dataclass
class AuthContext:
    user: User
    session: Optional[Session] = None


@dataclass
class RegisterResult:
    user: User
    session: Optional[Session] = None
    confirmation_sent: bool = False


@dataclass
class SessionInfo:
    user_id: str
    email: str
    username: Optional[str]
    email_confirmed: bool
    method: str
    created_at: datetime
    refreshed_at: datetime
    expires_at: datetime
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    login_methods: List[str] = field(default_factory=list)


class AuthGateway:
    """Façade over sessions, credentials and action tokens.

    Every public operation is a coroutine that returns a value or raises a
    ``ServiceError``. It is the only place storage failures and elapsed
    deadlines are turned into the service error taxonomy; ``deadline`` is in
    seconds and defaults to the configured operation timeout.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        users: CredentialStore,
        sessions: SessionRegistry,
        verifier: CredentialVerifier,
        actions: ActionTokenFlow,
        hasher: PasswordHasher,
    ) -> None:
        self.settings = settings
        self.users = users
        self.sessions = sessions
        self.verifier = verifier
        self.actions = actions
        self.hasher = hasher
        self.default_timeout = settings.operation_timeout_seconds

    async def _run(self, operation: str, work: Awaitable[T], deadline: Optional[float]) -> T:
        timeout = self.default_timeout if deadline is None else deadline
        if timeout <= 0:
            if asyncio.iscoroutine(work):
                work.close()
            raise ValidationError("deadline must be positive", detail={"field": "deadline"})
        try:
            return await asyncio.wait_for(work, timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("operation_timeout", operation=operation, timeout_seconds=timeout)
            raise OperationTimeout(
                f"{operation} timed out", detail={"operation": operation}
            ) from exc
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        except StoreUnavailable as exc:
            logger.error(
                "store_unavailable", operation=operation, backend=exc.backend, error=exc.message
            )
            raise UnavailableError(
                "storage unavailable", detail={"backend": exc.backend}
            ) from exc

    # input checks
    @staticmethod
    def _checked(validator, value, field_name: str, *args):
        try:
            return validator(value, *args)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"field": field_name}) from exc

    def _check_new_password(self, password: str, confirm_password: Optional[str]) -> str:
        if confirm_password is not None and password != confirm_password:
            raise ValidationError("passwords do not match", detail={"field": "confirm_password"})
        return self._checked(
            validate_password, password, "password", self.settings.password_min_length
        )

    async def _user_for(self, session: Session) -> User:
        user = await self.users.get_user(session.user_id)
        if user is None:
            raise SessionNotFoundError("session not found")
        return user

    async def _bearer(self, token: str) -> AuthContext:
        if not token:
            raise SessionNotFoundError("session not found")
        session = await self.sessions.authenticate(token)
        return AuthContext(user=await self._user_for(session), session=session)

    async def _login_local(
        self, credential: LocalCredential, client_meta: Optional[ClientMeta]
    ) -> AuthContext:
        user = await self.verifier.verify_local(credential.identifier, credential.password)
        if self.settings.require_email_confirm and not user.email_confirmed:
            logger.info("login_refused_unconfirmed", user_id=user.id)
            raise AuthFailedError(
                "email address not confirmed", detail={"reason": "email_unconfirmed"}
            )
        session = await self.sessions.create(user.id, LOCAL_METHOD, client_meta)
        logger.info("login_succeeded", user_id=user.id, method=LOCAL_METHOD)
        return AuthContext(user=user, session=session)

    async def _login_provider(
        self, credential: ProviderCredential, client_meta: Optional[ClientMeta]
    ) -> AuthContext:
        provider = credential.provider.strip().lower()
        user = await self.verifier.verify_provider(provider, credential.assertion)
        session = await self.sessions.create(user.id, provider, client_meta)
        logger.info("login_succeeded", user_id=user.id, method=provider)
        return AuthContext(user=user, session=session)

    # authentication
    async def authenticate(
        self,
        credential: Credential,
        client_meta: Optional[ClientMeta] = None,
        *,
        deadline: Optional[float] = None,
    ) -> AuthContext:
        """Resolve any credential variant to an authenticated context.

        Local and provider credentials start a new session; a bearer credential
        resolves the session it names.
        """
        if isinstance(credential, LocalCredential):
            work = self._login_local(credential, client_meta)
        elif isinstance(credential, ProviderCredential):
            work = self._login_provider(credential, client_meta)
        elif isinstance(credential, BearerCredential):
            work = self._bearer(credential.token)
        else:
            raise TypeError(f"unsupported credential: {type(credential).__name__}")
        return await self._run("authenticate", work, deadline)

    async def login(
        self,
        identifier: str,
        password: str,
        client_meta: Optional[ClientMeta] = None,
        *,
        deadline: Optional[float] = None,
    ) -> AuthContext:
        return await self._run(
            "login", self._login_local(LocalCredential(identifier, password), client_meta), deadline
        )

    async def login_provider(
        self,
        provider: str,
        assertion: str,
        client_meta: Optional[ClientMeta] = None,
        *,
        deadline: Optional[float] = None,
    ) -> AuthContext:
        return await self._run(
            "login_provider",
            self._login_provider(ProviderCredential(provider, assertion), client_meta),
            deadline,
        )

    # sessions
    async def refresh(self, token: str, *, deadline: Optional[float] = None) -> AuthContext:
        async def op() -> AuthContext:
            session = await self.sessions.refresh(token)
            return AuthContext(user=await self._user_for(session), session=session)

        return await self._run("refresh", op(), deadline)

    async def logout(self, token: str, *, deadline: Optional[float] = None) -> bool:
        """Revoke one session; an unknown token is reported as ``False``, not an error."""

        async def op() -> bool:
            try:
                await self.sessions.revoke(token)
            except SessionNotFoundError:
                return False
            return True

        return await self._run("logout", op(), deadline)

    async def logout_others(self, token: str, *, deadline: Optional[float] = None) -> int:
        async def op() -> int:
            ctx = await self._bearer(token)
            return await self.sessions.revoke_others(ctx.user.id, token)

        return await self._run("logout_others", op(), deadline)

    async def logout_all(self, token: str, *, deadline: Optional[float] = None) -> int:
        async def op() -> int:
            ctx = await self._bearer(token)
            return await self.sessions.revoke_all(ctx.user.id)

        return await self._run("logout_all", op(), deadline)

    async def session_info(self, token: str, *, deadline: Optional[float] = None) -> SessionInfo:
        async def op() -> SessionInfo:
            ctx = await self._bearer(token)
            session, user = ctx.session, ctx.user
            return SessionInfo(
                user_id=user.id,
                email=user.email,
                username=user.username,
                email_confirmed=user.email_confirmed,
                method=session.method,
                created_at=session.created_at,
                refreshed_at=session.refreshed_at,
                expires_at=session.expires_at,
                ip_addr=session.ip_addr,
                user_agent=session.user_agent,
                login_methods=sorted(user.login_methods()),
            )

        return await self._run("session_info", op(), deadline)

    # registration and validation
    async def _ensure_email_free(self, email: str, *, owner_id: Optional[str] = None) -> None:
        existing = await self.users.get_user_by_email(email)
        if existing is not None and existing.id != owner_id:
            raise ConflictError("email already registered", detail={"field": "email"})
        if self.settings.email_username:
            existing = await self.users.get_user_by_username(email)
            if existing is not None and existing.id != owner_id:
                raise ConflictError("email already registered", detail={"field": "email"})

    async def _ensure_username_free(self, username: str) -> None:
        if await self.users.get_user_by_username(username) is not None:
            raise ConflictError("username already taken", detail={"field": "username"})

    async def register(
        self,
        email: str,
        password: str,
        confirm_password: Optional[str] = None,
        username: Optional[str] = None,
        client_meta: Optional[ClientMeta] = None,
        *,
        deadline: Optional[float] = None,
    ) -> RegisterResult:
        """Create a local account.

        Unlike ``forgot_password`` this reports a taken email or username as a
        distinguishable ``ConflictError``.
        """
        email = self._checked(validate_email, email, "email")
        password = self._check_new_password(password, confirm_password)
        if self.settings.email_username:
            username = email
        else:
            username = self._checked(validate_username, username or None, "username")
            if username is None and self.settings.login_identifier == IdentifierMode.USERNAME:
                raise ValidationError("username is required", detail={"field": "username"})

        async def op() -> RegisterResult:
            await self._ensure_email_free(email)
            if username is not None and not self.settings.email_username:
                await self._ensure_username_free(username)
            password_hash, algo = await asyncio.to_thread(self.hasher.hash, password)
            user = await self.users.create_user(
                email, username, password_hash=password_hash, password_algo=algo
            )
            logger.info("user_registered", user_id=user.id, email_hash=hash_identifier(email))
            result = RegisterResult(user=user)
            if self.settings.require_email_confirm:
                result.confirmation_sent = await self.actions.start_email_confirmation(user.id)
            elif self.settings.login_on_registration:
                result.session = await self.sessions.create(user.id, LOCAL_METHOD, client_meta)
            return result

        return await self._run("register", op(), deadline)

    async def validate_username(self, username: str, *, deadline: Optional[float] = None) -> None:
        """Raise ``ConflictError`` if ``username`` is taken, ``ValidationError`` if malformed."""
        username = self._checked(validate_username, username, "username")
        await self._run("validate_username", self._ensure_username_free(username), deadline)

    async def validate_email(self, email: str, *, deadline: Optional[float] = None) -> None:
        email = self._checked(validate_email, email, "email")
        await self._run("validate_email", self._ensure_email_free(email), deadline)

    # password flows
    async def forgot_password(
        self, identifier_or_email: str, *, deadline: Optional[float] = None
    ) -> None:
        """Start a reset; completes the same way whether or not the account exists."""
        await self._run(
            "forgot_password", self.actions.start_password_reset(identifier_or_email), deadline
        )

    async def reset_password(
        self,
        token: str,
        new_password: str,
        confirm_password: Optional[str] = None,
        client_meta: Optional[ClientMeta] = None,
        *,
        deadline: Optional[float] = None,
    ) -> AuthContext:
        new_password = self._check_new_password(new_password, confirm_password)

        async def op() -> AuthContext:
            user = await self.actions.finish_password_reset(token, new_password)
            ctx = AuthContext(user=user)
            if self.settings.login_on_password_reset:
                ctx.session = await self.sessions.create(user.id, LOCAL_METHOD, client_meta)
            return ctx

        return await self._run("reset_password", op(), deadline)

    async def change_password(
        self,
        token: str,
        new_password: str,
        current_password: Optional[str] = None,
        confirm_password: Optional[str] = None,
        *,
        deadline: Optional[float] = None,
    ) -> int:
        """Set a new password; returns how many other sessions were revoked.

        Accounts that already have a password must present it. Provider-only
        accounts may set a first password without one.
        """
        new_password = self._check_new_password(new_password, confirm_password)

        async def op() -> int:
            ctx = await self._bearer(token)
            user = ctx.user
            if user.has_password:
                if not current_password or not await self.verifier.verify_user_password(
                    user, current_password
                ):
                    raise AuthFailedError("current password is incorrect")
            password_hash, algo = await asyncio.to_thread(self.hasher.hash, new_password)
            await self.users.update_user(user.id, password_hash=password_hash, password_algo=algo)
            logger.info("password_changed", user_id=user.id)
            if self.settings.logout_others_on_password_change:
                return await self.sessions.revoke_others(user.id, token)
            return 0

        return await self._run("change_password", op(), deadline)

    # linked identities and email
    async def unlink(self, token: str, provider: str, *, deadline: Optional[float] = None) -> User:
        provider = (provider or "").strip().lower()
        if provider == LOCAL_METHOD:
            raise ValidationError("local credentials cannot be unlinked", detail={"field": "provider"})

        async def op() -> User:
            user = (await self._bearer(token)).user
            if provider not in user.providers:
                raise NotFoundError("provider not linked", detail={"provider": provider})
            if user.login_methods() == {provider}:
                raise ValidationError(
                    "cannot remove the last login method", detail={"provider": provider}
                )
            updated = await self.users.unlink_provider(user.id, provider)
            if updated is None:
                raise SessionNotFoundError("session not found")
            logger.info("provider_unlinked", user_id=user.id, provider=provider)
            return updated

        return await self._run("unlink", op(), deadline)

    async def confirm_email(self, token: str, *, deadline: Optional[float] = None) -> User:
        return await self._run("confirm_email", self.actions.finish_email_confirmation(token), deadline)

    async def change_email(
        self,
        token: str,
        new_email: str,
        password: Optional[str] = None,
        *,
        deadline: Optional[float] = None,
    ) -> EmailChangeOutcome:
        new_email = self._checked(validate_email, new_email, "email")

        async def op() -> EmailChangeOutcome:
            user = (await self._bearer(token)).user
            if normalize_email(user.email) == new_email:
                raise ValidationError("email unchanged", detail={"field": "email"})
            if self.settings.require_password_on_email_change and user.has_password:
                if not password or not await self.verifier.verify_user_password(user, password):
                    raise AuthFailedError("password is incorrect")
            await self._ensure_email_free(new_email, owner_id=user.id)
            return await self.actions.change_email(
                user.id, new_email, self.settings.require_email_confirm
            )

        return await self._run("change_email", op(), deadline)

    # maintenance
    async def purge_expired(self, *, deadline: Optional[float] = None) -> Dict[str, int]:
        async def op() -> Dict[str, int]:
            sessions = await self.sessions.purge_expired()
            action_tokens = await self.actions.purge_expired()
            return {"sessions": sessions, "action_tokens": action_tokens}

        result = await self._run("purge_expired", op(), deadline)
        if any(result.values()):
            logger.info("expired_records_purged", **{f"{k}_count": v for k, v in result.items()})
        return result
