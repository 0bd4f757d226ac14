from __future__ import annotations

import asyncio
from datetime import timedelta
from enum import Enum
from typing import Callable, Optional

from authgate.logging import get_logger, hash_identifier
from authgate.service.clock import Clock, SystemClock
from authgate.service.email import Notifier
from authgate.service.errors import (
    NotFoundError,
    TokenExpiredError,
    TokenInvalidError,
    UnavailableError,
)
from authgate.service.passwords import PasswordHasher
from authgate.service.sessions import SessionRegistry
from authgate.service.tokens import TokenCodec
from authgate.storage.common import ActionTokenStore, CredentialStore, normalize_email
from authgate.storage.models import (
    ActionPurpose,
    ActionToken,
    Redemption,
    RedemptionStatus,
    User,
)

logger = get_logger(__name__)


def _email_changes(user: User, new_email: str) -> dict:
    """Changes that move ``user`` to ``new_email``; a username that mirrors the email follows it."""
    changes = {"email": normalize_email(new_email)}
    if user.username and user.username == user.email:
        changes["username"] = changes["email"]
    return changes


class EmailChangeOutcome(str, Enum):
    APPLIED = "applied"
    PENDING_CONFIRMATION = "pending_confirmation"


class ActionTokenFlow:
    """Password-reset and email-confirmation flows over single-use action tokens.

    Each token moves Requested -> Delivered -> Consumed, or expires unconsumed.
    Redemption is one store call that consumes the token and applies the user
    mutation together, so a token is never spent without its effect and never
    reusable after it. ``tokens`` must be the store that owns the user records.
    """

    def __init__(
        self,
        users: CredentialStore,
        tokens: ActionTokenStore,
        sessions: SessionRegistry,
        codec: TokenCodec,
        hasher: PasswordHasher,
        notifier: Notifier,
        *,
        reset_ttl: timedelta,
        confirm_ttl: timedelta,
        logout_all_on_reset: bool = True,
        clock: Optional[Clock] = None,
    ) -> None:
        self.users = users
        self.tokens = tokens
        self.sessions = sessions
        self.codec = codec
        self.hasher = hasher
        self.notifier = notifier
        self.reset_ttl = reset_ttl
        self.confirm_ttl = confirm_ttl
        self.logout_all_on_reset = logout_all_on_reset
        self.clock: Clock = clock or SystemClock()

    async def _issue(
        self,
        user: User,
        purpose: ActionPurpose,
        ttl: timedelta,
        send: Callable[[str], bool],
        *,
        payload: Optional[str] = None,
    ) -> bool:
        now = self.clock.now()
        token = self.codec.issue(user.id, purpose.value, ttl)
        record = ActionToken(
            key=self.codec.digest(token),
            user_id=user.id,
            purpose=purpose,
            expires_at=now + ttl,
            payload=payload,
            created_at=now,
        )
        await self.tokens.put_action_token(record)
        # Notifiers do blocking I/O
        delivered = await asyncio.to_thread(send, token)
        if not delivered:
            logger.warning(
                "action_token_delivery_failed", user_id=user.id, purpose=purpose.value
            )
            return False
        await self.tokens.mark_action_token_delivered(record.key)
        logger.info("action_token_delivered", user_id=user.id, purpose=purpose.value)
        return True

    async def _redeem(self, token: str, purpose: ActionPurpose, apply) -> User:
        claims = self.codec.validate(token, purpose.value)
        redemption = await self.tokens.redeem_action_token(
            self.codec.digest(token), purpose, now=self.clock.now(), apply=apply
        )
        self._raise_for(redemption, purpose)
        if redemption.user.id != claims.subject:
            raise TokenInvalidError("invalid token")
        return redemption.user

    @staticmethod
    def _raise_for(redemption: Redemption, purpose: ActionPurpose) -> None:
        status = redemption.status
        if status == RedemptionStatus.REDEEMED:
            return
        logger.info("action_token_rejected", purpose=purpose.value, reason=status.value)
        if status == RedemptionStatus.EXPIRED:
            raise TokenExpiredError("token expired")
        raise TokenInvalidError("invalid token", detail={"reason": status.value})

    async def _find_account(self, identifier_or_email: str) -> Optional[User]:
        value = (identifier_or_email or "").strip()
        if not value:
            return None
        if "@" in value:
            return await self.users.get_user_by_email(value)
        return await self.users.get_user_by_username(value)

    async def start_password_reset(self, identifier_or_email: str) -> None:
        """Issue and deliver a reset token if the account exists; silent otherwise."""
        user = await self._find_account(identifier_or_email)
        if user is None:
            logger.info(
                "password_reset_unknown_account",
                identifier_hash=hash_identifier(identifier_or_email or ""),
            )
            return
        await self._issue(
            user,
            ActionPurpose.RESET,
            self.reset_ttl,
            lambda token: self.notifier.send_reset_email(user, token),
        )
        logger.info("password_reset_requested", user_id=user.id)

    async def finish_password_reset(self, token: str, new_password: str) -> User:
        self.codec.validate(token, ActionPurpose.RESET.value)
        password_hash, algo = await asyncio.to_thread(self.hasher.hash, new_password)

        def apply(record: ActionToken, user: User) -> dict:
            return {"password_hash": password_hash, "password_algo": algo}

        user = await self._redeem(token, ActionPurpose.RESET, apply)
        if self.logout_all_on_reset:
            await self.sessions.revoke_all(user.id)
        logger.info("password_reset_completed", user_id=user.id)
        return user

    async def start_email_confirmation(self, user_id: str, new_email: Optional[str] = None) -> bool:
        """Issue a confirm-email token; returns whether it was delivered.

        With ``new_email`` the token carries the pending address and the mail
        goes there; the account keeps its current email until redemption.
        """
        user = await self.users.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found")
        pending = normalize_email(new_email) if new_email else None
        delivered = await self._issue(
            user,
            ActionPurpose.CONFIRM_EMAIL,
            self.confirm_ttl,
            lambda token: self.notifier.send_confirmation_email(user, token, pending),
            payload=pending,
        )
        logger.info("email_confirmation_requested", user_id=user.id, change=bool(pending))
        return delivered

    async def finish_email_confirmation(self, token: str) -> User:
        def apply(record: ActionToken, user: User) -> dict:
            if not record.payload:
                return {"email_confirmed": True}
            return {**_email_changes(user, record.payload), "email_confirmed": True}

        user = await self._redeem(token, ActionPurpose.CONFIRM_EMAIL, apply)
        logger.info("email_confirmed", user_id=user.id)
        return user

    async def change_email(
        self, user_id: str, new_email: str, require_confirmation: bool
    ) -> EmailChangeOutcome:
        if not require_confirmation:
            user = await self.users.get_user(user_id)
            if user is None:
                raise NotFoundError("user not found")
            changes = _email_changes(user, new_email)
            await self.users.update_user(user_id, email_confirmed=False, **changes)
            logger.info("email_changed", user_id=user_id)
            return EmailChangeOutcome.APPLIED
        if not await self.start_email_confirmation(user_id, new_email):
            raise UnavailableError("confirmation email could not be sent")
        return EmailChangeOutcome.PENDING_CONFIRMATION

    async def purge_expired(self) -> int:
        return await self.tokens.purge_expired_action_tokens(self.clock.now())
