from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import timedelta
from typing import List, Optional

from authgate.logging import get_logger
from authgate.service.clock import Clock, SystemClock
from authgate.service.errors import SessionNotFoundError, TokenExpiredError, TokenInvalidError
from authgate.service.tokens import SESSION_PURPOSE, TokenClaims, TokenCodec
from authgate.storage.common import SessionStore, parse_ip_address
from authgate.storage.models import Session

logger = get_logger(__name__)


@dataclass(frozen=True)
class ClientMeta:
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_request_values(cls, ip_addr, user_agent) -> "ClientMeta":
        agent = (user_agent or "").strip()[:512] or None
        return cls(ip_addr=parse_ip_address(ip_addr), user_agent=agent)


class SessionRegistry:
    """Owns session records: create, authenticate, refresh and revoke.

    A session token is a codec token of purpose ``session`` whose own expiry is
    the absolute session lifetime. The store keeps the sliding expiry, keyed by
    the token digest, and performs every mutation as one conditional step so
    concurrent refresh and revoke on the same token resolve consistently
    across service instances.
    """

    def __init__(
        self,
        store: SessionStore,
        codec: TokenCodec,
        *,
        ttl: timedelta,
        max_lifetime: timedelta,
        rotate_on_refresh: bool = False,
        clock: Optional[Clock] = None,
    ) -> None:
        if ttl <= timedelta(0) or max_lifetime <= timedelta(0):
            raise ValueError("session ttl and lifetime must be positive")
        self.store = store
        self.codec = codec
        self.ttl = ttl
        self.max_lifetime = max(max_lifetime, ttl)
        self.rotate_on_refresh = rotate_on_refresh
        self.clock: Clock = clock or SystemClock()

    def _claims(self, token: str) -> TokenClaims:
        try:
            return self.codec.validate(token, SESSION_PURPOSE)
        except (TokenInvalidError, TokenExpiredError) as exc:
            raise SessionNotFoundError("session not found") from exc

    async def create(
        self, user_id: str, method: str, client_meta: Optional[ClientMeta] = None
    ) -> Session:
        meta = client_meta or ClientMeta()
        now = self.clock.now()
        token = self.codec.issue(user_id, SESSION_PURPOSE, self.max_lifetime)
        session = Session(
            key=self.codec.digest(token),
            user_id=user_id,
            method=method,
            created_at=now,
            refreshed_at=now,
            expires_at=now + self.ttl,
            ip_addr=meta.ip_addr,
            user_agent=meta.user_agent,
        )
        await self.store.insert_session(session)
        logger.info("session_created", user_id=user_id, method=method)
        return replace(session, token=token)

    async def authenticate(self, token: str) -> Session:
        claims = self._claims(token)
        session = await self.store.get_session(self.codec.digest(token))
        if (
            session is None
            or not session.is_live(self.clock.now())
            or session.user_id != claims.subject
        ):
            raise SessionNotFoundError("session not found")
        return replace(session, token=token)

    async def refresh(self, token: str) -> Session:
        """Extend a live session; never inserts.

        With rotation enabled the record moves to a fresh token in the same
        conditional update, so the old token stops resolving at once.
        """
        claims = self._claims(token)
        now = self.clock.now()
        expires_at = min(now + self.ttl, claims.expires_at)
        new_token = None
        if self.rotate_on_refresh:
            new_token = self.codec.issue(claims.subject, SESSION_PURPOSE, claims.expires_at - now)
        refreshed = await self.store.refresh_session(
            self.codec.digest(token),
            now=now,
            expires_at=expires_at,
            new_key=self.codec.digest(new_token) if new_token else None,
        )
        if refreshed is None or refreshed.user_id != claims.subject:
            raise SessionNotFoundError("session not found")
        logger.info("session_refreshed", user_id=refreshed.user_id, rotated=bool(new_token))
        return replace(refreshed, token=new_token or token)

    async def revoke(self, token: str) -> None:
        if not await self.store.delete_session(self.codec.digest(token), now=self.clock.now()):
            raise SessionNotFoundError("session not found")
        logger.info("session_revoked")

    async def revoke_others(self, user_id: str, keep_token: str) -> int:
        removed = await self.store.delete_user_sessions(
            user_id, now=self.clock.now(), except_key=self.codec.digest(keep_token)
        )
        logger.info("sessions_revoked", user_id=user_id, scope="others", revoked_count=removed)
        return removed

    async def revoke_all(self, user_id: str) -> int:
        removed = await self.store.delete_user_sessions(user_id, now=self.clock.now())
        logger.info("sessions_revoked", user_id=user_id, scope="all", revoked_count=removed)
        return removed

    async def list_sessions(self, user_id: str) -> List[Session]:
        now = self.clock.now()
        return [s for s in await self.store.list_user_sessions(user_id) if s.is_live(now)]

    async def purge_expired(self) -> int:
        return await self.store.purge_expired_sessions(self.clock.now())
