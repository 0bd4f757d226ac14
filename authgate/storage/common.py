"""Store contracts and record (de)serialization shared by the storage backends.

The service layer only talks to these protocols. ``MemoryStore`` implements all
three; ``RedisSessionStore`` implements ``SessionStore`` so sessions can live in
Redis while users and action tokens stay with the credential store.
"""

from __future__ import annotations

from datetime import datetime, timezone
from ipaddress import ip_address
from typing import Any, Callable, Dict, List, Optional, Protocol

from authgate.storage.models import (
    ActionPurpose,
    ActionToken,
    ActionTokenState,
    Redemption,
    Session,
    User,
)

# Mutation computed from a token being redeemed and its owner; returns the user
# fields to change. Runs inside the store's consistency boundary.
RedeemApply = Callable[[ActionToken, User], Dict[str, Any]]

USER_MUTABLE_FIELDS = frozenset(
    {"email", "username", "password_hash", "password_algo", "email_confirmed", "meta"}
)


class CredentialStore(Protocol):
    async def create_user(
        self,
        email: str,
        username: Optional[str] = None,
        *,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
        providers: Optional[Dict[str, str]] = None,
        email_confirmed: bool = False,
        meta: Optional[dict] = None,
    ) -> User: ...

    async def get_user(self, user_id: str) -> Optional[User]: ...

    async def get_user_by_email(self, email: str) -> Optional[User]: ...

    async def get_user_by_username(self, username: str) -> Optional[User]: ...

    async def get_user_by_provider(self, provider: str, provider_uid: str) -> Optional[User]: ...

    async def update_user(self, user_id: str, **changes: Any) -> Optional[User]: ...

    async def link_provider(self, user_id: str, provider: str, provider_uid: str) -> User: ...

    async def unlink_provider(self, user_id: str, provider: str) -> Optional[User]: ...


class SessionStore(Protocol):
    async def insert_session(self, session: Session) -> None: ...

    async def get_session(self, key: str) -> Optional[Session]: ...

    async def refresh_session(
        self,
        key: str,
        *,
        now: datetime,
        expires_at: datetime,
        new_key: Optional[str] = None,
    ) -> Optional[Session]: ...

    async def delete_session(self, key: str, *, now: datetime) -> bool: ...

    async def delete_user_sessions(
        self, user_id: str, *, now: datetime, except_key: Optional[str] = None
    ) -> int: ...

    async def list_user_sessions(self, user_id: str) -> List[Session]: ...

    async def purge_expired_sessions(self, now: datetime) -> int: ...

    async def ping(self) -> None: ...


class ActionTokenStore(Protocol):
    async def put_action_token(self, token: ActionToken) -> None: ...

    async def get_action_token(self, key: str) -> Optional[ActionToken]: ...

    async def mark_action_token_delivered(self, key: str) -> bool: ...

    async def redeem_action_token(
        self,
        key: str,
        purpose: ActionPurpose,
        *,
        now: datetime,
        apply: RedeemApply,
    ) -> Redemption: ...

    async def purge_expired_action_tokens(self, now: datetime) -> int: ...


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_username(username: Optional[str]) -> Optional[str]:
    if username is None:
        return None
    return username.strip().casefold()


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.isoformat()


def deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    value = datetime.fromisoformat(raw)
    # Older records may be naive; treat them as UTC
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def parse_ip_address(raw_ip: Any) -> Optional[str]:
    """Normalize a client address, dropping values that are not IPs."""
    if raw_ip is None:
        return None
    raw = str(raw_ip).strip()
    if not raw:
        return None
    try:
        return str(ip_address(raw))
    except ValueError:
        return None


def serialize_session(session: Session) -> Dict[str, str]:
    """Flat string mapping, usable both as JSON and as a Redis hash."""
    return {
        "key": session.key,
        "user_id": session.user_id,
        "method": session.method,
        "created_at": serialize_datetime(session.created_at),
        "refreshed_at": serialize_datetime(session.refreshed_at),
        "expires_at": serialize_datetime(session.expires_at),
        "ip_addr": session.ip_addr or "",
        "user_agent": session.user_agent or "",
    }


def deserialize_session(data: Dict[str, Any]) -> Session:
    return Session(
        key=data["key"],
        user_id=data["user_id"],
        method=data["method"],
        created_at=deserialize_datetime(data["created_at"]),
        refreshed_at=deserialize_datetime(data.get("refreshed_at") or data["created_at"]),
        expires_at=deserialize_datetime(data["expires_at"]),
        ip_addr=data.get("ip_addr") or None,
        user_agent=data.get("user_agent") or None,
    )


def serialize_user(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "username": user.username,
        "password_hash": user.password_hash,
        "password_algo": user.password_algo,
        "providers": dict(user.providers),
        "email_confirmed": user.email_confirmed,
        "created_at": serialize_datetime(user.created_at),
        "meta": user.meta,
    }


def deserialize_user(data: dict) -> User:
    return User(
        id=str(data["id"]),
        email=data["email"],
        username=data.get("username"),
        password_hash=data.get("password_hash"),
        password_algo=data.get("password_algo"),
        providers=dict(data.get("providers") or {}),
        email_confirmed=bool(data.get("email_confirmed", False)),
        created_at=deserialize_datetime(data["created_at"]),
        meta=data.get("meta"),
    )


def serialize_action_token(token: ActionToken) -> dict:
    return {
        "key": token.key,
        "user_id": token.user_id,
        "purpose": token.purpose.value,
        "payload": token.payload,
        "expires_at": serialize_datetime(token.expires_at),
        "state": token.state.value,
        "created_at": serialize_datetime(token.created_at),
        "consumed_at": serialize_datetime(token.consumed_at),
    }


def deserialize_action_token(data: dict) -> ActionToken:
    return ActionToken(
        key=data["key"],
        user_id=data["user_id"],
        purpose=ActionPurpose(data["purpose"]),
        payload=data.get("payload"),
        expires_at=deserialize_datetime(data["expires_at"]),
        state=ActionTokenState(data.get("state", ActionTokenState.REQUESTED.value)),
        created_at=deserialize_datetime(data["created_at"]),
        consumed_at=deserialize_datetime(data.get("consumed_at")),
    )
