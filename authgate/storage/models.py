from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

LOCAL_METHOD = "local"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def token_key(token: str) -> str:
    """Storage key for an opaque token; raw tokens are never persisted."""
    return hashlib.sha256(token.encode()).hexdigest()


@dataclass
class User:
    id: str
    email: str
    username: Optional[str] = None
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    # provider name -> provider user id
    providers: Dict[str, str] = field(default_factory=dict)
    email_confirmed: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    meta: Dict | None = None

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    def login_methods(self) -> set[str]:
        methods = set(self.providers)
        if self.has_password:
            methods.add(LOCAL_METHOD)
        return methods


@dataclass
class Session:
    key: str
    user_id: str
    method: str
    created_at: datetime
    refreshed_at: datetime
    expires_at: datetime
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    # Only populated on values handed back to the bearer
    token: Optional[str] = field(default=None, compare=False)

    def is_live(self, now: datetime) -> bool:
        return now < self.expires_at


class ActionPurpose(str, Enum):
    RESET = "reset"
    CONFIRM_EMAIL = "confirm-email"


class ActionTokenState(str, Enum):
    REQUESTED = "requested"
    DELIVERED = "delivered"
    CONSUMED = "consumed"


class RedemptionStatus(str, Enum):
    REDEEMED = "redeemed"
    MISSING = "missing"
    CONSUMED = "consumed"
    EXPIRED = "expired"
    WRONG_PURPOSE = "wrong_purpose"


@dataclass
class ActionToken:
    key: str
    user_id: str
    purpose: ActionPurpose
    expires_at: datetime
    payload: Optional[str] = None
    state: ActionTokenState = ActionTokenState.REQUESTED
    created_at: datetime = field(default_factory=_utcnow)
    consumed_at: Optional[datetime] = None

    def is_redeemable(self, now: datetime) -> bool:
        return self.state != ActionTokenState.CONSUMED and now < self.expires_at


@dataclass
class Redemption:
    """Outcome of a single atomic consume-and-apply attempt."""

    status: RedemptionStatus
    user: Optional[User] = None
    token: Optional[ActionToken] = None
