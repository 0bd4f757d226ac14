from __future__ import annotations

import base64
import hashlib
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from authgate.logging import get_logger
from authgate.service.clock import Clock, SystemClock
from authgate.service.errors import TokenExpiredError, TokenInvalidError
from authgate.storage.models import token_key

logger = get_logger(__name__)

SESSION_PURPOSE = "session"
MAX_TOKEN_LENGTH = 1024


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    purpose: str
    expires_at: datetime


class TokenCodec:
    """Issue and validate opaque, purpose-bound, expiring tokens.

    Tokens are Fernet envelopes (AES-CBC + HMAC-SHA256) around a small JSON
    claim set, so they are self-describing to the service but reveal nothing
    to whoever intercepts them. A random nonce makes every issued token unique
    even for identical claims. Retired secrets may be listed as fallbacks; they
    still validate but are never used to issue.
    """

    def __init__(
        self,
        secret: str,
        *,
        fallback_secrets: Iterable[str] = (),
        clock: Optional[Clock] = None,
    ) -> None:
        if not secret:
            raise ValueError("token secret is required")
        keys = [Fernet(self._derive_key(secret))]
        keys.extend(Fernet(self._derive_key(s)) for s in fallback_secrets if s)
        self._fernet = MultiFernet(keys)
        self.clock: Clock = clock or SystemClock()

    @staticmethod
    def _derive_key(material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(material.encode()).digest())

    def issue(self, subject_id: str, purpose: str, ttl: timedelta) -> str:
        if ttl <= timedelta(0):
            raise ValueError("token ttl must be positive")
        now = self.clock.now()
        claims = {
            "sub": subject_id,
            "pur": purpose,
            "exp": (now + ttl).timestamp(),
            "n": secrets.token_urlsafe(16),
        }
        payload = json.dumps(claims, separators=(",", ":")).encode()
        return self._fernet.encrypt_at_time(payload, int(now.timestamp())).decode()

    def validate(self, token: str, purpose: Optional[str] = None) -> TokenClaims:
        """Decode ``token``; raise ``TokenInvalidError`` or ``TokenExpiredError``."""
        if not isinstance(token, str) or not token or len(token) > MAX_TOKEN_LENGTH:
            raise TokenInvalidError("invalid token")
        try:
            raw = self._fernet.decrypt(token.encode())
            claims = json.loads(raw)
            subject = claims["sub"]
            token_purpose = claims["pur"]
            expires_at = datetime.fromtimestamp(float(claims["exp"]), tz=timezone.utc)
        except (InvalidToken, ValueError, KeyError, TypeError) as exc:
            logger.debug("token_decode_failed", error_type=type(exc).__name__)
            raise TokenInvalidError("invalid token") from exc
        if not isinstance(subject, str) or not isinstance(token_purpose, str):
            raise TokenInvalidError("invalid token")
        if purpose is not None and token_purpose != purpose:
            raise TokenInvalidError("invalid token", detail={"reason": "purpose"})
        if self.clock.now() >= expires_at:
            raise TokenExpiredError("token expired")
        return TokenClaims(subject=subject, purpose=token_purpose, expires_at=expires_at)

    @staticmethod
    def digest(token: str) -> str:
        return token_key(token)
