from __future__ import annotations

from typing import Optional, Tuple

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authgate.logging import get_logger

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class PasswordHasher:
    """Salted argon2id hashing with constant-time verification.

    ``verify_dummy`` burns the same work as a real verification so callers can
    make a missing account cost as much as a wrong password.
    """

    def __init__(self, hasher: Optional[Argon2Hasher] = None) -> None:
        self._hasher = hasher or Argon2Hasher(type=Type.ID)
        self._dummy_hash = self._hasher.hash("authgate-dummy-password")

    @property
    def algo(self) -> str:
        return PASSWORD_ALGO

    def hash(self, password: str) -> Tuple[str, str]:
        return self._hasher.hash(password), PASSWORD_ALGO

    def verify(self, stored_hash: Optional[str], algo: Optional[str], password: str) -> bool:
        if not stored_hash:
            self.verify_dummy(password)
            return False
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", algo=algo)
            self.verify_dummy(password)
            return False
        try:
            return self._hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.warning("password_hash_unusable", error_type=type(exc).__name__)
            return False

    def verify_dummy(self, password: str) -> None:
        try:
            self._hasher.verify(self._dummy_hash, password)
        except VerificationError:
            pass

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True
