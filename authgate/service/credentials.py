from __future__ import annotations

import asyncio
from typing import Dict, Optional

from authgate.config import IdentifierMode
from authgate.logging import get_logger, hash_identifier
from authgate.service.errors import AuthFailedError
from authgate.service.passwords import PasswordHasher
from authgate.service.providers import ProviderAdapter, ProviderIdentity
from authgate.service.validation import validate_username
from authgate.storage.common import CredentialStore
from authgate.storage.models import User

logger = get_logger(__name__)


def _usable_username(candidate: Optional[str]) -> Optional[str]:
    try:
        return validate_username(candidate)
    except ValueError:
        return None


class CredentialVerifier:
    """Check local passwords and provider assertions against the credential store.

    Every local failure raises the same ``AuthFailedError`` and costs one argon2
    verification, whether the identifier was unknown or the password was wrong.
    """

    def __init__(
        self,
        store: CredentialStore,
        hasher: PasswordHasher,
        *,
        identifier_mode: IdentifierMode = IdentifierMode.EITHER,
        providers: Optional[Dict[str, ProviderAdapter]] = None,
        provider_auto_register: bool = True,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.identifier_mode = identifier_mode
        self.providers: Dict[str, ProviderAdapter] = dict(providers or {})
        self.provider_auto_register = provider_auto_register

    async def find_user(self, identifier: str) -> Optional[User]:
        identifier = (identifier or "").strip()
        if not identifier:
            return None
        mode = self.identifier_mode
        if mode == IdentifierMode.EMAIL or (mode == IdentifierMode.EITHER and "@" in identifier):
            return await self.store.get_user_by_email(identifier)
        if mode == IdentifierMode.USERNAME and "@" in identifier:
            return None
        return await self.store.get_user_by_username(identifier)

    async def verify_local(self, identifier: str, password: str) -> User:
        user = await self.find_user(identifier)
        if user is None:
            await asyncio.to_thread(self.hasher.verify_dummy, password)
            logger.info("login_failed", identifier_hash=hash_identifier(identifier or ""))
            raise AuthFailedError("invalid credentials")
        if not await self.verify_user_password(user, password):
            logger.info("login_failed", identifier_hash=hash_identifier(identifier))
            raise AuthFailedError("invalid credentials")
        if self.hasher.needs_rehash(user.password_hash):
            password_hash, algo = await asyncio.to_thread(self.hasher.hash, password)
            user = await self.store.update_user(
                user.id, password_hash=password_hash, password_algo=algo
            ) or user
            logger.info("password_rehashed", user_id=user.id)
        return user

    async def verify_user_password(self, user: User, password: str) -> bool:
        return await asyncio.to_thread(
            self.hasher.verify, user.password_hash, user.password_algo, password
        )

    async def verify_provider(self, provider: str, assertion: str) -> User:
        adapter = self.providers.get(provider)
        if adapter is None:
            logger.info("provider_login_unknown_provider", provider=provider)
            raise AuthFailedError("invalid credentials")
        identity = await adapter.verify_assertion(assertion)
        if identity is None:
            raise AuthFailedError("invalid credentials")
        user = await self.store.get_user_by_provider(provider, identity.provider_uid)
        if user is not None:
            return user
        if not self.provider_auto_register:
            logger.info("provider_login_unlinked", provider=provider)
            raise AuthFailedError("invalid credentials")
        return await self._link_or_register(identity)

    async def _link_or_register(self, identity: ProviderIdentity) -> User:
        if not identity.email:
            logger.info("provider_identity_missing_email", provider=identity.provider)
            raise AuthFailedError("invalid credentials")
        existing = await self.store.get_user_by_email(identity.email)
        if existing is not None:
            # Only a provider-verified email may claim an existing account
            if not identity.email_verified:
                logger.info(
                    "provider_link_refused_unverified",
                    provider=identity.provider,
                    email_hash=hash_identifier(identity.email),
                )
                raise AuthFailedError("invalid credentials")
            if existing.providers.get(identity.provider) not in (None, identity.provider_uid):
                logger.info(
                    "provider_link_refused_other_identity",
                    user_id=existing.id,
                    provider=identity.provider,
                )
                raise AuthFailedError("invalid credentials")
            user = await self.store.link_provider(
                existing.id, identity.provider, identity.provider_uid
            )
            logger.info("provider_linked", user_id=user.id, provider=identity.provider)
            return user
        username = _usable_username(identity.username)
        if username and await self.store.get_user_by_username(username) is not None:
            username = None
        user = await self.store.create_user(
            identity.email,
            username,
            providers={identity.provider: identity.provider_uid},
            email_confirmed=identity.email_verified,
        )
        logger.info("provider_user_registered", user_id=user.id, provider=identity.provider)
        return user
