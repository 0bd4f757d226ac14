from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Protocol

import httpx

from authgate.logging import get_logger
from authgate.service.errors import UnavailableError

logger = get_logger(__name__)

# Userinfo endpoints for providers whose access tokens we accept as assertions
OAUTH_PROVIDERS = {
    "google": {
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
    },
    "github": {
        "userinfo_url": "https://api.github.com/user",
        "emails_url": "https://api.github.com/user/emails",
    },
    "microsoft": {
        "userinfo_url": "https://graph.microsoft.com/v1.0/me",
    },
}


@dataclass(frozen=True)
class ProviderIdentity:
    provider: str
    provider_uid: str
    email: Optional[str] = None
    email_verified: bool = False
    username: Optional[str] = None


class ProviderAdapter(Protocol):
    name: str

    async def verify_assertion(self, raw: str) -> Optional[ProviderIdentity]:
        """Return the asserted identity, or ``None`` when the provider rejects it."""
        ...


def parse_oauth_userinfo(provider: str, userinfo: dict) -> Dict[str, object]:
    """Parse user info from an OAuth provider into a standardized mapping."""
    if provider == "google":
        return {
            "provider_uid": userinfo.get("id") or userinfo.get("sub"),
            "email": userinfo.get("email"),
            "email_verified": bool(
                userinfo.get("verified_email", userinfo.get("email_verified", False))
            ),
            "username": (userinfo.get("email") or "").split("@")[0] or None,
        }
    if provider == "github":
        return {
            "provider_uid": str(userinfo["id"]) if userinfo.get("id") is not None else None,
            "email": userinfo.get("email"),
            # /user does not say whether the public email is verified
            "email_verified": False,
            "username": userinfo.get("login"),
        }
    if provider == "microsoft":
        principal = userinfo.get("userPrincipalName") or ""
        return {
            "provider_uid": userinfo.get("id"),
            "email": userinfo.get("mail") or principal or None,
            "email_verified": False,
            "username": principal.split("@")[0] or None,
        }
    return {"provider_uid": userinfo.get("id") or userinfo.get("sub")}


class OAuthUserinfoAdapter:
    """Validate a provider access token by calling the provider's userinfo API.

    A 401/403 from the provider means the assertion is invalid; any other
    transport or server failure is surfaced as ``UnavailableError``.
    """

    def __init__(
        self,
        name: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if name not in OAUTH_PROVIDERS:
            raise ValueError(f"unsupported provider: {name}")
        self.name = name
        self.config = OAUTH_PROVIDERS[name]
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=False, transport=self._transport
        )

    async def verify_assertion(self, raw: str) -> Optional[ProviderIdentity]:
        if not raw:
            return None
        headers = {"Authorization": f"Bearer {raw}", "Accept": "application/json"}
        # GitHub requires a special header
        if self.name == "github":
            headers["Accept"] = "application/vnd.github+json"
        try:
            async with self._client() as client:
                response = await client.get(self.config["userinfo_url"], headers=headers)
                if response.status_code in (401, 403):
                    logger.info("provider_assertion_rejected", provider=self.name)
                    return None
                response.raise_for_status()
                userinfo = response.json()
                if not isinstance(userinfo, dict):
                    logger.error("provider_userinfo_invalid_format", provider=self.name)
                    return None
                identity = parse_oauth_userinfo(self.name, userinfo)
                if self.name == "github":
                    await self._fill_github_email(client, headers, identity)
        except httpx.HTTPStatusError as exc:
            logger.error(
                "provider_userinfo_http_error",
                provider=self.name,
                status_code=exc.response.status_code,
            )
            raise UnavailableError(
                "identity provider unavailable", detail={"provider": self.name}
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("provider_userinfo_error", provider=self.name, error=str(exc))
            raise UnavailableError(
                "identity provider unavailable", detail={"provider": self.name}
            ) from exc

        if not identity.get("provider_uid"):
            logger.error("provider_identity_missing_uid", provider=self.name)
            return None
        return ProviderIdentity(
            provider=self.name,
            provider_uid=str(identity["provider_uid"]),
            email=identity.get("email") or None,
            email_verified=bool(identity.get("email_verified")),
            username=identity.get("username") or None,
        )

    async def _fill_github_email(
        self, client: httpx.AsyncClient, headers: dict, identity: Dict[str, object]
    ) -> None:
        response = await client.get(self.config["emails_url"], headers=headers)
        if response.status_code != 200:
            return
        emails = response.json()
        primary = next(
            (e for e in emails if isinstance(e, dict) and e.get("primary") and e.get("verified")),
            None,
        )
        if primary:
            identity["email"] = primary["email"]
            identity["email_verified"] = True


def build_provider_adapters(
    names: Iterable[str],
    *,
    timeout: float = 10.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, ProviderAdapter]:
    adapters: Dict[str, ProviderAdapter] = {}
    for name in names:
        if name not in OAUTH_PROVIDERS:
            logger.warning("provider_unsupported", provider=name)
            continue
        adapters[name] = OAuthUserinfoAdapter(name, timeout=timeout, transport=transport)
    return adapters
