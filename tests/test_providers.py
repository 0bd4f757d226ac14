"""Tests for OAuth userinfo provider adapters against a mocked transport."""

import httpx
import pytest

from authgate.service.errors import UnavailableError
from authgate.service.providers import (
    OAuthUserinfoAdapter,
    build_provider_adapters,
    parse_oauth_userinfo,
)


def _transport(routes):
    """MockTransport answering ``routes[url] -> (status, json)`` and recording requests."""
    seen = []

    def handler(request):
        seen.append(request)
        status, body = routes.get(str(request.url), (404, {}))
        return httpx.Response(status, json=body)

    transport = httpx.MockTransport(handler)
    transport.seen = seen
    return transport


class TestParseUserinfo:
    """Tests for mapping provider payloads to identities."""

    def test_google(self):
        parsed = parse_oauth_userinfo(
            "google", {"id": "g-1", "email": "ann@example.com", "verified_email": True}
        )

        assert parsed == {
            "provider_uid": "g-1",
            "email": "ann@example.com",
            "email_verified": True,
            "username": "ann",
        }

    def test_github_public_email_is_unverified(self):
        parsed = parse_oauth_userinfo(
            "github", {"id": 42, "login": "octo", "email": "octo@example.com"}
        )

        assert parsed["provider_uid"] == "42"
        assert parsed["username"] == "octo"
        assert parsed["email_verified"] is False

    def test_microsoft_falls_back_to_principal(self):
        parsed = parse_oauth_userinfo(
            "microsoft", {"id": "m-1", "mail": None, "userPrincipalName": "bea@corp.example"}
        )

        assert parsed["email"] == "bea@corp.example"
        assert parsed["username"] == "bea"


class TestOAuthUserinfoAdapter:
    """Tests for assertion verification over HTTP."""

    async def test_google_identity(self):
        transport = _transport({
            "https://www.googleapis.com/oauth2/v2/userinfo": (
                200,
                {"id": "g-1", "email": "ann@example.com", "verified_email": True},
            ),
        })
        adapter = OAuthUserinfoAdapter("google", transport=transport)

        identity = await adapter.verify_assertion("access-token")

        assert identity.provider == "google"
        assert identity.provider_uid == "g-1"
        assert identity.email_verified
        assert transport.seen[0].headers["Authorization"] == "Bearer access-token"

    async def test_github_uses_verified_primary_email(self):
        transport = _transport({
            "https://api.github.com/user": (200, {"id": 7, "login": "octo", "email": None}),
            "https://api.github.com/user/emails": (
                200,
                [
                    {"email": "old@example.com", "primary": False, "verified": True},
                    {"email": "octo@example.com", "primary": True, "verified": True},
                ],
            ),
        })
        adapter = OAuthUserinfoAdapter("github", transport=transport)

        identity = await adapter.verify_assertion("gho_token")

        assert identity.provider_uid == "7"
        assert identity.email == "octo@example.com"
        assert identity.email_verified
        assert transport.seen[0].headers["Accept"] == "application/vnd.github+json"

    async def test_github_without_emails_scope(self):
        transport = _transport({
            "https://api.github.com/user": (200, {"id": 7, "login": "octo", "email": "o@x.io"}),
            "https://api.github.com/user/emails": (403, {}),
        })
        adapter = OAuthUserinfoAdapter("github", transport=transport)

        identity = await adapter.verify_assertion("gho_token")

        assert identity.email == "o@x.io"
        assert not identity.email_verified

    @pytest.mark.parametrize("status", [401, 403])
    async def test_rejected_assertion(self, status):
        transport = _transport({"https://graph.microsoft.com/v1.0/me": (status, {})})
        adapter = OAuthUserinfoAdapter("microsoft", transport=transport)

        assert await adapter.verify_assertion("expired") is None

    async def test_empty_assertion_makes_no_request(self):
        transport = _transport({})
        adapter = OAuthUserinfoAdapter("google", transport=transport)

        assert await adapter.verify_assertion("") is None
        assert transport.seen == []

    async def test_missing_uid(self):
        transport = _transport({
            "https://www.googleapis.com/oauth2/v2/userinfo": (200, {"email": "a@b.co"}),
        })
        adapter = OAuthUserinfoAdapter("google", transport=transport)

        assert await adapter.verify_assertion("token") is None

    async def test_provider_outage(self):
        transport = _transport({"https://www.googleapis.com/oauth2/v2/userinfo": (502, {})})
        adapter = OAuthUserinfoAdapter("google", transport=transport)

        with pytest.raises(UnavailableError) as exc:
            await adapter.verify_assertion("token")
        assert exc.value.detail == {"provider": "google"}

    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        adapter = OAuthUserinfoAdapter("google", transport=httpx.MockTransport(handler))

        with pytest.raises(UnavailableError):
            await adapter.verify_assertion("token")

    def test_unsupported_provider(self):
        with pytest.raises(ValueError):
            OAuthUserinfoAdapter("myspace")


def test_build_provider_adapters_skips_unknown():
    adapters = build_provider_adapters(["google", "myspace", "github"], timeout=2.0)

    assert sorted(adapters) == ["github", "google"]
    assert adapters["google"].timeout == 2.0
