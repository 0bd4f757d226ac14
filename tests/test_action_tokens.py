"""Tests for password-reset and email-confirmation tokens.

Tests for:
- The reset round trip and single-use redemption
- Expiry, purpose binding and superseding of action tokens
- Email confirmation with and without a pending address
- Delivery failures and atomic consume-and-apply
"""

import asyncio

import pytest

from authgate.service.action_tokens import EmailChangeOutcome
from authgate.service.errors import (
    AuthFailedError,
    ConflictError,
    NotFoundError,
    TokenExpiredError,
    TokenInvalidError,
    UnavailableError,
)
from authgate.storage.models import ActionTokenState


async def _register_alice(gateway):
    result = await gateway.register("alice@example.com", "pw123", "pw123", "alice")
    return result.user


class TestPasswordReset:
    """Tests for forgot-password and password-reset."""

    async def test_alice_reset_round_trip(self, runtime, notifier):
        gateway = runtime.gateway
        alice = await _register_alice(gateway)

        await gateway.forgot_password("alice@example.com")
        assert notifier.resets[-1][0] == "alice@example.com"

        user = await runtime.actions.finish_password_reset(notifier.last_reset_token, "newpw")

        assert user.id == alice.id
        assert (await runtime.verifier.verify_local("alice", "newpw")).id == alice.id
        with pytest.raises(AuthFailedError):
            await runtime.verifier.verify_local("alice", "pw123")

    async def test_reset_by_username(self, gateway, notifier):
        await _register_alice(gateway)

        await gateway.forgot_password("alice")

        assert len(notifier.resets) == 1

    async def test_unknown_account_is_silent(self, gateway, notifier):
        await _register_alice(gateway)

        await gateway.forgot_password("nobody@example.com")
        await gateway.forgot_password("")

        assert notifier.resets == []

    async def test_token_is_single_use(self, runtime, gateway, notifier):
        await _register_alice(gateway)
        await gateway.forgot_password("alice@example.com")
        token = notifier.last_reset_token

        await gateway.reset_password(token, "newpw", "newpw")
        with pytest.raises(TokenInvalidError):
            await gateway.reset_password(token, "otherpw", "otherpw")

        await runtime.verifier.verify_local("alice", "newpw")
        with pytest.raises(AuthFailedError):
            await runtime.verifier.verify_local("alice", "otherpw")

    async def test_concurrent_redemption_succeeds_once(self, runtime, gateway, notifier):
        await _register_alice(gateway)
        await gateway.forgot_password("alice@example.com")
        token = notifier.last_reset_token

        results = await asyncio.gather(
            runtime.actions.finish_password_reset(token, "first"),
            runtime.actions.finish_password_reset(token, "second"),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, TokenInvalidError)]
        assert len(winners) == 1
        assert len(losers) == 1

    async def test_expired_token(self, gateway, notifier, clock, settings):
        await _register_alice(gateway)
        await gateway.forgot_password("alice@example.com")
        clock.advance(minutes=settings.password_reset_ttl_minutes)

        with pytest.raises(TokenExpiredError):
            await gateway.reset_password(notifier.last_reset_token, "newpw")

    async def test_newer_token_supersedes_older(self, gateway, notifier):
        await _register_alice(gateway)
        await gateway.forgot_password("alice@example.com")
        first = notifier.last_reset_token
        await gateway.forgot_password("alice@example.com")
        second = notifier.last_reset_token

        with pytest.raises(TokenInvalidError):
            await gateway.reset_password(first, "newpw")
        await gateway.reset_password(second, "newpw")

    async def test_confirmation_token_cannot_reset(self, runtime, gateway, notifier):
        alice = await _register_alice(gateway)
        await runtime.actions.start_email_confirmation(alice.id)

        with pytest.raises(TokenInvalidError):
            await gateway.reset_password(notifier.last_confirmation_token, "newpw")

    async def test_reset_revokes_sessions(self, gateway, notifier):
        await _register_alice(gateway)
        ctx = await gateway.login("alice", "pw123")
        await gateway.forgot_password("alice@example.com")

        await gateway.reset_password(notifier.last_reset_token, "newpw")

        assert not await gateway.logout(ctx.session.token)

    async def test_reset_can_log_in(self, make_runtime, notifier):
        gateway = make_runtime(login_on_password_reset=True).gateway
        await _register_alice(gateway)
        await gateway.forgot_password("alice@example.com")

        ctx = await gateway.reset_password(notifier.last_reset_token, "newpw")

        assert ctx.session is not None
        assert (await gateway.session_info(ctx.session.token)).user_id == ctx.user.id

    async def test_delivery_state(self, runtime, gateway, notifier):
        alice = await _register_alice(gateway)
        await gateway.forgot_password("alice@example.com")
        record = await runtime.store.get_action_token(
            runtime.codec.digest(notifier.last_reset_token)
        )
        assert record.state == ActionTokenState.DELIVERED
        assert record.user_id == alice.id

        notifier.deliver = False
        await gateway.forgot_password("alice@example.com")
        record = await runtime.store.get_action_token(
            runtime.codec.digest(notifier.last_reset_token)
        )
        assert record.state == ActionTokenState.REQUESTED


class TestEmailConfirmation:
    """Tests for confirm-email tokens."""

    async def test_wrong_token_leaves_email_unchanged(self, runtime, gateway, notifier):
        alice = await _register_alice(gateway)
        await runtime.actions.start_email_confirmation(alice.id, "new@x.com")
        assert notifier.confirmations[-1][0] == "new@x.com"

        with pytest.raises(TokenInvalidError):
            await runtime.actions.finish_email_confirmation("wrong-token")

        assert (await runtime.store.get_user(alice.id)).email == "alice@example.com"

    async def test_pending_address_applied_on_redemption(self, runtime, gateway, notifier):
        alice = await _register_alice(gateway)
        await runtime.actions.start_email_confirmation(alice.id, "New@X.com")

        user = await gateway.confirm_email(notifier.last_confirmation_token)

        assert user.id == alice.id
        assert user.email == "new@x.com"
        assert user.email_confirmed
        assert user.username == "alice"

    async def test_plain_confirmation(self, runtime, gateway, notifier):
        alice = await _register_alice(gateway)
        assert not alice.email_confirmed
        await runtime.actions.start_email_confirmation(alice.id)

        user = await gateway.confirm_email(notifier.last_confirmation_token)

        assert user.email == "alice@example.com"
        assert user.email_confirmed
        with pytest.raises(TokenInvalidError):
            await gateway.confirm_email(notifier.last_confirmation_token)

    async def test_reset_token_cannot_confirm(self, gateway, notifier):
        await _register_alice(gateway)
        await gateway.forgot_password("alice")

        with pytest.raises(TokenInvalidError):
            await gateway.confirm_email(notifier.last_reset_token)

    async def test_expired_confirmation(self, runtime, gateway, notifier, clock, settings):
        alice = await _register_alice(gateway)
        await runtime.actions.start_email_confirmation(alice.id)
        clock.advance(minutes=settings.email_confirm_ttl_minutes + 1)

        with pytest.raises(TokenExpiredError):
            await gateway.confirm_email(notifier.last_confirmation_token)

    async def test_conflict_leaves_token_unconsumed(self, runtime, gateway, notifier):
        alice = await _register_alice(gateway)
        await runtime.actions.start_email_confirmation(alice.id, "taken@example.com")
        token = notifier.last_confirmation_token
        squatter = await gateway.register("taken@example.com", "pw123", username="squatter")

        with pytest.raises(ConflictError):
            await gateway.confirm_email(token)

        record = await runtime.store.get_action_token(runtime.codec.digest(token))
        assert record.state != ActionTokenState.CONSUMED
        assert (await runtime.store.get_user(alice.id)).email == "alice@example.com"

        await runtime.store.update_user(squatter.user.id, email="moved@example.com")
        assert (await gateway.confirm_email(token)).email == "taken@example.com"

    async def test_unknown_user(self, runtime):
        with pytest.raises(NotFoundError):
            await runtime.actions.start_email_confirmation("missing-user")

    async def test_registration_sends_confirmation(self, make_runtime, notifier):
        gateway = make_runtime(require_email_confirm=True).gateway

        result = await gateway.register("alice@example.com", "pw123", username="alice")

        assert result.confirmation_sent
        assert result.session is None
        assert notifier.confirmations[-1][0] == "alice@example.com"


class TestChangeEmail:
    """Tests for changing the address on an account."""

    async def test_immediate_change(self, runtime, gateway):
        await _register_alice(gateway)
        ctx = await gateway.login("alice", "pw123")

        outcome = await gateway.change_email(ctx.session.token, "alice2@example.com")

        assert outcome == EmailChangeOutcome.APPLIED
        user = await runtime.store.get_user(ctx.user.id)
        assert user.email == "alice2@example.com"
        assert not user.email_confirmed

    async def test_confirmed_change_waits_for_redemption(self, make_runtime, notifier):
        runtime = make_runtime(require_email_confirm=True)
        gateway = runtime.gateway
        alice = await _register_alice(gateway)
        await gateway.confirm_email(notifier.last_confirmation_token)
        ctx = await gateway.login("alice", "pw123")

        outcome = await gateway.change_email(ctx.session.token, "alice2@example.com")

        assert outcome == EmailChangeOutcome.PENDING_CONFIRMATION
        assert (await runtime.store.get_user(alice.id)).email == "alice@example.com"
        confirmed = await gateway.confirm_email(notifier.last_confirmation_token)
        assert confirmed.email == "alice2@example.com"

    async def test_undeliverable_confirmation(self, make_runtime, notifier):
        runtime = make_runtime(require_email_confirm=True)
        gateway = runtime.gateway
        await _register_alice(gateway)
        await gateway.confirm_email(notifier.last_confirmation_token)
        ctx = await gateway.login("alice", "pw123")
        notifier.deliver = False

        with pytest.raises(UnavailableError):
            await gateway.change_email(ctx.session.token, "alice2@example.com")

    async def test_mirrored_username_follows_email(self, make_runtime):
        runtime = make_runtime(email_username=True)
        gateway = runtime.gateway
        await gateway.register("alice@example.com", "pw123")
        ctx = await gateway.login("alice@example.com", "pw123")

        await gateway.change_email(ctx.session.token, "alice2@example.com")

        user = await runtime.store.get_user(ctx.user.id)
        assert user.username == "alice2@example.com"

    async def test_purge_removes_spent_and_expired_tokens(self, runtime, gateway, notifier, clock):
        alice = await _register_alice(gateway)
        await gateway.forgot_password("alice")
        await gateway.reset_password(notifier.last_reset_token, "newpw")
        await runtime.actions.start_email_confirmation(alice.id)
        clock.advance(days=2)

        assert await runtime.actions.purge_expired() == 2
        assert runtime.store.action_tokens == {}
