"""Tests for SMTP delivery of action-token links."""

import smtplib

import pytest

from authgate.service.email import EmailService
from authgate.service.runtime import Runtime
from authgate.storage.models import User


class FakeSMTP:
    """Stands in for smtplib.SMTP and records what would be sent."""

    instances = []
    fail_with = None

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.sent = []
        self.logged_in = None
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        pass

    def login(self, user, password):
        self.logged_in = user

    def sendmail(self, sender, recipient, body):
        if FakeSMTP.fail_with is not None:
            raise FakeSMTP.fail_with
        self.sent.append((sender, recipient, body))


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail_with = None
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


@pytest.fixture
def user():
    return User(id="u1", email="alice@example.com", username="alice")


def _service(**kwargs):
    return EmailService(
        smtp_host="smtp.example.com",
        smtp_user="mailer",
        smtp_password="secret",
        from_email="noreply@example.com",
        base_url="https://auth.example.com/",
        **kwargs,
    )


class TestEmailService:
    def test_unconfigured_service_does_not_deliver(self, user):
        service = EmailService()

        assert not service.is_configured
        assert service.send_reset_email(user, "tok") is False
        assert service.send_confirmation_email(user, "tok") is False

    def test_dev_mode_logs_links(self, user, fake_smtp):
        service = EmailService(log_links=True)

        assert service.send_reset_email(user, "tok") is True
        assert fake_smtp.instances == []

    def test_runtime_logs_links_only_in_test_mode(self, settings):
        assert Runtime(settings).notifier.log_links is True
        assert Runtime(settings.model_copy(update={"test_mode": False})).notifier.log_links is False

    def test_reset_link(self, fake_smtp, user):
        assert _service().send_reset_email(user, "abc=def") is True

        smtp = fake_smtp.instances[0]
        sender, recipient, body = smtp.sent[0]
        assert smtp.logged_in == "mailer"
        assert sender == "noreply@example.com"
        assert recipient == "alice@example.com"
        assert "https://auth.example.com/?reset_token=abc%3Ddef" in body

    def test_confirmation_goes_to_pending_address(self, fake_smtp, user):
        assert _service().send_confirmation_email(user, "tok", "new@example.com") is True

        sender, recipient, body = fake_smtp.instances[0].sent[0]
        assert recipient == "new@example.com"
        assert "https://auth.example.com/auth/confirm-email/tok" in body

    @pytest.mark.parametrize(
        "error",
        [
            smtplib.SMTPAuthenticationError(535, b"bad credentials"),
            smtplib.SMTPRecipientsRefused({"alice@example.com": (550, b"no such user")}),
            smtplib.SMTPServerDisconnected("gone"),
            ConnectionRefusedError("refused"),
        ],
    )
    def test_delivery_failures_return_false(self, fake_smtp, user, error):
        fake_smtp.fail_with = error

        assert _service().send_reset_email(user, "tok") is False
