from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol
from urllib.parse import quote

from authgate.logging import get_logger
from authgate.storage.models import User

logger = get_logger(__name__)


class Notifier(Protocol):
    """Out-of-band delivery of action-token links. Returns whether delivery succeeded."""

    def send_reset_email(self, user: User, token: str) -> bool: ...

    def send_confirmation_email(
        self, user: User, token: str, email: Optional[str] = None
    ) -> bool: ...


class EmailService:
    """Transactional email over SMTP.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Password reset emails
    - Email confirmation emails, optionally to a pending new address
    - Dev mode when not configured: with ``log_links`` the message is logged at
      debug level and counts as delivered; otherwise delivery fails
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "AuthGate",
        base_url: Optional[str] = None,
        reset_ttl_minutes: int = 60,
        confirm_ttl_minutes: int = 1440,
        timeout: float = 30.0,
        log_links: bool = False,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.reset_ttl_minutes = reset_ttl_minutes
        self.confirm_ttl_minutes = confirm_ttl_minutes
        self.timeout = timeout
        self.log_links = log_links

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(self, to_email: str, subject: str, text_body: str) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            if not self.log_links:
                logger.warning(
                    "email_not_configured",
                    recipient=self._redact_email(to_email),
                    subject=subject,
                )
                return False
            # Dev mode: the body carries a live token, so only log it on request
            logger.debug(
                "email_dev_mode",
                recipient=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body,
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                smtp_code=e.smtp_code,
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                recipient=self._redact_email(to_email),
                refused_count=len(e.recipients),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except OSError as e:
            # Covers connection refusal, TLS failures and socket timeouts
            logger.error(
                "email_connect_failed",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", recipient=self._redact_email(to_email), subject=subject)
        return True

    def send_reset_email(self, user: User, token: str) -> bool:
        """Send password reset email with reset link."""
        reset_url = f"{self.base_url}/?reset_token={quote(token, safe='')}"
        subject = f"Reset your {self.from_name} password"
        text_body = f"""Reset your {self.from_name} password

We received a request to reset your password. Visit the link below to choose a new password:

{reset_url}

This link will expire in {self.reset_ttl_minutes} minutes.

If you didn't request this, you can safely ignore this email.

---
{self.from_name}
"""
        return self._send_email(user.email, subject, text_body)

    def send_confirmation_email(
        self, user: User, token: str, email: Optional[str] = None
    ) -> bool:
        """Send an email confirmation link, to ``email`` when confirming a change."""
        confirm_url = f"{self.base_url}/auth/confirm-email/{quote(token, safe='')}"
        subject = f"Confirm your {self.from_name} email address"
        text_body = f"""Confirm your {self.from_name} email address

Please confirm this email address by visiting the link below:

{confirm_url}

This link will expire in {self.confirm_ttl_minutes} minutes.

If you didn't request this, you can safely ignore this email.

---
{self.from_name}
"""
        return self._send_email(email or user.email, subject, text_body)
