"""
auth/mailer.py -- Outbound email for OTP codes, onboarding links and notices.

Two implementations of the Mailer protocol:
  SmtpMailer:    stdlib smtplib + email.message.EmailMessage, STARTTLS by
                 default. Any SMTP or socket error becomes DependencyFailure
                 so the HTTP layer answers 502 instead of a bare 500.
  LoggingMailer: used when SMTP_HOST is empty (local dev). OTP codes and
                 setup links cannot reach anyone, so those sends raise
                 DependencyFailure; notices are only logged.

Secrets (OTP codes, setup tokens) are never written to the log by either
implementation.

send_notice() is the best-effort path for non-critical notifications: a
delivery failure is logged and swallowed, never surfaced to the caller.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Protocol

from auth.errors import DependencyFailure
from core.config import Settings

logger = logging.getLogger("foundation.auth.mailer")

_ORG_NAME = "Hope Foundation"
_NOT_CONFIGURED = "Email delivery is not configured. Contact an administrator."


class Mailer(Protocol):
    def send_otp_email(self, to: str, username: str, code: str) -> None: ...

    def send_password_setup_email(self, to: str, username: str, token: str) -> None: ...

    def send_notice(self, to: str, subject: str, body: str) -> None: ...


# ---------------------------------------------------------------------------
# Message bodies
# ---------------------------------------------------------------------------


def setup_link(frontend_url: str, token: str) -> str:
    return f"{frontend_url.rstrip('/')}/admin/setup-password?token={token}"


def _otp_body(username: str, code: str, expiration_minutes: int) -> str:
    return (
        f"Hello {username},\n\n"
        f"Your verification code is: {code}\n\n"
        f"This code will expire in {expiration_minutes} minutes. "
        "If you did not request it, you can ignore this email.\n"
    )


def _setup_body(username: str, link: str, token_hours: int) -> str:
    return (
        f"Hello {username},\n\n"
        f"An administrator account has been created for you at {_ORG_NAME}.\n"
        "To finish setting up your account, choose a password and answer your "
        "security questions here:\n\n"
        f"{link}\n\n"
        f"This link will expire in {token_hours} hours for security purposes.\n"
    )


# ---------------------------------------------------------------------------
# SMTP
# ---------------------------------------------------------------------------


class SmtpMailer:
    """Delivers mail through the configured SMTP relay."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def send_otp_email(self, to: str, username: str, code: str) -> None:
        self._send(
            to,
            "Your verification code",
            _otp_body(username, code, self._settings.otp_expiration_minutes),
        )

    def send_password_setup_email(self, to: str, username: str, token: str) -> None:
        link = setup_link(self._settings.frontend_url, token)
        self._send(
            to,
            f"Complete Your Account Setup - {_ORG_NAME}",
            _setup_body(username, link, self._settings.setup_token_hours),
        )

    def send_notice(self, to: str, subject: str, body: str) -> None:
        self._send(to, subject, body)

    def _send(self, to: str, subject: str, body: str) -> None:
        s = self._settings
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = s.smtp_from
        msg["To"] = to
        msg.set_content(body)
        try:
            with smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=s.smtp_timeout_seconds) as server:
                if s.smtp_starttls:
                    server.starttls(context=ssl.create_default_context())
                if s.smtp_username:
                    server.login(s.smtp_username, s.smtp_password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Email delivery to %s failed: %s", to, exc)
            raise DependencyFailure("Email delivery failed. Please try again later.") from exc
        logger.info("Email sent to %s: %s", to, subject)


# ---------------------------------------------------------------------------
# Dev fallback
# ---------------------------------------------------------------------------


class LoggingMailer:
    """Stand-in used when SMTP_HOST is not configured.

    A login or onboarding step must never report success while its secret
    went nowhere, so the two credential-bearing sends fail hard.
    """

    def send_otp_email(self, to: str, username: str, code: str) -> None:
        logger.error("SMTP not configured; OTP email for %s (%s) cannot be delivered", username, to)
        raise DependencyFailure(_NOT_CONFIGURED)

    def send_password_setup_email(self, to: str, username: str, token: str) -> None:
        logger.error("SMTP not configured; setup email for %s (%s) cannot be delivered", username, to)
        raise DependencyFailure(_NOT_CONFIGURED)

    def send_notice(self, to: str, subject: str, body: str) -> None:
        logger.info("SMTP not configured; notice %r to %s not delivered", subject, to)


def build_mailer(settings: Settings) -> Mailer:
    if settings.smtp_host:
        return SmtpMailer(settings)
    return LoggingMailer()


def send_notice(mailer: Mailer, to: str, subject: str, body: str) -> bool:
    """Best-effort notification. Returns False (and logs) on delivery failure."""
    try:
        mailer.send_notice(to, subject, body)
    except DependencyFailure:
        logger.warning("Notice %r to %s was not delivered", subject, to)
        return False
    return True
