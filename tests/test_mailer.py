"""
tests/test_mailer.py -- Mailer selection and delivery failure semantics.

Coverage:
  - without SMTP, OTP and setup sends fail hard; notices are only logged
  - user creation and OTP login surface that failure and leave nothing live
  - SMTP connection errors become DependencyFailure
  - setup links point at the frontend password-setup page
"""

from __future__ import annotations

import pytest

from auth.errors import DependencyFailure
from auth.mailer import LoggingMailer, SmtpMailer, build_mailer, send_notice, setup_link
from auth.models import Role
from auth.service import AuthService


class TestUnconfiguredMailer:
    def test_build_mailer_without_host(self, make_settings) -> None:
        assert isinstance(build_mailer(make_settings(smtp_host="")), LoggingMailer)
        assert isinstance(build_mailer(make_settings(smtp_host="smtp.example.org")), SmtpMailer)

    def test_credential_sends_raise(self) -> None:
        mailer = LoggingMailer()
        with pytest.raises(DependencyFailure):
            mailer.send_otp_email("alice@example.org", "alice", "123456")
        with pytest.raises(DependencyFailure):
            mailer.send_password_setup_email("alice@example.org", "alice", "token")

    def test_notice_is_best_effort(self) -> None:
        assert send_notice(LoggingMailer(), "alice@example.org", "Subject", "Body") is True

    def test_create_user_fails_and_rolls_back(self, store, signer, make_settings) -> None:
        service = AuthService(store, signer, LoggingMailer(), make_settings())
        with pytest.raises(DependencyFailure):
            service.create_user("bob", "bob@example.org", "Bob", Role.OPERATOR)
        assert store.get_by_username("bob") is None

    def test_otp_login_fails_without_live_challenge(self, store, signer, make_settings, make_user) -> None:
        user = make_user("alice")
        service = AuthService(store, signer, LoggingMailer(), make_settings(otp_enabled=True))
        with pytest.raises(DependencyFailure):
            service.login("alice", "correct-horse-battery")
        assert store.list_otp_challenges(user.id) == []


class TestSmtpMailer:
    def test_connection_error_is_dependency_failure(self, make_settings) -> None:
        mailer = SmtpMailer(make_settings(smtp_host="127.0.0.1", smtp_port=1, smtp_timeout_seconds=1.0))
        with pytest.raises(DependencyFailure, match="Email delivery failed"):
            mailer.send_otp_email("alice@example.org", "alice", "123456")

    def test_setup_link(self) -> None:
        assert setup_link("https://admin.example.org/", "abc") == "https://admin.example.org/admin/setup-password?token=abc"
