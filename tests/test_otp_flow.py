"""
tests/test_otp_flow.py -- OTP second-factor behaviour through AuthService.

Coverage:
  - login with OTP enabled returns otp_required and no token
  - a correct code yields a verifiable token and cannot be replayed
  - issuing twice leaves exactly one challenge; the old code stops working
  - parallel logins on a file-backed database still leave one challenge
  - a unique-index collision on replace is retried once, then propagates
  - attempt budget: invalid -> too many (challenge deleted) -> no valid code
  - expired challenges are rejected at verify time
  - email failure deletes the challenge and surfaces DependencyFailure
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from auth.errors import AuthenticationFailure, DependencyFailure
from auth.models import Role, User
from auth.otp import OtpEngine, generate_code
from auth.passwords import digest, hash_password
from auth.service import AuthService
from auth.store import UserStore


def wrong_code(code: str) -> str:
    """A code of the same length that is guaranteed to differ."""
    return "".join("1" if c == "0" else "0" for c in code)


@pytest.fixture
def otp_service(make_service):
    return make_service(otp_enabled=True, otp_max_attempts=5)


class TestOtpLogin:
    def test_login_requires_code(self, otp_service, make_user, mailer) -> None:
        make_user("alice")
        result = otp_service.login("alice", "correct-horse-battery")
        assert result.otp_required is True
        assert result.token is None
        assert len(mailer.otp_codes) == 1
        assert mailer.otp_codes[0][0] == "alice@example.org"

    def test_correct_code_issues_token(self, otp_service, make_user, mailer) -> None:
        user = make_user("alice")
        otp_service.login("alice", "correct-horse-battery")
        result = otp_service.verify_otp("alice", mailer.last_code)
        assert result.token is not None
        claims = otp_service.signer.verify(result.token)
        assert claims is not None and claims.sub == user.id
        assert result.user.last_login_at is not None

    def test_code_cannot_be_replayed(self, otp_service, make_user, mailer) -> None:
        make_user("alice")
        otp_service.login("alice", "correct-horse-battery")
        code = mailer.last_code
        otp_service.verify_otp("alice", code)
        with pytest.raises(AuthenticationFailure, match="No valid code found"):
            otp_service.verify_otp("alice", code)

    def test_wrong_password_sends_no_code(self, otp_service, make_user, mailer) -> None:
        make_user("alice")
        with pytest.raises(AuthenticationFailure, match="Invalid username or password"):
            otp_service.login("alice", "nope")
        assert mailer.otp_codes == []

    def test_unknown_user_on_verify(self, otp_service) -> None:
        with pytest.raises(AuthenticationFailure, match="Invalid username or code"):
            otp_service.verify_otp("ghost", "123456")

    def test_code_is_stored_hashed(self, otp_service, make_user, mailer, store) -> None:
        user = make_user("alice")
        otp_service.login("alice", "correct-horse-battery")
        (challenge,) = store.list_otp_challenges(user.id)
        assert mailer.last_code not in challenge.code_hash


class TestSingleActiveChallenge:
    def test_second_issue_replaces_first(self, otp_service, make_user, mailer, store) -> None:
        user = make_user("alice")
        otp_service.login("alice", "correct-horse-battery")
        first = mailer.last_code
        otp_service.login("alice", "correct-horse-battery")
        second = mailer.last_code

        assert len(store.list_otp_challenges(user.id)) == 1
        if first != second:
            with pytest.raises(AuthenticationFailure, match="Invalid verification code"):
                otp_service.verify_otp("alice", first)
        assert otp_service.verify_otp("alice", second).token is not None

    def test_concurrent_logins_leave_one_challenge(self, tmp_path, signer, mailer, make_settings) -> None:
        """Parallel logins for one user against a file-backed database keep one live challenge."""
        file_store = UserStore(db_url=f"sqlite:///{tmp_path / 'auth.db'}")
        try:
            user_id = file_store.create_user(
                User(
                    username="alice",
                    email="alice@example.org",
                    role=Role.OPERATOR,
                    password_hash=hash_password("correct-horse-battery"),
                    is_active=True,
                )
            )
            service = AuthService(file_store, signer, mailer, make_settings(otp_enabled=True))
            barrier = threading.Barrier(8)
            errors: list[Exception] = []

            def login() -> None:
                barrier.wait()
                try:
                    service.login("alice", "correct-horse-battery")
                except Exception as exc:
                    errors.append(exc)

            threads = [threading.Thread(target=login) for _ in range(8)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            assert errors == []
            assert len(mailer.otp_codes) == 8
            (challenge,) = file_store.list_otp_challenges(user_id)
            assert challenge.code_hash in {digest(code) for _, _, code in mailer.otp_codes}
        finally:
            file_store.close()


class _RacingStore:
    """Delegates to a real store but fails replace_otp_challenge a set number of times."""

    def __init__(self, store, failures: int) -> None:
        self._store = store
        self.failures = failures
        self.calls = 0

    def replace_otp_challenge(self, challenge):
        self.calls += 1
        if self.calls <= self.failures:
            raise IntegrityError("INSERT INTO otp_challenges", {}, Exception("UNIQUE constraint failed"))
        return self._store.replace_otp_challenge(challenge)

    def __getattr__(self, name):
        return getattr(self._store, name)


class TestReplaceRetry:
    def test_one_collision_is_retried(self, store, mailer, make_settings, make_user) -> None:
        user = make_user("alice")
        racing = _RacingStore(store, failures=1)
        engine = OtpEngine(racing, mailer, make_settings(otp_enabled=True))
        code = engine.issue(user)
        assert racing.calls == 2
        (challenge,) = store.list_otp_challenges(user.id)
        assert challenge.code_hash == digest(code)

    def test_second_collision_propagates(self, store, mailer, make_settings, make_user) -> None:
        user = make_user("alice")
        engine = OtpEngine(_RacingStore(store, failures=2), mailer, make_settings(otp_enabled=True))
        with pytest.raises(IntegrityError):
            engine.issue(user)
        assert mailer.otp_codes == []


class TestAttemptBudget:
    def test_exhaustion_sequence(self, otp_service, make_user, mailer, store) -> None:
        user = make_user("alice")
        otp_service.login("alice", "correct-horse-battery")
        bad = wrong_code(mailer.last_code)

        for _ in range(4):
            with pytest.raises(AuthenticationFailure, match="Invalid verification code"):
                otp_service.verify_otp("alice", bad)
        with pytest.raises(AuthenticationFailure, match="Too many invalid attempts"):
            otp_service.verify_otp("alice", bad)

        assert store.list_otp_challenges(user.id) == []
        with pytest.raises(AuthenticationFailure, match="No valid code found"):
            otp_service.verify_otp("alice", mailer.last_code)

    def test_attempts_persist_between_calls(self, otp_service, make_user, mailer, store) -> None:
        user = make_user("alice")
        otp_service.login("alice", "correct-horse-battery")
        with pytest.raises(AuthenticationFailure):
            otp_service.verify_otp("alice", wrong_code(mailer.last_code))
        (challenge,) = store.list_otp_challenges(user.id)
        assert challenge.attempts == 1
        assert otp_service.verify_otp("alice", mailer.last_code).token is not None


class TestExpiryAndDelivery:
    def test_expired_challenge_rejected(self, store, mailer, make_settings, make_user) -> None:
        user = make_user("alice")
        settings = make_settings(otp_enabled=True, otp_expiration_minutes=5)
        now = [datetime.now(timezone.utc)]
        engine = OtpEngine(store, mailer, settings, clock=lambda: now[0])

        code = engine.issue(user)
        now[0] += timedelta(minutes=6)
        with pytest.raises(AuthenticationFailure, match="No valid code found"):
            engine.verify(user, code)

    def test_email_failure_removes_challenge(self, otp_service, make_user, mailer, store) -> None:
        user = make_user("alice")
        mailer.fail = True
        with pytest.raises(DependencyFailure):
            otp_service.login("alice", "correct-horse-battery")
        assert store.list_otp_challenges(user.id) == []

    def test_generate_code_shape(self) -> None:
        code = generate_code(8)
        assert len(code) == 8 and code.isdigit()
