"""
auth/otp.py -- One-time-code second factor.

Lifecycle of a challenge:
  NONE -> ISSUED -> VERIFIED   (correct code within the attempt budget)
                 -> EXPIRED    (discovered only at verify time)
                 -> EXHAUSTED  (attempt budget spent; the row is deleted)

Concurrency:
  issue() replaces the user's challenge under a per-user lock, and the store
  backs that with a UNIQUE user_id, so two overlapping logins can never leave
  two live codes. The email is sent after the lock is released.

  verify() increments the attempt counter with a single UPDATE before
  comparing, so parallel guesses each consume budget. A correct code is
  accepted only if the conditional mark-used update wins; the loser of that
  race sees the same "no valid code" answer as a replayed code.

Only digest(code) is persisted. Codes are never logged.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
import string
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.exc import IntegrityError

from auth.errors import AuthenticationFailure, DependencyFailure
from auth.locks import KeyedLock
from auth.mailer import Mailer
from auth.models import OtpChallenge, User
from auth.passwords import digest, matches_digest
from auth.store import UserStore, utcnow
from core.config import Settings

logger = logging.getLogger("foundation.auth.otp")

NO_VALID_CODE = "No valid code found. Please login again."
TOO_MANY_ATTEMPTS = "Too many invalid attempts. Please login again."
INVALID_CODE = "Invalid verification code"


def generate_code(length: int) -> str:
    """Return a string of length random decimal digits from the OS CSPRNG."""
    return "".join(secrets.choice(string.digits) for _ in range(length))


class OtpEngine:
    def __init__(
        self,
        store: UserStore,
        mailer: Mailer,
        settings: Settings,
        locks: KeyedLock | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._mailer = mailer
        self._settings = settings
        self._locks = locks or KeyedLock()
        self._clock = clock

    def issue(self, user: User) -> str:
        """Create a fresh challenge for user, email the code, and return it.

        Any earlier challenge for the user is discarded. If the email cannot
        be delivered the new challenge is deleted and DependencyFailure is
        raised: a code nobody received must not stay live.
        """
        code = generate_code(self._settings.otp_length)
        with self._locks.hold(user.id):
            challenge = self._replace(user.id, code)

        try:
            self._mailer.send_otp_email(user.email, user.username, code)
        except Exception as exc:
            self._store.delete_otp_challenge(challenge.id)
            if isinstance(exc, DependencyFailure):
                raise
            logger.error("OTP email for user %s failed: %s", user.username, exc)
            raise DependencyFailure("Could not send verification code. Please try again.") from exc

        logger.info("OTP challenge issued for user %s", user.username)
        return code

    def _replace(self, user_id: str, code: str) -> OtpChallenge:
        # The unique user_id index turns a cross-process race into an
        # IntegrityError; one retry is enough because the loser's delete
        # then removes the winner's row.
        try:
            return self._store.replace_otp_challenge(self._new_challenge(user_id, code))
        except IntegrityError:
            logger.warning("Concurrent OTP replacement for user %s, retrying", user_id)
        return self._store.replace_otp_challenge(self._new_challenge(user_id, code))

    def _new_challenge(self, user_id: str, code: str) -> OtpChallenge:
        return OtpChallenge(
            user_id=user_id,
            code_hash=digest(code),
            expires_at=self._clock() + timedelta(minutes=self._settings.otp_expiration_minutes),
        )

    def verify(self, user: User, code: str) -> None:
        """Consume the user's live challenge if code matches. Raises on any failure."""
        challenge = self._store.get_active_otp(user.id, self._clock())
        if challenge is None:
            raise AuthenticationFailure(NO_VALID_CODE)

        attempts = self._store.increment_otp_attempts(challenge.id)
        if attempts is None:
            raise AuthenticationFailure(NO_VALID_CODE)

        max_attempts = self._settings.otp_max_attempts
        if attempts > max_attempts:
            self._store.delete_otp_challenge(challenge.id)
            raise AuthenticationFailure(TOO_MANY_ATTEMPTS)

        if not matches_digest((code or "").strip(), challenge.code_hash):
            if attempts >= max_attempts:
                self._store.delete_otp_challenge(challenge.id)
                logger.warning("OTP attempts exhausted for user %s", user.username)
                raise AuthenticationFailure(TOO_MANY_ATTEMPTS)
            logger.info("Invalid OTP for user %s (attempt %d/%d)", user.username, attempts, max_attempts)
            raise AuthenticationFailure(INVALID_CODE)

        if not self._store.mark_otp_used(challenge.id):
            raise AuthenticationFailure(NO_VALID_CODE)
        logger.info("OTP verified for user %s", user.username)
