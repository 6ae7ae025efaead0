"""
auth/setup_tokens.py -- Single-use password-setup (onboarding) tokens.

A newly created user has no password and is inactive. They receive an email
link carrying a random token; redeeming it sets their password, records their
security answers and activates the account.

Rules:
  - one live token per user; issuing a new one replaces the old.
  - a token is usable iff it exists, is unused and is not expired. Every
    other case gives the same "Invalid or expired token" answer, so a used
    token is indistinguishable from one that was never issued.
  - redemption is all-or-nothing: the token is consumed, the password set,
    the account activated and the answers stored in one store transaction.
    A concurrent second redemption loses the conditional consume and gets
    the generic message.

bcrypt runs before the transaction opens, never inside it.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable, Sequence

from sqlalchemy.exc import IntegrityError

from auth.errors import AuthenticationFailure, ValidationFailure
from auth.locks import KeyedLock
from auth.models import PasswordSetupToken, SecurityAnswer, User
from auth.passwords import digest, hash_password
from auth.store import UserStore, utcnow
from core.config import Settings

logger = logging.getLogger("foundation.auth.setup")

INVALID_TOKEN = "Invalid or expired token"
INVALID_QUESTION = "Invalid security question"


def normalize_answer(answer: str) -> str:
    """Security answers are compared case- and surrounding-space-insensitively."""
    return answer.strip().lower()


class SetupTokenEngine:
    def __init__(
        self,
        store: UserStore,
        settings: Settings,
        locks: KeyedLock | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._settings = settings
        self._locks = locks or KeyedLock()
        self._clock = clock

    def issue(self, user: User) -> str:
        """Replace any token for user with a fresh one and return it."""
        with self._locks.hold(user.id):
            for attempt in range(2):
                record = PasswordSetupToken(
                    user_id=user.id,
                    token=secrets.token_urlsafe(32),
                    expires_at=self._clock() + timedelta(hours=self._settings.setup_token_hours),
                )
                try:
                    self._store.replace_setup_token(record)
                    break
                except IntegrityError:
                    if attempt:
                        raise
                    logger.warning("Concurrent setup-token replacement for user %s, retrying", user.username)
        logger.info("Password setup token issued for user %s", user.username)
        return record.token

    def revoke(self, user: User) -> None:
        self._store.delete_setup_tokens_for_user(user.id)

    def validate(self, token: str) -> User:
        """Return the user a live token belongs to, or raise AuthenticationFailure."""
        _, user = self._resolve(token)
        return user

    def _resolve(self, token: str) -> tuple[PasswordSetupToken, User]:
        record = self._store.get_live_setup_token(token, self._clock()) if token else None
        if record is None:
            raise AuthenticationFailure(INVALID_TOKEN)
        user = self._store.get_by_id(record.user_id)
        if user is None:
            raise AuthenticationFailure(INVALID_TOKEN)
        return record, user

    def redeem(self, token: str, new_password: str, answers: Sequence[tuple[str, str]]) -> User:
        """Set the password, store security answers and activate the account.

        answers is a sequence of (question_id, answer) pairs. Everything that
        can be checked without writing is checked first; nothing is mutated
        unless all of it passes.
        """
        self._check_answers(answers)
        if not new_password:
            raise ValidationFailure("Password is required")

        record, user = self._resolve(token)

        question_ids = [qid for qid, _ in answers]
        if self._store.existing_question_ids(question_ids) != set(question_ids):
            raise ValidationFailure(INVALID_QUESTION)

        password_hash = hash_password(new_password)
        rows = [
            SecurityAnswer(user_id=user.id, question_id=qid, answer_hash=digest(normalize_answer(answer)))
            for qid, answer in answers
        ]
        if not self._store.complete_password_setup(record.id, user.id, password_hash, rows, now=self._clock()):
            logger.warning("Setup token for user %s was consumed concurrently or expired", user.username)
            raise AuthenticationFailure(INVALID_TOKEN)

        logger.info("Password setup completed for user %s", user.username)
        return self._store.get_by_id(user.id)

    def _check_answers(self, answers: Sequence[tuple[str, str]]) -> None:
        minimum = self._settings.min_security_answers
        if len(answers) < minimum:
            raise ValidationFailure(f"At least {minimum} security questions must be answered")
        question_ids = [qid for qid, _ in answers]
        if len(set(question_ids)) != len(question_ids):
            raise ValidationFailure("Each security question can only be answered once")
        if any(not normalize_answer(answer) for _, answer in answers):
            raise ValidationFailure("Security answers cannot be blank")
