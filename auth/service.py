"""
auth/service.py -- Auth orchestrator: login, OTP, onboarding, user administration.

AuthService is the single entry point the HTTP layer calls. It composes the
store, password hashing, TokenSigner, OtpEngine, SetupTokenEngine and the
Mailer, and raises AuthError subclasses for every business-rule failure.

Login pipeline:
  1. Case-insensitive username lookup. Unknown user: burn a dummy bcrypt
     verify, then fail with the same message as a wrong password.
  2. Disabled account: fail "Account is disabled". This does reveal that the
     username exists, but only to someone who also reached the check; it is
     kept because operators rely on the distinct message.
  3. Password check. A legacy digest match is re-hashed with bcrypt at once.
  4. OTP disabled: stamp last_login_at and issue a session token.
     OTP enabled: issue a challenge, return otp_required=True and NO token.

Super admin:
  The protected identity is the user flagged is_super_admin (created by
  ensure_default_admin). It cannot be deleted, deactivated or demoted, and
  only it may delete other ADMIN-role users.

Revocation:
  token_version is bumped on password change, password setup and
  deactivation, which kills every session token issued before.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from typing import Sequence

from sqlalchemy.exc import IntegrityError

from auth.errors import (
    AuthenticationFailure,
    AuthorizationFailure,
    Conflict,
    DependencyFailure,
    NotFound,
    ValidationFailure,
)
from auth.mailer import Mailer, send_notice
from auth.models import LoginResult, PasswordCheck, Role, SecurityQuestion, User
from auth.otp import OtpEngine
from auth.passwords import burn_dummy_verify, check_password, hash_password
from auth.setup_tokens import SetupTokenEngine
from auth.store import UserStore
from auth.tokens import TokenSigner
from core.config import Settings

logger = logging.getLogger("foundation.auth.service")

INVALID_CREDENTIALS = "Invalid username or password"
INVALID_OTP_LOGIN = "Invalid username or code"
ACCOUNT_DISABLED = "Account is disabled"

DEFAULT_SECURITY_QUESTIONS = (
    "What was the name of your first pet?",
    "What city were you born in?",
    "What is your mother's maiden name?",
    "What was the name of your elementary school?",
    "What is your favorite book?",
    "What was the make of your first car?",
    "What is the name of your favorite teacher?",
    "What street did you grow up on?",
    "What is your favorite food?",
    "What is the name of the town where you were born?",
)


def parse_role(value: Role | str) -> Role:
    """Map a role name onto the closed Role enum. Unknown names are rejected."""
    if isinstance(value, Role):
        return value
    try:
        return Role(str(value).strip().upper())
    except ValueError:
        raise ValidationFailure(f"Unknown role: {value!r}") from None


class AuthService:
    def __init__(
        self,
        store: UserStore,
        signer: TokenSigner,
        mailer: Mailer,
        settings: Settings,
        otp: OtpEngine | None = None,
        setup: SetupTokenEngine | None = None,
    ) -> None:
        self.store = store
        self.signer = signer
        self.mailer = mailer
        self.settings = settings
        self.otp = otp or OtpEngine(store, mailer, settings)
        self.setup = setup or SetupTokenEngine(store, settings)

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, username: str, password: str) -> LoginResult:
        user = self.store.get_by_username(username or "")
        if user is None:
            burn_dummy_verify(password or "")
            logger.info("Login failed: unknown username")
            raise AuthenticationFailure(INVALID_CREDENTIALS)
        if not user.is_active:
            burn_dummy_verify(password or "")
            logger.info("Login refused for disabled account %s", user.username)
            raise AuthenticationFailure(ACCOUNT_DISABLED)

        result = check_password(password or "", user.password_hash)
        if result is PasswordCheck.MISMATCH:
            logger.info("Login failed: wrong password for %s", user.username)
            raise AuthenticationFailure(INVALID_CREDENTIALS)
        if result is PasswordCheck.LEGACY_MATCH:
            user.password_hash = hash_password(password)
            self.store.update_user(user.id, password_hash=user.password_hash)
            logger.info("Upgraded legacy password hash for %s", user.username)

        if self.settings.otp_enabled:
            self.otp.issue(user)
            return LoginResult(user=user, otp_required=True)
        return self._complete_login(user)

    def verify_otp(self, username: str, code: str) -> LoginResult:
        user = self.store.get_by_username(username or "")
        if user is None:
            raise AuthenticationFailure(INVALID_OTP_LOGIN)
        if not user.is_active:
            raise AuthenticationFailure(ACCOUNT_DISABLED)
        self.otp.verify(user, code)
        return self._complete_login(user)

    def _complete_login(self, user: User) -> LoginResult:
        self.store.update_last_login(user.id)
        user = self.store.get_by_id(user.id) or user
        logger.info("Login succeeded for %s", user.username)
        return LoginResult(user=user, token=self.signer.issue(user))

    # ------------------------------------------------------------------
    # User administration
    # ------------------------------------------------------------------

    def list_users(self) -> list[User]:
        return self.store.list_users()

    def get_user(self, user_id: str) -> User:
        user = self.store.get_by_id(user_id)
        if user is None:
            raise NotFound("User not found")
        return user

    def create_user(self, username: str, email: str, full_name: str, role: Role | str) -> User:
        """Create an inactive, password-less user and email them a setup link.

        If the email cannot be sent the user and its token are removed again
        and DependencyFailure is raised: an account nobody can activate is
        not left behind.
        """
        username = (username or "").strip()
        email = (email or "").strip().lower()
        if not username:
            raise ValidationFailure("Username is required")
        if not email:
            raise ValidationFailure("Email is required")
        role = parse_role(role)
        if self.store.username_exists(username):
            raise Conflict("Username already exists")
        if self.store.email_exists(email):
            raise Conflict("Email already exists")

        user = User(username=username, email=email, role=role, full_name=(full_name or "").strip())
        try:
            user.id = self.store.create_user(user)
        except IntegrityError as exc:
            raise Conflict("Username or email already exists") from exc

        token = self.setup.issue(user)
        try:
            self.mailer.send_password_setup_email(user.email, user.username, token)
        except Exception as exc:
            self.store.delete_user_cascade(user.id)
            logger.error("Setup email for new user %s failed; user rolled back", user.username)
            if isinstance(exc, DependencyFailure):
                raise
            raise DependencyFailure("Could not send the account setup email.") from exc

        logger.info("Created user %s with role %s", user.username, role.value)
        return self.get_user(user.id)

    def update_user(
        self,
        user_id: str,
        username: str | None = None,
        email: str | None = None,
        full_name: str | None = None,
        role: Role | str | None = None,
        active: bool | None = None,
        password: str | None = None,
    ) -> User:
        """Apply the given changes. None means "leave unchanged"."""
        user = self.get_user(user_id)
        changes: dict = {}

        if username is not None and username.strip() != user.username:
            username = username.strip()
            if not username:
                raise ValidationFailure("Username is required")
            if self.store.username_exists(username, exclude_id=user.id):
                raise Conflict("Username already exists")
            changes["username"] = username
        if email is not None and email.strip().lower() != user.email:
            email = email.strip().lower()
            if self.store.email_exists(email, exclude_id=user.id):
                raise Conflict("Email already exists")
            changes["email"] = email
        if full_name is not None:
            changes["full_name"] = full_name.strip()
        if role is not None:
            role = parse_role(role)
            if user.is_super_admin and role is not Role.ADMIN:
                raise AuthorizationFailure("Cannot change the role of the super admin")
            changes["role"] = role
        if active is not None:
            if user.is_super_admin and not active:
                raise AuthorizationFailure("Cannot deactivate the super admin")
            changes["is_active"] = active
        if password:
            changes["password_hash"] = hash_password(password)

        bump = "password_hash" in changes or (user.is_active and active is False)
        try:
            self.store.update_user(user.id, bump_token_version=bump, **changes)
        except IntegrityError as exc:
            raise Conflict("Username or email already exists") from exc
        logger.info("Updated user %s (%s)", user.username, ", ".join(sorted(changes)) or "no changes")
        return self.get_user(user.id)

    def update_user_status(self, target_id: str, active: bool) -> User:
        user = self.get_user(target_id)
        if user.is_super_admin and not active:
            raise AuthorizationFailure("Cannot deactivate the super admin")
        self.store.update_user(user.id, bump_token_version=not active, is_active=active)
        logger.info("User %s %s", user.username, "activated" if active else "deactivated")
        return self.get_user(user.id)

    def change_password(self, target_id: str, new_password: str) -> None:
        """Set a new password for any user, the super admin included.

        No strength policy is enforced here; the HTTP layer applies a minimum
        length. Every outstanding session for the target is revoked.
        """
        user = self.get_user(target_id)
        if not new_password:
            raise ValidationFailure("Password is required")
        self.store.update_user(user.id, bump_token_version=True, password_hash=hash_password(new_password))
        logger.info("Password changed for %s", user.username)
        send_notice(
            self.mailer,
            user.email,
            "Your password was changed",
            f"Hello {user.username},\n\nThe password for your admin account was changed by an administrator.\n",
        )

    def delete_user(self, target_id: str, acting_username: str) -> None:
        target = self.get_user(target_id)
        actor = self.store.get_by_username(acting_username or "")
        if actor is None:
            raise NotFound("Acting user not found")

        if target.is_super_admin:
            raise AuthorizationFailure("Cannot delete the default admin")
        if actor.id == target.id:
            raise AuthorizationFailure("You cannot delete your own account")
        if target.role is Role.ADMIN and not actor.is_super_admin:
            raise AuthorizationFailure("Only the default admin can delete other admins")

        self.store.delete_user_cascade(target.id)
        logger.info("User %s deleted by %s", target.username, actor.username)

    def ensure_default_admin(self, username: str, email: str, password: str) -> User:
        """Create the protected super admin if none exists. Idempotent.

        An existing super admin is returned untouched. If a user with the
        default username exists but is not flagged, it is promoted.
        """
        existing = self.store.get_super_admin()
        if existing is not None:
            return existing
        if not password:
            raise ValidationFailure("A password is required to create the default admin")

        user = self.store.get_by_username(username)
        if user is not None:
            self.store.update_user(user.id, role=Role.ADMIN, is_active=True, password_hash=hash_password(password))
            self.store.set_super_admin(user.id)
            logger.info("Promoted existing user %s to default admin", user.username)
            return self.get_user(user.id)

        user = User(
            username=username,
            email=email,
            role=Role.ADMIN,
            full_name="Administrator",
            password_hash=hash_password(password),
            is_active=True,
            is_super_admin=True,
        )
        try:
            user.id = self.store.create_user(user)
        except IntegrityError:
            # Another worker bootstrapped concurrently.
            existing = self.store.get_super_admin()
            if existing is None:
                raise
            return existing
        logger.info("Default admin %s created", username)
        return self.get_user(user.id)

    # ------------------------------------------------------------------
    # Onboarding
    # ------------------------------------------------------------------

    def validate_setup_token(self, token: str) -> User:
        return self.setup.validate(token)

    def complete_password_setup(self, token: str, new_password: str, answers: Sequence[tuple[str, str]]) -> User:
        return self.setup.redeem(token, new_password, answers)

    def get_active_security_questions(self) -> list[SecurityQuestion]:
        return self.store.list_security_questions(active_only=True)

    # ------------------------------------------------------------------
    # Security question administration
    # ------------------------------------------------------------------

    def ensure_default_security_questions(self) -> int:
        """Seed the default question set when no questions exist. Idempotent.

        Returns how many questions were created. A table that already holds
        any question, active or not, is left alone.
        """
        if self.store.list_security_questions():
            return 0
        created = 0
        for order, text in enumerate(DEFAULT_SECURITY_QUESTIONS, start=1):
            try:
                self.store.create_security_question(SecurityQuestion(question=text, active=True, display_order=order))
            except IntegrityError:
                # Another worker seeded the same text first.
                continue
            created += 1
        logger.info("Seeded %d default security questions", created)
        return created

    def list_security_questions(self) -> list[SecurityQuestion]:
        return self.store.list_security_questions()

    def create_security_question(self, question: str, active: bool = True, display_order: int | None = None) -> SecurityQuestion:
        text = (question or "").strip()
        if not text:
            raise ValidationFailure("Question text is required")
        if self.store.question_exists(text):
            raise Conflict("Security question already exists")
        try:
            question_id = self.store.create_security_question(
                SecurityQuestion(question=text, active=active, display_order=display_order)
            )
        except IntegrityError as exc:
            raise Conflict("Security question already exists") from exc
        return self.store.get_security_question(question_id)

    def update_security_question(
        self,
        question_id: str,
        question: str | None = None,
        active: bool | None = None,
        display_order: int | None = None,
    ) -> SecurityQuestion:
        if self.store.get_security_question(question_id) is None:
            raise NotFound("Security question not found")
        changes: dict = {}
        if question is not None:
            text = question.strip()
            if not text:
                raise ValidationFailure("Question text is required")
            if self.store.question_exists(text, exclude_id=question_id):
                raise Conflict("Security question already exists")
            changes["question"] = text
        if active is not None:
            changes["active"] = active
        if display_order is not None:
            changes["display_order"] = display_order
        try:
            self.store.update_security_question(question_id, **changes)
        except IntegrityError as exc:
            raise Conflict("Security question already exists") from exc
        return self.store.get_security_question(question_id)

    def delete_security_question(self, question_id: str) -> None:
        if self.store.get_security_question(question_id) is None:
            raise NotFound("Security question not found")
        try:
            self.store.delete_security_question(question_id)
        except IntegrityError as exc:
            raise Conflict("Security question is in use; deactivate it instead") from exc
