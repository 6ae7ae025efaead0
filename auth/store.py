"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore is the repository; the _row_to_*
functions are the mappers. Services and routes never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Invariants enforced at the store, not only in code:
  - username is unique case-insensitively (functional unique index on
    lower(username)); email is stored lowercased and is unique.
  - at most one super admin (partial unique index on is_super_admin = 1).
  - at most one OTP challenge and one password-setup token per user (UNIQUE
    user_id). Replacement is delete + insert inside one transaction, so a
    concurrent replacement from another process fails with IntegrityError
    instead of leaving two live rows.

Timestamps are stored as fixed-width UTC ISO strings
(YYYY-MM-DDTHH:MM:SS.ffffff+00:00). Fixed width keeps lexicographic order equal
to chronological order, so "expires_at > now" can be evaluated in SQL.

SQLite: foreign keys are switched on per connection (they are off by default),
and WAL mode is enabled for concurrent read safety.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
)
from sqlalchemy.engine import Engine

from auth.models import OtpChallenge, PasswordSetupToken, Role, SecurityAnswer, SecurityQuestion, User
from core.config import get_settings

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_users = Table(
    "admin_users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("username", String(50), nullable=False),
    Column("email", String(255), nullable=False, unique=True),
    Column("full_name", String(255), nullable=False, server_default=""),
    Column("password_hash", Text, nullable=False, server_default=""),  # "" until setup completes
    Column("role", String(20), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="0"),
    Column("is_super_admin", Integer, nullable=False, server_default="0"),
    Column("token_version", Integer, nullable=False, server_default="0"),
    Column("last_login_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

Index("uq_admin_users_username_lower", func.lower(_users.c.username), unique=True)
Index(
    "uq_admin_users_single_super_admin",
    _users.c.is_super_admin,
    unique=True,
    sqlite_where=_users.c.is_super_admin == 1,
    postgresql_where=_users.c.is_super_admin == 1,
)

_otp_challenges = Table(
    "otp_challenges",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("admin_users.id"), nullable=False, unique=True),
    Column("code_hash", String(64), nullable=False),  # base64 SHA-256, never the code
    Column("expires_at", String(32), nullable=False),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("used", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_setup_tokens = Table(
    "password_setup_tokens",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("admin_users.id"), nullable=False, unique=True),
    Column("token", String(128), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
    Column("used", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_questions = Table(
    "security_questions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("question", String(255), nullable=False, unique=True),
    Column("active", Integer, nullable=False, server_default="1"),
    Column("display_order", Integer),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_answers = Table(
    "user_security_answers",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("admin_users.id"), nullable=False),
    Column("question_id", String(36), ForeignKey("security_questions.id"), nullable=False),
    Column("answer_hash", String(64), nullable=False),
    UniqueConstraint("user_id", "question_id", name="uq_answer_per_question"),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _configure_sqlite(dbapi_conn, connection_record) -> None:
    """Enable WAL and foreign keys. PRAGMAs are per-connection in SQLite."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).strftime(_TS_FORMAT)


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _new_id() -> str:
    return str(uuid.uuid4())


# Mutable columns accepted by update_user(). Anything else is a programming error.
_USER_FIELDS = {"username", "email", "full_name", "password_hash", "role", "is_active", "last_login_at"}
_QUESTION_FIELDS = {"question", "active", "display_order"}


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for users, OTP challenges, setup tokens and security answers.

    Usage:
        store = UserStore()
        user_id = store.create_user(User(username="bob", email="bob@x.com", role=Role.OPERATOR))
        user = store.get_by_username("BOB")
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _configure_sqlite)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> str:
        """Insert a new user and return its id.

        Raises sqlalchemy.exc.IntegrityError on a username/email collision or
        a second super admin. Callers translate that into a conflict.
        """
        user_id = user.id or _new_id()
        now = _ts(utcnow())
        with self.engine.connect() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    username=user.username,
                    email=user.email.strip().lower(),
                    full_name=user.full_name,
                    password_hash=user.password_hash,
                    role=Role(user.role).value,
                    is_active=1 if user.is_active else 0,
                    is_super_admin=1 if user.is_super_admin else 0,
                    token_version=user.token_version,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
        return user_id

    def get_by_id(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, username: str) -> User | None:
        """Case-insensitive lookup. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(func.lower(_users.c.username) == username.strip().lower())
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def username_exists(self, username: str, exclude_id: str | None = None) -> bool:
        user = self.get_by_username(username)
        return user is not None and user.id != exclude_id

    def email_exists(self, email: str, exclude_id: str | None = None) -> bool:
        user = self.get_by_email(email)
        return user is not None and user.id != exclude_id

    def get_super_admin(self) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.is_super_admin == 1)).fetchone()
        return _row_to_user(row) if row is not None else None

    def set_super_admin(self, user_id: str) -> None:
        """Flag user_id as the super admin. The partial unique index rejects a second one."""
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(is_super_admin=1))
            conn.commit()

    def list_users(self) -> list[User]:
        """Return all users ordered by username."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(func.lower(_users.c.username))).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: str, bump_token_version: bool = False, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: see _USER_FIELDS. Booleans, roles and datetimes are
        converted to their column representation here. updated_at is always
        stamped. bump_token_version=True increments token_version in the same
        statement, invalidating every session token issued before it.

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - _USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        values = dict(fields)
        if "is_active" in values:
            values["is_active"] = 1 if values["is_active"] else 0
        if "role" in values:
            values["role"] = Role(values["role"]).value
        if "email" in values:
            values["email"] = values["email"].strip().lower()
        if "last_login_at" in values:
            values["last_login_at"] = _ts(values["last_login_at"])
        values["updated_at"] = _ts(utcnow())
        if bump_token_version:
            values["token_version"] = _users.c.token_version + 1
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: str) -> None:
        """Stamp the current UTC time as last_login_at. Does not touch updated_at."""
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login_at=_ts(utcnow())))
            conn.commit()

    def delete_user_cascade(self, user_id: str) -> bool:
        """Delete a user and everything it owns in one transaction.

        Child rows go first (setup tokens, OTP challenges, security answers)
        so the user delete never trips a foreign key. Returns False if the
        user did not exist.
        """
        with self.engine.begin() as conn:
            conn.execute(_setup_tokens.delete().where(_setup_tokens.c.user_id == user_id))
            conn.execute(_otp_challenges.delete().where(_otp_challenges.c.user_id == user_id))
            conn.execute(_answers.delete().where(_answers.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # OTP challenges
    # ------------------------------------------------------------------

    def replace_otp_challenge(self, challenge: OtpChallenge) -> OtpChallenge:
        """Delete every challenge for the user and insert this one, atomically."""
        challenge.id = challenge.id or _new_id()
        challenge.created_at = challenge.created_at or utcnow()
        with self.engine.begin() as conn:
            conn.execute(_otp_challenges.delete().where(_otp_challenges.c.user_id == challenge.user_id))
            conn.execute(
                _otp_challenges.insert().values(
                    id=challenge.id,
                    user_id=challenge.user_id,
                    code_hash=challenge.code_hash,
                    expires_at=_ts(challenge.expires_at),
                    attempts=challenge.attempts,
                    used=1 if challenge.used else 0,
                    created_at=_ts(challenge.created_at),
                )
            )
        return challenge

    def get_active_otp(self, user_id: str, now: datetime | None = None) -> OtpChallenge | None:
        """Most recent unused, unexpired challenge for the user, or None."""
        now = now or utcnow()
        with self.engine.connect() as conn:
            row = conn.execute(
                _otp_challenges.select()
                .where(
                    (_otp_challenges.c.user_id == user_id)
                    & (_otp_challenges.c.used == 0)
                    & (_otp_challenges.c.expires_at > _ts(now))
                )
                .order_by(_otp_challenges.c.created_at.desc())
                .limit(1)
            ).fetchone()
        return _row_to_otp(row) if row is not None else None

    def list_otp_challenges(self, user_id: str) -> list[OtpChallenge]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _otp_challenges.select()
                .where(_otp_challenges.c.user_id == user_id)
                .order_by(_otp_challenges.c.created_at.desc())
            ).fetchall()
        return [_row_to_otp(r) for r in rows]

    def increment_otp_attempts(self, challenge_id: str) -> int | None:
        """Atomically add one attempt and return the new count.

        The increment is a single UPDATE (attempts = attempts + 1), so two
        concurrent verifications can never both read the same count. Returns
        None if the challenge no longer exists.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _otp_challenges.update()
                .where(_otp_challenges.c.id == challenge_id)
                .values(attempts=_otp_challenges.c.attempts + 1)
            )
            if result.rowcount == 0:
                return None
            return conn.execute(
                _otp_challenges.select()
                .with_only_columns(_otp_challenges.c.attempts)
                .where(_otp_challenges.c.id == challenge_id)
            ).scalar()

    def mark_otp_used(self, challenge_id: str) -> bool:
        """Flip used 0 -> 1. Returns False if another request got there first."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _otp_challenges.update()
                .where((_otp_challenges.c.id == challenge_id) & (_otp_challenges.c.used == 0))
                .values(used=1)
            )
            conn.commit()
        return result.rowcount > 0

    def delete_otp_challenge(self, challenge_id: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_otp_challenges.delete().where(_otp_challenges.c.id == challenge_id))
            conn.commit()

    # ------------------------------------------------------------------
    # Password setup tokens
    # ------------------------------------------------------------------

    def replace_setup_token(self, token: PasswordSetupToken) -> PasswordSetupToken:
        """Delete every setup token for the user and insert this one, atomically."""
        token.id = token.id or _new_id()
        token.created_at = token.created_at or utcnow()
        with self.engine.begin() as conn:
            conn.execute(_setup_tokens.delete().where(_setup_tokens.c.user_id == token.user_id))
            conn.execute(
                _setup_tokens.insert().values(
                    id=token.id,
                    user_id=token.user_id,
                    token=token.token,
                    expires_at=_ts(token.expires_at),
                    used=1 if token.used else 0,
                    created_at=_ts(token.created_at),
                )
            )
        return token

    def get_live_setup_token(self, token: str, now: datetime | None = None) -> PasswordSetupToken | None:
        """Look up a token that is unused AND unexpired. Anything else is None."""
        now = now or utcnow()
        with self.engine.connect() as conn:
            row = conn.execute(
                _setup_tokens.select().where(
                    (_setup_tokens.c.token == token)
                    & (_setup_tokens.c.used == 0)
                    & (_setup_tokens.c.expires_at > _ts(now))
                )
            ).fetchone()
        return _row_to_setup_token(row) if row is not None else None

    def get_setup_token_for_user(self, user_id: str) -> PasswordSetupToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_setup_tokens.select().where(_setup_tokens.c.user_id == user_id)).fetchone()
        return _row_to_setup_token(row) if row is not None else None

    def delete_setup_tokens_for_user(self, user_id: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_setup_tokens.delete().where(_setup_tokens.c.user_id == user_id))
            conn.commit()

    def complete_password_setup(
        self,
        token_id: str,
        user_id: str,
        password_hash: str,
        answers: list[SecurityAnswer],
        now: datetime | None = None,
    ) -> bool:
        """Consume a setup token and activate its user in ONE transaction.

        The token is consumed with a conditional UPDATE (used = 0 and not
        expired). If that matches no row -- already redeemed by a concurrent
        request, or expired since it was looked up -- nothing else is written
        and False is returned. Otherwise the password is stored, the account
        activated, token_version bumped and the security answers replaced.

        Any failure (e.g. an unknown question id tripping the foreign key)
        rolls back the whole unit, so the user is never half-activated.
        """
        now = now or utcnow()
        with self.engine.begin() as conn:
            consumed = conn.execute(
                _setup_tokens.update()
                .where(
                    (_setup_tokens.c.id == token_id)
                    & (_setup_tokens.c.used == 0)
                    & (_setup_tokens.c.expires_at > _ts(now))
                )
                .values(used=1)
            )
            if consumed.rowcount == 0:
                return False
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    password_hash=password_hash,
                    is_active=1,
                    token_version=_users.c.token_version + 1,
                    updated_at=_ts(now),
                )
            )
            conn.execute(_answers.delete().where(_answers.c.user_id == user_id))
            for answer in answers:
                conn.execute(
                    _answers.insert().values(
                        id=answer.id or _new_id(),
                        user_id=user_id,
                        question_id=answer.question_id,
                        answer_hash=answer.answer_hash,
                    )
                )
        return True

    # ------------------------------------------------------------------
    # Security questions and answers
    # ------------------------------------------------------------------

    def list_security_questions(self, active_only: bool = False) -> list[SecurityQuestion]:
        """Questions ordered by display_order (unordered ones last), then text."""
        query = _questions.select()
        if active_only:
            query = query.where(_questions.c.active == 1)
        query = query.order_by(
            _questions.c.display_order.is_(None),
            _questions.c.display_order,
            _questions.c.question,
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_question(r) for r in rows]

    def get_security_question(self, question_id: str) -> SecurityQuestion | None:
        with self.engine.connect() as conn:
            row = conn.execute(_questions.select().where(_questions.c.id == question_id)).fetchone()
        return _row_to_question(row) if row is not None else None

    def existing_question_ids(self, question_ids: list[str]) -> set[str]:
        """Return the subset of question_ids that exist."""
        if not question_ids:
            return set()
        with self.engine.connect() as conn:
            rows = conn.execute(
                _questions.select().with_only_columns(_questions.c.id).where(_questions.c.id.in_(question_ids))
            ).fetchall()
        return {r[0] for r in rows}

    def question_exists(self, question: str, exclude_id: str | None = None) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(
                _questions.select().with_only_columns(_questions.c.id).where(_questions.c.question == question)
            ).fetchone()
        return row is not None and row[0] != exclude_id

    def create_security_question(self, question: SecurityQuestion) -> str:
        question_id = question.id or _new_id()
        now = _ts(utcnow())
        with self.engine.connect() as conn:
            conn.execute(
                _questions.insert().values(
                    id=question_id,
                    question=question.question,
                    active=1 if question.active else 0,
                    display_order=question.display_order,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
        return question_id

    def update_security_question(self, question_id: str, **fields) -> bool:
        unknown = set(fields) - _QUESTION_FIELDS
        if unknown:
            raise ValueError(f"Unknown security question fields: {unknown!r}")
        values = dict(fields)
        if "active" in values:
            values["active"] = 1 if values["active"] else 0
        values["updated_at"] = _ts(utcnow())
        with self.engine.connect() as conn:
            result = conn.execute(_questions.update().where(_questions.c.id == question_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    def delete_security_question(self, question_id: str) -> bool:
        """Raises IntegrityError while any user still has an answer for it."""
        with self.engine.connect() as conn:
            result = conn.execute(_questions.delete().where(_questions.c.id == question_id))
            conn.commit()
        return result.rowcount > 0

    def list_security_answers(self, user_id: str) -> list[SecurityAnswer]:
        with self.engine.connect() as conn:
            rows = conn.execute(_answers.select().where(_answers.c.user_id == user_id)).fetchall()
        return [_row_to_answer(r) for r in rows]

    def ping(self) -> bool:
        """Cheap connectivity check for the health endpoint."""
        with self.engine.connect() as conn:
            conn.execute(_users.select().with_only_columns(func.count()))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        full_name=row.full_name or "",
        password_hash=row.password_hash or "",
        role=Role(row.role),
        is_active=bool(row.is_active),
        is_super_admin=bool(row.is_super_admin),
        token_version=row.token_version,
        last_login_at=_parse_ts(row.last_login_at),
        created_at=_parse_ts(row.created_at),
        updated_at=_parse_ts(row.updated_at),
    )


def _row_to_otp(row) -> OtpChallenge:
    return OtpChallenge(
        id=row.id,
        user_id=row.user_id,
        code_hash=row.code_hash,
        expires_at=_parse_ts(row.expires_at),
        attempts=row.attempts,
        used=bool(row.used),
        created_at=_parse_ts(row.created_at),
    )


def _row_to_setup_token(row) -> PasswordSetupToken:
    return PasswordSetupToken(
        id=row.id,
        user_id=row.user_id,
        token=row.token,
        expires_at=_parse_ts(row.expires_at),
        used=bool(row.used),
        created_at=_parse_ts(row.created_at),
    )


def _row_to_question(row) -> SecurityQuestion:
    return SecurityQuestion(
        id=row.id,
        question=row.question,
        active=bool(row.active),
        display_order=row.display_order,
        created_at=_parse_ts(row.created_at),
        updated_at=_parse_ts(row.updated_at),
    )


def _row_to_answer(row) -> SecurityAnswer:
    return SecurityAnswer(
        id=row.id,
        user_id=row.user_id,
        question_id=row.question_id,
        answer_hash=row.answer_hash,
    )
