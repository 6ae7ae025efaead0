"""
tests/conftest.py -- Shared test fixtures for the admin auth core.

This module provides:
  - RecordingMailer: in-memory Mailer that captures OTP codes and setup tokens
  - store: fresh isolated in-memory UserStore per test
  - make_settings / service / make_service: AuthService wired to the store
  - make_user / questions: seed data helpers
  - api_client: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process. Each
store gets a uuid in its name so tests never see each other's rows.

Environment must be set before any auth/core import: get_settings() is
cached on first call, and auth/passwords.py hashes its timing dummy at import
time with the configured bcrypt cost.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-the-foundation-admin-auth-core")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("OTP_ENABLED", "false")
os.environ.setdefault("COOKIE_ENABLED", "false")
os.environ.setdefault("SMTP_HOST", "")

import pytest
from fastapi.testclient import TestClient

from api.limiter import build_limiter
from api.main import app
from auth.errors import DependencyFailure
from auth.models import Role, SecurityQuestion, User
from auth.passwords import hash_password
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import TokenSigner
from core.config import Settings, get_settings

DEFAULT_PASSWORD = "correct-horse-battery"
ADMIN_PASSWORD = "admin-pass-123"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class RecordingMailer:
    """Mailer that records what would have been sent.

    Set fail=True to make every send raise DependencyFailure, the same error
    SmtpMailer raises when the relay is down.
    """

    def __init__(self) -> None:
        self.otp_codes: list[tuple[str, str, str]] = []
        self.setup_tokens: list[tuple[str, str, str]] = []
        self.notices: list[tuple[str, str]] = []
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise DependencyFailure("Email delivery failed. Please try again later.")

    def send_otp_email(self, to: str, username: str, code: str) -> None:
        self._check()
        self.otp_codes.append((to, username, code))

    def send_password_setup_email(self, to: str, username: str, token: str) -> None:
        self._check()
        self.setup_tokens.append((to, username, token))

    def send_notice(self, to: str, subject: str, body: str) -> None:
        self._check()
        self.notices.append((to, subject))

    @property
    def last_code(self) -> str:
        return self.otp_codes[-1][2]

    @property
    def last_token(self) -> str:
        return self.setup_tokens[-1][2]


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _memory_url(label: str) -> str:
    return f"sqlite:///file:test_auth_{label}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    s = UserStore(db_url=_memory_url("unit"))
    yield s
    s.close()


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def make_settings():
    """Return a factory: make_settings(otp_enabled=True, ...) -> Settings.

    Copies the cached test settings so overrides never leak between tests.
    """

    def _make(**overrides) -> Settings:
        return get_settings().model_copy(update=overrides)

    return _make


@pytest.fixture
def signer() -> TokenSigner:
    return TokenSigner(get_settings().secret_key, ttl_minutes=60)


@pytest.fixture
def make_service(store: UserStore, mailer: RecordingMailer, signer: TokenSigner, make_settings):
    """Return a factory: make_service(**setting_overrides) -> AuthService."""

    def _make(**overrides) -> AuthService:
        return AuthService(store, signer, mailer, make_settings(**overrides))

    return _make


@pytest.fixture
def service(make_service) -> AuthService:
    return make_service()


@pytest.fixture
def make_user(store: UserStore):
    """Return a factory that inserts an active user with a bcrypt password."""

    def _make(
        username: str,
        password: str = DEFAULT_PASSWORD,
        role: Role = Role.OPERATOR,
        active: bool = True,
        super_admin: bool = False,
        password_hash: str | None = None,
    ) -> User:
        user = User(
            username=username,
            email=f"{username.lower()}@example.org",
            role=role,
            full_name=username.title(),
            password_hash=password_hash if password_hash is not None else hash_password(password),
            is_active=active,
            is_super_admin=super_admin,
        )
        user_id = store.create_user(user)
        return store.get_by_id(user_id)

    return _make


@pytest.fixture
def questions(store: UserStore) -> list[str]:
    """Seed three active security questions and return their ids."""
    texts = [
        "What was the name of your first pet?",
        "In which city were you born?",
        "What was your first school?",
    ]
    return [
        store.create_security_question(SecurityQuestion(question=text, display_order=i))
        for i, text in enumerate(texts, start=1)
    ]


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(store: UserStore, signer: TokenSigner, mailer: RecordingMailer, service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-built test services into app.state so TestClient routes see the
    isolated test DB and the recording mailer instead of SMTP.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = store
        app.state.token_signer = signer
        app.state.mailer = mailer
        app.state.rate_limiter = build_limiter(get_settings())
        app.state.auth_service = service
        yield

    return test_lifespan


class ApiContext:
    """What api tests need: the client plus direct handles on the wiring."""

    admin_password = ADMIN_PASSWORD

    def __init__(self, client: TestClient, service: AuthService, mailer: RecordingMailer, admin: User, admin_token: str):
        self.client = client
        self.service = service
        self.mailer = mailer
        self.admin = admin
        self.admin_token = admin_token

    @property
    def admin_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.admin_token}"}

    def bearer(self, user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.service.signer.issue(user)}"}


@pytest.fixture(scope="module")
def api_client() -> Generator[ApiContext, None, None]:
    """Yield an ApiContext for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real middleware and route handlers but use an isolated in-memory
    store. The protected default admin is created before the client starts.
    """
    settings = get_settings()
    store = UserStore(db_url=_memory_url("api"))
    signer = TokenSigner(settings.secret_key, settings.token_expire_minutes)
    mailer = RecordingMailer()
    service = AuthService(store, signer, mailer, settings)
    admin = service.ensure_default_admin("admin", "admin@hopefoundation.org", ADMIN_PASSWORD)

    app.router.lifespan_context = _patch_lifespan(store, signer, mailer, service)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiContext(client, service, mailer, admin, signer.issue(admin))

    store.close()


@pytest.fixture
def fresh_limits(api_client: ApiContext) -> None:
    """Reset rate-limit windows so one test's traffic never throttles the next."""
    api_client.client.app.state.rate_limiter.reset()
