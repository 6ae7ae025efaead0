"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the auth core happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, otp_enabled -> OTP_ENABLED).

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Dev mode generates a signing key with a warning, production
      mode refuses to start without one.

Security notes:
  SECRET_KEY shorter than 32 bytes (256 bits) is rejected outright. HS256
       session tokens are only as strong as the key that signs them.

  In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. A random per-process key would silently log every
       admin out on restart and break multi-worker deployments.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("foundation.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'foundation_auth.db'}"

# Minimum HS256 key length in bytes (256 bits).
MIN_SECRET_KEY_BYTES = 32


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Session tokens and cookies
    # ------------------------------------------------------------------

    token_expire_minutes: int = 60
    cookie_enabled: bool = False
    cookie_name: str = "admin_jwt"
    cookie_secure: bool = False
    cookie_domain: str = ""
    csrf_enabled: bool = True

    # ------------------------------------------------------------------
    # Password hashing
    # ------------------------------------------------------------------

    # bcrypt work factor. Tests drop this to 4 (the bcrypt minimum).
    bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # OTP second factor
    # ------------------------------------------------------------------

    otp_enabled: bool = False
    otp_length: int = 6
    otp_expiration_minutes: int = 5
    otp_max_attempts: int = 5

    # ------------------------------------------------------------------
    # Onboarding
    # ------------------------------------------------------------------

    setup_token_hours: int = 24
    min_security_answers: int = 2
    frontend_url: str = "http://localhost:5173"

    # Default (protected) admin. Bootstrap only runs when a password is set.
    default_admin_username: str = "admin"
    default_admin_email: str = "admin@hopefoundation.org"
    default_admin_password: str = ""
    # Seed the default security questions into an empty table at startup.
    seed_security_questions: bool = True

    # ------------------------------------------------------------------
    # Rate limiting (requests per window, per client + endpoint class)
    # ------------------------------------------------------------------

    rate_limit_enabled: bool = True
    rate_limit_login: int = 5
    rate_limit_otp: int = 5
    rate_limit_admin: int = 60
    rate_limit_general: int = 500
    rate_limit_window_seconds: int = 60
    # Any `limits` storage URI; memory:// keeps counters per process.
    rate_limit_storage_uri: str = "memory://"

    # ------------------------------------------------------------------
    # Email (SMTP). Empty host: OTP and setup emails fail, notices are logged.
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_from: str = "no-reply@hopefoundation.org"
    smtp_starttls: bool = True
    smtp_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    cors_origins: list[str] = ["http://localhost:5173", "http://localhost:3000"]
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("otp_length", "otp_max_attempts", "setup_token_hours", "min_security_answers")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 bytes.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key.encode("utf-8")) < MIN_SECRET_KEY_BYTES:
            raise ValueError("SECRET_KEY must be at least 32 bytes (256 bits).")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
