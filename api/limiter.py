"""
api/limiter.py -- Per-client, per-endpoint-class rate limiting.

Every request is classified into an endpoint class, each with its own
per-client budget per window (configurable, defaults shown):

  auth:login   POST /api/auth/login           5
  auth:otp     POST /api/auth/otp/verify      5
  admin        /api/admin/*, /api/auth/admin/* 60
  general      everything else               500

The bucket key is "<client id>:<endpoint class>", so exhausting the login
budget does not block the same client from reading data, and one client
never consumes another's budget.

Counting is done by the `limits` library (the engine under slowapi) with
the moving-window strategy: a true sliding log of hit timestamps per key.
MemoryStorage locks per key and expires idle keys on its own, so there is
no sweep to run. RATE_LIMIT_STORAGE_URI accepts any `limits` storage URI
(e.g. redis://) when several workers must share one budget.

enforce_rate_limit is attached as a router-level dependency rather than
slowapi's per-route decorator, because the budget depends on the endpoint
class and the rejection must go through the AuthError envelope. The health
endpoint lives outside the routers and is never throttled.

The limiter instance lives on app.state.rate_limiter (created in lifespan),
so every route shares one counter store.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from enum import Enum

from fastapi import Request
from limits import RateLimitItemPerSecond
from limits.storage import storage_from_string
from limits.strategies import MovingWindowRateLimiter

from auth.errors import RateLimited
from core.config import Settings, get_settings

logger = logging.getLogger("foundation.api.limiter")


class EndpointClass(str, Enum):
    LOGIN = "auth:login"
    OTP = "auth:otp"
    ADMIN = "admin"
    GENERAL = "general"


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    retry_after: int  # seconds until the oldest hit leaves the window; 0 when allowed
    remaining: int


class RateLimiter:
    """Moving-window limiter keyed by arbitrary strings.

    Usage:
        limiter = RateLimiter()
        if not limiter.allow("203.0.113.9:auth:login", limit=5, window_seconds=60):
            ...reject with 429...
    """

    def __init__(self, storage_uri: str = "memory://") -> None:
        self._storage = storage_from_string(storage_uri)
        self._strategy = MovingWindowRateLimiter(self._storage)

    def allow(self, key: str, limit: int, window_seconds: int) -> bool:
        return self.check(key, limit, window_seconds).allowed

    def check(self, key: str, limit: int, window_seconds: int) -> RateDecision:
        """Record a hit for key if it fits in the window, and report the outcome."""
        if limit <= 0:
            return RateDecision(allowed=False, retry_after=max(1, window_seconds), remaining=0)

        item = RateLimitItemPerSecond(limit, window_seconds)
        allowed = self._strategy.hit(item, key)
        stats = self._strategy.get_window_stats(item, key)
        if allowed:
            return RateDecision(allowed=True, retry_after=0, remaining=stats.remaining)
        retry_after = max(1, math.ceil(stats.reset_time - time.time()))
        return RateDecision(allowed=False, retry_after=retry_after, remaining=0)

    def reset(self) -> None:
        self._storage.reset()


def classify(path: str) -> EndpointClass:
    if path == "/api/auth/login":
        return EndpointClass.LOGIN
    if path == "/api/auth/otp/verify":
        return EndpointClass.OTP
    if path.startswith(("/api/admin/", "/api/auth/admin/")) or path == "/api/admin":
        return EndpointClass.ADMIN
    return EndpointClass.GENERAL


def limit_for(endpoint: EndpointClass, settings: Settings) -> int:
    if endpoint is EndpointClass.LOGIN:
        return settings.rate_limit_login
    if endpoint is EndpointClass.OTP:
        return settings.rate_limit_otp
    if endpoint is EndpointClass.ADMIN:
        return settings.rate_limit_admin
    return settings.rate_limit_general


def client_identity(request: Request) -> str:
    """Client id: first X-Forwarded-For hop, else X-Real-IP, else the peer address.

    Forwarded headers are trusted as-is; deploy behind a proxy that
    overwrites them.
    """
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded.strip():
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP", "").strip()
    if real_ip:
        return real_ip
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def build_limiter(settings: Settings) -> RateLimiter:
    return RateLimiter(settings.rate_limit_storage_uri)


def enforce_rate_limit(request: Request) -> None:
    """FastAPI dependency. Raises RateLimited (HTTP 429) when the budget is spent."""
    settings = get_settings()
    if not settings.rate_limit_enabled:
        return
    limiter: RateLimiter = request.app.state.rate_limiter
    endpoint = classify(request.url.path)
    client = client_identity(request)
    decision = limiter.check(
        f"{client}:{endpoint.value}",
        limit_for(endpoint, settings),
        settings.rate_limit_window_seconds,
    )
    if not decision.allowed:
        logger.warning("Rate limit exceeded: client=%s class=%s path=%s", client, endpoint.value, request.url.path)
        raise RateLimited(decision.retry_after, "Too many requests. Please try again later.")
