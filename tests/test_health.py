"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status, version and database fields
  - No authentication required
  - Never rate limited, even past the general budget
"""

from __future__ import annotations

from api.main import APP_VERSION


def test_health_returns_200(api_client):
    """Health endpoint returns 200 with status, version and database."""
    resp = api_client.client.get("/api/v1/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "version": APP_VERSION, "database": "ok"}


def test_health_no_auth_required(api_client):
    """Health endpoint is accessible without any authentication headers."""
    resp = api_client.client.get("/api/v1/health", headers={})
    assert resp.status_code == 200
    assert "strict-transport-security" in resp.headers


def test_health_is_not_throttled(api_client, fresh_limits, monkeypatch):
    """Health sits outside the routers, so a zero general budget leaves it alone."""
    from core.config import get_settings

    monkeypatch.setattr(get_settings(), "rate_limit_general", 0)
    assert api_client.client.get("/api/auth/security-questions").status_code == 429
    for _ in range(10):
        assert api_client.client.get("/api/v1/health").status_code == 200
