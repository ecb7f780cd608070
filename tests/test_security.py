"""Tests for security module."""
from __future__ import annotations

import time

import pytest
from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from mpevents_server.middleware import RateLimitMiddleware
from mpevents_server.security import best_client_ip, verify_webhook_secret
from mpevents_server.settings import Settings


def make_request(headers=None, client=("203.0.113.9", 51234)) -> Request:
    raw = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    return Request({"type": "http", "method": "POST", "path": "/", "headers": raw, "client": client})


def test_verify_secret_valid():
    """Matching secret passes."""
    settings = Settings(webhook_secret="valid_secret_123")
    verify_webhook_secret("valid_secret_123", settings)


@pytest.mark.parametrize("provided", ["invalid", "", None, "valid_secret_1234"])
def test_verify_secret_invalid(provided):
    """Wrong or missing secret is a 401."""
    settings = Settings(webhook_secret="valid_secret_123")
    with pytest.raises(HTTPException) as exc_info:
        verify_webhook_secret(provided, settings)
    assert exc_info.value.status_code == 401


def test_verify_secret_not_configured():
    """Unset secret rejects everything with a 500."""
    settings = Settings(webhook_secret="")
    with pytest.raises(HTTPException) as exc_info:
        verify_webhook_secret("anything", settings)
    assert exc_info.value.status_code == 500


def test_best_client_ip_prefers_forwarded_for():
    request = make_request({"X-Forwarded-For": "198.51.100.7, 10.0.0.2", "X-Real-IP": "10.0.0.2"})
    assert best_client_ip(request) == "198.51.100.7"


def test_best_client_ip_uses_real_ip_header():
    assert best_client_ip(make_request({"X-Real-IP": " 192.0.2.44 "})) == "192.0.2.44"


def test_best_client_ip_falls_back_to_peer():
    assert best_client_ip(make_request()) == "203.0.113.9"


def test_settings_list_helpers():
    settings = Settings(cors_origins="https://a.example.org, https://b.example.org,")
    assert settings.cors_origins_list() == ["https://a.example.org", "https://b.example.org"]
    assert settings.mp_configured() is False
    settings = Settings(mp_base_url="https://mp", mp_client_id="id", mp_client_secret="s")
    assert settings.mp_configured() is True


@pytest.mark.asyncio
async def test_rate_limiter_forgets_quiet_clients():
    async def call_next(request):
        return JSONResponse({"ok": True})

    limiter = RateLimitMiddleware(app=None, requests_per_minute=2)
    limiter.requests["198.51.100.1"] = [time.time() - 120, time.time() - 90]

    request = make_request({"X-Forwarded-For": "198.51.100.2"})
    request.scope["path"] = "/api/webhooks/mp"
    response = await limiter.dispatch(request, call_next)

    assert response.status_code == 200
    assert "198.51.100.1" not in limiter.requests
    assert list(limiter.requests) == ["198.51.100.2"]


@pytest.mark.asyncio
async def test_rate_limiter_rejects_over_limit():
    async def call_next(request):
        return JSONResponse({"ok": True})

    limiter = RateLimitMiddleware(app=None, requests_per_minute=2)
    request = make_request()
    request.scope["path"] = "/api/webhooks/mp"
    statuses = [(await limiter.dispatch(request, call_next)).status_code for _ in range(3)]

    assert statuses == [200, 200, 429]
