"""
Tests for the HTTP surface, with an in-memory service injected.
"""

import pytest
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock

from ratekeeper.config import AlgorithmType, Settings
from ratekeeper.core.errors import StoreUnavailable
from ratekeeper.core.service import RateLimiterService
from ratekeeper.core.storage.base import StorageBackend
from ratekeeper.core.strategies.registry import build_strategies
from ratekeeper.main import create_app


@pytest.fixture
def settings() -> Settings:
    return Settings(
        redis_url="redis://unused:6379/0",
        default_algorithm=AlgorithmType.FIXED_WINDOW,
        rate_limit_default=2,
        rate_limit_window=60,
    )


@pytest.fixture
def client(settings, service):
    with TestClient(create_app(settings=settings, service=service)) as test_client:
        yield test_client


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "default_algorithm": "fixed_window"}


def test_check_uses_configured_defaults(client):
    first = client.post("/api/v1/ratelimit/check", json={"key": "user:1"})
    second = client.post("/api/v1/ratelimit/check", json={"key": "user:1"})
    third = client.post("/api/v1/ratelimit/check", json={"key": "user:1"})

    assert first.status_code == 200
    assert first.json()["algorithm"] == "fixed_window"
    assert first.headers["X-RateLimit-Limit"] == "2"
    assert first.headers["X-RateLimit-Remaining"] == "1"
    assert first.headers["X-RateLimit-Reset"] == "60"
    assert "Retry-After" not in first.headers

    assert second.status_code == 200
    assert third.status_code == 429
    assert third.headers["Retry-After"] == "60"
    assert third.json()["allowed"] is False


def test_check_with_explicit_quota(client):
    response = client.post(
        "/api/v1/ratelimit/check",
        json={"key": "user:2", "limit": 10, "window_seconds": 10, "algorithm": "token_bucket"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["remaining"] == 9
    assert body["retry_after"] is None
    assert body["fail_open"] is False


@pytest.mark.parametrize(
    "payload",
    [
        {"key": "user:3", "algorithm": "leaky_bucket"},
        {"key": "user:3", "limit": 0},
        {"key": "user:3", "window_seconds": -1},
    ],
)
def test_configuration_errors_are_400(client, payload):
    response = client.post("/api/v1/ratelimit/check", json=payload)

    assert response.status_code == 400
    assert response.json()["error"] == "configuration_error"


def test_status_and_reset(client):
    client.post("/api/v1/ratelimit/check", json={"key": "user:4"})

    status = client.get(
        "/api/v1/ratelimit/status", params={"key": "user:4", "algorithm": "fixed_window"}
    )
    assert status.status_code == 200
    assert status.json() == {"key": "user:4", "algorithm": "fixed_window", "window:0": "1"}

    reset = client.delete("/api/v1/ratelimit/reset", params={"key": "user:4"})
    assert reset.status_code == 204

    status = client.get(
        "/api/v1/ratelimit/status", params={"key": "user:4", "algorithm": "fixed_window"}
    )
    assert status.json() == {"key": "user:4", "algorithm": "fixed_window"}


def test_store_outage(settings, clock):
    backend = AsyncMock(spec=StorageBackend)
    backend.incr.side_effect = StoreUnavailable("down")
    backend.keys_with_prefix.side_effect = StoreUnavailable("down")
    service = RateLimiterService(build_strategies(backend, clock=clock), clock=clock)

    with TestClient(create_app(settings=settings, service=service)) as client:
        check = client.post("/api/v1/ratelimit/check", json={"key": "user:5"})
        reset = client.delete("/api/v1/ratelimit/reset", params={"key": "user:5"})

    # Checks fail open, admin operations report the outage
    assert check.status_code == 200
    assert check.json()["fail_open"] is True
    assert check.headers["X-RateLimit-Remaining"] == "2"
    assert reset.status_code == 503
