"""Tests for the read-only status endpoints."""

import pytest

from conftest import FakeAdapter, make_router_config

pytest.importorskip("fastapi")


def _client(enabled=True):
    from fastapi.testclient import TestClient

    from ai_router.http_server import create_status_app
    from ai_router.router import AIRouter

    config = make_router_config({
        "gemini": {"capabilities": ["text", "vision"], "priority": 1, "enabled": enabled},
        "openai": {"capabilities": ["text"], "priority": 2, "enabled": enabled},
    })
    router = AIRouter(config, {"gemini": FakeAdapter("gemini"), "openai": FakeAdapter("openai")})
    return TestClient(create_status_app(router)), router


class TestHealthEndpoint:
    """GET /health."""

    def test_health_ok(self):
        client, _ = _client()
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["available_providers"] == 2

    def test_health_unavailable_when_all_disabled(self):
        client, _ = _client(enabled=False)
        response = client.get("/health")
        assert response.status_code == 503


class TestStatusEndpoints:
    """GET /stats and /providers."""

    def test_stats(self):
        client, _ = _client()
        data = client.get("/stats").json()

        assert set(data["providers"]) == {"gemini", "openai"}
        assert data["cache"]["entries"] == 0

    def test_providers_reflect_breaker_state(self):
        client, router = _client()
        breaker = router.get_circuit_breaker("openai")
        for _ in range(breaker.failure_threshold):
            breaker.record_failure()

        providers = {p["id"]: p for p in client.get("/providers").json()}

        assert providers["gemini"]["circuit_state"] == "closed"
        assert providers["openai"]["circuit_state"] == "open"
        assert providers["openai"]["consecutive_failures"] == breaker.failure_threshold
        assert providers["gemini"]["capabilities"] == ["text", "vision"]
