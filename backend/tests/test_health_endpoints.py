"""
Market Intel - Health Endpoint Tests

Tests for /health, /readiness and /api/version.

Run: python -m pytest -xvs tests/test_health_endpoints.py
"""

import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

pytestmark = pytest.mark.timeout(10)


class TestHealthEndpoint:
    """Test the /health liveness probe."""

    def test_health_returns_200(self, test_client):
        response = test_client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert isinstance(data["version"], str) and data["version"]

    def test_version(self, test_client):
        from constants import APP_NAME, __version__
        assert test_client.get("/api/version").json() == {"version": __version__, "name": APP_NAME}


class TestReadinessEndpoint:
    """Test the /readiness probe endpoint."""

    def test_ready_with_all_checks(self, test_client):
        response = test_client.get("/readiness")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ready"
        assert data["checks"] == {
            "database": True, "cache": True, "ai_router": True, "circuit_breakers": True,
        }
        assert data["open_breakers"] == []
        assert "version" in data

    def test_open_breaker_degrades(self, test_client):
        from resilience import get_circuit_breaker

        get_circuit_breaker("ai:gemini", failure_threshold=1).record_failure()

        response = test_client.get("/readiness")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "degraded"
        assert data["open_breakers"] == ["ai:gemini"]


class TestCorrelationId:

    def test_generated_when_missing(self, test_client):
        response = test_client.get("/health")
        assert response.headers.get("X-Correlation-ID")

    def test_echoed_when_given(self, test_client):
        response = test_client.get("/health", headers={"X-Correlation-ID": "req-123"})
        assert response.headers["X-Correlation-ID"] == "req-123"
