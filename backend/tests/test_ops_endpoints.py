"""
Market Intel - Client Logs, API Metrics, AI Cost and Rate Limit Check Tests
"""
import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tests.conftest import assert_valid_response  # noqa: E402

pytestmark = pytest.mark.timeout(20)

LOG_ENTRY = {
    "timestamp": "2026-10-19T08:30:00Z",
    "level": "error",
    "message": "Failed to render analysis",
    "context": {"component": "AnalysisView"},
    "sessionId": "sess-42",
    "route": "/analyses/7",
}


class TestClientLogs:

    def test_anonymous_entry_stored(self, test_client, users, admin_headers):
        data = assert_valid_response(test_client.post("/api/logs", json=LOG_ENTRY))
        assert data["success"] is True

        logs = assert_valid_response(test_client.get("/api/logs", headers=admin_headers))["logs"]
        assert len(logs) == 1
        assert logs[0]["level"] == "ERROR"
        assert logs[0]["user_id"] is None
        assert logs[0]["session_id"] == "sess-42"
        assert logs[0]["url"] == "/analyses/7"
        assert logs[0]["timestamp"] == "2026-10-19T08:30:00"

    def test_authenticated_entry_linked_to_user(self, test_client, users, user_headers, admin_headers):
        test_client.post("/api/logs", headers=user_headers, json=dict(LOG_ENTRY, level="INFO"))
        logs = test_client.get(f"/api/logs?user_id={users['user']['id']}", headers=admin_headers).json()["logs"]
        assert [entry["level"] for entry in logs] == ["INFO"]

    @pytest.mark.parametrize("entry", [
        {"level": "ERROR", "message": "no timestamp"},
        dict(LOG_ENTRY, level="LOUD"),
        dict(LOG_ENTRY, message=""),
        dict(LOG_ENTRY, timestamp="yesterday"),
        dict(LOG_ENTRY, route={"path": "/dashboard"}),
        dict(LOG_ENTRY, route=None, url=["/a", "/b"]),
        dict(LOG_ENTRY, sessionId=12345),
        ["not", "an", "object"],
    ])
    def test_invalid_entries(self, test_client, users, entry):
        response = test_client.post("/api/logs", json=entry)
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid log entry format"

    def test_reading_requires_admin(self, test_client, users, user_headers):
        assert test_client.get("/api/logs", headers=user_headers).status_code == 403


def call(session, user_id, provider, success=True, latency=100, cost=0.01, model="gpt-4o"):
    from database import ApiUsageCost
    session.add(ApiUsageCost(
        user_id=user_id, provider=provider, model=model, success=success,
        response_time_ms=latency, cost_usd=cost if success else 0.0, tokens_used=200,
    ))
    session.commit()


class TestProviderHealth:

    @pytest.mark.parametrize("total,ok,latency_sum,status", [
        (100, 100, 100 * 300, "healthy"),
        (100, 94, 100 * 300, "degraded"),
        (10, 10, 10 * 2500, "degraded"),
        (10, 7, 10 * 300, "down"),
        (0, 0, 0, "healthy"),
    ])
    def test_classification(self, total, ok, latency_sum, status):
        from routers.logs import provider_health
        assert provider_health(total, ok, latency_sum)["status"] == status


class TestApiMetrics:

    def test_summary(self, test_client, users, user_headers, db_session):
        call(db_session, users["user"]["id"], "openai")
        call(db_session, users["user"]["id"], "openai", success=False)
        call(db_session, users["analyst"]["id"], "gemini")

        data = assert_valid_response(test_client.get("/api/metrics/api", headers=user_headers))
        assert data["time_range"] == "24h"
        [summary] = data["summaries"]
        assert summary["provider"] == "openai"
        assert summary["total_requests"] == 2
        assert summary["failed_requests"] == 1
        assert summary["error_rate"] == 0.5
        assert summary["total_cost"] == 0.01

    def test_costs_and_health(self, test_client, users, user_headers, db_session):
        call(db_session, users["user"]["id"], "openai")
        call(db_session, users["user"]["id"], "anthropic", model="claude-sonnet-4.5", cost=0.03)

        costs = test_client.get("/api/metrics/api?action=costs&time_range=7d", headers=user_headers).json()
        assert [(c["provider"], c["model"]) for c in costs["costs"]] == [
            ("anthropic", "claude-sonnet-4.5"), ("openai", "gpt-4o"),
        ]
        health = test_client.get("/api/metrics/api?action=health", headers=user_headers).json()["health"]
        assert health["openai"] == {"status": "healthy", "latency": 100.0, "uptime": 100.0}

    @pytest.mark.parametrize("query", ["action=explode", "time_range=1y"])
    def test_invalid_parameters(self, test_client, users, user_headers, query):
        assert test_client.get(f"/api/metrics/api?{query}", headers=user_headers).status_code == 400


class TestAiCost:

    def test_summary_groups_by_provider(self, test_client, users, admin_headers, user_headers):
        from ai_router import TaskType, get_ai_router
        tracker = get_ai_router().cost_tracker
        tracker.record_usage("gpt-4o", TaskType.ANALYSIS, 1000, 500)
        tracker.record_usage("gemini-2.5-flash", TaskType.INSIGHTS, 1000, 500)

        assert test_client.get("/api/ai/cost/summary", headers=user_headers).status_code == 403
        data = assert_valid_response(test_client.get("/api/ai/cost/summary", headers=admin_headers))
        assert data["total_requests"] == 2
        assert set(data["by_provider"]) == {"openai", "gemini"}
        assert data["today_spend"] == pytest.approx(data["total"])

    def test_daily_window(self, test_client, users, admin_headers):
        from ai_router import TaskType, get_ai_router
        get_ai_router().cost_tracker.record_usage("gpt-4o", TaskType.ANALYSIS, 1000, 500)

        days = assert_valid_response(test_client.get("/api/ai/cost/daily", headers=admin_headers))
        assert len(days) == 30
        assert days[-1]["calls"] == 1
        assert sum(d["calls"] for d in days[:-1]) == 0


class TestRateLimitCheck:

    def test_counts_per_operation(self, test_client, users, user_headers, db_session):
        from database import AuditLog
        body = {"operation": "export", "window_ms": 3_600_000, "max_requests": 2}
        results = [
            test_client.post("/api/rate-limit/check", headers=user_headers, json=body).json()["allowed"]
            for _ in range(3)
        ]
        assert results == [True, True, False]

        other = test_client.post(
            "/api/rate-limit/check", headers=user_headers, json=dict(body, operation="analysis"),
        ).json()
        assert other["allowed"] is True
        assert other["reset_time"] > 0

        audits = db_session.query(AuditLog).filter(AuditLog.action_type == "rate_limit_check").count()
        assert audits == 4

    def test_validation(self, test_client, users, user_headers):
        response = test_client.post(
            "/api/rate-limit/check", headers=user_headers, json={"operation": "x", "window_ms": 10},
        )
        assert response.status_code == 422
