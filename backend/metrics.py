"""
Market Intel - Prometheus Metrics Module

Provides application metrics with two modes:
- Prometheus: counters/histograms registered on a private CollectorRegistry
- No-op: zero-overhead stubs when METRICS_ENABLED is false

All metrics default to OFF (METRICS_ENABLED=false).

Usage:
    from metrics import track_request, track_ai_call, track_analysis_run
    track_request("GET", "/api/analyses", 200, 0.045)
    track_ai_call("anthropic", "claude-sonnet-4-5", cost=0.012, duration=1.5)
    track_analysis_run("completed")
"""

import os
import time
import logging
from typing import Dict, Any

from prometheus_client import (
    CollectorRegistry, Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
)

logger = logging.getLogger(__name__)

METRICS_ENABLED = os.environ.get("METRICS_ENABLED", "false").lower() == "true"

# Private registry so module reloads never collide with the process default
REGISTRY = CollectorRegistry()


class _NoOpMetric:
    """No-op metric that silently discards all operations."""

    def labels(self, *args, **kwargs):
        return self

    def inc(self, amount=1):
        pass

    def dec(self, amount=1):
        pass

    def observe(self, amount):
        pass

    def set(self, value):
        pass


if METRICS_ENABLED:
    logger.info("Prometheus metrics enabled")

    # HTTP metrics
    http_requests_total = Counter(
        "http_requests_total",
        "Total HTTP requests",
        ["method", "path", "status"],
        registry=REGISTRY,
    )
    http_request_duration = Histogram(
        "http_request_duration_seconds",
        "HTTP request duration in seconds",
        ["method", "path"],
        buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        registry=REGISTRY,
    )

    # AI metrics
    ai_requests_total = Counter(
        "ai_requests_total",
        "Total AI API calls",
        ["provider", "model"],
        registry=REGISTRY,
    )
    ai_cost_total = Counter(
        "ai_cost_dollars_total",
        "Total AI API cost in dollars",
        ["provider"],
        registry=REGISTRY,
    )
    ai_request_duration = Histogram(
        "ai_request_duration_seconds",
        "AI request duration in seconds",
        ["provider", "model"],
        buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
        registry=REGISTRY,
    )

    # Analysis runs
    analysis_runs_total = Counter(
        "analysis_runs_total",
        "Competitor analysis runs by final status",
        ["status"],
        registry=REGISTRY,
    )
    analyses_in_progress = Gauge(
        "analyses_in_progress",
        "Competitor analyses currently running",
        registry=REGISTRY,
    )

    # Resilience
    rate_limit_rejections = Counter(
        "rate_limit_rejections_total",
        "Calls rejected by a rate limiter",
        ["key"],
        registry=REGISTRY,
    )
    circuit_transitions = Counter(
        "circuit_breaker_transitions_total",
        "Circuit breaker state transitions",
        ["key", "state"],
        registry=REGISTRY,
    )

    # Cache metrics
    cache_operations = Counter(
        "cache_operations_total",
        "Cache operations",
        ["operation", "result"],
        registry=REGISTRY,
    )
else:
    http_requests_total = _NoOpMetric()
    http_request_duration = _NoOpMetric()
    ai_requests_total = _NoOpMetric()
    ai_cost_total = _NoOpMetric()
    ai_request_duration = _NoOpMetric()
    analysis_runs_total = _NoOpMetric()
    analyses_in_progress = _NoOpMetric()
    rate_limit_rejections = _NoOpMetric()
    circuit_transitions = _NoOpMetric()
    cache_operations = _NoOpMetric()


# --- Convenience functions ---

# In-memory counters for the JSON summary
_internal_counters: Dict[str, Any] = {
    "http_requests": 0,
    "http_errors": 0,
    "ai_requests": 0,
    "ai_cost_usd": 0.0,
    "analysis_runs": {},
    "rate_limit_rejections": 0,
    "circuit_transitions": 0,
    "cache_hits": 0,
    "cache_misses": 0,
    "started_at": time.time(),
}


def track_request(method: str, path: str, status: int, duration: float) -> None:
    """Track an HTTP request."""
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration.labels(method=method, path=path).observe(duration)
    _internal_counters["http_requests"] += 1
    if status >= 500:
        _internal_counters["http_errors"] += 1


def track_ai_call(
    provider: str, model: str, cost: float = 0.0, duration: float = 0.0
) -> None:
    """Track an AI API call."""
    ai_requests_total.labels(provider=provider, model=model).inc()
    if cost > 0:
        ai_cost_total.labels(provider=provider).inc(cost)
    if duration > 0:
        ai_request_duration.labels(provider=provider, model=model).observe(duration)
    _internal_counters["ai_requests"] += 1
    _internal_counters["ai_cost_usd"] += cost


def track_analysis_run(status: str) -> None:
    """Count an analysis run reaching a terminal status."""
    analysis_runs_total.labels(status=status).inc()
    runs = _internal_counters["analysis_runs"]
    runs[status] = runs.get(status, 0) + 1


def track_rate_limit_rejection(key: str) -> None:
    rate_limit_rejections.labels(key=key).inc()
    _internal_counters["rate_limit_rejections"] += 1


def track_circuit_transition(key: str, state: str) -> None:
    circuit_transitions.labels(key=key, state=state).inc()
    _internal_counters["circuit_transitions"] += 1


def track_cache(operation: str, hit: bool = True) -> None:
    """Track a cache operation."""
    cache_operations.labels(
        operation=operation, result="hit" if hit else "miss"
    ).inc()
    if hit:
        _internal_counters["cache_hits"] += 1
    else:
        _internal_counters["cache_misses"] += 1


def export_prometheus() -> bytes:
    """Prometheus exposition text for the private registry."""
    return generate_latest(REGISTRY)


def get_metrics_summary() -> Dict[str, Any]:
    """Return a JSON summary of metrics (served when Prometheus is disabled)."""
    uptime = time.time() - _internal_counters["started_at"]
    return {
        "metrics_enabled": METRICS_ENABLED,
        "uptime_seconds": round(uptime, 1),
        "http_requests_total": _internal_counters["http_requests"],
        "http_errors_total": _internal_counters["http_errors"],
        "ai_requests_total": _internal_counters["ai_requests"],
        "ai_cost_usd_total": round(_internal_counters["ai_cost_usd"], 6),
        "analysis_runs": dict(_internal_counters["analysis_runs"]),
        "rate_limit_rejections": _internal_counters["rate_limit_rejections"],
        "circuit_transitions": _internal_counters["circuit_transitions"],
        "cache_hits": _internal_counters["cache_hits"],
        "cache_misses": _internal_counters["cache_misses"],
    }


__all__ = [
    "CONTENT_TYPE_LATEST",
    "METRICS_ENABLED",
    "export_prometheus",
    "get_metrics_summary",
    "track_request",
    "track_ai_call",
    "track_analysis_run",
    "track_rate_limit_rejection",
    "track_circuit_transition",
    "track_cache",
]
