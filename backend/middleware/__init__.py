"""Security, rate limiting and observability middleware for the Market Intel backend."""

from middleware.security import SecurityHeadersMiddleware  # noqa: F401
from middleware.metrics import MetricsMiddleware  # noqa: F401
from middleware.rate_limit import RateLimitMiddleware, limiter  # noqa: F401

__all__ = ["SecurityHeadersMiddleware", "MetricsMiddleware", "RateLimitMiddleware", "limiter"]
