"""
Request rate limiting for Market Intel.

Two layers:
- RateLimitMiddleware: sliding one-minute window, 100 requests per client IP
  and 1000 per authenticated user, 429 with Retry-After when exceeded.
- `limiter`: the slowapi Limiter used for per-endpoint limits
  (`@limiter.limit("100/minute")`).

Both are disabled by RATE_LIMIT_ENABLED=false.
"""

import os
import logging
import threading
from collections import defaultdict
from time import time as current_time
from typing import Optional, Tuple

from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

logger = logging.getLogger(__name__)

RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"

limiter = Limiter(key_func=get_remote_address, enabled=RATE_LIMIT_ENABLED)


class RateLimiter:
    """In-memory sliding-window limiter with per-IP and per-user tracking."""

    def __init__(self, ip_limit: int = 100, user_limit: int = 1000, window_seconds: int = 60,
                 clock=current_time):
        self.ip_limit = ip_limit
        self.user_limit = user_limit
        self.window_seconds = window_seconds
        self.ip_requests = defaultdict(list)
        self.user_requests = defaultdict(list)
        self._clock = clock
        self._last_sweep = clock()
        self._lock = threading.Lock()

    def _clean_old_requests(self, requests_list: list, now: float) -> list:
        cutoff = now - self.window_seconds
        return [ts for ts in requests_list if ts > cutoff]

    def _sweep(self, now: float):
        """Drop clients with no requests left in the window."""
        for store in (self.ip_requests, self.user_requests):
            for key in list(store):
                kept = self._clean_old_requests(store[key], now)
                if kept:
                    store[key] = kept
                else:
                    del store[key]
        self._last_sweep = now

    def is_allowed(self, ip: str, user_id: Optional[str] = None) -> Tuple[bool, Optional[str]]:
        """Check and record a request. Returns (allowed, reason)."""
        now = self._clock()

        with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(now)

            self.ip_requests[ip] = self._clean_old_requests(self.ip_requests[ip], now)
            if len(self.ip_requests[ip]) >= self.ip_limit:
                return False, f"IP rate limit exceeded ({self.ip_limit}/min)"

            if user_id:
                self.user_requests[user_id] = self._clean_old_requests(self.user_requests[user_id], now)
                if len(self.user_requests[user_id]) >= self.user_limit:
                    return False, f"User rate limit exceeded ({self.user_limit}/min)"

            self.ip_requests[ip].append(now)
            if user_id:
                self.user_requests[user_id].append(now)
            return True, None

    def remaining(self, ip: str) -> int:
        now = self._clock()
        with self._lock:
            used = len(self._clean_old_requests(self.ip_requests.get(ip, []), now))
        return max(0, self.ip_limit - used)

    def reset(self):
        with self._lock:
            self.ip_requests.clear()
            self.user_requests.clear()


rate_limiter = RateLimiter(ip_limit=100, user_limit=1000, window_seconds=60)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Enforces rate_limiter on every request outside the exempt paths."""

    EXEMPT_PATHS = ("/health", "/readiness", "/metrics", "/docs", "/openapi.json")

    def __init__(self, app, limiter_instance: RateLimiter = None) -> None:
        super().__init__(app)
        self.limiter = limiter_instance or rate_limiter

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if path.startswith(self.EXEMPT_PATHS):
            return await call_next(request)

        ip = request.client.host if request.client else "unknown"
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            ip = forwarded.split(",")[0].strip()

        # Per-user limit keyed on the token subject
        user_id = None
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            from auth_manager import auth_manager
            payload = auth_manager.verify_token(auth_header[7:])
            if payload:
                user_id = payload.get("sub")

        allowed, reason = self.limiter.is_allowed(ip, user_id)
        if not allowed:
            logger.warning(f"Rate limit hit for {ip}: {reason}")
            return JSONResponse(
                status_code=429,
                content={"detail": reason, "retry_after": self.limiter.window_seconds},
                headers={
                    "Retry-After": str(self.limiter.window_seconds),
                    "X-RateLimit-Limit": str(self.limiter.ip_limit),
                    "X-RateLimit-Remaining": "0",
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.limiter.ip_limit)
        response.headers["X-RateLimit-Remaining"] = str(self.limiter.remaining(ip))
        return response
