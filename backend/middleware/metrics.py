"""
HTTP metrics middleware for Market Intel.

Tracks request count and duration per method/path/status.
Passes straight through when METRICS_ENABLED=false (default).
"""

import re
import time
import logging

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger(__name__)

# Numeric ids and provider names inside resource paths
_ID_SEGMENT = re.compile(r"/\d+(?=/|$)")
_PROVIDER_PATH = re.compile(r"^(/api/api-keys/)(?!validate$|refresh$|requirements$)[^/]+$")


class MetricsMiddleware(BaseHTTPMiddleware):
    """Collects HTTP request metrics.

    Paths are normalized (/api/analyses/42/progress -> /api/analyses/{id}/progress)
    so label cardinality stays bounded.
    """

    _SKIP_PATHS = frozenset({"/health", "/readiness", "/metrics", "/favicon.ico"})

    @staticmethod
    def normalize_path(path: str) -> str:
        path = _ID_SEGMENT.sub("/{id}", path)
        return _PROVIDER_PATH.sub(r"\1{provider}", path)

    async def dispatch(self, request: Request, call_next):
        from metrics import METRICS_ENABLED, track_request

        if not METRICS_ENABLED:
            return await call_next(request)

        start = time.time()
        response = await call_next(request)
        duration = time.time() - start

        path = request.url.path
        if path not in self._SKIP_PATHS:
            track_request(request.method, self.normalize_path(path), response.status_code, duration)

        return response
