"""
Market Intel - Health & Version Router

Endpoints:
- GET /api/version - Application version info
- GET /health - Liveness probe (database ping)
- GET /readiness - Readiness probe (database, cache, AI router, breakers)
- GET /metrics - Prometheus text, or a JSON summary when metrics are disabled
"""

import logging
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from constants import __version__, APP_NAME
from database import get_db

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


def _database_ok(db: Session) -> bool:
    try:
        db.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        return False


@router.get("/api/version")
async def get_version():
    """Return application version information."""
    return {"version": __version__, "name": APP_NAME}


@router.get("/health")
async def health_check(db: Session = Depends(get_db)):
    """Liveness probe."""
    if _database_ok(db):
        return {"status": "healthy", "version": __version__}
    return JSONResponse(status_code=503, content={"status": "unhealthy", "version": __version__})


@router.get("/readiness")
async def readiness_check(db: Session = Depends(get_db)):
    """Readiness probe. 503 only when the database is down."""
    from ai_router import get_ai_router
    from cache import get_cache, RedisCache
    from resilience import get_breaker_states

    checks = {"database": _database_ok(db)}

    cache = get_cache()
    checks["cache"] = True
    if isinstance(cache, RedisCache):
        checks["cache"] = cache.ping()

    checks["ai_router"] = get_ai_router() is not None

    breakers = get_breaker_states()
    open_breakers = [k for k, s in breakers.items() if s["state"] != "closed"]
    checks["circuit_breakers"] = not open_breakers

    if not checks["database"]:
        status_text, status_code = "unhealthy", 503
    elif all(checks.values()):
        status_text, status_code = "ready", 200
    else:
        status_text, status_code = "degraded", 200

    return JSONResponse(
        status_code=status_code,
        content={
            "status": status_text,
            "version": __version__,
            "checks": checks,
            "open_breakers": open_breakers,
        }
    )


@router.get("/metrics")
async def metrics_endpoint():
    """Prometheus metrics endpoint.

    Prometheus text format when METRICS_ENABLED=true, otherwise a JSON summary.
    """
    from metrics import METRICS_ENABLED, CONTENT_TYPE_LATEST, export_prometheus, get_metrics_summary

    if METRICS_ENABLED:
        return Response(export_prometheus(), media_type=CONTENT_TYPE_LATEST)
    return get_metrics_summary()
