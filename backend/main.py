"""
Market Intel - Backend API

FastAPI application that runs AI competitor analyses across several LLM
providers and serves the account, billing, support and admin APIs around them.
"""
import os
import logging

from dotenv import load_dotenv

# .env must be loaded before database.py reads DATABASE_URL
load_dotenv()

from constants import __version__, APP_NAME  # noqa: E402

logger = logging.getLogger(__name__)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Structured JSON logging for production
if os.getenv("JSON_LOGGING", "false").lower() == "true":
    from pythonjsonlogger import jsonlogger

    _json_handler = logging.StreamHandler()
    _json_formatter = jsonlogger.JsonFormatter(
        '%(asctime)s %(name)s %(levelname)s %(message)s',
        rename_fields={"asctime": "timestamp", "levelname": "level"}
    )
    _json_handler.setFormatter(_json_formatter)
    logging.root.handlers = [_json_handler]
    logging.root.setLevel(LOG_LEVEL)
    logger.info("JSON logging enabled")
else:
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

import uuid  # noqa: E402
from contextlib import asynccontextmanager  # noqa: E402

from fastapi import FastAPI, Request  # noqa: E402
from fastapi.middleware.cors import CORSMiddleware  # noqa: E402
from fastapi.responses import JSONResponse  # noqa: E402
from slowapi import _rate_limit_exceeded_handler  # noqa: E402
from slowapi.errors import RateLimitExceeded  # noqa: E402
from slowapi.middleware import SlowAPIMiddleware  # noqa: E402
from starlette.middleware.gzip import GZipMiddleware  # noqa: E402

from auth_manager import auth_manager  # noqa: E402
from database import SessionLocal  # noqa: E402
from input_sanitizer import sanitize_error  # noqa: E402
from middleware import (  # noqa: E402
    MetricsMiddleware, RateLimitMiddleware, SecurityHeadersMiddleware, limiter,
)
from middleware.rate_limit import RATE_LIMIT_ENABLED  # noqa: E402
from observability import shutdown_langfuse  # noqa: E402
from routers import (  # noqa: E402
    admin as admin_router,
    ai_cost as ai_cost_router,
    analyses as analyses_router,
    api_keys as api_keys_router,
    auth as auth_router,
    billing as billing_router,
    documents as documents_router,
    health as health_router,
    logs as logs_router,
    preferences as preferences_router,
    rate_limit as rate_limit_router,
    support as support_router,
)


# ============== FastAPI App ==============

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info(f"{APP_NAME} backend v{__version__} starting...")

    is_testing = os.getenv("TESTING") == "true"
    if not os.getenv("SECRET_KEY") and not is_testing:
        logger.error("ERROR: Missing required environment variable: SECRET_KEY")
        raise ValueError("Missing required env vars: SECRET_KEY")

    optional_features = {
        "API_KEY_ENCRYPTION_KEY": "Stable provider key encryption across restarts",
        "REDIS_URL": "Shared Redis cache",
    }
    for env_var, feature in optional_features.items():
        if os.getenv(env_var):
            logger.info(f"[OK] {feature} - ENABLED")
        else:
            logger.warning(f"[!] {feature} - DISABLED (set {env_var} to enable)")

    if os.getenv("ENABLE_LANGFUSE", "false").lower() == "true":
        logger.info("[OK] Langfuse Observability - ENABLED")
    else:
        logger.info("[!] Langfuse Observability - DISABLED (set ENABLE_LANGFUSE=true)")

    db = SessionLocal()
    try:
        auth_manager.ensure_default_admin(db)
    finally:
        db.close()

    yield

    # Shutdown
    logger.info(f"{APP_NAME} backend shutting down")
    shutdown_langfuse()


app = FastAPI(
    title=f"{APP_NAME} API",
    description="Multi-provider AI competitor analysis backend",
    version=__version__,
    lifespan=lifespan
)

# GZip compression for API responses
app.add_middleware(GZipMiddleware, minimum_size=1000)

# slowapi per-endpoint limits (disabled together with RATE_LIMIT_ENABLED)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)


@app.middleware("http")
async def correlation_id_middleware(request, call_next):
    """Add correlation ID to all requests for distributed tracing."""
    correlation_id = request.headers.get("X-Correlation-ID", str(uuid.uuid4()))
    response = await call_next(request)
    response.headers["X-Correlation-ID"] = correlation_id
    return response


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(
        f"Unhandled error on {request.method} {request.url.path}: {sanitize_error(exc)}",
        exc_info=exc,
    )
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


app.include_router(auth_router.router)  # Auth (login, register, refresh, logout)
app.include_router(health_router.router)  # Health, readiness, metrics, version
app.include_router(analyses_router.router)  # Competitor analyses
app.include_router(api_keys_router.router)  # Provider API keys
app.include_router(documents_router.router)  # Document uploads
app.include_router(preferences_router.router)  # User preferences
app.include_router(billing_router.router)  # Usage, cost limits, billing records
app.include_router(support_router.router)  # Support tickets
app.include_router(admin_router.router)  # Users, audit log, system prompts
app.include_router(ai_cost_router.router)  # Gateway cost analytics
app.include_router(logs_router.router)  # Client logs and API metrics
app.include_router(rate_limit_router.router)  # Operation rate-limit checks

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Per-IP 100/min and per-user 1000/min
if RATE_LIMIT_ENABLED:
    app.add_middleware(RateLimitMiddleware)

# Configurable via SECURITY_HEADERS_ENABLED
app.add_middleware(SecurityHeadersMiddleware)

# Zero overhead when METRICS_ENABLED=false
app.add_middleware(MetricsMiddleware)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))
