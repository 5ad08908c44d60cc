"""
Market Intel - Rate Limit Check Router

Lets a client ask whether it may perform an operation under a
caller-chosen fixed window before doing the work.

Endpoints:
- POST /api/rate-limit/check
"""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from database import get_db
from dependencies import get_current_user, log_activity, client_ip
from metrics import track_rate_limit_rejection
from middleware.rate_limit import limiter
from resilience import operation_limiter
from schemas.rate_limit import RateLimitCheckRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/rate-limit", tags=["Rate Limiting"])


@router.post("/check")
@limiter.limit("100/minute")
async def check_rate_limit(
    request: Request,
    body: RateLimitCheckRequest,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    """Count one request against `user:operation` in the current window."""
    result = operation_limiter.check(
        str(current_user["id"]), body.operation, body.window_ms, body.max_requests
    )
    if not result["allowed"]:
        track_rate_limit_rejection(f"operation:{body.operation}")
        logger.info(f"Rate limit hit for user {current_user['id']} on {body.operation}")

    log_activity(
        db, current_user["email"], current_user["id"], "rate_limit_check",
        action_details={
            "operation": body.operation,
            "allowed": result["allowed"],
            "count": result["count"],
            "window_ms": body.window_ms,
            "max_requests": body.max_requests,
        },
        resource_type="rate_limit",
        ip_address=client_ip(request),
    )

    return {
        "allowed": result["allowed"],
        "operation": body.operation,
        "window_ms": body.window_ms,
        "max_requests": body.max_requests,
        "reset_time": result["reset_time"],
    }
