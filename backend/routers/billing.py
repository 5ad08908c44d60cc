"""
Market Intel - Billing & Usage Router

Endpoints:
- GET  /api/billing/usage     - Spend by provider and by day
- GET  /api/billing/limit     - Monthly cost limit
- PUT  /api/billing/limit     - Set the monthly cost limit
- POST /api/billing/check     - Would a projected analysis fit the budget?
- GET  /api/billing/records   - Own billing records
- POST /api/billing/records   - Create a record for any user (admin)
"""

import logging
from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func
from sqlalchemy.orm import Session

from analysis_service import check_cost_limit, get_month_spend, get_monthly_limit, projected_cost
from database import get_db, ApiUsageCost, BillingRecord, User, UserCostLimit
from dependencies import get_current_user, require_admin, log_activity
from schemas.billing import CostLimitUpdate, CostCheckRequest, BillingRecordCreate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/billing", tags=["Billing"])


def _record_dict(r: BillingRecord) -> dict:
    return {
        "id": r.id,
        "user_id": r.user_id,
        "period_start": r.period_start.isoformat(),
        "period_end": r.period_end.isoformat(),
        "amount_usd": r.amount_usd,
        "status": r.status,
        "description": r.description,
        "created_at": r.created_at.isoformat() if r.created_at else None,
    }


@router.get("/usage")
async def get_usage(
    days: int = Query(30, ge=1, le=365),
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    """Provider spend for the last `days` days, grouped by provider and by day."""
    since = datetime.utcnow().date() - timedelta(days=days - 1)
    base = db.query(ApiUsageCost).filter(
        ApiUsageCost.user_id == current_user["id"],
        ApiUsageCost.date >= since,
    )

    by_provider = {}
    for provider, calls, tokens, cost in base.with_entities(
        ApiUsageCost.provider,
        func.count(ApiUsageCost.id),
        func.coalesce(func.sum(ApiUsageCost.tokens_used), 0),
        func.coalesce(func.sum(ApiUsageCost.cost_usd), 0.0),
    ).group_by(ApiUsageCost.provider).all():
        by_provider[provider] = {"calls": calls, "tokens": int(tokens), "cost_usd": round(float(cost), 6)}

    by_day = [
        {"date": d.isoformat() if hasattr(d, "isoformat") else str(d), "cost_usd": round(float(cost), 6)}
        for d, cost in base.with_entities(
            ApiUsageCost.date, func.coalesce(func.sum(ApiUsageCost.cost_usd), 0.0)
        ).group_by(ApiUsageCost.date).order_by(ApiUsageCost.date).all()
    ]

    return {
        "days": days,
        "total_cost_usd": round(sum(p["cost_usd"] for p in by_provider.values()), 6),
        "total_calls": sum(p["calls"] for p in by_provider.values()),
        "by_provider": by_provider,
        "by_day": by_day,
    }


@router.get("/limit")
async def get_limit(
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    row = db.query(UserCostLimit).filter(UserCostLimit.user_id == current_user["id"]).first()
    monthly_limit = get_monthly_limit(db, current_user["id"])
    month_spend = get_month_spend(db, current_user["id"])
    return {
        "monthly_limit_usd": monthly_limit,
        "alert_threshold": row.alert_threshold if row else 0.8,
        "is_default": row is None,
        "month_spend": round(month_spend, 4),
        "remaining": round(max(0.0, monthly_limit - month_spend), 4),
    }


@router.put("/limit")
async def set_limit(
    body: CostLimitUpdate,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    row = db.query(UserCostLimit).filter(UserCostLimit.user_id == current_user["id"]).first()
    if row is None:
        row = UserCostLimit(user_id=current_user["id"], monthly_limit_usd=body.monthly_limit_usd)
        db.add(row)
    row.monthly_limit_usd = body.monthly_limit_usd
    row.alert_threshold = body.alert_threshold
    db.commit()

    log_activity(
        db, current_user["email"], current_user["id"], "cost_limit_updated",
        action_details=body.model_dump(),
    )
    return {"monthly_limit_usd": row.monthly_limit_usd, "alert_threshold": row.alert_threshold}


@router.post("/check")
async def check_budget(
    body: CostCheckRequest,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    projected = projected_cost(body.competitor_count, body.provider_count)
    return check_cost_limit(db, current_user["id"], projected)


@router.get("/records")
async def list_records(
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    rows = db.query(BillingRecord).filter(
        BillingRecord.user_id == current_user["id"]
    ).order_by(BillingRecord.period_start.desc()).all()
    return {"records": [_record_dict(r) for r in rows]}


@router.post("/records", status_code=201)
async def create_record(
    body: BillingRecordCreate,
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_admin),
):
    if body.period_end < body.period_start:
        raise HTTPException(status_code=400, detail="period_end must not be before period_start")
    if not db.query(User.id).filter(User.id == body.user_id).first():
        raise HTTPException(status_code=404, detail="User not found")

    record = BillingRecord(**body.model_dump())
    db.add(record)
    db.commit()
    db.refresh(record)

    log_activity(
        db, current_user["email"], current_user["id"], "billing_record_created",
        action_details={"user_id": body.user_id, "amount_usd": body.amount_usd},
        resource_type="billing_record", resource_id=record.id,
    )
    return _record_dict(record)
