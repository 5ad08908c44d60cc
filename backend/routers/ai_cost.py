"""
Market Intel - AI Cost Router

Process-wide view of the AI router's cost tracker (the daily budget guard).
Per-user spend lives in /api/billing/usage.

Endpoints:
- GET /api/ai/cost/summary - Totals by provider, model and task (admin)
- GET /api/ai/cost/daily   - Last 30 days daily breakdown (admin)
"""

import logging
from datetime import datetime, timedelta

from fastapi import APIRouter, Depends

from ai_router import MODELS, get_ai_router
from dependencies import require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ai/cost", tags=["AI Cost"])


@router.get("/summary")
async def ai_cost_summary(current_user: dict = Depends(require_admin)):
    """AI cost summary with totals by provider/model."""
    tracker = get_ai_router().cost_tracker
    summary = tracker.get_usage_summary()

    by_provider = {}
    for model_name, model_data in summary["by_model"].items():
        config = MODELS.get(model_name)
        provider = config.provider if config else "other"
        by_provider[provider] = by_provider.get(provider, 0.0) + model_data["cost"]

    return {
        "total": summary["total_cost_usd"],
        "total_requests": summary["total_requests"],
        "total_tokens_input": summary["total_tokens_input"],
        "total_tokens_output": summary["total_tokens_output"],
        "by_provider": by_provider,
        "by_model": summary["by_model"],
        "by_task": summary["by_task"],
        "daily_budget_usd": tracker.daily_budget_usd,
        "today_spend": tracker.get_today_spend(),
        "remaining_budget": tracker.get_remaining_budget(),
    }


@router.get("/daily")
async def ai_cost_daily(current_user: dict = Depends(require_admin)):
    """Last 30 days of AI cost, oldest first."""
    tracker = get_ai_router().cost_tracker
    today = datetime.utcnow().date()
    daily = {today - timedelta(days=i): {"cost": 0.0, "calls": 0} for i in range(30)}

    for record in tracker._usage_records:
        bucket = daily.get(record.timestamp.date())
        if bucket is not None:
            bucket["cost"] += record.cost_usd
            bucket["calls"] += 1

    return [
        {"date": d.isoformat(), "cost": round(daily[d]["cost"], 6), "calls": daily[d]["calls"]}
        for d in sorted(daily)
    ]
