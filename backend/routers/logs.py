"""
Market Intel - Client Logs & API Metrics Router

Endpoints:
- POST /api/logs          - Ingest a client log entry (auth optional)
- GET  /api/logs          - Read stored entries (admin)
- GET  /api/metrics/api   - Per-provider usage summary, costs or health for the caller
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from database import get_db, ApiUsageCost, ApplicationLog, dump_json, load_json
from dependencies import get_current_user, get_current_user_optional, require_admin
from input_sanitizer import sanitize_error

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Logs & Metrics"])

LOG_LEVELS = ("DEBUG", "INFO", "WARN", "ERROR", "FATAL")
SLOW_OPERATION_MS = 5000

TIME_RANGE_HOURS = {"24h": 24, "7d": 168, "30d": 720}


def _parse_timestamp(value) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    # Stored naive UTC like every other timestamp column
    if parsed.tzinfo is not None:
        parsed = parsed.replace(tzinfo=None) - (parsed.utcoffset() or timedelta(0))
    return parsed


def _log_dict(entry: ApplicationLog) -> dict:
    return {
        "id": entry.id,
        "user_id": entry.user_id,
        "level": entry.level,
        "message": entry.message,
        "context": load_json(entry.context, None),
        "performance": load_json(entry.performance, None),
        "url": entry.url,
        "user_agent": entry.user_agent,
        "session_id": entry.session_id,
        "timestamp": entry.timestamp.isoformat() if entry.timestamp else None,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


@router.post("/api/logs")
async def ingest_log(
    request: Request,
    db: Session = Depends(get_db),
    current_user: Optional[dict] = Depends(get_current_user_optional),
):
    """Store a log entry sent by the frontend."""
    try:
        entry = await request.json()
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid log entry format")

    if not isinstance(entry, dict):
        raise HTTPException(status_code=400, detail="Invalid log entry format")
    level = str(entry.get("level") or "").upper()
    message = entry.get("message")
    timestamp = _parse_timestamp(entry.get("timestamp"))
    if timestamp is None or level not in LOG_LEVELS or not isinstance(message, str) or not message:
        raise HTTPException(status_code=400, detail="Invalid log entry format")

    url = entry.get("route") or entry.get("url")
    session_id = entry.get("sessionId") or entry.get("session_id")
    if any(v is not None and not isinstance(v, str) for v in (url, session_id)):
        raise HTTPException(status_code=400, detail="Invalid log entry format")

    performance = entry.get("performance") if isinstance(entry.get("performance"), dict) else None
    context = entry.get("context") or entry.get("data")

    row = ApplicationLog(
        user_id=current_user["id"] if current_user else None,
        level=level,
        message=message[:5000],
        context=dump_json(context) if context is not None else None,
        performance=dump_json(performance) if performance else None,
        url=url,
        user_agent=request.headers.get("User-Agent"),
        session_id=session_id,
        timestamp=timestamp,
    )
    db.add(row)
    db.commit()
    db.refresh(row)

    if level in ("ERROR", "FATAL"):
        logger.error(f"[CLIENT_LOG] {level}: {sanitize_error(message)}")
    elif level == "WARN":
        logger.warning(f"[CLIENT_LOG] {level}: {sanitize_error(message)}")

    duration = (performance or {}).get("duration")
    if isinstance(duration, (int, float)) and duration > SLOW_OPERATION_MS:
        logger.warning(f"Slow client operation ({duration}ms): {sanitize_error(message)}")

    return {"success": True, "log_id": row.id}


@router.get("/api/logs")
async def list_logs(
    level: Optional[str] = Query(None),
    user_id: Optional[int] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_admin),
):
    query = db.query(ApplicationLog)
    if level:
        query = query.filter(ApplicationLog.level == level.upper())
    if user_id is not None:
        query = query.filter(ApplicationLog.user_id == user_id)
    rows = query.order_by(ApplicationLog.created_at.desc(), ApplicationLog.id.desc()).limit(limit).all()
    return {"logs": [_log_dict(r) for r in rows]}


# ============== API Metrics ==============


def provider_health(total: int, successes: int, total_latency: float) -> dict:
    """Classify a provider from its call counts and summed latency."""
    uptime = (successes / total) * 100 if total else 100.0
    latency = total_latency / total if total else 0.0
    error_rate = 1 - successes / total if total else 0.0

    if error_rate >= 0.2 or uptime < 80:
        status = "down"
    elif error_rate >= 0.05 or latency > 2000:
        status = "degraded"
    else:
        status = "healthy"
    return {"status": status, "latency": round(latency, 2), "uptime": round(uptime, 2)}


def _summaries(rows) -> list:
    grouped = {}
    for row in rows:
        g = grouped.setdefault(row.provider or "unknown", {
            "total": 0, "ok": 0, "cost": 0.0, "latency": 0, "tokens": 0,
        })
        g["total"] += 1
        if row.success:
            g["ok"] += 1
        g["cost"] += row.cost_usd or 0.0
        g["latency"] += row.response_time_ms or 0
        g["tokens"] += row.tokens_used or 0

    return [
        {
            "provider": provider,
            "total_requests": g["total"],
            "successful_requests": g["ok"],
            "failed_requests": g["total"] - g["ok"],
            "total_cost": round(g["cost"], 6),
            "avg_response_time": round(g["latency"] / g["total"], 2),
            "total_tokens": g["tokens"],
            "error_rate": round((g["total"] - g["ok"]) / g["total"], 4),
            "uptime_percentage": round(g["ok"] / g["total"] * 100, 2),
        }
        for provider, g in sorted(grouped.items())
    ]


def _costs(rows) -> list:
    grouped = {}
    for row in rows:
        key = (row.provider or "unknown", row.model or "unknown")
        g = grouped.setdefault(key, {"provider": key[0], "model": key[1], "requests": 0, "cost": 0.0, "tokens": 0})
        g["requests"] += 1
        g["cost"] += row.cost_usd or 0.0
        g["tokens"] += row.tokens_used or 0
    for g in grouped.values():
        g["cost"] = round(g["cost"], 6)
    return sorted(grouped.values(), key=lambda g: (g["provider"], g["model"]))


def _health(rows) -> dict:
    agg = {}
    for row in rows:
        a = agg.setdefault(row.provider or "unknown", [0, 0, 0])
        a[0] += 1
        if row.success:
            a[1] += 1
        a[2] += row.response_time_ms or 0
    return {provider: provider_health(*a) for provider, a in sorted(agg.items())}


@router.get("/api/metrics/api")
async def api_metrics(
    action: str = Query("summary"),
    time_range: str = Query("24h"),
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    """Aggregate the caller's provider calls over the last 24h, 7d or 30d."""
    if time_range not in TIME_RANGE_HOURS:
        raise HTTPException(status_code=400, detail=f"Invalid time_range: {time_range}")

    cutoff = datetime.utcnow() - timedelta(hours=TIME_RANGE_HOURS[time_range])
    rows = db.query(ApiUsageCost).filter(
        ApiUsageCost.user_id == current_user["id"],
        ApiUsageCost.created_at >= cutoff,
    ).all()

    if action == "summary":
        return {"summaries": _summaries(rows), "time_range": time_range}
    if action == "costs":
        return {"costs": _costs(rows), "time_range": time_range}
    if action == "health":
        return {"health": _health(rows), "time_range": time_range}
    raise HTTPException(status_code=400, detail="Invalid action")
