"""
Market Intel - Competitor Analysis Router

Endpoints:
- POST   /api/analyses                     - Start an analysis (runs in background)
- GET    /api/analyses                     - List own analyses
- GET    /api/analyses/permissions         - What the caller's role may do
- GET    /api/analyses/{id}                - Full analysis (cached)
- GET    /api/analyses/{id}/progress       - Progress poll
- GET    /api/analyses/{id}/export         - JSON or CSV export
- GET    /api/analyses/{id}/debug          - Admin diagnostics
- POST   /api/analyses/{id}/threat-level   - Compute and store the threat level
- DELETE /api/analyses/{id}                - Delete an analysis
"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from analysis_service import (
    CostLimitExceededError, MissingApiKeysError,
    create_analysis, run_analysis, serialize_analysis, export_csv,
)
from cache import get_cache, analysis_cache_key, invalidate_analysis, ANALYSIS_CACHE_TTL
from constants import ANALYSIS_STATUSES
from database import get_db, ApiUsageCost, CompetitorAnalysis, load_json
from dependencies import get_current_user, require_admin, is_admin, log_activity, client_ip
from resilience import get_breaker_states
from schemas.analyses import AnalysisCreate, ThreatLevelRequest
from threat_scoring import assess_threat

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/analyses", tags=["Competitor Analysis"])


def _get_visible(db: Session, analysis_id: int, current_user: dict) -> CompetitorAnalysis:
    """Owner's row (admins see every row). 404 otherwise."""
    query = db.query(CompetitorAnalysis).filter(CompetitorAnalysis.id == analysis_id)
    if not is_admin(current_user):
        query = query.filter(CompetitorAnalysis.user_id == current_user["id"])
    analysis = query.first()
    if not analysis:
        raise HTTPException(status_code=404, detail="Analysis not found")
    return analysis


@router.post("", status_code=202)
async def start_analysis(
    body: AnalysisCreate,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    """Validate, preflight the cost and queue a competitor analysis."""
    try:
        analysis = create_analysis(
            db,
            user_id=current_user["id"],
            competitors=body.competitors,
            session_id=body.session_id,
            providers=body.providers,
            options=body.options.model_dump(),
            name=body.name,
        )
    except CostLimitExceededError as e:
        return JSONResponse(
            status_code=402,
            content={
                "detail": str(e),
                "remaining": e.remaining,
                "monthly_limit": e.monthly_limit,
                "projected_cost": e.projected,
            },
        )
    except (MissingApiKeysError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))

    log_activity(
        db, current_user["email"], current_user["id"], "analysis_started",
        action_details={"competitors": load_json(analysis.competitors, [])},
        resource_type="competitor_analysis", resource_id=analysis.id,
        ip_address=client_ip(request),
    )
    background_tasks.add_task(run_analysis, analysis.id)

    return {
        "success": True,
        "analysis_id": analysis.id,
        "session_id": analysis.session_id,
        "status": analysis.status,
    }


@router.get("")
async def list_analyses(
    status: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    """List the caller's analyses, newest first."""
    if status and status not in ANALYSIS_STATUSES:
        raise HTTPException(status_code=400, detail=f"Invalid status: {status}")

    query = db.query(CompetitorAnalysis).filter(CompetitorAnalysis.user_id == current_user["id"])
    if status:
        query = query.filter(CompetitorAnalysis.status == status)
    rows = query.order_by(CompetitorAnalysis.created_at.desc()).limit(limit).all()

    return {
        "analyses": [serialize_analysis(a, include_data=False) for a in rows],
        "total": len(rows),
    }


@router.get("/permissions")
async def analysis_permissions(current_user: dict = Depends(get_current_user)):
    admin = is_admin(current_user)
    return {
        "role": current_user["role"],
        "can_create": True,
        "can_export": True,
        "can_delete": True,
        "can_debug": admin,
    }


@router.get("/{analysis_id}")
async def get_analysis(
    analysis_id: int,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    """Full analysis record. Cached for a minute; updates invalidate the entry."""
    cache = get_cache()
    key = analysis_cache_key(analysis_id)
    cached = cache.get(key)
    if cached and (cached.get("user_id") == current_user["id"] or is_admin(current_user)):
        return cached

    payload = serialize_analysis(_get_visible(db, analysis_id, current_user))
    cache.set(key, payload, ttl=ANALYSIS_CACHE_TTL)
    return payload


@router.get("/{analysis_id}/progress")
async def get_progress(
    analysis_id: int,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    analysis = _get_visible(db, analysis_id, current_user)
    return {
        "analysis_id": analysis.id,
        "status": analysis.status,
        "progress_percentage": analysis.progress_percentage,
        "current_step": analysis.current_step,
        "total_competitors": analysis.total_competitors,
        "error_message": analysis.error_message,
    }


@router.get("/{analysis_id}/export")
async def export_analysis(
    analysis_id: int,
    format: str = Query("json"),
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    """Export as a JSON document or a CSV sheet (one row per competitor)."""
    fmt = format.lower()
    if fmt not in ("json", "csv"):
        raise HTTPException(status_code=400, detail=f"Unsupported export format: {format}")

    analysis = _get_visible(db, analysis_id, current_user)
    log_activity(
        db, current_user["email"], current_user["id"], "analysis_exported",
        action_details={"format": fmt},
        resource_type="competitor_analysis", resource_id=analysis.id,
    )

    filename = f"analysis_{analysis.id}.{fmt}"
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    if fmt == "csv":
        return Response(content=export_csv(analysis), media_type="text/csv", headers=headers)
    return JSONResponse(content=serialize_analysis(analysis), headers=headers)


@router.get("/{analysis_id}/debug")
async def debug_analysis(
    analysis_id: int,
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_admin),
):
    """Row, provider calls and breaker states for troubleshooting a run."""
    analysis = _get_visible(db, analysis_id, current_user)
    usage = db.query(ApiUsageCost).filter(
        ApiUsageCost.analysis_id == analysis.id
    ).order_by(ApiUsageCost.created_at).all()

    return {
        "analysis": serialize_analysis(analysis),
        "usage": [
            {
                "provider": u.provider,
                "model": u.model,
                "operation_type": u.operation_type,
                "tokens_used": u.tokens_used,
                "cost_usd": u.cost_usd,
                "response_time_ms": u.response_time_ms,
                "success": u.success,
                "error_details": u.error_details,
                "created_at": u.created_at.isoformat() if u.created_at else None,
            }
            for u in usage
        ],
        "breakers": get_breaker_states(),
        "cached": get_cache().get(analysis_cache_key(analysis.id)) is not None,
    }


@router.post("/{analysis_id}/threat-level")
async def calculate_threat_level(
    analysis_id: int,
    body: ThreatLevelRequest,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    """Score one competitor (or the strongest one) and store the level on the analysis."""
    analysis = _get_visible(db, analysis_id, current_user)
    data = load_json(analysis.analysis_data, {}) or {}
    entries = [
        e for e in data.get("analyses", [])
        if isinstance(e.get("data"), dict) and "raw" not in e["data"] and "error" not in e["data"]
    ]
    if not entries:
        raise HTTPException(status_code=400, detail="Analysis has no competitor data to score")

    if body.competitor:
        wanted = body.competitor.strip().lower()
        entries = [e for e in entries if str(e.get("competitor", "")).lower() == wanted]
        if not entries:
            raise HTTPException(status_code=404, detail="Competitor not found in analysis")

    user_company = body.user_company.model_dump() if body.user_company else None
    best = None
    for entry in entries:
        assessment = assess_threat(entry["data"], user_company)
        assessment["competitor"] = entry["competitor"]
        if best is None or assessment["threatScore"] > best["threatScore"]:
            best = assessment

    analysis.threat_level = best["threatLevel"]
    analysis.threat_score = best["threatScore"]
    db.commit()
    invalidate_analysis(analysis.id)

    logger.info(f"Analysis {analysis.id} threat: {best['threatLevel']} ({best['threatScore']})")
    return best


@router.delete("/{analysis_id}")
async def delete_analysis(
    analysis_id: int,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    analysis = _get_visible(db, analysis_id, current_user)
    if analysis.status in ("pending", "running"):
        raise HTTPException(status_code=409, detail="Analysis is still running")
    db.delete(analysis)
    db.commit()
    invalidate_analysis(analysis_id)
    log_activity(
        db, current_user["email"], current_user["id"], "analysis_deleted",
        resource_type="competitor_analysis", resource_id=analysis_id,
    )
    return {"success": True, "message": "Analysis deleted"}
