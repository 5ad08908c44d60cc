"""
Market Intel - Competitor Analysis Service

Creates analysis runs and executes them in the background.

Flow:
    create_analysis()  validates names, resolves provider keys, checks the
                       monthly cost limit and inserts a `running` row.
    run_analysis()     one failover call per competitor, consolidation,
                       business insights, then `completed` (or `failed`).

Every provider call made by a run is written to api_usage_costs, including
the attempts that failed before another provider answered.
"""

import csv
import io
import logging
import os
import uuid
from datetime import datetime, date
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import metrics
from ai_router import (
    TaskType, AllProvidersFailedError, BudgetExceededException, ProviderError,
    get_ai_router, order_providers,
)
from cache import invalidate_analysis
from constants import (
    ANALYSIS_PROVIDERS, PROJECTED_COST_PER_PROVIDER, MAX_COMPETITORS_PER_ANALYSIS,
    ANALYSIS_PROMPT_KEY, INSIGHTS_PROMPT_KEY,
)
from database import (
    SessionLocal, ApiKey, ApiUsageCost, CompetitorAnalysis, UserCostLimit,
    dump_json, load_json,
)
from input_sanitizer import sanitize_competitor_name, sanitize_error
from key_vault import KeyVaultError, decrypt_key
from observability import trace_analysis_run
from prompts import (
    DEFAULT_ANALYSIS_PROMPT, DEFAULT_INSIGHTS_PROMPT,
    build_analysis_prompt, build_insights_prompt, resolve_system_prompt, try_parse_json,
    validate_analysis_payload,
)
from threat_scoring import assess_threat, THREAT_LEVELS

logger = logging.getLogger(__name__)

DEFAULT_MONTHLY_COST_LIMIT_USD = float(os.getenv("DEFAULT_MONTHLY_COST_LIMIT_USD", "50.0"))

CSV_COLUMNS = ["competitor", "provider", "status", "cost", "created_at"]

_LEVEL_RANK = {level: rank for rank, (_, level) in enumerate(reversed(THREAT_LEVELS), start=1)}


# =============================================================================
# EXCEPTIONS
# =============================================================================

class MissingApiKeysError(Exception):
    """The user lacks keys for the providers an analysis needs."""

    def __init__(self, message: str, missing: Optional[List[str]] = None):
        self.missing = missing or []
        super().__init__(message)


class CostLimitExceededError(Exception):
    """Projected cost would push the user past their monthly limit."""

    def __init__(self, projected: float, remaining: float, monthly_limit: float):
        self.projected = projected
        self.remaining = remaining
        self.monthly_limit = monthly_limit
        super().__init__(
            f"Projected cost ${projected:.2f} exceeds remaining monthly budget ${remaining:.2f}"
        )


# =============================================================================
# KEYS AND COST LIMITS
# =============================================================================

def get_active_api_keys(db: Session, user_id: int) -> Dict[str, str]:
    """Decrypted keys for the analysis providers the user has working keys for."""
    rows = db.query(ApiKey).filter(
        ApiKey.user_id == user_id,
        ApiKey.is_active == True,  # noqa: E712
        ApiKey.status == "active",
        ApiKey.provider.in_(list(ANALYSIS_PROVIDERS)),
    ).all()

    keys = {}
    for row in rows:
        try:
            keys[row.provider] = decrypt_key(row.encrypted_key)
        except KeyVaultError:
            logger.warning(f"Stored {row.provider} key for user {row.user_id} cannot be decrypted; skipping")
    return keys


def resolve_providers(api_keys: Dict[str, str], requested: Optional[List[str]] = None) -> List[str]:
    """
    Providers an analysis will use, in priority order.

    Raises:
        MissingApiKeysError: No usable key at all, or a requested provider has no key.
        ValueError: A requested provider is not an analysis provider.
    """
    if not api_keys:
        raise MissingApiKeysError("No active API keys found")

    if requested:
        requested = [p.lower().strip() for p in requested if p and p.strip()]
        unknown = [p for p in requested if p not in ANALYSIS_PROVIDERS]
        if unknown:
            raise ValueError(f"Unsupported analysis provider: {', '.join(unknown)}")
        missing = [p for p in requested if p not in api_keys]
        if missing:
            raise MissingApiKeysError(f"Missing required API keys: {', '.join(missing)}", missing)
        return order_providers(requested)

    return order_providers(api_keys.keys())


def get_monthly_limit(db: Session, user_id: int) -> float:
    row = db.query(UserCostLimit).filter(UserCostLimit.user_id == user_id).first()
    return row.monthly_limit_usd if row else DEFAULT_MONTHLY_COST_LIMIT_USD


def get_month_spend(db: Session, user_id: int, today: Optional[date] = None) -> float:
    """Sum of api_usage_costs since the first of the current month."""
    today = today or datetime.utcnow().date()
    month_start = today.replace(day=1)
    total = db.query(func.coalesce(func.sum(ApiUsageCost.cost_usd), 0.0)).filter(
        ApiUsageCost.user_id == user_id,
        ApiUsageCost.date >= month_start,
    ).scalar()
    return float(total or 0.0)


def projected_cost(competitor_count: int, provider_count: int) -> float:
    return round(competitor_count * provider_count * PROJECTED_COST_PER_PROVIDER, 4)


def check_cost_limit(db: Session, user_id: int, projected: float) -> Dict[str, Any]:
    monthly_limit = get_monthly_limit(db, user_id)
    month_spend = get_month_spend(db, user_id)
    remaining = max(0.0, monthly_limit - month_spend)
    return {
        "allowed": projected <= remaining,
        "remaining": round(remaining, 4),
        "monthly_limit": monthly_limit,
        "month_spend": round(month_spend, 4),
        "projected_cost": projected,
    }


# =============================================================================
# CREATE
# =============================================================================

def clean_competitors(names: List[str]) -> List[str]:
    """
    Trim, sanitize and de-duplicate competitor names (order kept).

    Raises:
        ValueError: Empty list, too many names, or a name rejected by the sanitizer.
    """
    cleaned: List[str] = []
    seen = set()
    for raw in names or []:
        if raw is None or not str(raw).strip():
            continue
        name = sanitize_competitor_name(raw)
        if name.lower() in seen:
            continue
        seen.add(name.lower())
        cleaned.append(name)

    if not cleaned:
        raise ValueError("No competitors provided")
    if len(cleaned) > MAX_COMPETITORS_PER_ANALYSIS:
        raise ValueError(f"Too many competitors (max {MAX_COMPETITORS_PER_ANALYSIS})")
    return cleaned


def _analysis_name(competitors: List[str]) -> str:
    name = ", ".join(competitors[:3])
    if len(competitors) > 3:
        name += f" +{len(competitors) - 3} more"
    return f"Competitor analysis: {name}"


def create_analysis(
    db: Session,
    user_id: int,
    competitors: List[str],
    session_id: Optional[str] = None,
    providers: Optional[List[str]] = None,
    options: Optional[Dict[str, Any]] = None,
    name: Optional[str] = None,
) -> CompetitorAnalysis:
    """
    Validate a request and insert the analysis row.

    Raises:
        ValueError: Bad competitor list or provider name.
        MissingApiKeysError: Keys missing for the providers needed.
        CostLimitExceededError: Projected cost is over the remaining monthly budget.
    """
    names = clean_competitors(competitors)
    api_keys = get_active_api_keys(db, user_id)
    chosen = resolve_providers(api_keys, providers)

    projected = projected_cost(len(names), len(chosen))
    budget = check_cost_limit(db, user_id, projected)
    if not budget["allowed"]:
        raise CostLimitExceededError(projected, budget["remaining"], budget["monthly_limit"])

    opts = dict(options or {})
    opts["providers"] = chosen

    analysis = CompetitorAnalysis(
        user_id=user_id,
        session_id=session_id or str(uuid.uuid4()),
        name=name or _analysis_name(names),
        competitors=dump_json(names),
        status="running",
        progress_percentage=0,
        current_step="Queued",
        total_competitors=len(names),
        analysis_type="comprehensive",
        options=dump_json(opts),
        providers_used=dump_json([]),
    )
    db.add(analysis)
    db.commit()
    db.refresh(analysis)

    logger.info(
        f"Analysis {analysis.id} created for user {user_id}: "
        f"{len(names)} competitors, providers={chosen}, projected ${projected:.2f}"
    )
    return analysis


# =============================================================================
# RUN
# =============================================================================

def _update_progress(db: Session, analysis: CompetitorAnalysis, progress: int, step: str,
                     status: str = "running"):
    analysis.status = status
    analysis.progress_percentage = progress
    analysis.current_step = step
    analysis.updated_at = datetime.utcnow()
    db.commit()
    invalidate_analysis(analysis.id)
    logger.debug(f"Analysis {analysis.id}: {progress}% - {step}")


def _record_usage(
    db: Session,
    analysis: CompetitorAnalysis,
    provider: str,
    operation_type: str,
    result: Optional[Dict[str, Any]] = None,
    error: Optional[str] = None,
):
    result = result or {}
    db.add(ApiUsageCost(
        user_id=analysis.user_id,
        analysis_id=analysis.id,
        provider=provider,
        service="competitor_analysis",
        model=result.get("model"),
        operation_type=operation_type,
        tokens_used=(result.get("tokens_input") or 0) + (result.get("tokens_output") or 0),
        cost_usd=result.get("cost_usd") or 0.0,
        response_time_ms=result.get("latency_ms"),
        success=error is None,
        error_details=sanitize_error(error) if error else None,
    ))


def _record_failover(db: Session, analysis: CompetitorAnalysis, operation_type: str,
                     result: Dict[str, Any]):
    for attempt in result.get("attempts", []):
        _record_usage(db, analysis, attempt["provider"], operation_type, error=attempt["error"])
    _record_usage(db, analysis, result["provider"], operation_type, result=result)


async def analyze_competitor(
    db: Session,
    analysis: CompetitorAnalysis,
    competitor: str,
    api_keys: Dict[str, str],
    providers: List[str],
    options: Dict[str, Any],
    template: str,
) -> Dict[str, Any]:
    """One competitor through the provider failover chain."""
    prompt = build_analysis_prompt(
        competitor,
        template=template,
        include_financials=bool(options.get("include_financials")),
        include_sentiment=bool(options.get("include_sentiment")),
        deep_dive=bool(options.get("deep_dive")),
    )
    try:
        result = await get_ai_router().generate_with_failover(
            prompt,
            api_keys,
            subject=competitor,
            providers=providers,
            task_type=TaskType.ANALYSIS,
            user_id=str(analysis.user_id),
        )
    except AllProvidersFailedError as e:
        for provider, err in e.errors.items():
            _record_usage(db, analysis, provider, "analysis", error=err)
        db.commit()
        return {
            "competitor": competitor, "provider": None, "cost": 0.0,
            "success": False, "error": sanitize_error(str(e)), "result": None,
        }

    _record_failover(db, analysis, "analysis", result)
    db.commit()
    return {
        "competitor": competitor,
        "provider": result["provider"],
        "cost": result.get("cost_usd", 0.0),
        "success": True,
        "error": None,
        "result": result["response"],
    }


def _unique(items, limit: int = 10) -> List[str]:
    out: List[str] = []
    for item in items:
        if isinstance(item, str) and item.strip() and item not in out:
            out.append(item.strip())
        if len(out) >= limit:
            break
    return out


def consolidate_insights(analyses: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Cross-competitor roll-up computed from the parsed analysis payloads."""
    leaders: List[str] = []
    strength_counts: Dict[str, int] = {}
    gaps: List[str] = []
    actions: List[str] = []
    worst_level = None

    for entry in analyses:
        data = entry.get("data") or {}
        if "raw" in data or "error" in data:
            continue

        market = data.get("market_position") if isinstance(data.get("market_position"), dict) else {}
        position = str(market.get("market_position") or "").lower()
        if "leader" in position or "dominant" in position:
            leaders.append(entry["competitor"])

        swot = data.get("swot") if isinstance(data.get("swot"), dict) else {}
        for strength in (swot.get("strengths") or []) + (data.get("competitive_advantages") or []):
            if isinstance(strength, str) and strength.strip():
                key = strength.strip()
                strength_counts[key] = strength_counts.get(key, 0) + 1
        gaps.extend(swot.get("opportunities") or [])

        assessment = assess_threat(data)
        actions.extend(assessment["recommendations"])
        level = assessment["threatLevel"]
        if worst_level is None or _LEVEL_RANK.get(level, 0) > _LEVEL_RANK.get(worst_level, 0):
            worst_level = level

    common = sorted(strength_counts, key=lambda s: -strength_counts[s])
    return {
        "marketLeaders": leaders,
        "commonStrengths": _unique(common, limit=5),
        "marketGaps": _unique(gaps, limit=5),
        "threatLevel": (worst_level or "Medium").lower(),
        "recommendedActions": _unique(actions),
    }


def consolidate_results(results: List[Dict[str, Any]]) -> Dict[str, Any]:
    analyses = []
    for r in results:
        if r["success"]:
            data = try_parse_json(r["result"]) or {"raw": r["result"]}
            if "raw" not in data:
                problems = validate_analysis_payload(data)
                if problems:
                    logger.warning(f"Analysis payload for {r['competitor']} off schema: {', '.join(problems)}")
                    data["schemaProblems"] = problems
        else:
            data = {"error": r["error"]}
        analyses.append({
            "competitor": r["competitor"],
            "provider": r["provider"],
            "cost": r["cost"],
            "data": data,
        })

    successful = [r for r in results if r["success"]]
    return {
        "competitors": [r["competitor"] for r in results],
        "analyses": analyses,
        "summary": {
            "totalCompetitors": len(results),
            "successfulAnalyses": len(successful),
            "failedAnalyses": len(results) - len(successful),
            "totalCost": round(sum(r["cost"] for r in results), 6),
            "providers": sorted({r["provider"] for r in successful}),
        },
        "consolidatedInsights": consolidate_insights(analyses),
        "generatedAt": datetime.utcnow().isoformat(),
    }


async def generate_business_insights(
    db: Session,
    analysis: CompetitorAnalysis,
    consolidated: Dict[str, Any],
    api_keys: Dict[str, str],
    providers: List[str],
) -> Dict[str, Any]:
    """Second-pass insights. Failure here is reported in the payload, not raised."""
    template = resolve_system_prompt(db, analysis.user_id, INSIGHTS_PROMPT_KEY, DEFAULT_INSIGHTS_PROMPT)
    prompt = build_insights_prompt(consolidated, template=template)
    try:
        result = await get_ai_router().generate_with_failover(
            prompt,
            api_keys,
            subject=f"insights for analysis {analysis.id}",
            json_mode=True,
            providers=providers,
            task_type=TaskType.INSIGHTS,
            user_id=str(analysis.user_id),
        )
    except AllProvidersFailedError as e:
        for provider, err in e.errors.items():
            _record_usage(db, analysis, provider, "insights", error=err)
        db.commit()
        logger.warning(f"Insights failed for analysis {analysis.id}: {e}")
        return {"error": "Failed to generate insights"}
    except (ProviderError, BudgetExceededException) as e:
        logger.warning(f"Insights failed for analysis {analysis.id}: {sanitize_error(e)}")
        return {"error": "Failed to generate insights"}

    _record_failover(db, analysis, "insights", result)
    db.commit()
    return result.get("response_json") or {"raw": result["response"]}


def _strongest_threat(consolidated: Dict[str, Any]):
    best = None
    for entry in consolidated["analyses"]:
        data = entry.get("data") or {}
        if "raw" in data or "error" in data:
            continue
        assessment = assess_threat(data)
        if best is None or assessment["threatScore"] > best["threatScore"]:
            best = assessment
    return best


async def run_analysis(analysis_id: int):
    """
    Execute an analysis created by create_analysis(). Runs as a background task.

    Progress: 10 init, 20 start, 20-80 per competitor, 90 consolidate,
    95 insights, 100 done. A failure marks the row `failed` and keeps the
    progress where it stopped.
    """
    db = SessionLocal()
    analysis = None
    metrics.analyses_in_progress.inc()
    try:
        analysis = db.query(CompetitorAnalysis).filter(CompetitorAnalysis.id == analysis_id).first()
        if analysis is None:
            logger.error(f"Analysis {analysis_id} not found; nothing to run")
            return

        _update_progress(db, analysis, 10, "Initializing AI providers...")
        competitors = load_json(analysis.competitors, [])
        options = load_json(analysis.options, {})

        api_keys = get_active_api_keys(db, analysis.user_id)
        providers = resolve_providers(api_keys, options.get("providers"))
        template = resolve_system_prompt(db, analysis.user_id, ANALYSIS_PROMPT_KEY, DEFAULT_ANALYSIS_PROMPT)

        _update_progress(db, analysis, 20, "Analyzing competitors...")
        results = []
        count = len(competitors)
        for i, competitor in enumerate(competitors):
            results.append(await analyze_competitor(
                db, analysis, competitor, api_keys, providers, options, template
            ))
            _update_progress(db, analysis, (60 * (i + 1)) // count + 20, f"Analyzed {competitor}")

        if not any(r["success"] for r in results):
            errors = "; ".join(r["error"] for r in results if r["error"])
            raise RuntimeError(errors or "All competitor analyses failed")

        _update_progress(db, analysis, 90, "Consolidating results...")
        consolidated = consolidate_results(results)

        _update_progress(db, analysis, 95, "Generating insights...")
        insights = await generate_business_insights(db, analysis, consolidated, api_keys, providers)

        threat = _strongest_threat(consolidated)
        total_cost = db.query(func.coalesce(func.sum(ApiUsageCost.cost_usd), 0.0)).filter(
            ApiUsageCost.analysis_id == analysis.id
        ).scalar()

        analysis.analysis_data = dump_json(consolidated)
        analysis.business_insights = dump_json(insights)
        analysis.providers_used = dump_json(consolidated["summary"]["providers"])
        analysis.actual_cost = round(float(total_cost or 0.0), 6)
        if threat:
            analysis.threat_level = threat["threatLevel"]
            analysis.threat_score = threat["threatScore"]
        analysis.completed_at = datetime.utcnow()
        _update_progress(db, analysis, 100, "Analysis complete!", status="completed")

        metrics.track_analysis_run("completed")
        trace_analysis_run(analysis.id, analysis.user_id, analysis.session_id, "completed", {
            "competitors": count,
            "successful": consolidated["summary"]["successfulAnalyses"],
            "cost_usd": analysis.actual_cost,
        })
        logger.info(f"Analysis {analysis.id} completed (${analysis.actual_cost:.4f})")

    except Exception as e:
        message = sanitize_error(str(e)) or type(e).__name__
        logger.error(f"Analysis {analysis_id} failed: {message}")
        try:
            db.rollback()
            # The row may have been deleted while the run was in flight
            analysis = db.query(CompetitorAnalysis).filter(CompetitorAnalysis.id == analysis_id).first()
            if analysis is None:
                logger.warning(f"Analysis {analysis_id} no longer exists; failure not recorded")
            else:
                analysis.status = "failed"
                analysis.error_message = message
                analysis.current_step = f"Analysis failed: {message}"[:250]
                analysis.completed_at = datetime.utcnow()
                db.commit()
                invalidate_analysis(analysis.id)
                trace_analysis_run(analysis.id, analysis.user_id, analysis.session_id, "failed",
                                   {"error": message})
        except SQLAlchemyError as db_error:
            db.rollback()
            logger.error(f"Could not record failure of analysis {analysis_id}: {sanitize_error(str(db_error))}")
        metrics.track_analysis_run("failed")
    finally:
        metrics.analyses_in_progress.dec()
        db.close()


# =============================================================================
# READ HELPERS
# =============================================================================

def serialize_analysis(analysis: CompetitorAnalysis, include_data: bool = True) -> Dict[str, Any]:
    payload = {
        "id": analysis.id,
        "user_id": analysis.user_id,
        "session_id": analysis.session_id,
        "name": analysis.name,
        "competitors": load_json(analysis.competitors, []),
        "status": analysis.status,
        "progress_percentage": analysis.progress_percentage,
        "current_step": analysis.current_step,
        "total_competitors": analysis.total_competitors,
        "analysis_type": analysis.analysis_type,
        "options": load_json(analysis.options, {}),
        "providers_used": load_json(analysis.providers_used, []),
        "threat_level": analysis.threat_level,
        "threat_score": analysis.threat_score,
        "error_message": analysis.error_message,
        "actual_cost": analysis.actual_cost or 0.0,
        "created_at": analysis.created_at.isoformat() if analysis.created_at else None,
        "updated_at": analysis.updated_at.isoformat() if analysis.updated_at else None,
        "completed_at": analysis.completed_at.isoformat() if analysis.completed_at else None,
    }
    if include_data:
        payload["analysis_data"] = load_json(analysis.analysis_data)
        payload["business_insights"] = load_json(analysis.business_insights)
    return payload


def export_csv(analysis: CompetitorAnalysis) -> str:
    """One row per competitor. Header: competitor,provider,status,cost,created_at."""
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(CSV_COLUMNS)

    data = load_json(analysis.analysis_data, {}) or {}
    created = analysis.created_at.isoformat() if analysis.created_at else ""
    entries = data.get("analyses") or [
        {"competitor": c, "provider": None, "cost": 0.0, "data": None}
        for c in load_json(analysis.competitors, [])
    ]
    for entry in entries:
        payload = entry.get("data")
        if payload is None:
            status = analysis.status
        elif isinstance(payload, dict) and "error" in payload:
            status = "failed"
        else:
            status = "completed"
        writer.writerow([
            entry.get("competitor", ""),
            entry.get("provider") or "",
            status,
            f"{float(entry.get('cost') or 0.0):.4f}",
            created,
        ])
    return buf.getvalue()
