"""
Market Intel - Competitor Threat Scoring

Turns one competitor's analysis payload into five 0-100 threat factors, a
weighted score and a level.

Factors and weights:
    market_share_overlap    0.25
    competitive_advantages  0.20
    growth_trajectory       0.20
    financial_strength      0.20
    strategic_positioning   0.15

Levels: Critical >= 80, High >= 65, Medium >= 45, Low >= 25, else Minimal.
"""

import logging
import math
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

FACTOR_WEIGHTS = {
    "marketShareOverlap": 0.25,
    "competitiveAdvantages": 0.20,
    "growthTrajectory": 0.20,
    "financialStrength": 0.20,
    "strategicPositioning": 0.15,
}

THREAT_LEVELS = (
    (80, "Critical"),
    (65, "High"),
    (45, "Medium"),
    (25, "Low"),
)

SUFFICIENCY_FIELDS = (
    "revenue_estimate",
    "employee_count",
    "market_share_estimate",
    "competitive_advantages",
    "market_position",
    "brand_strength_score",
)


def _num(value: Any) -> Optional[float]:
    """Coerce model output like "12.5" or 1200 to float; None when not numeric."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).replace(",", "").replace("$", "").replace("%", "").strip())
    except ValueError:
        return None


def _section(payload: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = payload.get(name)
    return value if isinstance(value, dict) else {}


def extract_profile(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten an analysis payload into the fields the factors read."""
    overview = _section(payload, "company_overview")
    market = _section(payload, "market_position")
    financials = _section(payload, "financials")

    def pick(*candidates):
        for c in candidates:
            if c is not None:
                return c
        return None

    position = market.get("market_position") if market else payload.get("market_position")
    if position is not None and not isinstance(position, str):
        position = None

    return {
        "industry": pick(overview.get("industry"), payload.get("industry")),
        "market_share_estimate": _num(pick(market.get("market_share_estimate"), payload.get("market_share_estimate"))),
        "target_markets": pick(market.get("target_markets"), payload.get("target_markets")) or [],
        "market_position": position,
        "brand_strength_score": _num(pick(market.get("brand_strength_score"), payload.get("brand_strength_score"))),
        "revenue_estimate": _num(pick(financials.get("revenue_estimate"), payload.get("revenue_estimate"))),
        "growth_rate": _num(pick(financials.get("growth_rate"), payload.get("growth_rate"))),
        "funding_stage": pick(financials.get("funding_stage"), payload.get("funding_stage")),
        "employee_count": _num(pick(financials.get("employee_count"), payload.get("employee_count"))),
        "competitive_advantages": payload.get("competitive_advantages") or [],
        "innovation_score": _num(payload.get("innovation_score")),
    }


# =============================================================================
# FACTORS
# =============================================================================

def market_share_overlap(profile: Dict[str, Any], user_company: Optional[Dict[str, Any]] = None) -> float:
    score = (profile.get("market_share_estimate") or 0) * 10
    industry = profile.get("industry")
    user_industry = (user_company or {}).get("industry")
    if industry and user_industry and str(industry).lower() == str(user_industry).lower():
        score += 30
    targets = profile.get("target_markets") or []
    if isinstance(targets, list):
        score += len(targets) * 5
    return score


def competitive_advantages(profile: Dict[str, Any]) -> float:
    advantages = profile.get("competitive_advantages") or []
    return len(advantages) * 10 if isinstance(advantages, list) else 0


def growth_trajectory(profile: Dict[str, Any]) -> float:
    score = 50
    employees = profile.get("employee_count")
    if employees:
        if employees > 1000:
            score += 20
        elif employees > 100:
            score += 10
        elif employees > 10:
            score += 5

    stage = str(profile.get("funding_stage") or "").strip().lower()
    if stage in ("series c", "series d"):
        score += 15
    elif stage == "series b":
        score += 10
    elif stage == "series a":
        score += 5
    return score


def financial_strength(profile: Dict[str, Any]) -> float:
    score = 30
    revenue = profile.get("revenue_estimate")
    if revenue:
        if revenue > 100_000_000:
            score += 30
        elif revenue > 10_000_000:
            score += 20
        elif revenue > 1_000_000:
            score += 10
        else:
            score += 5

    growth = profile.get("growth_rate")
    if growth is not None:
        if growth > 0.3:
            score += 15
        elif growth > 0.15:
            score += 10
        elif growth > 0.05:
            score += 5
    return score


def strategic_positioning(profile: Dict[str, Any]) -> float:
    score = 40
    if profile.get("brand_strength_score"):
        score += profile["brand_strength_score"] * 0.3
    if profile.get("innovation_score"):
        score += profile["innovation_score"] * 0.2

    position = (profile.get("market_position") or "").lower()
    if "leader" in position or "dominant" in position:
        score += 20
    elif "challenger" in position or "strong" in position:
        score += 10
    elif "follower" in position:
        score += 5
    return score


def calculate_threat_factors(
    profile: Dict[str, Any], user_company: Optional[Dict[str, Any]] = None
) -> Dict[str, float]:
    """All five factors, each capped at 100."""
    raw = {
        "marketShareOverlap": market_share_overlap(profile, user_company),
        "competitiveAdvantages": competitive_advantages(profile),
        "growthTrajectory": growth_trajectory(profile),
        "financialStrength": financial_strength(profile),
        "strategicPositioning": strategic_positioning(profile),
    }
    return {k: min(100, v) for k, v in raw.items()}


def calculate_threat_score(factors: Dict[str, float]) -> int:
    # Halves round up: 44.5 scores 45 (Medium), not 44
    total = sum(factors[k] * w for k, w in FACTOR_WEIGHTS.items())
    return math.floor(round(total, 6) + 0.5)


def threat_level_for(score: int) -> str:
    for threshold, level in THREAT_LEVELS:
        if score >= threshold:
            return level
    return "Minimal"


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (list, dict)) and not value:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    if isinstance(value, (int, float)) and value == 0:
        return True
    return False


def has_insufficient_data(profile: Dict[str, Any]) -> bool:
    """True when more than half of the key fields are missing."""
    missing = [f for f in SUFFICIENCY_FIELDS if _is_missing(profile.get(f))]
    return len(missing) > len(SUFFICIENCY_FIELDS) / 2


def recommendations_for(factors: Dict[str, float], insufficient_data: bool) -> List[str]:
    recs = []
    if insufficient_data:
        recs.append("Gather more comprehensive data about this competitor")
        recs.append("Update company profile with missing information")
    if factors["marketShareOverlap"] > 70:
        recs.append("Monitor market positioning closely - high overlap detected")
    if factors["competitiveAdvantages"] > 60:
        recs.append("Analyze competitor's key advantages for defensive strategies")
    if factors["financialStrength"] > 75:
        recs.append("Strong financial position detected - monitor acquisition potential")
    return recs


def assess_threat(payload: Dict[str, Any], user_company: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Full assessment for one competitor's analysis payload."""
    profile = extract_profile(payload or {})
    factors = calculate_threat_factors(profile, user_company)
    score = calculate_threat_score(factors)
    insufficient = has_insufficient_data(profile)
    return {
        "threatLevel": threat_level_for(score),
        "threatScore": score,
        "threatFactors": factors,
        "insufficientData": insufficient,
        "recommendations": recommendations_for(factors, insufficient),
    }
