"""
Market Intel - Analysis Prompts

One shared JSON schema and prompt builder for every provider, plus the
helpers that turn a provider's text reply back into JSON.

Prompt resolution order for an admin-editable key:
user override -> global row in system_prompts -> built-in default.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from constants import NO_HALLUCINATION_INSTRUCTION
from database import SystemPrompt

logger = logging.getLogger(__name__)


class PromptResponseError(ValueError):
    """Raised when a reply cannot be parsed as a JSON object."""


# =============================================================================
# SCHEMA
# =============================================================================

# Top-level keys every analysis payload should carry, with the expected type
ANALYSIS_SCHEMA: Dict[str, Any] = {
    "company_overview": {
        "name": "string",
        "description": "string",
        "industry": "string",
        "founded": "number|null",
        "headquarters": "string|null",
        "business_model": "string",
    },
    "market_position": {
        "market_position": "leader|challenger|follower|niche",
        "market_share_estimate": "number|null (percent)",
        "target_markets": ["string"],
        "brand_strength_score": "number 0-100|null",
    },
    "financials": {
        "revenue_estimate": "number|null (USD)",
        "growth_rate": "number|null (fraction, 0.15 = 15%)",
        "funding_stage": "string|null",
        "employee_count": "number|null",
    },
    "swot": {
        "strengths": ["string"],
        "weaknesses": ["string"],
        "opportunities": ["string"],
        "threats": ["string"],
    },
    "competitive_advantages": ["string"],
    "innovation_score": "number 0-100|null",
    "recent_developments": ["string"],
    "sentiment": {
        "overall": "positive|neutral|negative|null",
        "summary": "string|null",
    },
}

REQUIRED_ANALYSIS_KEYS = ("company_overview", "market_position", "swot")


DEFAULT_ANALYSIS_PROMPT = """Analyze the competitor "{competitor}" and provide comprehensive business intelligence including:
- Company overview and business model
- Market position and competitive advantages
- Financial performance (if available)
- Strengths, weaknesses, opportunities, threats
- Recent news and developments
{financial_analysis}
{sentiment_analysis}

Format response as structured JSON."""

DEFAULT_INSIGHTS_PROMPT = """Based on this competitor analysis data: {analysis_data}

Generate actionable business insights including:
- Key competitive threats
- Market opportunities
- Strategic recommendations
- Action items

Respond with a JSON object with keys "threats", "opportunities", "recommendations", "action_items", each a list of strings."""

FINANCIAL_ANALYSIS_LINE = "- Detailed financial analysis"
SENTIMENT_ANALYSIS_LINE = "- Market sentiment analysis"

INSIGHTS_DATA_LIMIT = 2000


# =============================================================================
# PROMPT RESOLUTION
# =============================================================================

def resolve_system_prompt(
    db: Session,
    user_id: Optional[int],
    prompt_key: Optional[str],
    default: str
) -> str:
    """Load a prompt by key with user-specific override, or return default."""
    if not prompt_key:
        return default
    p = None
    if user_id is not None:
        p = db.query(SystemPrompt).filter(
            SystemPrompt.key == prompt_key,
            SystemPrompt.user_id == user_id
        ).first()
    if not p:
        p = db.query(SystemPrompt).filter(
            SystemPrompt.key == prompt_key,
            SystemPrompt.user_id == None  # noqa: E711
        ).first()
    return p.content if p else default


# =============================================================================
# BUILDERS
# =============================================================================

def schema_instruction() -> str:
    return (
        "Return a single JSON object matching this schema "
        "(types are descriptive; use null when unknown):\n"
        + json.dumps(ANALYSIS_SCHEMA, indent=2)
    )


def build_analysis_prompt(
    competitor: str,
    template: str = DEFAULT_ANALYSIS_PROMPT,
    include_financials: bool = False,
    include_sentiment: bool = False,
    deep_dive: bool = False,
) -> str:
    """Fill the analysis template and append the shared schema."""
    # str.replace rather than format() so admin templates may contain braces
    prompt = (
        template
        .replace("{competitor}", competitor)
        .replace("{financial_analysis}", FINANCIAL_ANALYSIS_LINE if include_financials else "")
        .replace("{sentiment_analysis}", SENTIMENT_ANALYSIS_LINE if include_sentiment else "")
    )
    if deep_dive:
        prompt += "\n\nGo beyond the summary level: cover product lines, pricing and go-to-market in detail."
    return f"{prompt}\n\n{schema_instruction()}{NO_HALLUCINATION_INSTRUCTION}"


def build_insights_prompt(consolidated: Dict[str, Any], template: str = DEFAULT_INSIGHTS_PROMPT) -> str:
    data = json.dumps(consolidated, default=str)[:INSIGHTS_DATA_LIMIT]
    return template.replace("{analysis_data}", data)


# =============================================================================
# RESPONSE PARSING
# =============================================================================

_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?```\s*$", re.DOTALL)


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ``` or ```json fence."""
    raw = (text or "").strip()
    match = _FENCE_RE.match(raw)
    if match:
        return match.group(1).strip()
    return raw


def parse_json_response(text: str) -> Dict[str, Any]:
    """
    Parse a provider reply as a JSON object.

    Raises:
        PromptResponseError: When the reply is not a JSON object.
    """
    raw = strip_code_fences(text)
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        # Models sometimes wrap the object in prose
        start, end = raw.find("{"), raw.rfind("}")
        if start == -1 or end <= start:
            raise PromptResponseError("Response is not valid JSON")
        try:
            parsed = json.loads(raw[start:end + 1])
        except json.JSONDecodeError as e:
            raise PromptResponseError(f"Response is not valid JSON: {e.msg}") from e
    if not isinstance(parsed, dict):
        raise PromptResponseError("Response JSON is not an object")
    return parsed


def try_parse_json(text: str) -> Optional[Dict[str, Any]]:
    try:
        return parse_json_response(text)
    except PromptResponseError:
        return None


def validate_analysis_payload(payload: Dict[str, Any]) -> List[str]:
    """Return the list of schema problems (empty when the payload looks right)."""
    problems = []
    if not isinstance(payload, dict):
        return ["payload is not an object"]
    for key in REQUIRED_ANALYSIS_KEYS:
        if key not in payload:
            problems.append(f"missing '{key}'")
    for key, expected in ANALYSIS_SCHEMA.items():
        if key not in payload or payload[key] is None:
            continue
        value = payload[key]
        if isinstance(expected, dict) and not isinstance(value, dict):
            problems.append(f"'{key}' should be an object")
        elif isinstance(expected, list) and not isinstance(value, list):
            problems.append(f"'{key}' should be a list")
    return problems
