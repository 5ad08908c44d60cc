"""
Market Intel - Shared Constants

Centralizes version string, provider lists, roles and other constants
used across multiple modules.
"""

__version__ = "1.4.0"

APP_NAME = "Market Intel"

# =============================================================================
# ROLES
# =============================================================================
ROLE_USER = "user"
ROLE_ANALYST = "analyst"
ROLE_ADMIN = "admin"
ROLE_SUPER_ADMIN = "super_admin"

VALID_ROLES = (ROLE_USER, ROLE_ANALYST, ROLE_ADMIN, ROLE_SUPER_ADMIN)
ADMIN_ROLES = (ROLE_ADMIN, ROLE_SUPER_ADMIN)

# =============================================================================
# PROVIDERS
# =============================================================================

# Providers that can run a competitor analysis, in failover order.
# Cost is the flat per-competitor estimate used for preflight and reporting.
ANALYSIS_PROVIDERS = {
    "openai": {"priority": 1, "cost_per_analysis": 0.03},
    "anthropic": {"priority": 2, "cost_per_analysis": 0.025},
    "gemini": {"priority": 3, "cost_per_analysis": 0.02},
    "perplexity": {"priority": 4, "cost_per_analysis": 0.01},
}

# Every provider a user may store a key for
SUPPORTED_PROVIDERS = [
    "openai",
    "anthropic",
    "gemini",
    "perplexity",
    "groq",
    "mistral",
    "cohere",
    "huggingface",
    "serpapi",
    "newsapi",
    "alphavantage",
    "google",
]

# Projected USD per provider per competitor for the cost preflight
PROJECTED_COST_PER_PROVIDER = 0.02

# =============================================================================
# ANALYSIS
# =============================================================================
ANALYSIS_STATUSES = ("pending", "running", "completed", "failed")
ANALYSIS_PROMPT_KEY = "competitor_analysis_main"
INSIGHTS_PROMPT_KEY = "competitor_analysis_insights"

MAX_COMPETITORS_PER_ANALYSIS = 25

# =============================================================================
# NO-HALLUCINATION SYSTEM INSTRUCTION
# Appended to analysis prompts to discourage fabricated figures.
# =============================================================================
NO_HALLUCINATION_INSTRUCTION = (
    "\n\nDATA INTEGRITY RULE: Only report facts you are confident are public. "
    "Do NOT invent revenue figures, headcounts or funding amounts. "
    "Use null for any value you cannot support."
)
