"""
Market Intel - Langfuse Observability
=====================================

Ships AI cost/latency scores and analysis-run traces to Langfuse.

Setup:
    ENABLE_LANGFUSE=true
    LANGFUSE_PUBLIC_KEY=pk-...
    LANGFUSE_SECRET_KEY=sk-...
    LANGFUSE_HOST=http://localhost:3000

Everything here is a no-op when Langfuse is disabled or not configured, and
failures to reach Langfuse are logged rather than raised.
"""

import os
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

LANGFUSE_ENABLED = os.getenv("ENABLE_LANGFUSE", "false").lower() == "true"
LANGFUSE_HOST = os.getenv("LANGFUSE_HOST", "http://localhost:3000")
LANGFUSE_PUBLIC_KEY = os.getenv("LANGFUSE_PUBLIC_KEY", "")
LANGFUSE_SECRET_KEY = os.getenv("LANGFUSE_SECRET_KEY", "")

_langfuse_client = None


def get_langfuse():
    """Get or create the Langfuse client. None when disabled or not configured."""
    global _langfuse_client

    if not LANGFUSE_ENABLED:
        return None

    if not LANGFUSE_PUBLIC_KEY or not LANGFUSE_SECRET_KEY:
        logger.warning("Langfuse enabled but API keys not set")
        return None

    if _langfuse_client is None:
        from langfuse import Langfuse

        _langfuse_client = Langfuse(
            public_key=LANGFUSE_PUBLIC_KEY,
            secret_key=LANGFUSE_SECRET_KEY,
            host=LANGFUSE_HOST,
            flush_at=10,
            flush_interval=5,
            timeout=2
        )
        logger.info(f"Langfuse client initialized (host: {LANGFUSE_HOST})")

    return _langfuse_client


def shutdown_langfuse():
    """Flush and shut down the client (app shutdown)."""
    global _langfuse_client

    if _langfuse_client:
        try:
            _langfuse_client.flush()
            _langfuse_client.shutdown()
            logger.info("Langfuse client shut down")
        except Exception as e:
            logger.error(f"Error shutting down Langfuse: {e}")
        finally:
            _langfuse_client = None


# =============================================================================
# COST TRACKING
# =============================================================================

def log_ai_cost(
    model: str,
    provider: str,
    task_type: str,
    tokens_input: int,
    tokens_output: int,
    cost_usd: float,
    latency_ms: int,
    user_id: Optional[str] = None
):
    """Log cost and latency of one provider call as Langfuse scores."""
    langfuse = get_langfuse()
    if langfuse is None:
        return

    comment = f"{provider}/{model} - {task_type} ({tokens_input}+{tokens_output} tokens)"
    try:
        langfuse.score(name="ai_cost", value=cost_usd, comment=comment, data_type="NUMERIC")
        langfuse.score(name="latency_ms", value=latency_ms, comment=comment, data_type="NUMERIC")
    except Exception as e:
        logger.warning(f"Failed to log AI cost to Langfuse: {e}")


def trace_analysis_run(
    analysis_id: int,
    user_id: int,
    session_id: Optional[str],
    status: str,
    summary: Optional[Dict[str, Any]] = None,
):
    """Record a finished analysis run as a trace."""
    langfuse = get_langfuse()
    if langfuse is None:
        return

    try:
        langfuse.trace(
            name="competitor_analysis",
            user_id=str(user_id),
            session_id=session_id,
            output={"status": status, **(summary or {})},
            metadata={"analysis_id": analysis_id},
        )
    except Exception as e:
        logger.warning(f"Failed to trace analysis {analysis_id} in Langfuse: {e}")
