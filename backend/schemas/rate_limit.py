"""
Market Intel - Rate Limit Check Pydantic Schemas
"""

from pydantic import BaseModel, Field


class RateLimitCheckRequest(BaseModel):
    operation: str = Field(..., min_length=1, max_length=100)
    window_ms: int = Field(60_000, ge=1_000, le=3_600_000)
    max_requests: int = Field(10, ge=1, le=1_000)
