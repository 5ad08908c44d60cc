"""
Market Intel - Billing Pydantic Schemas
"""

from datetime import date
from typing import Literal, Optional
from pydantic import BaseModel, Field


class CostLimitUpdate(BaseModel):
    monthly_limit_usd: float = Field(..., ge=0, le=100_000)
    alert_threshold: float = Field(0.8, gt=0, le=1)


class CostCheckRequest(BaseModel):
    competitor_count: int = Field(1, ge=1, le=100)
    provider_count: int = Field(1, ge=1, le=10)


class BillingRecordCreate(BaseModel):
    user_id: int
    period_start: date
    period_end: date
    amount_usd: float = Field(..., ge=0)
    status: Literal["pending", "paid", "failed", "void"] = "pending"
    description: Optional[str] = Field(None, max_length=500)
