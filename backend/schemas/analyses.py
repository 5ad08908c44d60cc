"""
Market Intel - Competitor Analysis Pydantic Schemas
"""

from typing import List, Optional
from pydantic import BaseModel, Field


class AnalysisOptions(BaseModel):
    include_financials: bool = False
    include_sentiment: bool = False
    deep_dive: bool = False


class AnalysisCreate(BaseModel):
    competitors: List[str]
    session_id: Optional[str] = Field(None, max_length=100)
    name: Optional[str] = Field(None, max_length=200)
    providers: Optional[List[str]] = None
    options: AnalysisOptions = Field(default_factory=AnalysisOptions)


class UserCompany(BaseModel):
    industry: Optional[str] = None
    revenue: Optional[float] = None
    employees: Optional[int] = None
    market_share: Optional[float] = None


class ThreatLevelRequest(BaseModel):
    competitor: Optional[str] = Field(None, description="Score only this competitor; default is the strongest")
    user_company: Optional[UserCompany] = None
