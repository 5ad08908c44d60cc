"""
Market Intel - Support Ticket Pydantic Schemas
"""

from typing import List, Literal, Optional
from pydantic import BaseModel, Field

TicketStatus = Literal["open", "in_progress", "waiting", "resolved", "closed"]
TicketPriority = Literal["low", "medium", "high", "urgent"]
TicketCategory = Literal["billing", "technical", "feature_request", "bug_report", "general"]


class TicketCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=5000)
    priority: TicketPriority = "medium"
    category: TicketCategory = "general"
    tags: List[str] = Field(default_factory=list)


class TicketUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, min_length=1, max_length=5000)
    status: Optional[TicketStatus] = None
    priority: Optional[TicketPriority] = None
    category: Optional[TicketCategory] = None
    tags: Optional[List[str]] = None
    assigned_to: Optional[int] = None
    resolution: Optional[str] = None


class TicketMessageCreate(BaseModel):
    message: str = Field(..., min_length=1, max_length=5000)
    is_internal: bool = False
