"""
Market Intel - System Prompt Pydantic Schemas
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class SystemPromptBase(BaseModel):
    key: str = Field(..., min_length=1, max_length=100)
    content: str = Field(..., min_length=1)
    category: Optional[str] = None
    description: Optional[str] = None


class SystemPromptCreate(SystemPromptBase):
    pass


class SystemPromptResponse(SystemPromptBase):
    id: int
    user_id: Optional[int] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True
