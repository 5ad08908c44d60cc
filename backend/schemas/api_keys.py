"""
Market Intel - Provider API Key Pydantic Schemas
"""

from typing import Optional
from pydantic import BaseModel, Field


class ApiKeySave(BaseModel):
    provider: str = Field(..., min_length=1, max_length=50)
    api_key: str = Field(..., min_length=1, max_length=500)


class ApiKeyValidateRequest(BaseModel):
    provider: str = Field(..., min_length=1, max_length=50)
    api_key: Optional[str] = Field(None, max_length=500, description="Omit to validate the stored key")
