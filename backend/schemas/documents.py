"""
Market Intel - Document Pydantic Schemas
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


class DocumentUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    category: Optional[str] = None
    tags: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None
    analysis_id: Optional[int] = None
