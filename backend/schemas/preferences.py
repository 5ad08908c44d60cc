"""
Market Intel - User Preference Pydantic Schemas
"""

from typing import Any, Dict, Optional
from pydantic import BaseModel


class PreferencesUpdate(BaseModel):
    notification_settings: Optional[Dict[str, Any]] = None
    privacy_settings: Optional[Dict[str, Any]] = None
    ui_preferences: Optional[Dict[str, Any]] = None
