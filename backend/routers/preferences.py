"""
Market Intel - User Preferences Router

Endpoints:
- GET /api/preferences - Current settings (defaults are created on first read)
- PUT /api/preferences - Shallow-merge updates into each section
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from database import get_db, UserPreference, dump_json, load_json
from dependencies import get_current_user
from schemas.preferences import PreferencesUpdate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/preferences", tags=["Preferences"])

SECTIONS = ("notification_settings", "privacy_settings", "ui_preferences")

DEFAULT_PREFERENCES = {
    "notification_settings": {
        "email_notifications": True,
        "analysis_complete": True,
        "cost_alerts": True,
        "weekly_digest": False,
    },
    "privacy_settings": {
        "share_usage_data": False,
        "profile_visibility": "private",
    },
    "ui_preferences": {
        "theme": "system",
        "language": "en",
        "dashboard_layout": "default",
    },
}


def _serialize(pref: UserPreference) -> dict:
    payload = {s: load_json(getattr(pref, s), {}) for s in SECTIONS}
    payload["updated_at"] = pref.updated_at.isoformat() if pref.updated_at else None
    return payload


def get_or_create_preferences(db: Session, user_id: int) -> UserPreference:
    pref = db.query(UserPreference).filter(UserPreference.user_id == user_id).first()
    if pref is None:
        pref = UserPreference(user_id=user_id, **{s: dump_json(DEFAULT_PREFERENCES[s]) for s in SECTIONS})
        db.add(pref)
        db.commit()
        db.refresh(pref)
        logger.info(f"Created default preferences for user {user_id}")
    return pref


@router.get("")
async def get_preferences(
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    return _serialize(get_or_create_preferences(db, current_user["id"]))


@router.put("")
async def update_preferences(
    body: PreferencesUpdate,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    pref = get_or_create_preferences(db, current_user["id"])
    for section, changes in body.model_dump(exclude_none=True).items():
        merged = load_json(getattr(pref, section), {})
        merged.update(changes)
        setattr(pref, section, dump_json(merged))
    db.commit()
    db.refresh(pref)
    return _serialize(pref)
