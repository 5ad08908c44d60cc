"""
Market Intel - Shared FastAPI Dependencies

Authentication dependencies and the audit-log helper used across routers.
"""

import json
import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from auth_manager import auth_manager
from constants import ADMIN_ROLES
from database import get_db, User, AuditLog

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token", auto_error=False)


def _user_dict(user: User) -> dict:
    return {"id": user.id, "email": user.email, "role": user.role}


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db)
):
    """Verify JWT token and return the current user. Raises 401 if invalid/missing."""
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")

    payload = auth_manager.verify_token(token)
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    user = db.query(User).filter(User.email == payload.get("sub")).first()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if not user.is_active or user.suspended_at is not None:
        raise HTTPException(status_code=403, detail="Account suspended")

    # Role comes from the row so role changes apply without re-login
    return _user_dict(user)


async def get_current_user_optional(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db)
):
    """Return the current user, or None if not authenticated. Never raises."""
    if not token:
        return None

    payload = auth_manager.verify_token(token)
    if not payload:
        return None

    user = db.query(User).filter(User.email == payload.get("sub")).first()
    if not user or not user.is_active:
        return None
    return _user_dict(user)


async def require_admin(current_user: dict = Depends(get_current_user)):
    """Allow admin and super_admin only."""
    if current_user.get("role") not in ADMIN_ROLES:
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    return current_user


def is_admin(current_user: Optional[dict]) -> bool:
    return bool(current_user) and current_user.get("role") in ADMIN_ROLES


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def log_activity(
    db: Session,
    user_email: str,
    user_id: int,
    action_type: str,
    action_details=None,
    resource_type: str = None,
    resource_id=None,
    ip_address: str = None,
):
    """Write an audit_logs row."""
    entry = AuditLog(
        user_id=user_id,
        user_email=user_email,
        action_type=action_type,
        resource_type=resource_type,
        resource_id=str(resource_id) if resource_id is not None else None,
        action_details=(
            action_details if isinstance(action_details, str)
            else json.dumps(action_details, default=str) if action_details
            else None
        ),
        ip_address=ip_address,
    )
    db.add(entry)
    db.commit()
    return entry
