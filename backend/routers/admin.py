"""
Market Intel - Admin Router

All endpoints require the admin or super_admin role.

Endpoints:
- GET    /api/admin/users                       - List users
- POST   /api/admin/users                       - Create a user
- POST   /api/admin/users/{id}/suspend          - Suspend (revokes refresh tokens)
- POST   /api/admin/users/{id}/reactivate       - Lift a suspension
- PUT    /api/admin/users/{id}/role             - Change role
- GET    /api/admin/audit-logs                  - Search audit trail (paginated)
- GET    /api/admin/system-prompts              - List global prompts
- GET    /api/admin/system-prompts/{key}        - Get a global prompt (or its built-in default)
- POST   /api/admin/system-prompts              - Create/update a global prompt
- DELETE /api/admin/system-prompts/{key}        - Delete a global prompt
- GET    /api/admin/system/health               - Database, cache, breakers, AI budget
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import or_, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from auth_manager import auth_manager
from constants import (
    VALID_ROLES, ADMIN_ROLES, ROLE_SUPER_ADMIN, ANALYSIS_PROMPT_KEY, INSIGHTS_PROMPT_KEY,
)
from database import get_db, AuditLog, CompetitorAnalysis, SystemPrompt, User
from dependencies import require_admin, log_activity, client_ip
from prompts import DEFAULT_ANALYSIS_PROMPT, DEFAULT_INSIGHTS_PROMPT
from schemas.auth import UserCreateRequest, SuspendRequest, RoleUpdateRequest
from schemas.prompts import SystemPromptCreate, SystemPromptResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["Admin"])

BUILTIN_PROMPTS = {
    ANALYSIS_PROMPT_KEY: DEFAULT_ANALYSIS_PROMPT,
    INSIGHTS_PROMPT_KEY: DEFAULT_INSIGHTS_PROMPT,
}


def _user_dict(u: User) -> dict:
    return {
        "id": u.id,
        "email": u.email,
        "full_name": u.full_name,
        "role": u.role,
        "is_active": u.is_active,
        "suspended_at": u.suspended_at.isoformat() if u.suspended_at else None,
        "suspended_reason": u.suspended_reason,
        "created_at": u.created_at.isoformat() if u.created_at else None,
        "last_login": u.last_login.isoformat() if u.last_login else None,
    }


def _get_user(db: Session, user_id: int) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


def _require_role_grant(current_user: dict, role: str):
    if role not in VALID_ROLES:
        raise HTTPException(status_code=400, detail=f"Invalid role: {role}")
    if role in ADMIN_ROLES and current_user["role"] != ROLE_SUPER_ADMIN:
        raise HTTPException(status_code=403, detail="Only a super_admin can grant admin roles")


# ============== Users ==============


@router.get("/users")
def list_users(
    search: Optional[str] = Query(None),
    role: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_admin),
):
    query = db.query(User)
    if search:
        like = f"%{search}%"
        query = query.filter(or_(User.email.ilike(like), User.full_name.ilike(like)))
    if role:
        query = query.filter(User.role == role)
    total = query.count()
    users = query.order_by(User.created_at.desc()).offset(offset).limit(limit).all()
    return {"users": [_user_dict(u) for u in users], "total": total}


@router.post("/users", status_code=201)
def create_user(
    body: UserCreateRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_admin),
):
    _require_role_grant(current_user, body.role)
    email = body.email.strip().lower()
    if db.query(User).filter(User.email == email).first():
        raise HTTPException(status_code=400, detail="Email already registered")

    user = auth_manager.create_user(
        db, email=email, password=body.password, full_name=body.full_name or "", role=body.role
    )
    log_activity(
        db, current_user["email"], current_user["id"], "user_created",
        action_details={"email": email, "role": body.role},
        resource_type="user", resource_id=user.id, ip_address=client_ip(request),
    )
    return _user_dict(user)


@router.post("/users/{user_id}/suspend")
def suspend_user(
    user_id: int,
    body: SuspendRequest,
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_admin),
):
    """Suspend an account. Access tokens stop working on the next request."""
    if user_id == current_user["id"]:
        raise HTTPException(status_code=400, detail="You cannot suspend yourself")
    user = _get_user(db, user_id)
    if user.role in ADMIN_ROLES and current_user["role"] != ROLE_SUPER_ADMIN:
        raise HTTPException(status_code=403, detail="Only a super_admin can suspend an admin")

    user.is_active = False
    user.suspended_at = datetime.utcnow()
    user.suspended_reason = body.reason
    db.commit()
    revoked = auth_manager.revoke_all_user_tokens(db, user.id)

    log_activity(
        db, current_user["email"], current_user["id"], "user_suspended",
        action_details={"reason": body.reason, "tokens_revoked": revoked},
        resource_type="user", resource_id=user.id,
    )
    logger.info(f"User {user.id} suspended by {current_user['email']}")
    return _user_dict(user)


@router.post("/users/{user_id}/reactivate")
def reactivate_user(
    user_id: int,
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_admin),
):
    user = _get_user(db, user_id)
    user.is_active = True
    user.suspended_at = None
    user.suspended_reason = None
    db.commit()

    log_activity(
        db, current_user["email"], current_user["id"], "user_reactivated",
        resource_type="user", resource_id=user.id,
    )
    return _user_dict(user)


@router.put("/users/{user_id}/role")
def change_role(
    user_id: int,
    body: RoleUpdateRequest,
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_admin),
):
    if user_id == current_user["id"]:
        raise HTTPException(status_code=400, detail="You cannot change your own role")
    _require_role_grant(current_user, body.role)
    user = _get_user(db, user_id)
    if user.role in ADMIN_ROLES and current_user["role"] != ROLE_SUPER_ADMIN:
        raise HTTPException(status_code=403, detail="Only a super_admin can change an admin's role")

    old_role = user.role
    user.role = body.role
    db.commit()

    log_activity(
        db, current_user["email"], current_user["id"], "user_role_changed",
        action_details={"from": old_role, "to": body.role},
        resource_type="user", resource_id=user.id,
    )
    return _user_dict(user)


# ============== Audit Logs ==============


@router.get("/audit-logs")
def search_audit_logs(
    user_id: Optional[int] = Query(None, description="Filter by user ID"),
    user_email: Optional[str] = Query(None, description="Filter by email substring"),
    action_type: Optional[str] = Query(None, description="Filter by action type"),
    start_date: Optional[str] = Query(None, description="Start date (YYYY-MM-DD)"),
    end_date: Optional[str] = Query(None, description="End date (YYYY-MM-DD)"),
    page: int = Query(1, ge=1, description="Page number"),
    per_page: int = Query(50, ge=1, le=200, description="Items per page"),
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_admin),
):
    """Search and filter the audit trail with pagination."""
    query = db.query(AuditLog)

    if user_id is not None:
        query = query.filter(AuditLog.user_id == user_id)
    if user_email:
        query = query.filter(AuditLog.user_email.ilike(f"%{user_email}%"))
    if action_type:
        query = query.filter(AuditLog.action_type == action_type)

    if start_date:
        try:
            start_dt = datetime.strptime(start_date, "%Y-%m-%d")
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid start_date format. Use YYYY-MM-DD.")
        query = query.filter(AuditLog.created_at >= start_dt)

    if end_date:
        try:
            end_dt = datetime.strptime(end_date, "%Y-%m-%d") + timedelta(days=1)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid end_date format. Use YYYY-MM-DD.")
        query = query.filter(AuditLog.created_at < end_dt)

    total = query.count()
    pages = max(1, math.ceil(total / per_page))
    logs = (
        query
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )

    return {
        "items": [
            {
                "id": log.id,
                "user_id": log.user_id,
                "user_email": log.user_email,
                "action_type": log.action_type,
                "resource_type": log.resource_type,
                "resource_id": log.resource_id,
                "action_details": log.action_details,
                "ip_address": log.ip_address,
                "created_at": log.created_at.isoformat() if log.created_at else None,
            }
            for log in logs
        ],
        "total": total,
        "page": page,
        "per_page": per_page,
        "pages": pages,
    }


# ============== System Prompts ==============


@router.get("/system-prompts")
def list_system_prompts(
    category: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_admin),
):
    """Global prompts, plus the built-in defaults that have not been overridden."""
    query = db.query(SystemPrompt).filter(SystemPrompt.user_id == None)  # noqa: E711
    if category:
        query = query.filter(SystemPrompt.category == category)
    stored = query.order_by(SystemPrompt.key).all()

    results = [
        {
            "id": p.id,
            "key": p.key,
            "category": p.category,
            "description": p.description,
            "content": p.content,
            "updated_at": p.updated_at.isoformat() if p.updated_at else None,
            "is_default": False,
        }
        for p in stored
    ]
    if not category or category == "analysis":
        stored_keys = {p.key for p in stored}
        for key, content in BUILTIN_PROMPTS.items():
            if key not in stored_keys:
                results.append({
                    "id": None, "key": key, "category": "analysis", "description": None,
                    "content": content, "updated_at": None, "is_default": True,
                })
    return results


@router.get("/system-prompts/{key}", response_model=SystemPromptResponse)
def get_system_prompt(
    key: str,
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_admin),
):
    prompt = db.query(SystemPrompt).filter(
        SystemPrompt.key == key,
        SystemPrompt.user_id == None  # noqa: E711
    ).first()
    if prompt:
        return prompt
    if key in BUILTIN_PROMPTS:
        return SystemPromptResponse(id=0, key=key, content=BUILTIN_PROMPTS[key], category="analysis")
    raise HTTPException(status_code=404, detail="Prompt not found")


@router.post("/system-prompts", response_model=SystemPromptResponse)
def upsert_system_prompt(
    prompt_data: SystemPromptCreate,
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_admin),
):
    """Create or replace a global prompt."""
    prompt = db.query(SystemPrompt).filter(
        SystemPrompt.key == prompt_data.key,
        SystemPrompt.user_id == None  # noqa: E711
    ).first()

    if prompt:
        prompt.content = prompt_data.content
        if prompt_data.category:
            prompt.category = prompt_data.category
        if prompt_data.description:
            prompt.description = prompt_data.description
        prompt.updated_at = datetime.utcnow()
    else:
        prompt = SystemPrompt(
            key=prompt_data.key,
            content=prompt_data.content,
            category=prompt_data.category,
            description=prompt_data.description,
            user_id=None,
        )
        db.add(prompt)

    db.commit()
    db.refresh(prompt)
    log_activity(
        db, current_user["email"], current_user["id"], "system_prompt_updated",
        resource_type="system_prompt", resource_id=prompt.key,
    )
    return prompt


@router.delete("/system-prompts/{key}")
def delete_system_prompt(
    key: str,
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_admin),
):
    """Delete a global prompt; built-in keys fall back to their default."""
    prompt = db.query(SystemPrompt).filter(
        SystemPrompt.key == key,
        SystemPrompt.user_id == None  # noqa: E711
    ).first()
    if not prompt:
        raise HTTPException(status_code=404, detail="Prompt not found")
    db.delete(prompt)
    db.commit()
    log_activity(
        db, current_user["email"], current_user["id"], "system_prompt_deleted",
        resource_type="system_prompt", resource_id=key,
    )
    return {"success": True, "key": key}


# ============== System Health ==============


@router.get("/system/health")
def system_health(
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_admin),
):
    from ai_router import get_ai_router
    from cache import get_cache
    from resilience import get_breaker_states

    try:
        db.execute(text("SELECT 1"))
        database = "healthy"
    except SQLAlchemyError as e:
        logger.error(f"Database check failed: {e}")
        database = "unhealthy"

    tracker = get_ai_router().cost_tracker
    running = db.query(CompetitorAnalysis).filter(CompetitorAnalysis.status == "running").count()

    return {
        "database": database,
        "cache_backend": type(get_cache()).__name__,
        "breakers": get_breaker_states(),
        "ai_budget": {
            "daily_budget_usd": tracker.daily_budget_usd,
            "today_spend": round(tracker.get_today_spend(), 6),
            "remaining": round(tracker.get_remaining_budget(), 6),
        },
        "users": db.query(User).count(),
        "running_analyses": running,
        "checked_at": datetime.utcnow().isoformat(),
    }
