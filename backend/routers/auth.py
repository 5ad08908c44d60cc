"""
Market Intel - Authentication Router

Endpoints:
- POST /token - Login and get access + refresh tokens
- GET  /api/auth/me - Get current user info
- POST /api/auth/refresh - Refresh access token (rotation)
- POST /api/auth/logout - Revoke refresh token on logout
- POST /api/auth/register - Register a new user account
- POST /api/auth/change-password - Change own password
"""

import logging
import re
from datetime import datetime
from fastapi import APIRouter, HTTPException, Depends, Request
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session

from auth_manager import auth_manager, ACCESS_TOKEN_EXPIRE_MINUTES
from constants import ROLE_USER
from database import get_db, User
from dependencies import get_current_user, log_activity, client_ip
from schemas.auth import RegisterRequest, ChangePasswordRequest, RefreshRequest, LogoutRequest

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Authentication"])

EMAIL_RE = re.compile(r"[^@\s]+@[^@\s]+\.[^@\s]+")


def _token_pair(db: Session, user: User) -> dict:
    return {
        "access_token": auth_manager.create_access_token(data={"sub": user.email, "role": user.role}),
        "refresh_token": auth_manager.create_refresh_token(db, user.id),
        "token_type": "bearer",
        "expires_in": ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    }


@router.post("/token")
async def login(
    request: Request,
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(get_db)
):
    """Login and get access + refresh tokens."""
    user = auth_manager.authenticate_user(db, form_data.username, form_data.password)
    if not user:
        logger.info(f"Failed login for {form_data.username}")
        raise HTTPException(status_code=401, detail="Invalid credentials")

    if not user.is_active or user.suspended_at is not None:
        raise HTTPException(status_code=403, detail="Account suspended")

    user.last_login = datetime.utcnow()
    db.commit()
    log_activity(db, user.email, user.id, "login", ip_address=client_ip(request))

    tokens = _token_pair(db, user)
    tokens["user"] = {
        "id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "role": user.role,
    }
    return tokens


@router.get("/api/auth/me")
async def get_current_user_info(
    current_user: dict = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get current user info."""
    user = db.query(User).filter(User.id == current_user["id"]).first()
    return {
        "id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "role": user.role,
        "last_login": user.last_login.isoformat() if user.last_login else None,
    }


@router.post("/api/auth/refresh")
async def refresh_access_token(request: RefreshRequest, db: Session = Depends(get_db)):
    """Exchange a valid refresh token for a new access + refresh token pair."""
    token_record = auth_manager.validate_refresh_token(db, request.refresh_token)
    if not token_record:
        raise HTTPException(status_code=401, detail="Invalid or expired refresh token")

    user = db.query(User).filter(User.id == token_record.user_id).first()
    if not user or not user.is_active or user.suspended_at is not None:
        auth_manager.revoke_refresh_token(db, request.refresh_token)
        raise HTTPException(status_code=401, detail="User not found or inactive")

    # Rotation: the old token is single-use
    auth_manager.revoke_refresh_token(db, request.refresh_token)
    return _token_pair(db, user)


@router.post("/api/auth/logout")
async def logout_user(
    request: LogoutRequest,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    """Revoke the given refresh token, or every token of the user when none is given."""
    if request.refresh_token:
        auth_manager.revoke_refresh_token(db, request.refresh_token)
    else:
        auth_manager.revoke_all_user_tokens(db, current_user["id"])
    log_activity(db, current_user["email"], current_user["id"], "logout")
    return {"status": "ok", "message": "Logged out successfully"}


@router.post("/api/auth/register", status_code=201)
async def register_user(request: RegisterRequest, db: Session = Depends(get_db)):
    """Register a new user account."""
    email = request.email.strip().lower()
    if not EMAIL_RE.fullmatch(email):
        raise HTTPException(status_code=400, detail="Invalid email format")

    if db.query(User).filter(User.email == email).first():
        raise HTTPException(status_code=400, detail="Email already registered")

    new_user = auth_manager.create_user(
        db,
        email=email,
        password=request.password,
        full_name=request.full_name or "",
        role=ROLE_USER,
    )
    log_activity(db, new_user.email, new_user.id, "register")

    return {
        "message": "Account created successfully. You can now log in.",
        "id": new_user.id,
        "email": new_user.email,
        "role": new_user.role,
    }


@router.post("/api/auth/change-password")
async def change_password(
    request: ChangePasswordRequest,
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    """Change the current user's password. Other sessions are signed out."""
    user = db.query(User).filter(User.id == current_user["id"]).first()

    if not auth_manager.verify_password(request.current_password, user.hashed_password):
        raise HTTPException(status_code=401, detail="Current password is incorrect")
    if request.current_password == request.new_password:
        raise HTTPException(status_code=400, detail="New password must differ from the current one")

    user.hashed_password = auth_manager.hash_password(request.new_password)
    db.commit()
    auth_manager.revoke_all_user_tokens(db, user.id)
    log_activity(db, user.email, user.id, "password_changed")

    return {"message": "Password changed successfully"}
