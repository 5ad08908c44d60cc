"""
Market Intel - Authentication

Password hashing, JWT access tokens and refresh token rotation backed by the
users / refresh_tokens tables.
"""
import os
import hashlib
import secrets
import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from jose import jwt, JWTError
from sqlalchemy.orm import Session

from constants import ROLE_USER, ROLE_ADMIN
from database import User, RefreshToken

logger = logging.getLogger(__name__)

# JWT settings
SECRET_KEY = os.getenv("SECRET_KEY", secrets.token_hex(32))
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 15  # short-lived, clients rotate with refresh tokens
REFRESH_TOKEN_EXPIRE_DAYS = 7
PBKDF2_ITERATIONS = 600_000


class AuthManager:
    """Handles user authentication with database persistence."""

    DEFAULT_ADMIN_EMAIL = "admin@marketintel.local"

    def ensure_default_admin(self, db: Session):
        """Create the admin user from ADMIN_EMAIL / ADMIN_PASSWORD when no users exist."""
        admin_email = os.getenv("ADMIN_EMAIL") or self.DEFAULT_ADMIN_EMAIL
        admin_password = os.getenv("ADMIN_PASSWORD")

        if db.query(User).filter(User.email == admin_email).first():
            return
        if db.query(User).first():
            logger.info("Users exist but no match for admin email. Skipping admin creation.")
            return
        if not admin_password:
            admin_password = secrets.token_urlsafe(16)
            logger.warning(
                f"ADMIN_PASSWORD not set. Generated one-time admin password for {admin_email}: "
                f"{admin_password}"
            )
        logger.info(f"Creating default admin: {admin_email}")
        self.create_user(
            db,
            email=admin_email,
            password=admin_password,
            full_name="System Admin",
            role=ROLE_ADMIN,
        )

    def hash_password(self, password: str) -> str:
        """Hash a password using PBKDF2-HMAC-SHA256 with a per-user random salt."""
        salt = secrets.token_bytes(32)
        pw_hash = hashlib.pbkdf2_hmac(
            "sha256", password.encode(), salt, PBKDF2_ITERATIONS
        ).hex()
        return f"{salt.hex()}${pw_hash}"

    def verify_password(self, plain_password: str, hashed_password: str) -> bool:
        """Verify a password against a salt_hex$hash_hex string."""
        if not hashed_password or "$" not in hashed_password:
            return False
        try:
            salt_hex, stored_hash = hashed_password.split("$", 1)
            salt = bytes.fromhex(salt_hex)
        except ValueError:
            return False
        computed = hashlib.pbkdf2_hmac(
            "sha256", plain_password.encode(), salt, PBKDF2_ITERATIONS
        ).hex()
        return secrets.compare_digest(computed, stored_hash)

    def create_user(
        self, db: Session, email: str, password: str, full_name: str = "", role: str = ROLE_USER
    ) -> User:
        """Create a user. Returns the existing row when the email is taken."""
        existing = db.query(User).filter(User.email == email).first()
        if existing:
            return existing

        new_user = User(
            email=email,
            hashed_password=self.hash_password(password),
            full_name=full_name,
            role=role,
            is_active=True,
        )
        db.add(new_user)
        db.commit()
        db.refresh(new_user)
        return new_user

    def authenticate_user(self, db: Session, email: str, password: str) -> Optional[User]:
        """Return the user when the credentials match, else None."""
        user = db.query(User).filter(User.email == email).first()
        if not user:
            return None
        if not self.verify_password(password, user.hashed_password):
            return None
        return user

    def create_access_token(self, data: dict, expires_delta: timedelta = None) -> str:
        to_encode = data.copy()
        expire = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
        to_encode.update({"exp": expire})
        return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

    def verify_token(self, token: str) -> Optional[dict]:
        """Decode a JWT. Returns None when invalid or expired."""
        try:
            return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except JWTError as e:
            logger.debug(f"Token verification failed: {e}")
            return None

    def create_refresh_token(self, db: Session, user_id: int) -> str:
        """Create and store a refresh token for the given user."""
        token_value = str(uuid.uuid4())
        db.add(RefreshToken(
            token=token_value,
            user_id=user_id,
            expires_at=datetime.utcnow() + timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS),
            revoked=False,
        ))
        db.commit()
        return token_value

    def validate_refresh_token(self, db: Session, token_value: str) -> Optional[RefreshToken]:
        """Return the token record if valid, None otherwise. Expired tokens are revoked."""
        token_record = db.query(RefreshToken).filter(
            RefreshToken.token == token_value,
            RefreshToken.revoked == False  # noqa: E712
        ).first()
        if not token_record:
            return None

        if token_record.expires_at < datetime.utcnow():
            token_record.revoked = True
            db.commit()
            return None
        return token_record

    def revoke_refresh_token(self, db: Session, token_value: str) -> bool:
        token_record = db.query(RefreshToken).filter(
            RefreshToken.token == token_value
        ).first()
        if not token_record:
            return False
        token_record.revoked = True
        db.commit()
        return True

    def revoke_all_user_tokens(self, db: Session, user_id: int) -> int:
        """Revoke all refresh tokens for a user. Returns count revoked."""
        count = db.query(RefreshToken).filter(
            RefreshToken.user_id == user_id,
            RefreshToken.revoked == False  # noqa: E712
        ).update({"revoked": True})
        db.commit()
        return count


auth_manager = AuthManager()


def get_auth_manager() -> AuthManager:
    return auth_manager
