"""
Market Intel - Database Module

SQLAlchemy models and session handling for the analysis platform.

Supports:
- SQLite (default, development and tests)
- PostgreSQL (production, via DATABASE_URL)

USAGE:
------
    from database import get_db, SessionLocal
    @router.get("/items")
    def get_items(db: Session = Depends(get_db)):
        return db.query(Item).all()

JSON columns are stored as Text. Use dump_json()/load_json() to convert.
"""

import json
import logging
import os
from datetime import datetime
from typing import Any

from sqlalchemy import (
    create_engine, Column, Integer, String, Float, DateTime, Date, Text,
    Boolean, ForeignKey, Index, UniqueConstraint, event,
)
from sqlalchemy.orm import sessionmaker, relationship, declarative_base

logger = logging.getLogger(__name__)

# =============================================================================
# DATABASE URL CONFIGURATION
# =============================================================================


def _get_database_url() -> str:
    """Get the sync database URL from the environment."""
    url = os.getenv("DATABASE_URL")
    if url:
        # Heroku-style URLs use the deprecated postgres:// scheme
        if url.startswith("postgres://"):
            return url.replace("postgres://", "postgresql://", 1)
        return url
    return "sqlite:///./market_intel.db"


DATABASE_URL = _get_database_url()

if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
        pool_pre_ping=True,
        echo=os.getenv("DB_ECHO", "false").lower() == "true"
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=int(os.getenv("DB_POOL_SIZE", "10")),
        max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "20")),
        pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
        pool_pre_ping=True,
        echo=os.getenv("DB_ECHO", "false").lower() == "true"
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """
    Database session dependency (FastAPI).

    Usage:
        @router.get("/items")
        def get_items(db: Session = Depends(get_db)):
            return db.query(Item).all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# =============================================================================
# JSON COLUMN HELPERS
# =============================================================================

def dump_json(value: Any) -> str:
    """Serialize a value for a JSON Text column. None stays None."""
    if value is None:
        return None
    return json.dumps(value, default=str)


def load_json(raw: str, default: Any = None) -> Any:
    """Decode a JSON Text column, returning default on empty or corrupt data."""
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Corrupt JSON column value: %.80s", raw)
        return default


# ============== Database Models ==============

class User(Base):
    """User model for authentication and RBAC."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    full_name = Column(String, nullable=True)
    role = Column(String, default="user")  # user, analyst, admin, super_admin
    is_active = Column(Boolean, default=True)
    suspended_at = Column(DateTime, nullable=True)
    suspended_reason = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    last_login = Column(DateTime, nullable=True)


class RefreshToken(Base):
    """Refresh tokens for JWT token rotation."""
    __tablename__ = "refresh_tokens"

    id = Column(Integer, primary_key=True, index=True)
    token = Column(String, unique=True, index=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    expires_at = Column(DateTime, nullable=False)
    revoked = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class ApiKey(Base):
    """Third-party provider key owned by a user. The key itself is Fernet-encrypted."""
    __tablename__ = "api_keys"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_api_keys_user_provider"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    provider = Column(String, nullable=False, index=True)
    encrypted_key = Column(Text, nullable=False)
    masked_key = Column(String, nullable=False)
    status = Column(String, default="pending")  # active, error, pending
    is_active = Column(Boolean, default=True)
    last_validated = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class CompetitorAnalysis(Base):
    """One AI-assisted analysis run covering one or more competitors."""
    __tablename__ = "competitor_analyses"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    session_id = Column(String, index=True)
    name = Column(String, nullable=False)
    competitors = Column(Text, nullable=False)  # JSON array of names
    status = Column(String, default="pending", index=True)  # pending, running, completed, failed
    progress_percentage = Column(Integer, default=0)
    current_step = Column(String, nullable=True)
    total_competitors = Column(Integer, default=0)
    analysis_type = Column(String, default="comprehensive")
    options = Column(Text, nullable=True)  # JSON
    providers_used = Column(Text, nullable=True)  # JSON array
    analysis_data = Column(Text, nullable=True)  # JSON, consolidated result
    business_insights = Column(Text, nullable=True)  # JSON
    threat_level = Column(String, nullable=True)
    threat_score = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    actual_cost = Column(Float, default=0.0)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)


class ApiUsageCost(Base):
    """One provider call made on behalf of a user (analysis or validation)."""
    __tablename__ = "api_usage_costs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    analysis_id = Column(
        Integer, ForeignKey("competitor_analyses.id", ondelete="SET NULL"),
        nullable=True, index=True
    )
    provider = Column(String, nullable=False, index=True)
    service = Column(String, default="competitor_analysis")
    model = Column(String, nullable=True)
    operation_type = Column(String, nullable=True)  # analysis, insights
    tokens_used = Column(Integer, default=0)
    cost_usd = Column(Float, default=0.0)
    response_time_ms = Column(Integer, nullable=True)
    success = Column(Boolean, default=True)
    error_details = Column(Text, nullable=True)
    date = Column(Date, default=lambda: datetime.utcnow().date(), index=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)


class Document(Base):
    """Uploaded file metadata. Bytes live under DOCUMENTS_DIR."""
    __tablename__ = "documents"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    analysis_id = Column(
        Integer, ForeignKey("competitor_analyses.id", ondelete="SET NULL"),
        nullable=True
    )
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    file_path = Column(String, nullable=False)
    file_type = Column(String, nullable=True)
    file_size = Column(Integer, default=0)
    category = Column(String, nullable=True, index=True)
    tags = Column(Text, nullable=True)  # JSON array
    doc_metadata = Column("metadata", Text, nullable=True)  # JSON
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class UserPreference(Base):
    """Per-user notification, privacy and UI settings."""
    __tablename__ = "user_preferences"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    notification_settings = Column(Text, nullable=True)  # JSON
    privacy_settings = Column(Text, nullable=True)  # JSON
    ui_preferences = Column(Text, nullable=True)  # JSON
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class UserCostLimit(Base):
    """Monthly AI spend ceiling for a user."""
    __tablename__ = "user_cost_limits"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    monthly_limit_usd = Column(Float, nullable=False)
    alert_threshold = Column(Float, default=0.8)  # fraction of limit
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class BillingRecord(Base):
    """Invoice-style record for a billing period."""
    __tablename__ = "billing_records"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)
    amount_usd = Column(Float, default=0.0)
    status = Column(String, default="pending")  # pending, paid, failed, void
    description = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class SupportTicket(Base):
    """Help desk ticket."""
    __tablename__ = "support_tickets"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    status = Column(String, default="open", index=True)
    priority = Column(String, default="medium")
    category = Column(String, default="general")
    tags = Column(Text, nullable=True)  # JSON array
    assigned_to = Column(Integer, ForeignKey("users.id"), nullable=True)
    resolution = Column(Text, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    messages = relationship(
        "SupportTicketMessage",
        back_populates="ticket",
        order_by="SupportTicketMessage.created_at",
        cascade="all, delete-orphan",
    )


class SupportTicketMessage(Base):
    """Reply on a support ticket. Internal notes are staff-only."""
    __tablename__ = "support_ticket_messages"

    id = Column(Integer, primary_key=True, index=True)
    ticket_id = Column(Integer, ForeignKey("support_tickets.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    message = Column(Text, nullable=False)
    is_internal = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    ticket = relationship("SupportTicket", back_populates="messages")


class ApplicationLog(Base):
    """Client-side log entry shipped to the backend."""
    __tablename__ = "application_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    level = Column(String, nullable=False, index=True)
    message = Column(Text, nullable=False)
    context = Column(Text, nullable=True)  # JSON
    performance = Column(Text, nullable=True)  # JSON
    url = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    session_id = Column(String, nullable=True)
    timestamp = Column(DateTime, default=datetime.utcnow, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class AuditLog(Base):
    """Audit trail of user and admin actions."""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    user_email = Column(String, index=True)
    action_type = Column(String, index=True)  # "login", "analysis_started", "api_key_saved", etc.
    resource_type = Column(String, nullable=True)
    resource_id = Column(String, nullable=True)
    action_details = Column(Text, nullable=True)  # JSON-encoded details
    ip_address = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)


class SystemPrompt(Base):
    """Admin-editable AI prompts. user_id=NULL means global prompt."""
    __tablename__ = "system_prompts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    key = Column(String, index=True, nullable=False)
    category = Column(String, nullable=True, index=True)
    description = Column(String, nullable=True)
    content = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# Composite indexes for the common dashboard queries
Index('ix_analysis_user_created', CompetitorAnalysis.user_id, CompetitorAnalysis.created_at.desc())
Index('ix_usage_user_date', ApiUsageCost.user_id, ApiUsageCost.date)
Index('ix_audit_action_created', AuditLog.action_type, AuditLog.created_at.desc())


# Enable SQLite pragmas before the first connection is opened
if DATABASE_URL.startswith("sqlite"):
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        """Enable SQLite WAL mode and foreign key enforcement."""
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


Base.metadata.create_all(bind=engine)

logger.info(f"Database URL: {DATABASE_URL[:50]}...")
