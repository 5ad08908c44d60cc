"""
Market Intel - Test Configuration and Fixtures

Sets the test environment before any application module is imported, then
provides a TestClient, per-test seeded users and auth headers.
"""
import os
import sys
import tempfile
import pytest
from typing import Generator

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Set test environment
TEST_DB_PATH = os.path.join(tempfile.gettempdir(), "test_market_intel.db")
os.environ['TESTING'] = 'true'
os.environ['DATABASE_URL'] = f'sqlite:///{TEST_DB_PATH}'
os.environ['SECRET_KEY'] = 'test-secret-key-for-pytest-do-not-use-in-prod'
os.environ['RATE_LIMIT_ENABLED'] = 'false'
os.environ['REDIS_ENABLED'] = 'false'
os.environ['ENABLE_LANGFUSE'] = 'false'
os.environ['DOCUMENTS_DIR'] = tempfile.mkdtemp(prefix="market_intel_docs_")
os.environ.pop('API_KEY_ENCRYPTION_KEY', None)

from fastapi.testclient import TestClient  # noqa: E402

from database import Base, SessionLocal, engine as app_engine, get_db  # noqa: E402

TestingSessionLocal = SessionLocal

TEST_PASSWORD = "TestPassword123!"

SEED_USERS = {
    "user": "user@example.com",
    "analyst": "analyst@example.com",
    "admin": "admin@example.com",
    "super_admin": "root@example.com",
}


# ==============================================================================
# Database Fixtures
# ==============================================================================

@pytest.fixture(scope="session")
def engine():
    """Create the test schema once per session."""
    Base.metadata.create_all(bind=app_engine)
    yield app_engine
    Base.metadata.drop_all(bind=app_engine)


@pytest.fixture(scope="session")
def password_hash(engine):
    """PBKDF2 is deliberately slow, so hash the shared test password once."""
    from auth_manager import auth_manager
    return auth_manager.hash_password(TEST_PASSWORD)


def _wipe_tables():
    session = TestingSessionLocal()
    try:
        for table in reversed(Base.metadata.sorted_tables):
            session.execute(table.delete())
        session.commit()
    finally:
        session.close()


@pytest.fixture
def users(engine, password_hash) -> dict:
    """Fresh database with one user per role. Returns role -> {id, email, password}."""
    from database import User

    _wipe_tables()
    session = TestingSessionLocal()
    seeded = {}
    try:
        for role, email in SEED_USERS.items():
            user = User(
                email=email,
                hashed_password=password_hash,
                full_name=f"Test {role.replace('_', ' ').title()}",
                role=role,
                is_active=True,
            )
            session.add(user)
            session.commit()
            session.refresh(user)
            seeded[role] = {"id": user.id, "email": user.email, "password": TEST_PASSWORD}
    finally:
        session.close()
    return seeded


@pytest.fixture
def db_session(engine) -> Generator:
    """A session on the test database for arranging and asserting rows."""
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


def override_get_db():
    """Dependency override for FastAPI's get_db."""
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def reset_process_state():
    """In-process singletons start clean for every test."""
    from ai_router import reset_ai_router
    from cache import reset_cache
    from key_vault import reset_vault
    from middleware.rate_limit import rate_limiter
    from resilience import reset_resilience_state

    reset_resilience_state()
    reset_cache()
    reset_ai_router()
    reset_vault()
    rate_limiter.reset()
    yield
    reset_resilience_state()
    reset_cache()


@pytest.fixture(scope="module")
def test_client(engine) -> Generator:
    """Create a test client for the FastAPI application with database override."""
    from main import app

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()


# ==============================================================================
# Auth Helpers
# ==============================================================================

def bearer(email: str) -> dict:
    """Authorization header with a freshly minted access token for email."""
    from auth_manager import auth_manager
    token = auth_manager.create_access_token({"sub": email})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def user_headers(users):
    return bearer(users["user"]["email"])


@pytest.fixture
def analyst_headers(users):
    return bearer(users["analyst"]["email"])


@pytest.fixture
def admin_headers(users):
    return bearer(users["admin"]["email"])


@pytest.fixture
def super_admin_headers(users):
    return bearer(users["super_admin"]["email"])


# ==============================================================================
# Sample Data
# ==============================================================================

SAMPLE_ANALYSIS_JSON = {
    "company_overview": {
        "name": "Acme Corp",
        "description": "Workflow software for mid-sized teams",
        "industry": "Software",
        "founded": 2004,
        "headquarters": "Austin, TX",
        "business_model": "SaaS subscriptions",
    },
    "market_position": {
        "market_position": "leader",
        "market_share_estimate": 12,
        "target_markets": ["Mid-market SaaS", "Enterprise"],
        "brand_strength_score": 70,
    },
    "financials": {
        "revenue_estimate": 250_000_000,
        "growth_rate": 0.2,
        "funding_stage": "Series D",
        "employee_count": 1200,
    },
    "swot": {
        "strengths": ["Brand recognition", "Large partner network"],
        "weaknesses": ["Legacy UI"],
        "opportunities": ["SMB expansion"],
        "threats": ["New entrants"],
    },
    "competitive_advantages": ["Integrations", "Pricing", "Brand recognition"],
    "innovation_score": 60,
    "recent_developments": ["Launched Acme Cloud"],
    "sentiment": {"overall": "positive", "summary": "Well regarded"},
}

# Minimal payload: every threat factor falls back to its base value
SPARSE_ANALYSIS_JSON = {"company_overview": {"name": "Tiny Co"}}


def provider_result(payload=None, provider="openai", model="gpt-4o", cost=0.01, attempts=None) -> dict:
    """Shape returned by AIRouter.generate_with_failover(json_mode=True)."""
    import json
    payload = SAMPLE_ANALYSIS_JSON if payload is None else payload
    return {
        "response": json.dumps(payload),
        "response_json": payload,
        "model": model,
        "provider": provider,
        "tokens_input": 400,
        "tokens_output": 600,
        "cost_usd": cost,
        "latency_ms": 850,
        "attempts": attempts or [],
    }


def assert_valid_response(response, expected_status=200):
    """Assert that an API response is valid."""
    assert response.status_code == expected_status, f"Expected {expected_status}, got {response.status_code}: {response.text}"
    return response.json()


def add_api_key(session, user_id: int, provider: str, key: str = "sk-test-0123456789abcdef",
                status: str = "active"):
    """Store an encrypted provider key the way the api-keys router does."""
    from database import ApiKey
    from key_vault import encrypt_key, mask_key
    row = ApiKey(
        user_id=user_id,
        provider=provider,
        encrypted_key=encrypt_key(key),
        masked_key=mask_key(key),
        status=status,
        is_active=True,
    )
    session.add(row)
    session.commit()
    session.refresh(row)
    return row
