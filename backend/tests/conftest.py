from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import StaticPool, create_engine
from sqlalchemy.dialects.sqlite import base as sqlite_base
from sqlalchemy.orm import sessionmaker

import creditflow.models  # noqa: F401  (registers models with Base.metadata)
from creditflow.core.clock import FixedClock, get_clock
from creditflow.core.config import settings
from creditflow.core.database import Base, get_db
from creditflow.main import app as fastapi_app
from creditflow.models import Company, Team, TeamMembership, User
from creditflow.services.approvals import ApprovalPolicy
from creditflow.services.auth import create_access_token
from creditflow.services.ledger import provision_account

settings.CRON_SECRET = "test-cron-secret"

# ---------------------------------------------------------------------------
# SQLite compatibility for PostgreSQL-specific types (JSONB)
# ---------------------------------------------------------------------------
sqlite_base.SQLiteTypeCompiler.visit_JSONB = lambda self, type_, **kw: self.visit_JSON(type_, **kw)

# In-memory SQLite for tests; no PostgreSQL dependency needed
TEST_DATABASE_URL = "sqlite://"

engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

START = datetime(2026, 3, 2, 9, 0, 0)
STARTING_CREDITS = 1000


@pytest.fixture(autouse=True)
def setup_db():
    """Create all tables before each test, drop after."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    """Provide a test database session."""
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(START)


@pytest.fixture
def policy() -> ApprovalPolicy:
    return ApprovalPolicy(escalation_after=timedelta(hours=48), expires_after=timedelta(days=7))


# ---------------------------------------------------------------------------
# Org directory
# ---------------------------------------------------------------------------


def add_member(db, team: Team, role: str, email: str, joined: datetime) -> User:
    """Create a user holding ``role`` in ``team`` since ``joined``."""
    user = User(email=email, display_name=email.split("@")[0], created_at=joined)
    db.add(user)
    db.flush()
    db.add(TeamMembership(team_id=team.id, user_id=user.id, role=role, created_at=joined))
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def company(db) -> Company:
    company = Company(name="Acme Research", created_at=START - timedelta(days=400))
    db.add(company)
    db.commit()
    db.refresh(company)
    return company


@pytest.fixture
def team(db, company) -> Team:
    team = Team(company_id=company.id, name="Strategy", created_at=START - timedelta(days=400))
    db.add(team)
    db.commit()
    db.refresh(team)
    return team


@pytest.fixture
def owner(db, team) -> User:
    return add_member(db, team, "owner", "owner@acme.example", START - timedelta(days=365))


@pytest.fixture
def admin(db, team) -> User:
    return add_member(db, team, "admin", "admin@acme.example", START - timedelta(days=300))


@pytest.fixture
def approver(db, team) -> User:
    return add_member(db, team, "approver", "approver@acme.example", START - timedelta(days=200))


@pytest.fixture
def requester(db, team) -> User:
    return add_member(db, team, "member", "member@acme.example", START - timedelta(days=100))


@pytest.fixture
def directory(owner, admin, approver, requester):
    """All four roles present in one team."""
    return {"owner": owner, "admin": admin, "approver": approver, "requester": requester}


@pytest.fixture
def account(db, company, clock):
    """Credit account funded with STARTING_CREDITS."""
    account = provision_account(db, company.id, now=clock.now(), initial_credits=STARTING_CREDITS)
    db.commit()
    db.refresh(account)
    return account


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


CRON_HEADERS = {"Authorization": "Bearer test-cron-secret"}


@pytest.fixture
def client(db, clock):
    """TestClient with overridden DB and clock dependencies."""

    def _override_get_db():
        try:
            yield db
        finally:
            pass

    fastapi_app.dependency_overrides[get_db] = _override_get_db
    fastapi_app.dependency_overrides[get_clock] = lambda: clock
    yield TestClient(fastapi_app)
    fastapi_app.dependency_overrides.clear()
