"""Pytest fixtures for testing"""

import os

# Settings are read at import time; keep them off any real database
os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("ADMIN_IDENTIFIERS", "")

import pytest
from datetime import timedelta
from typing import Generator
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from credits_gateway.api.dependencies import get_admin_override
from credits_gateway.api.main import create_app
from credits_gateway.domain.admin import AdminOverride
from credits_gateway.domain.risk import RiskScorer
from credits_gateway.infrastructure.database.models import ActivityEvent, Base, UsagePeriod, UserAccount
from credits_gateway.infrastructure.database.session import engine_options, get_session_factory
from credits_gateway.services.access_gate import AccessGate
from credits_gateway.services.audit import AbuseAuditLog
from credits_gateway.services.ledger import Ledger
from credits_gateway.services.signals import RiskSignalCollector
from credits_gateway.utils.date_utils import utc_now

ADMIN_ID = "admin_1"
ADMIN_EMAIL = "admin@study.app"

TIER_LIMITS = {"free": 10, "starter": 100, "premium": 500, "unlimited": None}


@pytest.fixture
def engine(tmp_path) -> Generator[Engine, None, None]:
    """File-backed SQLite database, one per test, shared across threads"""
    url = f"sqlite:///{tmp_path / 'credits.db'}"
    engine = create_engine(url, **engine_options(url))
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autoflush=False, bind=engine)


@pytest.fixture
def ledger(session_factory: sessionmaker) -> Ledger:
    return Ledger(session_factory, max_retries=3, backoff_base=0.001, signup_grant=100)


@pytest.fixture
def collector(session_factory: sessionmaker) -> RiskSignalCollector:
    return RiskSignalCollector(session_factory, tier_limits=TIER_LIMITS)


@pytest.fixture
def audit(session_factory: sessionmaker) -> AbuseAuditLog:
    return AbuseAuditLog(session_factory)


@pytest.fixture
def admin_override() -> AdminOverride:
    return AdminOverride([ADMIN_ID, ADMIN_EMAIL])


@pytest.fixture
def gate(
    ledger: Ledger,
    collector: RiskSignalCollector,
    audit: AbuseAuditLog,
    admin_override: AdminOverride,
) -> AccessGate:
    return AccessGate(
        ledger=ledger,
        risk_scorer=RiskScorer(collector, fail_open=True),
        admin_override=admin_override,
        activity=collector,
        audit=audit,
        ban_duration_days=7,
    )


@pytest.fixture
def client(session_factory: sessionmaker, admin_override: AdminOverride) -> TestClient:
    """Create FastAPI test client with test database"""
    app = create_app()
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_admin_override] = lambda: admin_override
    return TestClient(app)


@pytest.fixture
def age_account(session_factory: sessionmaker):
    """Backdate an account's creation so it no longer counts as brand new"""

    def _age(account_id: str, days: int = 45) -> None:
        with session_factory() as db:
            account = db.get(UserAccount, account_id)
            account.created_at = utc_now() - timedelta(days=days)
            db.commit()

    return _age


@pytest.fixture
def seed_activity(session_factory: sessionmaker):
    """Insert recent activity events for an account"""

    def _seed(account_id: str, action: str, count: int, age: timedelta = timedelta(seconds=5)) -> None:
        with session_factory() as db:
            for _ in range(count):
                db.add(ActivityEvent(account_id=account_id, action=action, created_at=utc_now() - age))
            db.commit()

    return _seed


@pytest.fixture
def seed_usage(session_factory: sessionmaker):
    """Insert usage period rows: {"2026-08": 10, ...}"""

    def _seed(account_id: str, periods: dict) -> None:
        with session_factory() as db:
            for period, used in periods.items():
                db.add(UsagePeriod(account_id=account_id, period=period, requests_used=used))
            db.commit()

    return _seed
