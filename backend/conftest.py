"""Shared fixtures: in-memory SQLite ledger, billing service, API client."""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.api.deps import get_db
from app.db.base import Base
from app.main import app
from app.models import Bill, Customer  # noqa: F401 - register models
from app.services.billing_service import BillingService
from app.services.customer_service import SqlBalanceStore
from app.services.ledger_service import SqlLedgerStore

BUSINESS = "shop-1"


@pytest.fixture
def engine():
    # One shared connection so every session (and the TestClient thread) sees the same DB
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autoflush=False)()
    yield session
    session.close()


@pytest.fixture
def service(db):
    return BillingService(SqlLedgerStore(db), SqlBalanceStore(db))


@pytest.fixture
def client(engine):
    TestingSession = sessionmaker(bind=engine, autoflush=False)

    def override_get_db():
        session = TestingSession()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app, headers={"X-Business-Id": BUSINESS})
    app.dependency_overrides.clear()
