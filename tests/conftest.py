"""Pytest configuration and fixtures."""

import os

os.environ.setdefault("BRANCH_DATABASE_URL_TEMPLATE", "sqlite:///./data/test_branch_{branch_id}.db")
os.environ.setdefault("SECRET_KEY", "test-secret-key-with-at-least-32-characters")

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Generator

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from branchsync.client.queue import DurableLocalQueue
from branchsync.core.metrics import metrics
from branchsync.core.security import create_access_token
from branchsync.db.base import Base
from branchsync.db.engine import configure_sqlite
from branchsync.db.session import get_branch_db
from branchsync.main import app
# Import all models to ensure they're registered with Base.metadata
from branchsync.models import *
from branchsync.models.product import Product
from branchsync.schemas.sync import SyncTransactionIn

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"
BRANCH_ID = "downtown"
T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def memory_engine():
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    configure_sqlite(engine)
    return engine


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield


@pytest.fixture(scope="function")
def db_engine():
    """Create a test branch store engine."""
    engine = memory_engine()
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """Create a test database session."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """Create a test client with the branch store overridden."""
    def override_get_branch_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_branch_db] = override_get_branch_db
    # Disable rate limiters during tests to avoid flaky failures
    from branchsync.core.rate_limit import limiter as global_limiter
    global_limiter.enabled = False
    # Don't raise server exceptions so we can test error status codes
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    global_limiter.enabled = True
    app.dependency_overrides.clear()


@pytest.fixture
def auth_token() -> str:
    """Token for a cashier terminal in the test branch."""
    return create_access_token(
        data={"sub": "cashier-1", "role": "cashier", "branch_id": BRANCH_ID}
    )


@pytest.fixture
def auth_headers(auth_token: str) -> dict:
    """Get authentication headers."""
    return {"Authorization": f"Bearer {auth_token}"}


@pytest.fixture
def manager_headers() -> dict:
    token = create_access_token(
        data={"sub": "manager-1", "role": "manager", "branch_id": BRANCH_ID}
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def test_product(db_session: Session) -> Product:
    """A product with 10 units in stock."""
    product = Product(
        sku="BEER-001",
        name="Test Beer",
        price=Decimal("3.50"),
        stock_level=Decimal("10"),
        active=True,
    )
    db_session.add(product)
    db_session.commit()
    db_session.refresh(product)
    return product


@pytest.fixture
def make_txn():
    """Factory for replayed transactions in the test branch."""
    counter = {"n": 0}

    def _make(type: str, payload: dict, sync_id: str = None, at: datetime = None,
              branch_id: str = BRANCH_ID, user_id: str = "cashier-1") -> SyncTransactionIn:
        counter["n"] += 1
        return SyncTransactionIn(
            id=sync_id or f"1700000000000-txn{counter['n']:05d}",
            type=type,
            branch_id=branch_id,
            user_id=user_id,
            timestamp=at or T0 + timedelta(minutes=counter["n"]),
            payload=payload,
        )

    return _make


@pytest.fixture
def local_queue() -> Generator[DurableLocalQueue, None, None]:
    """Terminal-side queue on an in-memory store."""
    queue = DurableLocalQueue(engine=memory_engine())
    queue.init()
    yield queue
    queue.close()
