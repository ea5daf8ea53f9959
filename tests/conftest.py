"""Shared test fixtures."""
from datetime import datetime
from typing import Generator

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from budgetsync.models.entities import Budget, BudgetPeriod, Category, CreditCard, Expense  # noqa: F401
from budgetsync.models.sync import SyncQueueItem  # noqa: F401
from budgetsync.sync.appliers import default_appliers
from budgetsync.sync.queue_store import SyncQueueStore
from budgetsync.sync.service import build_sync_service

USER = "user-123"
OTHER_USER = "user-456"


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="store")
def store_fixture(engine) -> SyncQueueStore:
    return SyncQueueStore(engine, default_max_retries=3)


@pytest.fixture(name="appliers")
def appliers_fixture(engine):
    return default_appliers(engine)


@pytest.fixture(name="service")
def service_fixture(engine):
    return build_sync_service(engine, max_retries=3)


@pytest.fixture(name="seeded_expense")
def seeded_expense_fixture(test_session: Session) -> Expense:
    """An Expense last modified on the server at 2024-01-10 12:00 UTC."""
    expense = Expense(
        id="e1",
        user_id=USER,
        amount=250.0,
        currency="GTQ",
        description="Groceries",
        updated_at=datetime(2024, 1, 10, 12, 0),
    )
    test_session.add(expense)
    test_session.commit()
    test_session.refresh(expense)
    return expense
