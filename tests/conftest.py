"""Pytest fixtures: a fresh in-memory SQLite database per test."""
import os
from datetime import datetime, timedelta, timezone

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

import pytest  # noqa: E402
from sqlalchemy import create_engine, event  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import docket.models  # noqa: E402,F401
from docket.db import Base  # noqa: E402
from docket.models.user import User  # noqa: E402
from docket.services.activity_catalog import activity_catalog  # noqa: E402
from docket.services.repository import LedgerRepository  # noqa: E402


class StepClock:
    """Deterministic clock; every reading is one second after the last."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        value = self.current
        self.current += timedelta(seconds=1)
        return value


@pytest.fixture(scope="function")
def engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(bind=engine)
    with sessionmaker(bind=engine)() as db:
        activity_catalog.seed_activity_catalog(db)
        db.commit()
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture(scope="function")
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def repository(session_factory, clock):
    return LedgerRepository(session_factory=session_factory, clock=clock)


@pytest.fixture
def user(db_session):
    u = User(name="alice")
    db_session.add(u)
    db_session.commit()
    db_session.refresh(u)
    return u
