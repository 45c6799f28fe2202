"""Shared pytest fixtures for guestpass."""

from __future__ import annotations

import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from guestpass import api, database, storage
from guestpass.lifecycle import RegistrationService
from guestpass.models import Base
from guestpass.notifier import Notifier, OutboxEmailBackend
from guestpass.repositories import SqlRegistrationStore, SqlTokenStore


class FakeClock:
    """Controllable naive-UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 6, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture(scope="session", autouse=True)
def configure_in_memory_db():
    """Reuse a single in-memory SQLite database for fast, isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    database.enable_sqlite_foreign_keys(engine)
    session_factory = scoped_session(
        sessionmaker(
            bind=engine,
            autoflush=False,
            autocommit=False,
            future=True,
            expire_on_commit=False,
        )
    )
    database.engine = engine
    database.SessionLocal = session_factory
    storage.engine = engine
    api.SessionLocal = session_factory
    Base.metadata.create_all(bind=engine)
    yield
    session_factory.remove()


@pytest.fixture(autouse=True)
def clean_database():
    """Reset all tables between tests to guarantee isolation."""

    Base.metadata.drop_all(bind=database.engine)
    Base.metadata.create_all(bind=database.engine)
    yield
    database.SessionLocal.remove()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def sleep():
    return RecordingSleep()


@pytest.fixture()
def outbox():
    return OutboxEmailBackend()


@pytest.fixture()
def session():
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.rollback()
        db.close()


@pytest.fixture()
def service(session, outbox, clock, sleep):
    """Registration service wired to the test database and an in-memory outbox."""

    return RegistrationService(
        SqlRegistrationStore(session, clock=clock),
        SqlTokenStore(session, clock=clock),
        Notifier(outbox),
        session,
        base_url="http://guest.test",
        event_name="Lake Weekend",
        clock=clock,
        sleep=sleep,
        monotonic=lambda: 0.0,
    )


def valid_registration(**overrides):
    payload = {
        "name": "Jamie Rivera",
        "email": "jamie@example.com",
        "stay": "FRI_SAT",
        "adults_count": 2,
        "children_count": 1,
        "notes": "Arriving after dinner",
    }
    payload.update(overrides)
    return payload


def token_from_url(url: str) -> str:
    return url.rsplit("/manage/", 1)[1]
