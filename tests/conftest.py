"""
Shared pytest fixtures.

Uses a file-backed SQLite database so no Postgres is required for tests.
The environment is set before the application is imported so settings,
the engine and the lifespan all see the test configuration (the scanner
is never scheduled when APP_ENV=test).
"""
import os

os.environ["APP_ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite:///./test_deadman.db"
os.environ["ADMIN_TOKEN"] = "test-admin-token"

from datetime import datetime, timedelta, timezone  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from deadman.db.base import Base, get_db  # noqa: E402
from deadman.main import app  # noqa: E402
import deadman.models  # noqa: E402,F401
from deadman.models.successor import Successor  # noqa: E402
from deadman.models.user import User  # noqa: E402
from deadman.routers.deps import get_scanner, get_session_factory  # noqa: E402
from deadman.services.notifications import NotificationChannel, NotificationDispatcher  # noqa: E402
from deadman.models.notification_delivery import NotificationMethod  # noqa: E402
from deadman.services.scanner import InactivityScanner  # noqa: E402

SQLITE_URL = "sqlite:///./test_deadman.db"
ADMIN_HEADERS = {"X-Admin-Token": "test-admin-token"}

engine = create_engine(SQLITE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Fixed reference point for time-sensitive tests.
T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


class RecordingChannel(NotificationChannel):
    """Captures messages instead of sending them."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[tuple[str, object]] = []

    def send(self, recipient, message):
        if self.fail:
            raise RuntimeError("provider unavailable")
        self.sent.append((recipient, message))


@pytest.fixture(scope="session", autouse=True)
def create_tables():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clean_tables():
    """Each test starts from empty tables (the downtime ledger is global state)."""
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture()
def db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def channel():
    return RecordingChannel()


@pytest.fixture()
def dispatcher(channel):
    return NotificationDispatcher(
        channels={NotificationMethod.EMAIL: channel},
        base_url="https://deadman.test",
    )


@pytest.fixture()
def scanner(dispatcher):
    return InactivityScanner(
        TestingSessionLocal,
        dispatcher=dispatcher,
        batch_size=50,
        batch_delay=0,
    )


@pytest.fixture()
def client(db, scanner):
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: TestingSessionLocal
    app.dependency_overrides[get_scanner] = lambda: scanner
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def make_user(db):
    counter = {"n": 0}

    def _make(created_at: datetime = T0, name: str | None = None) -> User:
        counter["n"] += 1
        user = User(
            email=f"user{counter['n']}@example.com",
            name=name or f"User {counter['n']}",
            created_at=created_at,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture()
def make_successor(db):
    def _make(user: User, email: str, name: str | None = None) -> Successor:
        successor = Successor(user_id=user.id, email=email, name=name or email.split("@")[0])
        db.add(successor)
        db.commit()
        db.refresh(successor)
        return successor

    return _make


def user_headers(user: User, **extra) -> dict:
    return {"X-User-Id": str(user.id), **extra}


def days(n: float) -> timedelta:
    return timedelta(days=n)
