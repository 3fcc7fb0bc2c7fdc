"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import asyncio
import os

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of tally.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from tally.config import TallyConfig  # noqa: E402
from tally.constants import EVENTS, PARTICIPANTS  # noqa: E402
from tally.database.models import Base  # noqa: E402
from tally.engine.entities import Actor  # noqa: E402
from tally.store.sql_store import SqlDocumentStore  # noqa: E402


def run_async(coro):
    """Run an async coroutine in a new event loop."""
    loop = asyncio.get_event_loop_policy().new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with the documents table.

    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in ``run_db``).
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def store(db_engine: Engine) -> SqlDocumentStore:
    return SqlDocumentStore(db_engine)


@pytest.fixture
def cfg() -> TallyConfig:
    return TallyConfig()


@pytest.fixture
def alice() -> Actor:
    return Actor(id="alice", display_name="Alice")


@pytest.fixture
def bob() -> Actor:
    return Actor(id="bob", display_name="Bob")


@pytest.fixture
def admin() -> Actor:
    return Actor(id="admin", display_name="Admin", is_admin=True)


# ---------------------------------------------------------------------------
# Seed helpers
# ---------------------------------------------------------------------------
def seed_participant(store: SqlDocumentStore, pid: str, total: int = 0, **extra) -> None:
    store.set(PARTICIPANTS, pid, {
        "displayName": pid.title(),
        "totalScore": total,
        "createdAt": "2026-01-01T00:00:00.000000Z",
        "lastActive": "2026-01-01T00:00:00.000000Z",
        **extra,
    })


def seed_event(
    store: SqlDocumentStore,
    pid: str,
    count: int,
    *,
    timestamp: str = "2026-01-01T12:00:00.000000Z",
    doc_id: str | None = None,
    **extra,
) -> str:
    data = {
        "participantId": pid,
        "participantName": pid.title(),
        "groupId": "hotdog-contest",
        "count": count,
        "timestamp": timestamp,
        "reactions": {},
        "flags": [],
        "isDeleted": False,
        **extra,
    }
    if doc_id is None:
        return store.add(EVENTS, data).id
    store.set(EVENTS, doc_id, data)
    return doc_id


def stamp(n: int) -> str:
    """Distinct, ordered store timestamps (n = minutes past noon)."""
    return f"2026-01-01T{12 + n // 60:02d}:{n % 60:02d}:00.000000Z"


def admin_token(sub: str = "admin", username: str = "FixtureAdmin") -> str:
    return make_token(sub, username, is_admin=True)


def make_token(sub: str, username: str = "", is_admin: bool = False) -> str:
    import jwt

    from tally.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode(
        {"sub": sub, "username": username or sub.title(), "is_admin": is_admin},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )
