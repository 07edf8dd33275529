"""Integration tests for SqlSessionStore with a real SQLAlchemy async engine.

These tests use an **in-memory SQLite** database (via ``aiosqlite`` + ``StaticPool``)
so that no PostgreSQL server is required.  ``StaticPool`` makes every
connection share the same underlying ``aiosqlite`` connection and therefore
the same in-memory database.

Test scope
----------
- create / get round trip, including timezone-aware timestamps
- duplicate ids -> Conflict, unknown ids -> NotFound
- compare-and-swap applies only when the stored status matches
- list_active excludes terminal sessions and orders oldest first
"""
from __future__ import annotations

from datetime import timedelta
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from radarscan.core.errors import Conflict, NotFound
from radarscan.core.session import Provenance, Session, SessionStatus
from radarscan.core.session_store import SqlSessionStore
from radarscan.db.base import Base

# Ensure all ORM models are registered with Base.metadata so create_all is complete
import radarscan.models  # noqa: F401

from tests.fakes import T0


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    eng = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def store(engine: AsyncEngine) -> SqlSessionStore:
    return SqlSessionStore(async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))


def _new(url: str = "https://example.com", now=T0) -> Session:
    return Session.new(
        url,
        ttl_seconds=3600,
        email="user@example.com",
        provenance=Provenance(ip_address="203.0.113.7", user_agent="pytest", country="GB"),
        now=now,
    )


class TestCreateAndGet:
    async def test_round_trip(self, store: SqlSessionStore) -> None:
        session = _new()
        await store.create(session)

        loaded = await store.get(session.session_id)

        assert loaded == session
        assert loaded.created_at.tzinfo is not None
        assert loaded.expires_at - loaded.created_at == timedelta(hours=1)

    async def test_duplicate_id_conflicts(self, store: SqlSessionStore) -> None:
        session = _new()
        await store.create(session)
        with pytest.raises(Conflict):
            await store.create(session)

    async def test_unknown_id(self, store: SqlSessionStore) -> None:
        with pytest.raises(NotFound):
            await store.get("does-not-exist")


class TestCompareAndSwap:
    async def test_applies_when_status_matches(self, store: SqlSessionStore) -> None:
        session = _new()
        await store.create(session)
        scanning = session.transition(
            SessionStatus.SCANNING, T0 + timedelta(seconds=1), job_id="job-1", result_url="https://r/1"
        )

        assert await store.compare_and_swap(session.session_id, SessionStatus.QUEUED, scanning) is True

        loaded = await store.get(session.session_id)
        assert loaded.status is SessionStatus.SCANNING
        assert loaded.job_id == "job-1"
        assert loaded.updated_at == T0 + timedelta(seconds=1)

    async def test_rejected_when_status_changed(self, store: SqlSessionStore) -> None:
        session = _new()
        await store.create(session)
        scanning = session.transition(SessionStatus.SCANNING, T0, job_id="job-1")
        await store.compare_and_swap(session.session_id, SessionStatus.QUEUED, scanning)

        failed = session.transition(SessionStatus.FAILED, T0, error="late writer")
        assert await store.compare_and_swap(session.session_id, SessionStatus.QUEUED, failed) is False
        assert (await store.get(session.session_id)).status is SessionStatus.SCANNING

    async def test_unknown_session(self, store: SqlSessionStore) -> None:
        session = _new()
        assert await store.compare_and_swap(session.session_id, SessionStatus.QUEUED, session) is False

    async def test_retry_bookkeeping_persists(self, store: SqlSessionStore) -> None:
        session = _new()
        await store.create(session)
        retrying = session.with_retry(T0 + timedelta(seconds=4))

        assert await store.compare_and_swap(session.session_id, SessionStatus.QUEUED, retrying) is True

        loaded = await store.get(session.session_id)
        assert loaded.attempts == 1
        assert loaded.next_attempt_at == T0 + timedelta(seconds=4)


class TestListActive:
    async def test_excludes_terminal_and_orders_oldest_first(self, store: SqlSessionStore) -> None:
        newer = _new("https://b.example", now=T0 + timedelta(minutes=5))
        older = _new("https://a.example", now=T0)
        done = _new("https://c.example", now=T0 - timedelta(minutes=5))
        for session in (newer, older, done):
            await store.create(session)
        await store.compare_and_swap(
            done.session_id, SessionStatus.QUEUED, done.transition(SessionStatus.FAILED, T0, error="boom")
        )

        active = await store.list_active()

        assert [s.session_id for s in active] == [older.session_id, newer.session_id]

    async def test_limit(self, store: SqlSessionStore) -> None:
        for i in range(3):
            await store.create(_new(now=T0 + timedelta(seconds=i)))
        assert len(await store.list_active(limit=2)) == 2
