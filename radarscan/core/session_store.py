"""Session stores — durable records of scan session state.

The controller uses exactly four operations:

* :meth:`SessionStore.get` — read a session snapshot (raises
  :class:`~radarscan.core.errors.NotFound`).
* :meth:`SessionStore.create` — insert a new session (raises
  :class:`~radarscan.core.errors.Conflict` if the id exists).
* :meth:`SessionStore.compare_and_swap` — the only mutation primitive.  The
  write is applied only if the stored status still equals the status the
  caller observed, guaranteeing at most one winning writer per transition.
* :meth:`SessionStore.list_active` — non-terminal sessions, oldest first,
  used by the sweeper to re-drive stalled sessions.

Two implementations are provided:

* :class:`SqlSessionStore` — SQLAlchemy async, used in production.  CAS is a
  single ``UPDATE ... WHERE session_id = :id AND status = :expected``.
* :class:`InMemorySessionStore` — dict guarded by an :class:`asyncio.Lock`,
  for development and tests.

Persistence failures are raised as :class:`~radarscan.core.errors.StoreError`.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from radarscan.core.errors import Conflict, NotFound, StoreError
from radarscan.core.session import TERMINAL_STATUSES, Session, SessionStatus
from radarscan.models.scan_session import ScanSessionRecord

logger = logging.getLogger(__name__)

_TERMINAL_VALUES = tuple(s.value for s in TERMINAL_STATUSES)


class SessionStore(ABC):
    """Abstract session store contract."""

    @abstractmethod
    async def get(self, session_id: str) -> Session:
        """Return the session with *session_id*.

        Raises:
            NotFound: If no such session exists.
            StoreError: On persistence failure.
        """

    @abstractmethod
    async def create(self, session: Session) -> None:
        """Insert *session*.

        Raises:
            Conflict: If a session with the same id already exists.
            StoreError: On persistence failure.
        """

    @abstractmethod
    async def compare_and_swap(
        self,
        session_id: str,
        expected_status: SessionStatus,
        new_session: Session,
    ) -> bool:
        """Replace the stored session with *new_session* if its status is unchanged.

        Returns:
            ``True`` if the write was applied, ``False`` if the stored status
            no longer equals *expected_status* (or the session is unknown).

        Raises:
            StoreError: On persistence failure.
        """

    @abstractmethod
    async def list_active(self, limit: int = 100) -> list[Session]:
        """Return up to *limit* non-terminal sessions, least recently updated first."""


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


class InMemorySessionStore(SessionStore):
    """Process-local session store.

    Safe for concurrent use by coroutines on one event loop.  State is lost
    when the process exits.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    async def get(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFound(f"session {session_id} not found")
        return session

    async def create(self, session: Session) -> None:
        async with self._lock:
            if session.session_id in self._sessions:
                raise Conflict(f"session {session.session_id} already exists")
            self._sessions[session.session_id] = session

    async def compare_and_swap(
        self,
        session_id: str,
        expected_status: SessionStatus,
        new_session: Session,
    ) -> bool:
        async with self._lock:
            current = self._sessions.get(session_id)
            if current is None or current.status is not expected_status:
                return False
            self._sessions[session_id] = new_session
            return True

    async def list_active(self, limit: int = 100) -> list[Session]:
        active = [s for s in self._sessions.values() if not s.is_terminal]
        active.sort(key=lambda s: s.updated_at)
        return active[:limit]


# ---------------------------------------------------------------------------
# SQL implementation
# ---------------------------------------------------------------------------


class SqlSessionStore(SessionStore):
    """Session store backed by the ``scan_session`` table.

    Each operation opens its own short transaction, so no database
    connection is held while the controller performs remote calls.

    Args:
        session_factory: Async session factory.  Defaults to
            :data:`~radarscan.db.session.AsyncSessionLocal`.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        if session_factory is None:
            from radarscan.db.session import AsyncSessionLocal

            session_factory = AsyncSessionLocal
        self._session_factory = session_factory

    async def get(self, session_id: str) -> Session:
        try:
            async with self._session_factory() as db:
                row = await db.get(ScanSessionRecord, session_id)
        except SQLAlchemyError as exc:
            logger.error("SqlSessionStore.get failed: session_id=%s error=%r", session_id, exc)
            raise StoreError(f"could not read session {session_id}") from exc
        if row is None:
            raise NotFound(f"session {session_id} not found")
        return _row_to_session(row)

    async def create(self, session: Session) -> None:
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    db.add(ScanSessionRecord(session_id=session.session_id, **_session_columns(session)))
        except IntegrityError as exc:
            raise Conflict(f"session {session.session_id} already exists") from exc
        except SQLAlchemyError as exc:
            logger.error(
                "SqlSessionStore.create failed: session_id=%s error=%r",
                session.session_id,
                exc,
            )
            raise StoreError(f"could not create session {session.session_id}") from exc

    async def compare_and_swap(
        self,
        session_id: str,
        expected_status: SessionStatus,
        new_session: Session,
    ) -> bool:
        stmt = (
            update(ScanSessionRecord)
            .where(
                ScanSessionRecord.session_id == session_id,
                ScanSessionRecord.status == expected_status.value,
            )
            .values(**_session_columns(new_session))
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    result = await db.execute(stmt)
        except SQLAlchemyError as exc:
            logger.error(
                "SqlSessionStore.compare_and_swap failed: session_id=%s expected=%s error=%r",
                session_id,
                expected_status.value,
                exc,
            )
            raise StoreError(f"could not update session {session_id}") from exc
        return result.rowcount == 1

    async def list_active(self, limit: int = 100) -> list[Session]:
        stmt = (
            select(ScanSessionRecord)
            .where(ScanSessionRecord.status.not_in(_TERMINAL_VALUES))
            .order_by(ScanSessionRecord.updated_at.asc())
            .limit(limit)
        )
        try:
            async with self._session_factory() as db:
                rows = (await db.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            logger.error("SqlSessionStore.list_active failed: error=%r", exc)
            raise StoreError("could not list active sessions") from exc
        return [_row_to_session(row) for row in rows]


# ---------------------------------------------------------------------------
# Row mapping helpers
# ---------------------------------------------------------------------------


def _session_columns(session: Session) -> dict[str, Any]:
    """Return the column values of *session*, excluding the primary key."""
    return {
        "url": session.url,
        "email": session.email,
        "status": session.status.value,
        "job_id": session.job_id,
        "result_url": session.result_url,
        "artifact_key": session.artifact_key,
        "error": session.error,
        "ip_address": session.ip_address,
        "user_agent": session.user_agent,
        "country": session.country,
        "attempts": session.attempts,
        "next_attempt_at": session.next_attempt_at,
        "created_at": session.created_at,
        "updated_at": session.updated_at,
        "expires_at": session.expires_at,
    }


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on round-trip; all stored times are UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _row_to_session(row: ScanSessionRecord) -> Session:
    return Session(
        session_id=row.session_id,
        url=row.url,
        status=SessionStatus(row.status),
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
        expires_at=_as_utc(row.expires_at),
        email=row.email,
        job_id=row.job_id,
        result_url=row.result_url,
        artifact_key=row.artifact_key,
        error=row.error,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        country=row.country,
        attempts=row.attempts or 0,
        next_attempt_at=_as_utc(row.next_attempt_at),
    )
