"""Celery session worker — drives scan sessions through their lifecycle.

The controller performs at most one lifecycle step per
:meth:`~radarscan.core.controller.SessionController.advance` call.  This
module supplies the trigger that keeps calling it:

* :class:`Scheduler` — the contract the API uses to request an ``advance``
  after a delay; :class:`CeleryScheduler` implements it with
  :func:`advance_session_task`.
* :func:`advance_session_task` — runs one ``advance`` and, if the session is
  not terminal, re-enqueues itself after ``retry_after`` seconds (or
  immediately when the status changed).
* :func:`sweep_active_sessions` — periodic beat task that re-enqueues an
  ``advance`` for every non-terminal session that has no live task chain.
  It recovers sessions whose task message was lost and flips overdue
  sessions to ``expired``.

Each session has at most one live chain of ``advance`` messages.  Every
message the chain enqueues refreshes a Redis lease
(``radarscan:advance:{session_id}``) that outlives its countdown by
``ADVANCE_LEASE_GRACE_SECONDS``; the sweep only starts a chain for a session
whose lease has lapsed.

A lost compare-and-swap means another task already advanced the session and
owns its next step, so no follow-up is scheduled for it.

**Starting a worker**::

    celery -A radarscan.celery_app worker --loglevel=info -Q radarscan
"""

from __future__ import annotations

import asyncio
import functools
import logging
import math
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, TypeVar

from redis import Redis
from redis.exceptions import RedisError

from radarscan.celery_app import celery_app
from radarscan.config import settings
from radarscan.core.controller import AdvanceResult, SessionController
from radarscan.core.errors import NotFound, StoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

#: Maximum number of sessions inspected by one sweep.
_SWEEP_BATCH_SIZE: int = 500


def _lease_key(session_id: str) -> str:
    return f"radarscan:advance:{session_id}"


@functools.lru_cache(maxsize=1)
def lease_client() -> Redis:
    """Return the shared synchronous Redis client holding advance leases."""
    return Redis.from_url(settings.REDIS_URL)


class Scheduler(ABC):
    """Requests future ``advance`` invocations for a session."""

    @abstractmethod
    def schedule_advance(self, session_id: str, delay_seconds: float = 0) -> None:
        """Arrange for ``advance(session_id)`` to run after *delay_seconds*."""

    @abstractmethod
    def resume_if_idle(self, session_id: str) -> bool:
        """Start an ``advance`` chain unless one is already live.

        Returns:
            ``True`` if an ``advance`` was enqueued.
        """


class CeleryScheduler(Scheduler):
    """Schedule ``advance`` calls as :func:`advance_session_task` messages.

    Args:
        redis_client: Client holding the advance leases.  Defaults to
            :func:`lease_client`.
    """

    def __init__(self, redis_client: Redis | None = None) -> None:
        self._redis = redis_client

    @property
    def redis(self) -> Redis:
        return self._redis if self._redis is not None else lease_client()

    @staticmethod
    def _lease_seconds(countdown: float) -> int:
        return math.ceil(countdown) + settings.ADVANCE_LEASE_GRACE_SECONDS

    def schedule_advance(self, session_id: str, delay_seconds: float = 0) -> None:
        countdown = max(0.0, float(delay_seconds))
        try:
            self.redis.set(_lease_key(session_id), 1, ex=self._lease_seconds(countdown))
        except RedisError as exc:
            # Enqueued anyway; the sweep may then start a second chain.
            logger.warning("Could not refresh advance lease: session_id=%s error=%s", session_id, exc)
        self._enqueue(session_id, countdown)

    def resume_if_idle(self, session_id: str) -> bool:
        try:
            acquired = self.redis.set(_lease_key(session_id), 1, ex=self._lease_seconds(0), nx=True)
        except RedisError as exc:
            logger.warning("Could not check advance lease, skipping: session_id=%s error=%s", session_id, exc)
            return False
        if not acquired:
            return False
        self._enqueue(session_id, 0.0)
        return True

    @staticmethod
    def _enqueue(session_id: str, countdown: float) -> None:
        advance_session_task.apply_async(kwargs={"session_id": session_id}, countdown=countdown)
        logger.debug("advance scheduled: session_id=%s countdown=%.1f", session_id, countdown)


# ---------------------------------------------------------------------------
# Construction helpers
# ---------------------------------------------------------------------------


def build_controller() -> SessionController:
    """Construct a production :class:`SessionController` from settings."""
    from radarscan.core.provider import RadarClient
    from radarscan.core.report_store import build_report_store
    from radarscan.core.session_store import SqlSessionStore
    from radarscan.services.notifier import CeleryNotifier

    return SessionController(
        session_store=SqlSessionStore(),
        report_store=build_report_store(),
        provider=RadarClient(),
        notifier=CeleryNotifier(),
    )


def _run(factory: Callable[[], Awaitable[T]]) -> T:
    """Run *factory()* on a fresh event loop and release pooled connections."""

    async def _main() -> T:
        from radarscan.db.session import engine

        try:
            return await factory()
        finally:
            # Pooled connections are bound to this loop.
            await engine.dispose()

    return asyncio.run(_main())


def next_delay(result: AdvanceResult) -> float | None:
    """Return the countdown for the follow-up ``advance``, or ``None`` for none."""
    if result.terminal:
        return None
    if result.retry_after is not None:
        return result.retry_after
    if result.changed:
        return 0.0
    return None


# ---------------------------------------------------------------------------
# Celery tasks
# ---------------------------------------------------------------------------


@celery_app.task(
    name="radarscan.workers.session_worker.advance_session_task",
    acks_late=True,
    reject_on_worker_lost=True,
)
def advance_session_task(*, session_id: str) -> dict[str, Any]:
    """Celery task: perform one lifecycle step for *session_id*.

    Returns:
        A dict with ``session_id``, ``status``, ``changed`` and ``next_delay``
        (``None`` when no follow-up was scheduled).
    """
    try:
        result = _run(lambda: build_controller().advance(session_id))
    except NotFound:
        logger.warning("advance_session_task: unknown session, dropping: session_id=%s", session_id)
        return {"session_id": session_id, "status": None, "changed": False, "next_delay": None}

    delay = next_delay(result)
    if delay is not None:
        CeleryScheduler().schedule_advance(session_id, delay)

    logger.info(
        "advance_session_task: session_id=%s %s -> %s changed=%s next_delay=%s",
        session_id,
        result.previous_status.value if result.previous_status else None,
        result.status.value if result.status else None,
        result.changed,
        delay,
    )
    return {
        "session_id": session_id,
        "status": result.status.value if result.status else None,
        "changed": result.changed,
        "next_delay": delay,
    }


@celery_app.task(name="radarscan.workers.session_worker.sweep_active_sessions")
def sweep_active_sessions() -> int:
    """Beat task: resume every non-terminal session without a live chain.

    Returns:
        The number of sessions enqueued.
    """
    from radarscan.core.session_store import SqlSessionStore

    try:
        sessions = _run(lambda: SqlSessionStore().list_active(limit=_SWEEP_BATCH_SIZE))
    except StoreError as exc:
        logger.error("sweep_active_sessions: could not list sessions: %s", exc)
        return 0

    scheduler = CeleryScheduler()
    resumed = sum(1 for session in sessions if scheduler.resume_if_idle(session.session_id))

    if sessions:
        logger.info(
            "sweep_active_sessions: active=%d enqueued=%d interval=%ds",
            len(sessions),
            resumed,
            settings.SWEEP_INTERVAL_SECONDS,
        )
    return resumed
