"""Unit tests for the Celery workers.

Tasks run eagerly (in-process) via ``Task.apply``; the controller, stores and
email sender are mocked or in-process fakes and Redis is fakeredis, so no
broker, database or network is needed.

Coverage:
* next_delay follow-up policy.
* CeleryScheduler enqueues advance_session_task with a countdown and keeps
  one Redis lease per session chain.
* advance_session_task re-enqueues non-terminal sessions and stops at
  terminal ones, unknown sessions and lost compare-and-swaps.
* sweep_active_sessions resumes only sessions without a live chain, so
  repeated beat ticks never grow the queue.
* send_report_email_task retries retryable failures and never raises.
"""
from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from radarscan.celery_app import celery_app
from radarscan.config import settings
from radarscan.core.controller import AdvanceResult, SessionController
from radarscan.core.errors import NotFound, StoreError
from radarscan.core.session import Session, SessionStatus
from radarscan.core.session_store import InMemorySessionStore
from radarscan.services.notifier import EmailDeliveryError
from radarscan.workers.email_worker import send_report_email_task
from radarscan.workers.session_worker import (
    CeleryScheduler,
    advance_session_task,
    next_delay,
    sweep_active_sessions,
)
from tests.fakes import T0, FakeClock, FakeProvider, FakeReportStore, RecordingNotifier, fake_renderer


@pytest.fixture(autouse=True)
def celery_eager():
    """Force Celery to execute tasks eagerly (synchronously, in-process)."""
    celery_app.conf.update(task_always_eager=True, task_eager_propagates=False)
    yield
    celery_app.conf.update(task_always_eager=False, task_eager_propagates=False)


def _result(
    status: SessionStatus | None,
    changed: bool = True,
    retry_after: float | None = None,
    store_unavailable: bool = False,
) -> AdvanceResult:
    return AdvanceResult(
        session_id="s1",
        previous_status=SessionStatus.QUEUED,
        status=status,
        changed=changed,
        terminal=status is not None and status.is_terminal,
        retry_after=retry_after,
        store_unavailable=store_unavailable,
    )


# ---------------------------------------------------------------------------
# Scheduling policy
# ---------------------------------------------------------------------------


class TestNextDelay:
    def test_terminal_stops(self) -> None:
        assert next_delay(_result(SessionStatus.COMPLETED)) is None

    def test_retry_after_is_used(self) -> None:
        assert next_delay(_result(SessionStatus.SCANNING, changed=False, retry_after=10.0)) == 10.0

    def test_changed_continues_immediately(self) -> None:
        assert next_delay(_result(SessionStatus.GENERATING)) == 0.0

    def test_lost_race_is_left_to_the_winner(self) -> None:
        assert next_delay(_result(SessionStatus.SCANNING, changed=False)) is None

    def test_store_outage_is_rescheduled(self) -> None:
        result = _result(None, changed=False, retry_after=2.0, store_unavailable=True)
        assert next_delay(result) == 2.0


# ---------------------------------------------------------------------------
# CeleryScheduler
# ---------------------------------------------------------------------------


_ENQUEUE = "radarscan.workers.session_worker.advance_session_task.apply_async"


class TestCeleryScheduler:
    def test_enqueues_with_countdown(self) -> None:
        scheduler = CeleryScheduler(fakeredis.FakeRedis())
        with patch(_ENQUEUE) as mock_apply:
            scheduler.schedule_advance("s1", 4.5)
            scheduler.schedule_advance("s2", -1)
        assert mock_apply.call_args_list[0].kwargs == {"kwargs": {"session_id": "s1"}, "countdown": 4.5}
        assert mock_apply.call_args_list[1].kwargs == {"kwargs": {"session_id": "s2"}, "countdown": 0.0}

    def test_lease_outlives_countdown(self) -> None:
        redis_client = fakeredis.FakeRedis()
        with patch(_ENQUEUE):
            CeleryScheduler(redis_client).schedule_advance("s1", 4.5)
        ttl = redis_client.ttl("radarscan:advance:s1")
        assert 4.5 < ttl <= 5 + settings.ADVANCE_LEASE_GRACE_SECONDS

    def test_resume_skips_session_with_live_lease(self) -> None:
        scheduler = CeleryScheduler(fakeredis.FakeRedis())
        with patch(_ENQUEUE) as mock_apply:
            scheduler.schedule_advance("s1", 10)
            assert scheduler.resume_if_idle("s1") is False
            assert scheduler.resume_if_idle("s2") is True
            assert scheduler.resume_if_idle("s2") is False
        assert [c.kwargs["kwargs"]["session_id"] for c in mock_apply.call_args_list] == ["s1", "s2"]

    def test_redis_failure_still_schedules_but_never_resumes(self) -> None:
        broken = MagicMock()
        broken.set.side_effect = RedisConnectionError("redis down")
        scheduler = CeleryScheduler(broken)
        with patch(_ENQUEUE) as mock_apply:
            scheduler.schedule_advance("s1", 1)
            assert scheduler.resume_if_idle("s2") is False
        mock_apply.assert_called_once_with(kwargs={"session_id": "s1"}, countdown=1.0)


# ---------------------------------------------------------------------------
# advance_session_task
# ---------------------------------------------------------------------------


def _patched_controller(outcome):
    controller = MagicMock()
    if isinstance(outcome, Exception):
        controller.advance = AsyncMock(side_effect=outcome)
    else:
        controller.advance = AsyncMock(return_value=outcome)
    return patch("radarscan.workers.session_worker.build_controller", return_value=controller)


class TestAdvanceSessionTask:
    def test_non_terminal_is_rescheduled(self) -> None:
        with _patched_controller(_result(SessionStatus.SCANNING, retry_after=10.0)), patch(
            "radarscan.workers.session_worker.CeleryScheduler.schedule_advance"
        ) as mock_schedule:
            result = advance_session_task.apply(kwargs={"session_id": "s1"}).get()

        assert result == {"session_id": "s1", "status": "scanning", "changed": True, "next_delay": 10.0}
        mock_schedule.assert_called_once_with("s1", 10.0)

    def test_terminal_is_not_rescheduled(self) -> None:
        with _patched_controller(_result(SessionStatus.COMPLETED)), patch(
            "radarscan.workers.session_worker.CeleryScheduler.schedule_advance"
        ) as mock_schedule:
            result = advance_session_task.apply(kwargs={"session_id": "s1"}).get()

        assert result["status"] == "completed"
        assert result["next_delay"] is None
        mock_schedule.assert_not_called()

    def test_unknown_session_is_dropped(self) -> None:
        with _patched_controller(NotFound("gone")), patch(
            "radarscan.workers.session_worker.CeleryScheduler.schedule_advance"
        ) as mock_schedule:
            result = advance_session_task.apply(kwargs={"session_id": "s1"}).get()

        assert result["status"] is None
        mock_schedule.assert_not_called()


# ---------------------------------------------------------------------------
# sweep_active_sessions
# ---------------------------------------------------------------------------


class TestSweep:
    def test_enqueues_every_idle_session_once(self) -> None:
        sessions = [
            Session.new("https://a.example", ttl_seconds=3600, now=T0),
            Session.new("https://b.example", ttl_seconds=3600, now=T0),
        ]
        store = MagicMock()
        store.list_active = AsyncMock(return_value=sessions)
        with patch("radarscan.core.session_store.SqlSessionStore", return_value=store), patch(
            "radarscan.workers.session_worker.lease_client", return_value=fakeredis.FakeRedis()
        ), patch(_ENQUEUE) as mock_apply:
            first = sweep_active_sessions.apply().get()
            second = sweep_active_sessions.apply().get()

        assert (first, second) == (2, 0)
        assert [c.kwargs for c in mock_apply.call_args_list] == [
            {"kwargs": {"session_id": sessions[0].session_id}, "countdown": 0.0},
            {"kwargs": {"session_id": sessions[1].session_id}, "countdown": 0.0},
        ]

    def test_store_failure_returns_zero(self) -> None:
        store = MagicMock()
        store.list_active = AsyncMock(side_effect=StoreError("db down"))
        with patch("radarscan.core.session_store.SqlSessionStore", return_value=store), patch(
            "radarscan.workers.session_worker.CeleryScheduler.resume_if_idle"
        ) as mock_resume:
            assert sweep_active_sessions.apply().get() == 0
        mock_resume.assert_not_called()


class TestSweepWithLiveChains:
    """Beat ticks interleaved with a real controller and an in-process queue."""

    @pytest.fixture
    def harness(self):
        store = InMemorySessionStore()
        clock = FakeClock()
        controller = SessionController(
            session_store=store,
            report_store=FakeReportStore(),
            provider=FakeProvider(fetch_outcomes=[None]),
            notifier=RecordingNotifier(),
            renderer=fake_renderer,
            clock=clock,
            ttl_seconds=3600,
            poll_interval=10.0,
            max_attempts=3,
            base_delay=2.0,
            provider_timeout=5.0,
            render_timeout=5.0,
            store_timeout=5.0,
        )
        redis_client = fakeredis.FakeRedis()
        queue: list[str] = []

        def enqueue(*, kwargs, countdown):
            queue.append(kwargs["session_id"])

        def tick() -> int:
            sweep_active_sessions.apply().get()
            pending = list(queue)
            queue.clear()
            for session_id in pending:
                advance_session_task.apply(kwargs={"session_id": session_id}).get()
            clock.advance(10)
            return len(queue)

        with patch("radarscan.workers.session_worker.build_controller", return_value=controller), patch(
            "radarscan.core.session_store.SqlSessionStore", return_value=store
        ), patch("radarscan.workers.session_worker.lease_client", return_value=redis_client), patch(
            _ENQUEUE, side_effect=enqueue
        ):
            yield SimpleNamespace(store=store, clock=clock, redis=redis_client, queue=queue, tick=tick)

    @staticmethod
    def _add_session(harness: SimpleNamespace) -> str:
        session = Session.new("https://example.com", ttl_seconds=3600, now=harness.clock())
        asyncio.run(harness.store.create(session))
        return session.session_id

    def test_queue_holds_one_message_per_session_across_ticks(self, harness) -> None:
        session_id = self._add_session(harness)

        depths = [harness.tick() for _ in range(4)]

        assert depths == [1, 1, 1, 1]
        assert harness.queue == [session_id]
        assert asyncio.run(harness.store.get(session_id)).status is SessionStatus.SCANNING

    def test_chain_started_by_api_is_not_duplicated(self, harness) -> None:
        session_id = self._add_session(harness)
        CeleryScheduler().schedule_advance(session_id, 0)

        depths = [harness.tick() for _ in range(3)]

        assert depths == [1, 1, 1]

    def test_lost_message_is_recovered_after_lease_lapses(self, harness) -> None:
        session_id = self._add_session(harness)
        harness.tick()

        harness.queue.clear()
        assert harness.tick() == 0

        harness.redis.delete(f"radarscan:advance:{session_id}")
        assert harness.tick() == 1
        assert harness.queue == [session_id]

    def test_overdue_session_is_expired_and_chain_ends(self, harness) -> None:
        session_id = self._add_session(harness)
        harness.tick()
        harness.clock.advance(3600)

        assert harness.tick() == 0
        assert asyncio.run(harness.store.get(session_id)).status is SessionStatus.EXPIRED


# ---------------------------------------------------------------------------
# send_report_email_task
# ---------------------------------------------------------------------------


class TestSendReportEmailTask:
    def test_success(self) -> None:
        with patch("radarscan.workers.email_worker.deliver_report", AsyncMock(return_value="msg-1")):
            result = send_report_email_task.apply(kwargs={"session_id": "s1", "email": "u@example.com"}).get()
        assert result == {"session_id": "s1", "sent": True, "message_id": "msg-1"}

    def test_nothing_to_send(self) -> None:
        with patch("radarscan.workers.email_worker.deliver_report", AsyncMock(side_effect=NotFound("no report"))):
            result = send_report_email_task.apply(kwargs={"session_id": "s1", "email": "u@example.com"}).get()
        assert result["sent"] is False

    def test_retryable_failure_is_retried(self) -> None:
        deliver = AsyncMock(side_effect=EmailDeliveryError("HTTP 503", retryable=True))
        with patch("radarscan.workers.email_worker.deliver_report", deliver):
            result = send_report_email_task.apply(kwargs={"session_id": "s1", "email": "u@example.com"}).get()

        # 1 initial attempt + 3 retries
        assert deliver.await_count == 4
        assert result["sent"] is False

    def test_permanent_failure_is_not_retried(self) -> None:
        deliver = AsyncMock(side_effect=EmailDeliveryError("HTTP 422", retryable=False))
        with patch("radarscan.workers.email_worker.deliver_report", deliver):
            result = send_report_email_task.apply(kwargs={"session_id": "s1", "email": "u@example.com"}).get()

        assert deliver.await_count == 1
        assert result["sent"] is False
