"""Session lifecycle controller — the RadarScan state machine.

:class:`SessionController` owns every status change of a scan session.  It
sits between the external surfaces (HTTP routes, Celery workers) and the
collaborators that do the actual work:

* :class:`~radarscan.core.session_store.SessionStore` — durable session state.
* :class:`~radarscan.core.provider.ScanProvider` — remote URL scanner.
* :func:`~radarscan.core.renderer.render_report` — PDF rendering.
* :class:`~radarscan.core.report_store.ReportStore` — artifact storage.
* :class:`~radarscan.services.notifier.Notifier` — email delivery.

Step model
----------
:meth:`SessionController.advance` is an idempotent step function.  Each call
reads the session, performs the action for its current status and commits the
outcome with a single compare-and-swap on the observed status::

    queued      -- submit URL      --> scanning
    scanning    -- poll result     --> generating   (unchanged while pending)
    generating  -- fetch + render  --> uploading    (bytes handed over in memory)
    uploading   -- store PDF       --> completed

Any status may move to ``failed`` and every non-terminal status moves to
``expired`` once ``expires_at`` has passed.  A lost compare-and-swap means
another invocation already advanced the session; the local outcome is
discarded.

Retry policy
------------
Transient failures (:class:`~radarscan.core.errors.ProviderUnavailable`,
:class:`~radarscan.core.errors.StoreError`, timeouts) are attempted once per
invocation.  Each failure is recorded on the session (``attempts``,
``next_attempt_at`` with exponential back-off); when ``attempts`` reaches
``RETRY_MAX_ATTEMPTS`` the session fails.  Non-transient failures fail the
session immediately.  Polling in ``scanning`` is bounded by the deadline only.

Usage::

    controller = SessionController(
        session_store=SqlSessionStore(),
        report_store=build_report_store(),
        provider=RadarClient(),
        notifier=CeleryNotifier(),
    )
    session_id = await controller.create_session("https://example.com")
    result = await controller.advance(session_id)
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable
from urllib.parse import urlsplit

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from prometheus_client import Counter

from radarscan.config import settings
from radarscan.core.errors import (
    Conflict,
    Expired,
    NotFound,
    ProviderError,
    ProviderFailure,
    ProviderRejected,
    ProviderUnavailable,
    RadarScanError,
    RenderError,
    StoreError,
    ValidationError,
)
from radarscan.core.renderer import render_report
from radarscan.core.report_store import ReportStore, report_key_for
from radarscan.core.session import Provenance, Session, SessionStatus, utcnow
from radarscan.core.session_store import SessionStore

if TYPE_CHECKING:
    from radarscan.core.provider import ScanProvider
    from radarscan.schemas.scan_result import ScanResult
    from radarscan.services.notifier import Notifier

logger = logging.getLogger(__name__)

tracer = trace.get_tracer(
    "radarscan.controller",
    schema_url="https://opentelemetry.io/schemas/1.11.0",
)

# ---------------------------------------------------------------------------
# Prometheus metrics
# ---------------------------------------------------------------------------

_TRANSITIONS = Counter(
    "radarscan_session_transitions_total",
    "Committed session status transitions",
    ["from_status", "to_status"],
)
_STEP_FAILURES = Counter(
    "radarscan_step_failures_total",
    "Failed remote, render and storage attempts by step",
    ["step", "error_type"],  # submit | poll | generate | upload
)

_MAX_URL_LENGTH = 2048
_MAX_ERROR_LENGTH = 500
_MAX_ID_ALLOCATIONS = 3

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Fixed prefixes of the error strings stored on failed sessions.
_ERROR_PREFIXES = {
    "submit": "Scan submission failed",
    "poll": "Scan failed",
    "generate": "Report generation failed",
    "upload": "Report upload failed",
}

Renderer = Callable[["ScanResult", str], bytes]


@dataclass(frozen=True)
class AdvanceResult:
    """Outcome of one :meth:`SessionController.advance` invocation.

    Attributes:
        session_id: The advanced session.
        previous_status: Status observed at the start of the call, or ``None``
            if the session store could not be read.
        status: Status after the call, or ``None`` if unknown.
        changed: ``True`` if this invocation committed a status change.
        terminal: ``True`` if the session is in a terminal status.
        retry_after: Seconds the driver should wait before the next call, or
            ``None`` to call again as soon as possible.
        store_unavailable: ``True`` if the session store failed; the driver
            should reschedule.
    """

    session_id: str
    previous_status: SessionStatus | None
    status: SessionStatus | None
    changed: bool
    terminal: bool
    retry_after: float | None = None
    store_unavailable: bool = False


@dataclass(frozen=True)
class SessionView:
    """Read-only projection of a session returned by :meth:`get_status`."""

    session_id: str
    url: str
    status: SessionStatus
    error: str | None
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    artifact_ready: bool


class SessionController:
    """Drives scan sessions through their lifecycle.

    Args:
        session_store: Durable session state.
        report_store: Storage for rendered PDF artifacts.
        provider: Remote scan provider.
        notifier: Email delivery dispatcher.  When ``None`` email requests
            are recorded but nothing is sent.
        renderer: ``(scan_result, url) -> bytes`` report renderer.
        clock: Returns the current UTC time.  Injected by tests.
        ttl_seconds, poll_interval, max_attempts, base_delay,
        provider_timeout, render_timeout, store_timeout: Override the
            corresponding settings.
    """

    def __init__(
        self,
        session_store: SessionStore,
        report_store: ReportStore,
        provider: ScanProvider,
        notifier: Notifier | None = None,
        renderer: Renderer = render_report,
        clock: Callable[[], datetime] = utcnow,
        *,
        ttl_seconds: int | None = None,
        poll_interval: float | None = None,
        max_attempts: int | None = None,
        base_delay: float | None = None,
        provider_timeout: float | None = None,
        render_timeout: float | None = None,
        store_timeout: float | None = None,
    ) -> None:
        self._sessions = session_store
        self._reports = report_store
        self._provider = provider
        self._notifier = notifier
        self._renderer = renderer
        self._clock = clock
        self._ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.SESSION_TTL_SECONDS
        self._poll_interval = poll_interval if poll_interval is not None else settings.POLL_INTERVAL_SECONDS
        self._max_attempts = max_attempts if max_attempts is not None else settings.RETRY_MAX_ATTEMPTS
        self._base_delay = base_delay if base_delay is not None else settings.RETRY_BASE_DELAY_SECONDS
        self._provider_timeout = (
            provider_timeout if provider_timeout is not None else settings.PROVIDER_TIMEOUT_SECONDS
        )
        self._render_timeout = render_timeout if render_timeout is not None else settings.RENDER_TIMEOUT_SECONDS
        self._store_timeout = store_timeout if store_timeout is not None else settings.STORE_TIMEOUT_SECONDS

    # ------------------------------------------------------------------
    # Session creation
    # ------------------------------------------------------------------

    async def create_session(
        self,
        url: str,
        email: str | None = None,
        provenance: Provenance | None = None,
    ) -> str:
        """Create a ``queued`` session for *url* and return its id.

        Raises:
            ValidationError: If *url* or *email* is malformed.
            StoreError: If the session could not be persisted.
        """
        url = validate_url(url)
        if email:
            email = validate_email(email)

        for _ in range(_MAX_ID_ALLOCATIONS):
            session = Session.new(
                url,
                ttl_seconds=self._ttl_seconds,
                email=email or None,
                provenance=provenance,
                now=self._clock(),
            )
            try:
                await self._sessions.create(session)
            except Conflict:
                logger.warning("Session id collision, allocating a new id: session_id=%s", session.session_id)
                continue
            _log_event(
                "session_created",
                session_id=session.session_id,
                url=session.url,
                has_email=bool(session.email),
                ip_address=session.ip_address,
                country=session.country,
                expires_at=session.expires_at.isoformat(),
            )
            return session.session_id

        raise StoreError("could not allocate a unique session id")

    # ------------------------------------------------------------------
    # Step function
    # ------------------------------------------------------------------

    async def advance(self, session_id: str) -> AdvanceResult:
        """Perform at most one lifecycle step for *session_id*.

        Never raises for provider, render or storage failures; those are
        recorded on the session.  Session store outages are reported with
        ``store_unavailable=True``.

        Raises:
            NotFound: If the session does not exist.
        """
        with tracer.start_as_current_span("radarscan.advance", kind=trace.SpanKind.INTERNAL) as span:
            span.set_attribute("session.id", session_id)
            try:
                result = await self._advance(session_id)
            except NotFound:
                raise
            except StoreError as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                logger.error("advance: session store unavailable: session_id=%s error=%s", session_id, exc)
                return AdvanceResult(
                    session_id=session_id,
                    previous_status=None,
                    status=None,
                    changed=False,
                    terminal=False,
                    retry_after=self._base_delay,
                    store_unavailable=True,
                )
            if result.status is not None:
                span.set_attribute("session.status", result.status.value)
            span.set_attribute("session.changed", result.changed)
            return result

    async def _advance(self, session_id: str) -> AdvanceResult:
        session = await self._sessions.get(session_id)
        now = self._clock()

        if session.is_terminal:
            return _unchanged(session)

        if session.is_past_deadline(now):
            return await self._commit(session, session.transition(SessionStatus.EXPIRED, now))

        if session.next_attempt_at is not None and session.next_attempt_at > now:
            wait = (session.next_attempt_at - now).total_seconds()
            return _unchanged(session, retry_after=wait)

        if session.status is SessionStatus.QUEUED:
            return await self._step_submit(session)
        if session.status is SessionStatus.SCANNING:
            return await self._step_poll(session)
        if session.status is SessionStatus.GENERATING:
            return await self._step_generate(session)
        if session.status is SessionStatus.UPLOADING:
            return await self._step_upload(session)
        # ``sending`` is never entered by this controller; a session found in
        # it already holds its artifact.
        return await self._commit(session, session.transition(SessionStatus.COMPLETED, now))

    async def _step_submit(self, session: Session) -> AdvanceResult:
        try:
            submission = await self._bounded(
                "submit",
                self._provider.submit(session.url),
                self._provider_timeout,
                ProviderUnavailable,
            )
        except ProviderFailure as exc:
            return await self._on_failure(session, "submit", exc)

        scanning = session.transition(
            SessionStatus.SCANNING,
            self._clock(),
            job_id=submission.job_id,
            result_url=submission.result_url,
        )
        return await self._commit(session, scanning, retry_after=self._poll_interval)

    async def _step_poll(self, session: Session) -> AdvanceResult:
        if not session.job_id:
            return await self._on_failure(session, "poll", ProviderError("missing provider job id"))
        try:
            result = await self._bounded(
                "poll",
                self._provider.fetch_result(session.job_id),
                self._provider_timeout,
                ProviderUnavailable,
            )
        except ProviderFailure as exc:
            return await self._on_failure(session, "poll", exc)

        if result is None:
            cleared = session.without_retry()
            if cleared is not session:
                return await self._commit(session, cleared, retry_after=self._poll_interval)
            return _unchanged(session, retry_after=self._poll_interval)

        return await self._commit(session, session.transition(SessionStatus.GENERATING, self._clock()))

    async def _step_generate(self, session: Session) -> AdvanceResult:
        try:
            pdf = await self._produce_report(session)
        except (ProviderFailure, RenderError) as exc:
            return await self._on_failure(session, "generate", exc)

        uploading = session.transition(
            SessionStatus.UPLOADING,
            self._clock(),
            artifact_key=report_key_for(session.session_id),
        )
        handoff = await self._commit(session, uploading)
        if handoff.status is not SessionStatus.UPLOADING or not handoff.changed:
            return handoff

        result = await self._step_upload(uploading, pdf=pdf)
        return AdvanceResult(
            session_id=result.session_id,
            previous_status=session.status,
            status=result.status,
            changed=True,
            terminal=result.terminal,
            retry_after=result.retry_after,
            store_unavailable=result.store_unavailable,
        )

    async def _step_upload(self, session: Session, pdf: bytes | None = None) -> AdvanceResult:
        if pdf is None:
            # Resumed upload: the bytes of an earlier render are gone.
            try:
                pdf = await self._produce_report(session)
            except (ProviderFailure, RenderError) as exc:
                return await self._on_failure(session, "generate", exc)

        key = session.artifact_key or report_key_for(session.session_id)
        try:
            await self._bounded(
                "upload",
                asyncio.to_thread(self._reports.put, key, pdf),
                self._store_timeout,
                StoreError,
            )
        except StoreError as exc:
            return await self._on_failure(session, "upload", exc)

        completed = session.transition(SessionStatus.COMPLETED, self._clock(), artifact_key=key)
        return await self._commit(session, completed)

    async def _produce_report(self, session: Session) -> bytes:
        if not session.job_id:
            raise ProviderError("missing provider job id")
        result = await self._bounded(
            "generate",
            self._provider.fetch_result(session.job_id),
            self._provider_timeout,
            ProviderUnavailable,
        )
        if result is None:
            raise ProviderError("scan result is no longer available")
        return await self._bounded(
            "generate",
            asyncio.to_thread(self._renderer, result, session.url),
            self._render_timeout,
            RenderError,
        )

    # ------------------------------------------------------------------
    # Commit and failure handling
    # ------------------------------------------------------------------

    async def _on_failure(self, session: Session, step: str, exc: RadarScanError) -> AdvanceResult:
        """Record a failed attempt of *step*: back off if transient, otherwise fail."""
        _STEP_FAILURES.labels(step=step, error_type=type(exc).__name__).inc()
        now = self._clock()

        if exc.transient:
            attempts = session.attempts + 1
            if attempts < self._max_attempts:
                delay = self._base_delay * 2 ** (attempts - 1)
                logger.warning(
                    "Step %s failed (attempt %d/%d), retrying in %.1fs: session_id=%s error=%s",
                    step,
                    attempts,
                    self._max_attempts,
                    delay,
                    session.session_id,
                    exc,
                )
                retry = session.with_retry(now + timedelta(seconds=delay))
                return await self._commit(session, retry, retry_after=delay)
            message = f"{_ERROR_PREFIXES[step]} after {attempts} attempts: {exc}"
        elif isinstance(exc, ProviderRejected):
            message = f"Scan submission rejected: {exc}"
        else:
            message = f"{_ERROR_PREFIXES[step]}: {exc}"

        failed = session.transition(SessionStatus.FAILED, now, error=_short_error(message))
        return await self._commit(session, failed)

    async def _commit(
        self,
        observed: Session,
        new: Session,
        retry_after: float | None = None,
    ) -> AdvanceResult:
        """Compare-and-swap *new* over *observed* and report the outcome.

        A step that finishes after the deadline commits ``expired`` instead of
        its own result.
        """
        now = self._clock()
        if new.status is not SessionStatus.EXPIRED and observed.is_past_deadline(now):
            logger.info(
                "Deadline passed during step, expiring: session_id=%s status=%s",
                observed.session_id,
                observed.status.value,
            )
            new = observed.transition(SessionStatus.EXPIRED, now)

        won = await self._sessions.compare_and_swap(observed.session_id, observed.status, new)
        if not won:
            current = await self._sessions.get(observed.session_id)
            logger.info(
                "advance lost compare-and-swap: session_id=%s expected=%s current=%s",
                observed.session_id,
                observed.status.value,
                current.status.value,
            )
            return AdvanceResult(
                session_id=observed.session_id,
                previous_status=observed.status,
                status=current.status,
                changed=False,
                terminal=current.is_terminal,
            )

        changed = new.status is not observed.status
        if changed:
            _TRANSITIONS.labels(from_status=observed.status.value, to_status=new.status.value).inc()
            _log_event(
                "session_failed" if new.status is SessionStatus.FAILED else "session_transition",
                session_id=new.session_id,
                from_status=observed.status.value,
                to_status=new.status.value,
                job_id=new.job_id,
                error=new.error,
            )
            if new.status is SessionStatus.COMPLETED and new.email:
                self._request_delivery(new.session_id, new.email)

        return AdvanceResult(
            session_id=new.session_id,
            previous_status=observed.status,
            status=new.status,
            changed=changed,
            terminal=new.is_terminal,
            retry_after=None if new.is_terminal else retry_after,
        )

    async def _bounded(
        self,
        step: str,
        awaitable: Awaitable[Any],
        timeout: float,
        timeout_error: type[RadarScanError],
    ) -> Any:
        """Await *awaitable* under *timeout*, mapping expiry to *timeout_error*."""
        with tracer.start_as_current_span(f"radarscan.{step}") as span:
            span.set_attribute("step.name", step)
            try:
                return await asyncio.wait_for(awaitable, timeout=timeout)
            except asyncio.TimeoutError as exc:
                span.set_status(Status(StatusCode.ERROR, "timeout"))
                raise timeout_error(f"{step} timed out after {timeout:g}s") from exc
            except RadarScanError as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                raise
            except Exception as exc:
                # Anything unexpected from the renderer is a render failure.
                if timeout_error is RenderError:
                    span.record_exception(exc)
                    raise RenderError(type(exc).__name__) from exc
                raise

    def _request_delivery(self, session_id: str, email: str) -> None:
        if self._notifier is None:
            logger.info("No notifier configured, email not sent: session_id=%s", session_id)
            return
        try:
            self._notifier.request_delivery(session_id, email)
        except Exception as exc:
            # Delivery is independent of the session lifecycle.
            logger.error("Email delivery request failed: session_id=%s error=%r", session_id, exc)

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    async def get_status(self, session_id: str) -> SessionView:
        """Return a read-only view of *session_id*.

        A non-terminal session whose deadline has passed is reported as
        ``expired``; the persisted flip happens on the next :meth:`advance`.

        Raises:
            NotFound: If the session does not exist.
        """
        session = await self._sessions.get(session_id)
        past_deadline = session.is_past_deadline(self._clock())
        status = session.status
        if past_deadline and not session.is_terminal:
            status = SessionStatus.EXPIRED
        return SessionView(
            session_id=session.session_id,
            url=session.url,
            status=status,
            error=session.error,
            created_at=session.created_at,
            updated_at=session.updated_at,
            expires_at=session.expires_at,
            artifact_ready=(
                status is SessionStatus.COMPLETED
                and session.artifact_key is not None
                and not past_deadline
            ),
        )

    async def get_artifact(self, session_id: str) -> bytes:
        """Return the PDF report of a completed session.

        Raises:
            NotFound: Unknown session, not completed, or artifact missing.
            Expired: The session expired or its deadline has passed.
            StoreError: The report store failed.
        """
        session = await self._sessions.get(session_id)
        if session.status is SessionStatus.EXPIRED or session.is_past_deadline(self._clock()):
            raise Expired(f"session {session_id} has expired")
        if session.status is not SessionStatus.COMPLETED or not session.artifact_key:
            raise NotFound(f"report for session {session_id} is not available")
        return await self._bounded(
            "download",
            asyncio.to_thread(self._reports.get, session.artifact_key),
            self._store_timeout,
            StoreError,
        )

    # ------------------------------------------------------------------
    # Email
    # ------------------------------------------------------------------

    async def record_email_request(self, session_id: str, email: str) -> None:
        """Record *email* on a completed session and request report delivery.

        The session status is never altered.

        Raises:
            ValidationError: If *email* is malformed.
            NotFound: If the session does not exist.
            Expired: If the session expired or its deadline has passed.
            Conflict: If the session is not ``completed``.
        """
        email = validate_email(email)
        session = await self._sessions.get(session_id)
        if session.status is SessionStatus.EXPIRED or session.is_past_deadline(self._clock()):
            raise Expired(f"session {session_id} has expired")
        if session.status is not SessionStatus.COMPLETED:
            raise Conflict(f"session {session_id} is {session.status.value}, not completed")

        updated = session.with_email(email)
        if updated is not session:
            await self._sessions.compare_and_swap(session_id, session.status, updated)

        _log_event("email_requested", session_id=session_id, email_recorded=updated is not session)
        self._request_delivery(session_id, email)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def validate_url(url: str) -> str:
    """Return *url* stripped, or raise :class:`ValidationError`."""
    url = (url or "").strip()
    if not url:
        raise ValidationError("URL is required")
    if len(url) > _MAX_URL_LENGTH:
        raise ValidationError(f"URL must be at most {_MAX_URL_LENGTH} characters")
    try:
        parts = urlsplit(url)
        host = parts.hostname
    except ValueError as exc:
        raise ValidationError("Invalid URL format") from exc
    if parts.scheme not in ("http", "https") or not host:
        raise ValidationError("URL must be an absolute http(s) URL")
    return url


def validate_email(email: str) -> str:
    """Return *email* stripped, or raise :class:`ValidationError`."""
    email = (email or "").strip()
    if not _EMAIL_RE.match(email) or len(email) > 254:
        raise ValidationError("Invalid email address")
    return email


def _short_error(message: str) -> str:
    return message[:_MAX_ERROR_LENGTH]


def _unchanged(session: Session, retry_after: float | None = None) -> AdvanceResult:
    return AdvanceResult(
        session_id=session.session_id,
        previous_status=session.status,
        status=session.status,
        changed=False,
        terminal=session.is_terminal,
        retry_after=None if session.is_terminal else retry_after,
    )


def _log_event(event: str, **fields: Any) -> None:
    logger.info(json.dumps({"event": event, **fields}, default=str))
