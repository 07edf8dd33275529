"""Session: the single stateful entity of a RadarScan scan request.

:class:`Session` is an immutable snapshot of one end-to-end scan request.  The
controller never mutates a session in place; it derives the next snapshot with
:meth:`Session.transition` (status changes) or :meth:`Session.with_retry`
(retry bookkeeping) and commits it through the session store's
compare-and-swap.

Usage::

    from radarscan.core.session import Session, SessionStatus

    session = Session.new(url="https://example.com", ttl_seconds=86_400)
    scanning = session.transition(SessionStatus.SCANNING, now, job_id="abc")
"""

from __future__ import annotations

import dataclasses
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum


class SessionStatus(str, Enum):
    """Lifecycle status of a scan session, in pipeline order."""

    QUEUED = "queued"
    SCANNING = "scanning"
    GENERATING = "generating"
    UPLOADING = "uploading"
    SENDING = "sending"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.EXPIRED}
)

#: Statuses in which ``artifact_key`` must be set.
ARTIFACT_STATUSES = frozenset(
    {SessionStatus.UPLOADING, SessionStatus.SENDING, SessionStatus.COMPLETED}
)

_ORDER = [
    SessionStatus.QUEUED,
    SessionStatus.SCANNING,
    SessionStatus.GENERATING,
    SessionStatus.UPLOADING,
    SessionStatus.SENDING,
    SessionStatus.COMPLETED,
]


class InvalidTransition(ValueError):
    """Raised when a status change would violate the lifecycle ordering."""


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class Provenance:
    """Write-once audit details about the submitter."""

    ip_address: str | None = None
    user_agent: str | None = None
    country: str | None = None


@dataclass(frozen=True)
class Session:
    """Immutable snapshot of a scan session.

    Attributes:
        session_id: Opaque unique identifier, never reused.
        url: Target URL of the scan.
        status: Current :class:`SessionStatus`.
        created_at: Creation time (UTC).
        updated_at: Time of the last status transition (UTC).
        expires_at: Hard deadline after which the session is not actionable.
        email: Optional report recipient, set at most once.
        job_id: Provider scan id, set once the submission succeeded.
        result_url: Provider's public result page for the scan.
        artifact_key: Report store key of the rendered PDF.
        error: Short failure detail, present only when ``status`` is ``failed``.
        ip_address: Submitter IP address (write-once).
        user_agent: Submitter user agent (write-once).
        country: Submitter country code (write-once).
        attempts: Consecutive transient failures of the current step.
        next_attempt_at: Earliest time the current step may be retried.
    """

    session_id: str
    url: str
    status: SessionStatus
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    email: str | None = None
    job_id: str | None = None
    result_url: str | None = None
    artifact_key: str | None = None
    error: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    country: str | None = None
    attempts: int = 0
    next_attempt_at: datetime | None = None

    @classmethod
    def new(
        cls,
        url: str,
        *,
        ttl_seconds: int,
        email: str | None = None,
        provenance: Provenance | None = None,
        now: datetime | None = None,
    ) -> Session:
        now = now or utcnow()
        provenance = provenance or Provenance()
        return cls(
            session_id=uuid.uuid4().hex,
            url=url,
            status=SessionStatus.QUEUED,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            email=email,
            ip_address=provenance.ip_address,
            user_agent=provenance.user_agent,
            country=provenance.country,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def is_past_deadline(self, now: datetime) -> bool:
        return now > self.expires_at

    def transition(
        self,
        status: SessionStatus,
        now: datetime,
        *,
        error: str | None = None,
        **changes: object,
    ) -> Session:
        """Return a copy moved to *status*, enforcing the lifecycle invariants.

        ``updated_at`` is refreshed and retry bookkeeping is reset.  ``error``
        is kept only for ``failed``; ``artifact_key`` is cleared outside the
        artifact-carrying statuses.

        Raises:
            InvalidTransition: If the session is terminal, or *status* is a
                backwards move, or ``failed`` is requested without an error.
        """
        if self.is_terminal:
            raise InvalidTransition(f"session {self.session_id} is already {self.status.value}")
        if status not in (SessionStatus.FAILED, SessionStatus.EXPIRED):
            if _ORDER.index(status) <= _ORDER.index(self.status):
                raise InvalidTransition(f"cannot move from {self.status.value} to {status.value}")
        if status is SessionStatus.FAILED and not error:
            raise InvalidTransition("a failed session requires an error message")

        updated = dataclasses.replace(
            self,
            status=status,
            updated_at=now,
            error=error if status is SessionStatus.FAILED else None,
            attempts=0,
            next_attempt_at=None,
            **changes,
        )
        if status not in ARTIFACT_STATUSES and updated.artifact_key is not None:
            updated = dataclasses.replace(updated, artifact_key=None)
        if status in ARTIFACT_STATUSES and updated.artifact_key is None:
            raise InvalidTransition(f"status {status.value} requires an artifact key")
        return updated

    def with_retry(self, next_attempt_at: datetime) -> Session:
        """Return a copy recording one more failed attempt of the current step."""
        return dataclasses.replace(
            self, attempts=self.attempts + 1, next_attempt_at=next_attempt_at
        )

    def without_retry(self) -> Session:
        """Return a copy with the retry bookkeeping cleared."""
        if not self.attempts and self.next_attempt_at is None:
            return self
        return dataclasses.replace(self, attempts=0, next_attempt_at=None)

    def with_email(self, email: str) -> Session:
        """Return a copy with *email* recorded, unless one is already set."""
        if self.email:
            return self
        return dataclasses.replace(self, email=email)
