"""Celery email worker — delivers finished reports by email.

:func:`send_report_email_task` is enqueued by
:class:`~radarscan.services.notifier.CeleryNotifier`.  It loads the session
and its PDF artifact and sends them with
:class:`~radarscan.services.notifier.ResendEmailSender`.

The task never modifies the session.  Retryable send failures (network
errors, HTTP 408/429/5xx) are retried up to :data:`_MAX_RETRIES` times with
exponential back-off (2 s, 4 s, 8 s); everything else is logged and dropped.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from radarscan.celery_app import celery_app
from radarscan.core.errors import NotFound, StoreError
from radarscan.core.session import SessionStatus
from radarscan.services.notifier import EmailDeliveryError, ResendEmailSender

logger = logging.getLogger(__name__)

_MAX_RETRIES: int = 3
_RETRY_BASE_SECONDS: int = 2


async def deliver_report(session_id: str, email: str) -> str | None:
    """Load *session_id*'s report and email it to *email*.

    Returns:
        The email provider's message id, or ``None``.

    Raises:
        NotFound: Unknown session, not completed, or artifact missing.
        StoreError: Session or report store failure.
        EmailDeliveryError: The send failed.
    """
    from radarscan.core.report_store import build_report_store
    from radarscan.core.session_store import SqlSessionStore
    from radarscan.db.session import engine

    try:
        session = await SqlSessionStore().get(session_id)
        if session.status is not SessionStatus.COMPLETED or not session.artifact_key:
            raise NotFound(f"session {session_id} has no report to deliver")
        pdf_bytes = await asyncio.to_thread(build_report_store().get, session.artifact_key)
        return await ResendEmailSender().send_report(
            to=email,
            session_id=session_id,
            url=session.url,
            pdf_bytes=pdf_bytes,
            result_url=session.result_url,
        )
    finally:
        await engine.dispose()


@celery_app.task(
    name="radarscan.workers.email_worker.send_report_email_task",
    bind=True,
    max_retries=_MAX_RETRIES,
    acks_late=True,
)
def send_report_email_task(self: Any, *, session_id: str, email: str) -> dict[str, Any]:
    """Celery task: email the report of *session_id* to *email*.

    Returns:
        A dict with ``session_id``, ``sent`` and ``message_id``.

    Raises:
        :exc:`celery.exceptions.Retry`: On a retryable failure (up to
            :data:`_MAX_RETRIES` retries).
    """
    try:
        message_id = asyncio.run(deliver_report(session_id, email))
    except NotFound as exc:
        logger.warning("send_report_email_task: nothing to send: session_id=%s reason=%s", session_id, exc)
        return {"session_id": session_id, "sent": False, "message_id": None}
    except (EmailDeliveryError, StoreError) as exc:
        retryable = isinstance(exc, StoreError) or exc.retryable
        if retryable and self.request.retries < _MAX_RETRIES:
            countdown = _RETRY_BASE_SECONDS * (2 ** self.request.retries)
            logger.warning(
                "send_report_email_task: transient error, retry %d/%d in %ds: session_id=%s error=%s",
                self.request.retries + 1,
                _MAX_RETRIES,
                countdown,
                session_id,
                exc,
            )
            raise self.retry(exc=exc, countdown=countdown)
        logger.error("send_report_email_task: delivery failed: session_id=%s error=%s", session_id, exc)
        return {"session_id": session_id, "sent": False, "message_id": None}

    return {"session_id": session_id, "sent": True, "message_id": message_id}
