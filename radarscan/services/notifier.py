"""Email delivery of finished scan reports.

Delivery is **fire-and-forget** and fully independent of the session
lifecycle: the controller calls :meth:`Notifier.request_delivery` and moves
on.  A failed delivery is logged and counted but never changes a session.

* :class:`CeleryNotifier` — enqueues
  :func:`~radarscan.workers.email_worker.send_report_email_task`, which loads
  the artifact and sends it.  Celery retries failed sends.
* :class:`ResendEmailSender` — sends one message with the PDF attached via
  the Resend HTTP API (``POST settings.RESEND_API_URL``).

Usage::

    from radarscan.services.notifier import ResendEmailSender

    sender = ResendEmailSender()
    await sender.send_report(
        to="user@example.com",
        session_id=session_id,
        url="https://example.com",
        pdf_bytes=pdf,
    )
"""

from __future__ import annotations

import base64
import logging
from abc import ABC, abstractmethod
from typing import Any
from xml.sax.saxutils import escape

import httpx
from prometheus_client import Counter

from radarscan.config import settings

logger = logging.getLogger(__name__)

_HTTP_TIMEOUT = 30.0

email_delivery_errors_total = Counter(
    "radarscan_email_delivery_errors_total",
    "Total failed report email delivery attempts",
    ["reason"],  # http_error | network_error | not_configured | enqueue_error
)

#: HTTP status codes after which a send is worth retrying.
RETRYABLE_HTTP_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


class EmailDeliveryError(Exception):
    """A report email could not be sent.

    Attributes:
        retryable: ``True`` if a later attempt may succeed.
    """

    def __init__(self, message: str, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


def report_filename(session_id: str) -> str:
    """Return the attachment / download filename of a session's report."""
    return f"radar-scan-{session_id}.pdf"


class Notifier(ABC):
    """Abstract report delivery dispatcher."""

    @abstractmethod
    def request_delivery(self, session_id: str, email: str) -> None:
        """Ask for *session_id*'s report to be emailed to *email*.

        Must return promptly and must not raise on delivery problems.
        """


class CeleryNotifier(Notifier):
    """Dispatch report delivery to a Celery worker."""

    def request_delivery(self, session_id: str, email: str) -> None:
        from radarscan.workers.email_worker import send_report_email_task

        try:
            send_report_email_task.apply_async(kwargs={"session_id": session_id, "email": email})
        except Exception as exc:
            email_delivery_errors_total.labels(reason="enqueue_error").inc()
            logger.error("CeleryNotifier: could not enqueue delivery: session_id=%s error=%r", session_id, exc)
            return
        logger.info("CeleryNotifier: delivery enqueued: session_id=%s", session_id)


class ResendEmailSender:
    """Send report emails through the Resend HTTP API.

    Args:
        api_key: Resend API key.  Defaults to ``settings.RESEND_API_KEY``.
        api_url: Endpoint.  Defaults to ``settings.RESEND_API_URL``.
        sender: ``From`` address.  Defaults to ``settings.RESEND_FROM``.
        http_client: Optional shared :class:`httpx.AsyncClient`.  When
            ``None`` a new client is created for each send.
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_url: str | None = None,
        sender: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key or settings.RESEND_API_KEY
        self._api_url = api_url or settings.RESEND_API_URL
        self._sender = sender or settings.RESEND_FROM
        self._http_client = http_client

    async def send_report(
        self,
        *,
        to: str,
        session_id: str,
        url: str,
        pdf_bytes: bytes,
        result_url: str | None = None,
    ) -> str | None:
        """Send the report for *session_id* to *to*.

        Returns:
            The provider's message id, when it reports one.

        Raises:
            EmailDeliveryError: On any failure; ``retryable`` marks network
                errors and HTTP 408/429/5xx.
        """
        if not self._api_key:
            email_delivery_errors_total.labels(reason="not_configured").inc()
            raise EmailDeliveryError("email delivery is not configured")

        payload = _build_payload(
            sender=self._sender,
            to=to,
            session_id=session_id,
            url=url,
            pdf_bytes=pdf_bytes,
            result_url=result_url,
        )
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        try:
            if self._http_client is not None:
                response = await self._http_client.post(self._api_url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=_HTTP_TIMEOUT) as client:
                    response = await client.post(self._api_url, json=payload, headers=headers)
        except httpx.RequestError as exc:
            email_delivery_errors_total.labels(reason="network_error").inc()
            logger.warning("Report email network error: session_id=%s error=%r", session_id, exc)
            raise EmailDeliveryError(f"email provider unreachable: {type(exc).__name__}", retryable=True) from exc

        if response.status_code >= 400:
            email_delivery_errors_total.labels(reason="http_error").inc()
            logger.warning(
                "Report email rejected: session_id=%s status=%d body=%s",
                session_id,
                response.status_code,
                response.text[:200],
            )
            raise EmailDeliveryError(
                f"email provider returned HTTP {response.status_code}",
                retryable=response.status_code in RETRYABLE_HTTP_STATUSES,
            )

        message_id = None
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            message_id = body.get("id")
        logger.info("Report email sent: session_id=%s message_id=%s", session_id, message_id)
        return message_id


def _build_payload(
    *,
    sender: str,
    to: str,
    session_id: str,
    url: str,
    pdf_bytes: bytes,
    result_url: str | None,
) -> dict[str, Any]:
    status_link = f"{settings.APP_URL.rstrip('/')}/?session={session_id}" if settings.APP_URL else None
    lines = [
        "<p>Your RadarScan security report is ready.</p>",
        f"<p>Scanned URL: <strong>{escape(url)}</strong></p>",
        "<p>The full PDF report is attached to this email.</p>",
    ]
    if result_url:
        lines.append(f'<p><a href="{escape(result_url)}">View the scan on Cloudflare Radar</a></p>')
    if status_link:
        lines.append(f'<p><a href="{escape(status_link)}">Open in RadarScan</a></p>')
    return {
        "from": sender,
        "to": [to],
        "subject": f"RadarScan security report for {url[:100]}",
        "html": "\n".join(lines),
        "attachments": [
            {
                "filename": report_filename(session_id),
                "content": base64.b64encode(pdf_bytes).decode("ascii"),
            }
        ],
    }
