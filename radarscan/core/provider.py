"""Remote scan provider client for the Cloudflare Radar URL Scanner.

:class:`RadarClient` wraps the two provider operations the controller needs:

* :meth:`~ScanProvider.submit` — submit a URL and return the provider's job id
  (``POST /accounts/{account_id}/urlscanner/v2/scan``).
* :meth:`~ScanProvider.fetch_result` — fetch the finished report, or ``None``
  while the scan is still running (``GET .../urlscanner/v2/result/{job_id}``,
  which answers ``404`` until the report is ready).

The client performs **no retries**.  Retry and back-off decisions live in the
controller so that the policy stays in one place.  Failures are classified
into the provider error taxonomy:

* :class:`~radarscan.core.errors.ProviderUnavailable` — network failure,
  timeout, or HTTP 408/429/5xx.  Transient.
* :class:`~radarscan.core.errors.ProviderRejected` — the submission was
  refused with any other 4xx (invalid or blocked URL, bad credentials).
* :class:`~radarscan.core.errors.ProviderError` — the result fetch was refused
  with a non-404 4xx, or the report could not be parsed.

Usage::

    from radarscan.core.provider import RadarClient

    async with httpx.AsyncClient() as http:
        client = RadarClient(http_client=http)
        submission = await client.submit("https://example.com")
        result = await client.fetch_result(submission.job_id)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx
from pydantic import ValidationError as SchemaValidationError

from radarscan.config import settings
from radarscan.core.errors import ProviderError, ProviderRejected, ProviderUnavailable
from radarscan.schemas.scan_result import ScanResult, Submission

logger = logging.getLogger(__name__)

#: HTTP status codes that indicate a transient provider condition.
_RETRYABLE_HTTP_STATUSES = frozenset({408, 429, 500, 502, 503, 504})

_MAX_MESSAGE_LEN = 200


class ScanProvider(ABC):
    """Abstract remote scan provider contract."""

    @abstractmethod
    async def submit(self, url: str) -> Submission:
        """Submit *url* for scanning.

        Raises:
            ProviderUnavailable: Transient provider or network failure.
            ProviderRejected: The provider refused the submission.
        """

    @abstractmethod
    async def fetch_result(self, job_id: str) -> ScanResult | None:
        """Return the finished report for *job_id*, or ``None`` if still pending.

        Raises:
            ProviderUnavailable: Transient provider or network failure.
            ProviderError: The provider reported an error or an unusable result.
        """


class RadarClient(ScanProvider):
    """Cloudflare Radar URL Scanner client.

    Args:
        account_id: Cloudflare account id.  Defaults to
            ``settings.CLOUDFLARE_ACCOUNT_ID``.
        api_token: API token.  Defaults to ``settings.CLOUDFLARE_API_TOKEN``.
        base_url: API base URL.  Defaults to ``settings.RADAR_API_BASE_URL``.
        visibility: Requested scan visibility.  Defaults to
            ``settings.RADAR_SCAN_VISIBILITY``.
        timeout: Per-request timeout in seconds.  Defaults to
            ``settings.PROVIDER_TIMEOUT_SECONDS``.
        http_client: Optional shared :class:`httpx.AsyncClient`.  When
            ``None`` a new client is created for each request.
    """

    def __init__(
        self,
        account_id: str | None = None,
        api_token: str | None = None,
        base_url: str | None = None,
        visibility: str | None = None,
        timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._account_id = account_id or settings.CLOUDFLARE_ACCOUNT_ID
        self._api_token = api_token or settings.CLOUDFLARE_API_TOKEN
        self._base_url = (base_url or settings.RADAR_API_BASE_URL).rstrip("/")
        self._visibility = visibility or settings.RADAR_SCAN_VISIBILITY
        self._timeout = timeout if timeout is not None else settings.PROVIDER_TIMEOUT_SECONDS
        self._http_client = http_client

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def submit(self, url: str) -> Submission:
        response = await self._request(
            "POST",
            f"{self._scanner_url()}/scan",
            json={"url": url, "visibility": self._visibility},
        )
        if response.status_code >= 400:
            message = _error_message(response)
            logger.warning(
                "RadarClient.submit rejected: status=%d url=%s message=%s",
                response.status_code,
                url,
                message,
            )
            raise ProviderRejected(message)

        try:
            submission = Submission.model_validate(response.json())
        except (ValueError, SchemaValidationError) as exc:
            raise ProviderRejected("provider returned an unreadable submission response") from exc

        logger.info(
            "RadarClient.submit: job_id=%s url=%s visibility=%s",
            submission.job_id,
            url,
            submission.visibility,
        )
        return submission

    async def fetch_result(self, job_id: str) -> ScanResult | None:
        response = await self._request("GET", f"{self._scanner_url()}/result/{job_id}")
        if response.status_code == 404:
            logger.debug("RadarClient.fetch_result: job_id=%s pending", job_id)
            return None
        if response.status_code >= 400:
            message = _error_message(response)
            logger.warning(
                "RadarClient.fetch_result failed: status=%d job_id=%s message=%s",
                response.status_code,
                job_id,
                message,
            )
            raise ProviderError(message)

        try:
            return ScanResult.model_validate(_unwrap_result(response.json()))
        except (ValueError, SchemaValidationError) as exc:
            raise ProviderError("provider returned a malformed scan result") from exc

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _scanner_url(self) -> str:
        return f"{self._base_url}/accounts/{self._account_id}/urlscanner/v2"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_token}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send one request, mapping transport failures to ProviderUnavailable.

        Non-2xx responses other than retryable statuses are returned to the
        caller for classification.
        """
        try:
            if self._http_client is not None:
                response = await self._http_client.request(
                    method, url, headers=self._headers(), timeout=self._timeout, **kwargs
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.TimeoutException as exc:
            raise ProviderUnavailable("scan provider timed out") from exc
        except httpx.RequestError as exc:
            raise ProviderUnavailable(f"scan provider unreachable: {type(exc).__name__}") from exc

        if response.status_code in _RETRYABLE_HTTP_STATUSES:
            logger.warning(
                "RadarClient: transient provider status=%d method=%s url=%s",
                response.status_code,
                method,
                url,
            )
            raise ProviderUnavailable(f"scan provider returned HTTP {response.status_code}")
        return response


def _unwrap_result(body: Any) -> Any:
    """Return the report object from a result response body.

    The v2 API returns the report directly; older envelopes wrap it as
    ``{"result": {"scan": {...}}}`` or ``{"result": {...}}``.
    """
    if isinstance(body, dict) and "task" not in body and isinstance(body.get("result"), dict):
        body = body["result"]
        if "task" not in body and isinstance(body.get("scan"), dict):
            body = body["scan"]
    return body


def _error_message(response: httpx.Response) -> str:
    """Extract a short, human-readable error message from a provider response."""
    message = ""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        errors = body.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            message = str(errors[0].get("message") or "")
        if not message:
            message = str(body.get("message") or body.get("description") or "")
    if not message:
        message = f"HTTP {response.status_code}"
    return message[:_MAX_MESSAGE_LEN]
