"""Report stores — blob storage for rendered PDF report artifacts.

Keys are derived from the session id with :func:`report_key_for`, so that
re-uploading a session's artifact overwrites the previous object
deterministically instead of creating a duplicate.

Two backends are provided:

* :class:`LocalReportStore` — files under ``settings.REPORTS_DIR``.
* :class:`S3ReportStore` — any S3-compatible object store (AWS S3,
  Cloudflare R2, MinIO) via ``boto3``.

:func:`build_report_store` selects one according to
``settings.REPORTS_BACKEND``.

All methods are synchronous; the controller calls them from a worker thread
via :func:`asyncio.to_thread`.  Backend failures are raised as
:class:`~radarscan.core.errors.StoreError`; a missing key as
:class:`~radarscan.core.errors.NotFound`.

Usage::

    from radarscan.core.report_store import build_report_store, report_key_for

    store = build_report_store()
    key = store.put(report_key_for(session_id), pdf_bytes)
    pdf = store.get(key)
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from typing import Any

from radarscan.config import settings
from radarscan.core.errors import NotFound, StoreError

logger = logging.getLogger(__name__)

_KEY_PREFIX = "reports"
_PDF_CONTENT_TYPE = "application/pdf"


def report_key_for(session_id: str) -> str:
    """Return the report store key for *session_id*'s PDF artifact."""
    return f"{_KEY_PREFIX}/{session_id}.pdf"


class ReportStore(ABC):
    """Abstract report store contract."""

    @abstractmethod
    def put(self, key: str, data: bytes) -> str:
        """Store *data* under *key*, overwriting any previous object.

        Returns:
            The key the data was stored under.

        Raises:
            StoreError: If the write failed.
        """

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Return the bytes stored under *key*.

        Raises:
            NotFound: If nothing is stored under *key*.
            StoreError: If the read failed.
        """

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Return ``True`` if an object is stored under *key*."""


class LocalReportStore(ReportStore):
    """Store reports as files below a local directory.

    Args:
        root_dir: Storage root.  Defaults to ``settings.REPORTS_DIR``.
    """

    def __init__(self, root_dir: str | None = None) -> None:
        self._root_dir = root_dir or settings.REPORTS_DIR

    def put(self, key: str, data: bytes) -> str:
        path = self._file_path(key)
        tmp_path = f"{path}.tmp"
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(tmp_path, "wb") as fh:
                fh.write(data)
            # Atomic rename so readers never observe a partial artifact.
            os.replace(tmp_path, path)
        except OSError as exc:
            logger.error("LocalReportStore.put failed: key=%s path=%s error=%r", key, path, exc)
            raise StoreError(f"could not write report {key}") from exc
        logger.debug("LocalReportStore.put: key=%s path=%s bytes=%d", key, path, len(data))
        return key

    def get(self, key: str) -> bytes:
        path = self._file_path(key)
        try:
            with open(path, "rb") as fh:
                return fh.read()
        except FileNotFoundError as exc:
            raise NotFound(f"report {key} not found") from exc
        except OSError as exc:
            logger.error("LocalReportStore.get failed: key=%s path=%s error=%r", key, path, exc)
            raise StoreError(f"could not read report {key}") from exc

    def exists(self, key: str) -> bool:
        return os.path.isfile(self._file_path(key))

    def _file_path(self, key: str) -> str:
        """Return the filesystem path for *key*, confined to the storage root."""
        # Sanitise each key segment to prevent path traversal
        parts = [
            "".join(c for c in part if c.isalnum() or c in "-_.").lstrip(".")
            for part in key.split("/")
        ]
        parts = [p for p in parts if p]
        if not parts:
            raise StoreError(f"invalid report key {key!r}")
        return os.path.join(self._root_dir, *parts)


class S3ReportStore(ReportStore):
    """Store reports in an S3-compatible bucket.

    Args:
        bucket: Bucket name.  Defaults to ``settings.REPORTS_S3_BUCKET``.
        client: Optional pre-built ``boto3`` S3 client (used by tests).  When
            omitted a client is created from ``settings.REPORTS_S3_ENDPOINT_URL``
            and ``settings.REPORTS_S3_REGION``; credentials come from the
            standard AWS environment variables.
    """

    def __init__(self, bucket: str | None = None, client: Any | None = None) -> None:
        self._bucket = bucket or settings.REPORTS_S3_BUCKET
        if client is None:
            import boto3  # type: ignore[import-untyped]

            client = boto3.client(
                "s3",
                endpoint_url=settings.REPORTS_S3_ENDPOINT_URL,
                region_name=settings.REPORTS_S3_REGION,
            )
        self._client = client

    def put(self, key: str, data: bytes) -> str:
        from botocore.exceptions import BotoCoreError, ClientError  # type: ignore[import-untyped]

        try:
            self._client.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=data,
                ContentType=_PDF_CONTENT_TYPE,
            )
        except (BotoCoreError, ClientError) as exc:
            logger.error("S3ReportStore.put failed: bucket=%s key=%s error=%r", self._bucket, key, exc)
            raise StoreError(f"could not write report {key}") from exc
        logger.debug("S3ReportStore.put: bucket=%s key=%s bytes=%d", self._bucket, key, len(data))
        return key

    def get(self, key: str) -> bytes:
        from botocore.exceptions import BotoCoreError, ClientError  # type: ignore[import-untyped]

        try:
            response = self._client.get_object(Bucket=self._bucket, Key=key)
            return response["Body"].read()
        except ClientError as exc:
            if _is_missing(exc):
                raise NotFound(f"report {key} not found") from exc
            logger.error("S3ReportStore.get failed: bucket=%s key=%s error=%r", self._bucket, key, exc)
            raise StoreError(f"could not read report {key}") from exc
        except BotoCoreError as exc:
            logger.error("S3ReportStore.get failed: bucket=%s key=%s error=%r", self._bucket, key, exc)
            raise StoreError(f"could not read report {key}") from exc

    def exists(self, key: str) -> bool:
        from botocore.exceptions import BotoCoreError, ClientError  # type: ignore[import-untyped]

        try:
            self._client.head_object(Bucket=self._bucket, Key=key)
        except ClientError as exc:
            if _is_missing(exc):
                return False
            raise StoreError(f"could not stat report {key}") from exc
        except BotoCoreError as exc:
            raise StoreError(f"could not stat report {key}") from exc
        return True


def _is_missing(exc: Any) -> bool:
    code = str(exc.response.get("Error", {}).get("Code", ""))
    return code in ("404", "NoSuchKey", "NotFound")


def build_report_store() -> ReportStore:
    """Return the report store configured by ``settings.REPORTS_BACKEND``."""
    if settings.REPORTS_BACKEND == "s3":
        return S3ReportStore()
    return LocalReportStore()
