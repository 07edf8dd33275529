"""Unit tests for radarscan/core/report_store.py.

Coverage:
* report_key_for is deterministic per session.
* LocalReportStore: put/get/exists round trip, overwrite, missing key,
  path traversal confinement, write failures -> StoreError.
* S3ReportStore: calls against a mocked boto3 client, NoSuchKey -> NotFound,
  other client errors -> StoreError.
* build_report_store honours REPORTS_BACKEND.
"""
from __future__ import annotations

import io
import os
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from radarscan.core.errors import NotFound, StoreError
from radarscan.core.report_store import (
    LocalReportStore,
    S3ReportStore,
    build_report_store,
    report_key_for,
)


def test_report_key_for() -> None:
    assert report_key_for("abc123") == "reports/abc123.pdf"
    assert report_key_for("abc123") == report_key_for("abc123")


# ---------------------------------------------------------------------------
# LocalReportStore
# ---------------------------------------------------------------------------


class TestLocalReportStore:
    def test_round_trip(self, tmp_path) -> None:
        store = LocalReportStore(root_dir=str(tmp_path))
        key = store.put("reports/s1.pdf", b"%PDF-1.4 one")
        assert key == "reports/s1.pdf"
        assert store.exists(key)
        assert store.get(key) == b"%PDF-1.4 one"
        assert (tmp_path / "reports" / "s1.pdf").read_bytes() == b"%PDF-1.4 one"

    def test_overwrite_is_deterministic(self, tmp_path) -> None:
        store = LocalReportStore(root_dir=str(tmp_path))
        store.put("reports/s1.pdf", b"first")
        store.put("reports/s1.pdf", b"second")
        assert store.get("reports/s1.pdf") == b"second"
        assert os.listdir(tmp_path / "reports") == ["s1.pdf"]

    def test_missing_key(self, tmp_path) -> None:
        store = LocalReportStore(root_dir=str(tmp_path))
        assert not store.exists("reports/nope.pdf")
        with pytest.raises(NotFound):
            store.get("reports/nope.pdf")

    def test_key_cannot_escape_root(self, tmp_path) -> None:
        root = tmp_path / "root"
        store = LocalReportStore(root_dir=str(root))
        store.put("../../etc/passwd", b"x")
        assert not (tmp_path / "etc").exists()
        assert (root / "etc" / "passwd").exists()

    def test_empty_key_rejected(self, tmp_path) -> None:
        store = LocalReportStore(root_dir=str(tmp_path))
        with pytest.raises(StoreError):
            store.put("../..", b"x")

    def test_write_failure(self, tmp_path) -> None:
        blocker = tmp_path / "blocked"
        blocker.write_bytes(b"a file where a directory should be")
        store = LocalReportStore(root_dir=str(blocker))
        with pytest.raises(StoreError):
            store.put("reports/s1.pdf", b"data")


# ---------------------------------------------------------------------------
# S3ReportStore
# ---------------------------------------------------------------------------


def _client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class TestS3ReportStore:
    def test_put(self) -> None:
        client = MagicMock()
        store = S3ReportStore(bucket="reports-bucket", client=client)
        assert store.put("reports/s1.pdf", b"%PDF") == "reports/s1.pdf"
        client.put_object.assert_called_once_with(
            Bucket="reports-bucket",
            Key="reports/s1.pdf",
            Body=b"%PDF",
            ContentType="application/pdf",
        )

    def test_get(self) -> None:
        client = MagicMock()
        client.get_object.return_value = {"Body": io.BytesIO(b"%PDF-data")}
        store = S3ReportStore(bucket="reports-bucket", client=client)
        assert store.get("reports/s1.pdf") == b"%PDF-data"

    def test_get_missing(self) -> None:
        client = MagicMock()
        client.get_object.side_effect = _client_error("NoSuchKey", "GetObject")
        store = S3ReportStore(bucket="reports-bucket", client=client)
        with pytest.raises(NotFound):
            store.get("reports/s1.pdf")

    def test_get_access_denied(self) -> None:
        client = MagicMock()
        client.get_object.side_effect = _client_error("AccessDenied", "GetObject")
        store = S3ReportStore(bucket="reports-bucket", client=client)
        with pytest.raises(StoreError):
            store.get("reports/s1.pdf")

    def test_put_failure(self) -> None:
        client = MagicMock()
        client.put_object.side_effect = EndpointConnectionError(endpoint_url="https://r2.example")
        store = S3ReportStore(bucket="reports-bucket", client=client)
        with pytest.raises(StoreError):
            store.put("reports/s1.pdf", b"%PDF")

    def test_exists(self) -> None:
        client = MagicMock()
        store = S3ReportStore(bucket="reports-bucket", client=client)
        assert store.exists("reports/s1.pdf") is True
        client.head_object.side_effect = _client_error("404", "HeadObject")
        assert store.exists("reports/s1.pdf") is False


def test_build_report_store_selects_backend() -> None:
    with patch("radarscan.core.report_store.settings") as mock_settings:
        mock_settings.REPORTS_BACKEND = "local"
        mock_settings.REPORTS_DIR = "/tmp/radarscan-test"
        assert isinstance(build_report_store(), LocalReportStore)

        mock_settings.REPORTS_BACKEND = "s3"
        mock_settings.REPORTS_S3_BUCKET = "bucket"
        with patch("boto3.client") as mock_boto:
            store = build_report_store()
        assert isinstance(store, S3ReportStore)
        mock_boto.assert_called_once()
