"""Shared pytest configuration and fixtures for RadarScan tests.

Sets required environment variables before any radarscan module is imported,
so that ``radarscan.config.get_settings()`` succeeds in the test environment.
"""
from __future__ import annotations

import os

# Set required env vars before any radarscan module is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")
os.environ.setdefault("REPORTS_DIR", "/tmp/radarscan-test-reports")
os.environ.setdefault("RESEND_API_KEY", "re_test_key")
os.environ.setdefault("CLOUDFLARE_ACCOUNT_ID", "test-account")
os.environ.setdefault("CLOUDFLARE_API_TOKEN", "test-token")
