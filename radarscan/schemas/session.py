"""Pydantic schemas for the scan session API."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from radarscan.core.session import SessionStatus


class CreateScanRequest(BaseModel):
    """Request body of ``POST /api/scan``.

    Fields are validated by the controller so that malformed values are
    reported as ``400`` with a readable message.
    """

    url: str = Field(default="", description="Absolute http(s) URL to scan")
    email: str | None = Field(default=None, description="Optional report recipient")


class CreateScanResponse(BaseModel):
    session_id: str


class SessionStatusResponse(BaseModel):
    """Response body of ``GET /api/status/{session_id}``."""

    model_config = {"from_attributes": True}

    session_id: str
    status: SessionStatus
    error: str | None = None
    url: str
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    artifact_ready: bool


class EmailRequest(BaseModel):
    email: str = Field(default="", description="Recipient address")


class EmailAcceptedResponse(BaseModel):
    status: Literal["accepted"] = "accepted"
