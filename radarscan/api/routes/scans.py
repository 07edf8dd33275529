"""API routes for scan sessions.

Endpoints
---------
POST /api/scan
    Create a scan session for a URL (optionally with a report email) and
    schedule its first lifecycle step.  Returns ``201 {"session_id": ...}``.

GET  /api/status/{session_id}
    Read-only session view: status, error, timestamps and whether the report
    can be downloaded.

GET  /api/download/{session_id}
    The PDF report of a completed session.  ``404`` until the report exists,
    ``410`` once the session has expired.

POST /api/email/{session_id}
    Email the report of a completed session.  Returns ``202`` immediately;
    delivery happens in the background and never changes the session.

Error bodies use FastAPI's ``{"detail": "..."}`` shape.
"""

from __future__ import annotations

import functools
import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response
from starlette.requests import Request

from radarscan.api.provenance import request_provenance
from radarscan.core.controller import SessionController
from radarscan.core.errors import Conflict, Expired, NotFound, RadarScanError, StoreError, ValidationError
from radarscan.schemas.session import (
    CreateScanRequest,
    CreateScanResponse,
    EmailAcceptedResponse,
    EmailRequest,
    SessionStatusResponse,
)
from radarscan.services.notifier import report_filename
from radarscan.workers.session_worker import CeleryScheduler, Scheduler, build_controller

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["scans"])

_STATUS_CODES: tuple[tuple[type[RadarScanError], int], ...] = (
    (ValidationError, 400),
    (NotFound, 404),
    (Conflict, 409),
    (Expired, 410),
    (StoreError, 503),
)


@functools.lru_cache(maxsize=1)
def get_controller() -> SessionController:
    """Return the process-wide controller.  Overridden in tests."""
    return build_controller()


@functools.lru_cache(maxsize=1)
def get_scheduler() -> Scheduler:
    """Return the process-wide scheduler.  Overridden in tests."""
    return CeleryScheduler()


def _http_error(exc: RadarScanError) -> HTTPException:
    for error_type, status_code in _STATUS_CODES:
        if isinstance(exc, error_type):
            detail = "Storage temporarily unavailable" if status_code == 503 else str(exc)
            return HTTPException(status_code=status_code, detail=detail)
    return HTTPException(status_code=500, detail="Internal error")


@router.post("/scan", status_code=201, response_model=CreateScanResponse)
async def create_scan(
    body: CreateScanRequest,
    request: Request,
    controller: SessionController = Depends(get_controller),
    scheduler: Scheduler = Depends(get_scheduler),
) -> CreateScanResponse:
    """Create a scan session and schedule its first step."""
    try:
        session_id = await controller.create_session(
            body.url,
            email=body.email,
            provenance=request_provenance(request),
        )
    except RadarScanError as exc:
        raise _http_error(exc) from exc

    request.state.session_id = session_id
    try:
        scheduler.schedule_advance(session_id, 0)
    except Exception as exc:
        # The periodic sweep picks up sessions whose first step was not enqueued.
        logger.error("create_scan: could not schedule first step: session_id=%s error=%r", session_id, exc)

    return CreateScanResponse(session_id=session_id)


@router.get("/status/{session_id}", response_model=SessionStatusResponse)
async def get_status(
    session_id: str,
    request: Request,
    controller: SessionController = Depends(get_controller),
) -> SessionStatusResponse:
    """Return the current view of a scan session."""
    request.state.session_id = session_id
    try:
        view = await controller.get_status(session_id)
    except RadarScanError as exc:
        raise _http_error(exc) from exc
    return SessionStatusResponse.model_validate(view)


@router.get("/download/{session_id}")
async def download_report(
    session_id: str,
    request: Request,
    controller: SessionController = Depends(get_controller),
) -> Response:
    """Return the PDF report of a completed session."""
    request.state.session_id = session_id
    try:
        pdf_bytes = await controller.get_artifact(session_id)
    except RadarScanError as exc:
        raise _http_error(exc) from exc
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{report_filename(session_id)}"'},
    )


@router.post("/email/{session_id}", status_code=202, response_model=EmailAcceptedResponse)
async def request_email(
    session_id: str,
    body: EmailRequest,
    request: Request,
    controller: SessionController = Depends(get_controller),
) -> EmailAcceptedResponse:
    """Request delivery of a completed session's report by email."""
    request.state.session_id = session_id
    try:
        await controller.record_email_request(session_id, body.email)
    except RadarScanError as exc:
        raise _http_error(exc) from exc
    return EmailAcceptedResponse()
