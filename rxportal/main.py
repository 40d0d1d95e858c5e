"""FastAPI application exposing the prescription, refill and tag APIs."""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Literal, Optional, Tuple

import structlog
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
from structlog.contextvars import bind_contextvars, unbind_contextvars

from rxportal import __version__, tags as tag_service, worker
from rxportal.auth import get_current_user, require_role
from rxportal.config import get_settings
from rxportal.db.models import Prescription
from rxportal.db.session import get_session, init_schema, ping
from rxportal.prescriptions import service
from rxportal.prescriptions.records import PrescriptionRecord
from rxportal.prescriptions.refills import filter_refills
from rxportal.prescriptions.schedule import filter_scheduled
from rxportal.prescriptions.status import format_status_label
from rxportal.time_utils import isoformat_utc, utc_now

load_dotenv()

logging.basicConfig(level=get_settings().log_level)

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Response envelope
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Details describing an error response payload."""

    code: int | str | None = None
    message: str
    details: Any | None = None

    model_config = {"extra": "allow"}


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    success: Literal[False] = False
    error: ErrorDetail


_ERROR_MESSAGE_KEYS: Tuple[str, ...] = ("message", "detail", "error", "msg")


def _build_error_response(payload: Any, status_code: int | None = None) -> ErrorResponse:
    """Normalize ``payload`` into the standard :class:`ErrorResponse` structure."""

    message = "An error occurred"
    details: Any | None = None
    if isinstance(payload, dict):
        details = payload.get("details")
        for key in _ERROR_MESSAGE_KEYS:
            if payload.get(key) not in (None, ""):
                message = str(payload[key])
                break
    elif isinstance(payload, list):
        details = payload
        rendered = [
            str(item.get("msg", item)) if isinstance(item, dict) else str(item)
            for item in payload
            if item not in (None, "")
        ]
        if rendered:
            message = "; ".join(rendered)
    elif payload not in (None, ""):
        message = str(payload)
    return ErrorResponse(error=ErrorDetail(code=status_code, message=message, details=details))


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

START_TIME = time.time()


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - exercised indirectly in integration
    logger.info("lifespan_startup", version=__version__)
    init_schema()
    worker.start_scheduler()
    try:
        yield
    finally:
        await worker.stop_scheduler()
        logger.info("lifespan_shutdown_complete", uptime=round(time.time() - START_TIME, 2))


app = FastAPI(title="RxPortal API", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def inject_request_id(request: Request, call_next):
    """Attach or propagate a request identifier for each request."""

    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    bind_contextvars(request_id=request_id, path=request.url.path, method=request.method)
    response = None
    try:
        response = await call_next(request)
        return response
    except Exception:
        logger.exception("request_failed")
        raise
    finally:
        if response is not None:
            response.headers["X-Request-Id"] = request_id
        unbind_contextvars("request_id", "path", "method")


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Convert ``HTTPException`` instances into the standard error envelope."""

    error_payload = _build_error_response(exc.detail, status_code=exc.status_code)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_payload.model_dump(),
        headers=dict(exc.headers or {}),
    )


@app.get("/health", tags=["system"])
async def health():
    """Liveness check with a best-effort database flag."""
    return {
        "status": "ok",
        "version": __version__,
        "uptime": round(time.time() - START_TIME, 2),
        "db": "ok" if ping() else "unavailable",
    }


@app.get("/metrics", tags=["system"])
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------


def _is_admin(user: Dict[str, Any]) -> bool:
    return user.get("role") == "admin"


def _record_payload(record: PrescriptionRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "prescription_type": record.prescription_type.value,
        "parent_prescription_id": record.parent_prescription_id,
        "status": record.status,
        "status_label": format_status_label(record.status),
        "queue_id": record.queue_id,
        "tracking_number": record.tracking_number,
        "medication": record.medication,
        "dosage": record.dosage,
        "patient_name": record.patient_name,
        "pharmacy_name": record.pharmacy_name,
        "pharmacy_color": record.pharmacy_color,
        "submitted_at": isoformat_utc(record.submitted_at),
        "next_refill_date": isoformat_utc(record.next_refill_date),
        "refill_frequency_days": record.refill_frequency_days,
        "refills": record.refills,
        "total_refills_to_date": record.total_refills_to_date,
    }


def _prescription_payload(row: Prescription) -> Dict[str, Any]:
    return {
        "id": row.id,
        "next_refill_date": isoformat_utc(row.next_refill_date),
        "refill_frequency_days": row.refill_frequency_days,
        "refills": row.refills,
        "total_refills_to_date": row.total_refills_to_date,
    }


# ---------------------------------------------------------------------------
# Prescriptions
# ---------------------------------------------------------------------------


class StatusBatchRequest(BaseModel):
    prescription_ids: Optional[List[str]] = None
    user_id: Optional[str] = None


@app.post("/api/prescriptions/status-batch", tags=["prescriptions"])
async def status_batch(
    body: StatusBatchRequest,
    user=Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """Refresh pharmacy statuses for a set of prescriptions."""
    if not body.prescription_ids and not body.user_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="prescription_ids or user_id is required",
        )
    if body.user_id and body.user_id != user["sub"] and not _is_admin(user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient privileges")
    owner = body.user_id or (None if _is_admin(user) else user["sub"])
    rows = service.load_for_status_check(
        session, prescription_ids=body.prescription_ids, prescriber_id=owner
    )
    statuses = await service.refresh_pharmacy_statuses(session, rows)
    return {"success": True, "statuses": statuses}


@app.post("/api/prescriptions/{prescription_id}/submit-to-pharmacy", tags=["prescriptions"])
def submit_prescription(
    prescription_id: str,
    user=Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """Submit a paid prescription to its DigitalRx pharmacy."""
    owner = None if _is_admin(user) else user["sub"]
    try:
        result = service.submit_to_pharmacy(session, prescription_id, utc_now(), prescriber_id=owner)
    except service.SubmissionError as exc:
        logger.warning(
            "pharmacy_submission_failed",
            prescription_id=prescription_id,
            error=str(exc),
            status_code=exc.status_code,
        )
        # Callers key on the flat ``error``/``details`` pair for this endpoint.
        content: Dict[str, Any] = {"success": False, "error": str(exc), "code": exc.status_code}
        if exc.details is not None:
            content["details"] = exc.details
        return JSONResponse(status_code=exc.status_code, content=content)
    return {
        "success": True,
        "queue_id": result.queue_id,
        "message": (
            "Prescription already submitted"
            if result.already_submitted
            else "Prescription submitted to pharmacy"
        ),
    }


# ---------------------------------------------------------------------------
# Refills
# ---------------------------------------------------------------------------


@app.get("/api/refills", tags=["refills"])
def list_refills(
    search: str = "",
    user=Depends(get_current_user),
    session: Session = Depends(get_session),
):
    rows = service.list_refills(session, user["sub"])
    visible = {record.id for record in filter_refills((row.record for row in rows), search)}
    refills = []
    for row in rows:
        if row.record.id not in visible:
            continue
        payload = _record_payload(row.record)
        payload["refill_number"] = row.refill_number
        payload["parent_submitted_at"] = isoformat_utc(row.parent_submitted_at)
        refills.append(payload)
    return {"success": True, "refills": refills}


@app.get("/api/refills/scheduled", tags=["refills"])
def list_scheduled_refills(
    search: str = "",
    user=Depends(get_current_user),
    session: Session = Depends(get_session),
):
    settings = get_settings()
    scheduled = service.scheduled_refills(
        session,
        user["sub"],
        utc_now(),
        lookahead_days=settings.refill_lookahead_days,
        tz=settings.timezone,
    )
    items = []
    for item in filter_scheduled(scheduled, search):
        payload = _record_payload(item.record)
        payload["day"] = item.day
        items.append(payload)
    return {"success": True, "scheduled": items}


def _refill_action(action, session: Session, prescription_id: str, user: Dict[str, Any]):
    owner = None if _is_admin(user) else user["sub"]
    try:
        return action(session, prescription_id, owner)
    except service.PrescriptionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except service.RefillNotScheduledError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


@app.post("/api/refills/{prescription_id}/skip", tags=["refills"])
def skip_refill(
    prescription_id: str,
    user=Depends(get_current_user),
    session: Session = Depends(get_session),
):
    row = _refill_action(service.skip_refill, session, prescription_id, user)
    return {"success": True, "prescription": _prescription_payload(row)}


@app.post("/api/refills/{prescription_id}/cancel", tags=["refills"])
def cancel_refills(
    prescription_id: str,
    user=Depends(get_current_user),
    session: Session = Depends(get_session),
):
    row = _refill_action(service.cancel_all_refills, session, prescription_id, user)
    return {"success": True, "prescription": _prescription_payload(row)}


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


class TagIn(BaseModel):
    name: str = Field("", description="Display name; trimmed and limited to 50 characters")


def _tag_errors(exc: Exception) -> HTTPException:
    if isinstance(exc, tag_service.TagNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


_TAG_ERRORS = (
    tag_service.TagNotFoundError,
    tag_service.TagValidationError,
    tag_service.DuplicateTagError,
)


@app.get("/api/admin/tags", tags=["admin"])
def admin_list_tags(
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1, le=100),
    search: str = "",
    user=Depends(require_role("admin")),
    session: Session = Depends(get_session),
):
    return tag_service.list_tags(
        session,
        page=page,
        limit=limit or get_settings().admin_page_size,
        search=search or None,
    )


@app.post("/api/admin/tags", tags=["admin"])
def admin_create_tag(
    body: TagIn,
    user=Depends(require_role("admin")),
    session: Session = Depends(get_session),
):
    try:
        tag = tag_service.create_tag(session, body.name)
    except _TAG_ERRORS as exc:
        raise _tag_errors(exc)
    return {
        "success": True,
        "tag": tag_service.serialize_tag(tag),
        "message": "Tag created successfully",
    }


@app.put("/api/admin/tags/{tag_id}", tags=["admin"])
def admin_update_tag(
    tag_id: str,
    body: TagIn,
    user=Depends(require_role("admin")),
    session: Session = Depends(get_session),
):
    try:
        tag = tag_service.update_tag(session, tag_id, body.name)
    except _TAG_ERRORS as exc:
        raise _tag_errors(exc)
    return {
        "success": True,
        "tag": tag_service.serialize_tag(tag),
        "message": "Tag updated successfully",
    }


@app.delete("/api/admin/tags/{tag_id}", tags=["admin"])
def admin_delete_tag(
    tag_id: str,
    user=Depends(require_role("admin")),
    session: Session = Depends(get_session),
):
    try:
        resources_updated = tag_service.delete_tag(session, tag_id)
    except tag_service.TagNotFoundError as exc:
        raise _tag_errors(exc)
    return {
        "success": True,
        "message": "Tag deleted successfully",
        "resourcesUpdated": resources_updated,
    }


@app.post("/api/admin/refill-check", tags=["admin"])
def admin_refill_check(
    user=Depends(require_role("admin")),
    session: Session = Depends(get_session),
):
    """Run the refill engine once."""
    processed = service.run_refill_check(session, utc_now())
    return {"success": True, "processed": processed}
