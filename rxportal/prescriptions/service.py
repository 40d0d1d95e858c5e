"""Store-backed prescription operations.

HTTP handlers stay thin: they resolve the session and caller, call one of the
functions below and translate the domain exceptions into responses.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from rxportal import digitalrx
from rxportal.db.models import (
    Patient,
    Pharmacy,
    Prescription,
    PrescriptionType,
    Provider,
)
from rxportal.metrics import refill_actions_total, status_updates_total
from rxportal.prescriptions.records import PrescriptionRecord, normalise_record
from rxportal.prescriptions.refills import number_refills
from rxportal.prescriptions.schedule import (
    ScheduledRefill,
    has_remaining_refills,
    refill_window,
    select_scheduled_refills,
    skip_refill_date,
)
from rxportal.prescriptions.status import advances, map_pharmacy_status
from rxportal.time_utils import ensure_utc

logger = structlog.get_logger(__name__)


class PrescriptionNotFoundError(Exception):
    """Raised when an original prescription cannot be found for an action."""


class RefillNotScheduledError(Exception):
    """Raised when skipping a prescription that has no upcoming refill."""


class SubmissionError(Exception):
    """Raised when a prescription cannot be submitted to the pharmacy."""

    def __init__(self, message: str, status_code: int = 400, details: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.details = details


@dataclass(frozen=True)
class RefillRow:
    record: PrescriptionRecord
    refill_number: int
    parent_submitted_at: Optional[datetime]


@dataclass(frozen=True)
class SubmissionResult:
    queue_id: str
    already_submitted: bool = False


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def _display_context(
    session: Session, rows: Sequence[Prescription]
) -> Tuple[Dict[str, str], Dict[str, Pharmacy]]:
    patient_ids = {row.patient_id for row in rows if row.patient_id}
    pharmacy_ids = {row.pharmacy_id for row in rows if row.pharmacy_id}
    names: Dict[str, str] = {}
    if patient_ids:
        for patient in session.execute(select(Patient).where(Patient.id.in_(patient_ids))).scalars():
            names[patient.id] = f"{patient.first_name or ''} {patient.last_name or ''}".strip()
    pharmacies: Dict[str, Pharmacy] = {}
    if pharmacy_ids:
        for pharmacy in session.execute(
            select(Pharmacy).where(Pharmacy.id.in_(pharmacy_ids))
        ).scalars():
            pharmacies[pharmacy.id] = pharmacy
    return names, pharmacies


def _to_records(session: Session, rows: Sequence[Prescription]) -> List[PrescriptionRecord]:
    names, pharmacies = _display_context(session, rows)
    records = []
    for row in rows:
        pharmacy = pharmacies.get(row.pharmacy_id or "")
        records.append(
            normalise_record(
                {
                    "id": row.id,
                    "parent_prescription_id": row.parent_prescription_id,
                    "prescription_type": row.prescription_type,
                    "status": row.status,
                    "submitted_at": row.submitted_at,
                    "next_refill_date": row.next_refill_date,
                    "refill_frequency_days": row.refill_frequency_days,
                    "refills": row.refills,
                    "total_refills_to_date": row.total_refills_to_date,
                    "queue_id": row.queue_id,
                    "tracking_number": row.tracking_number,
                    "medication": row.medication,
                    "dosage": row.dosage,
                    "patient_name": names.get(row.patient_id or ""),
                    "pharmacy_name": pharmacy.name if pharmacy else None,
                    "pharmacy_color": pharmacy.primary_color if pharmacy else None,
                }
            )
        )
    return records


def list_refills(session: Session, prescriber_id: str) -> List[RefillRow]:
    """Return the prescriber's refill rows, newest first, with refill numbers."""

    rows = (
        session.execute(
            select(Prescription)
            .where(
                Prescription.prescriber_id == prescriber_id,
                Prescription.prescription_type == PrescriptionType.REFILL.value,
            )
            .order_by(Prescription.submitted_at.desc())
        )
        .scalars()
        .all()
    )
    records = _to_records(session, rows)
    numbers = number_refills(records)

    parent_ids = {r.parent_prescription_id for r in records if r.parent_prescription_id}
    parent_submitted: Dict[str, datetime] = {}
    if parent_ids:
        for parent_id, submitted_at in session.execute(
            select(Prescription.id, Prescription.submitted_at).where(Prescription.id.in_(parent_ids))
        ):
            parent_submitted[parent_id] = ensure_utc(submitted_at) if submitted_at else None
    return [
        RefillRow(
            record=record,
            refill_number=numbers[record.id],
            parent_submitted_at=parent_submitted.get(record.parent_prescription_id or ""),
        )
        for record in records
    ]


def scheduled_refills(
    session: Session,
    prescriber_id: str,
    now: datetime,
    *,
    lookahead_days: int,
    tz: Optional[tzinfo] = None,
) -> Tuple[ScheduledRefill, ...]:
    """Return the prescriber's prescriptions due for a refill in the window."""

    window = refill_window(now, lookahead_days, tz)
    rows = (
        session.execute(
            select(Prescription)
            .where(
                Prescription.prescriber_id == prescriber_id,
                Prescription.prescription_type == PrescriptionType.PRESCRIPTION.value,
                Prescription.next_refill_date.is_not(None),
                Prescription.next_refill_date >= ensure_utc(window.start),
                Prescription.next_refill_date <= ensure_utc(window.end),
            )
            .order_by(Prescription.next_refill_date.asc())
        )
        .scalars()
        .all()
    )
    return select_scheduled_refills(_to_records(session, rows), now, lookahead_days, tz)


# ---------------------------------------------------------------------------
# Skip / cancel
# ---------------------------------------------------------------------------


def _load_original(
    session: Session, prescription_id: str, prescriber_id: Optional[str] = None
) -> Prescription:
    row = session.get(Prescription, prescription_id)
    if (
        row is None
        or row.prescription_type != PrescriptionType.PRESCRIPTION.value
        or (prescriber_id is not None and row.prescriber_id != prescriber_id)
    ):
        raise PrescriptionNotFoundError("Original prescription not found")
    return row


def skip_refill(
    session: Session, prescription_id: str, prescriber_id: Optional[str] = None
) -> Prescription:
    """Defer the next refill of ``prescription_id`` by one cadence period.

    When ``prescriber_id`` is given the prescription must belong to it.
    """

    row = _load_original(session, prescription_id, prescriber_id)
    if row.next_refill_date is None:
        raise RefillNotScheduledError("No refill is scheduled for this prescription")
    row.next_refill_date = skip_refill_date(ensure_utc(row.next_refill_date), row.refill_frequency_days)
    session.flush()
    refill_actions_total.labels(action="skip", outcome="ok").inc()
    logger.info(
        "refill_skipped",
        prescription_id=row.id,
        next_refill_date=row.next_refill_date.isoformat(),
        frequency_days=row.refill_frequency_days or 0,
    )
    return row


def cancel_all_refills(
    session: Session, prescription_id: str, prescriber_id: Optional[str] = None
) -> Prescription:
    """Stop all future refills for ``prescription_id``."""

    row = _load_original(session, prescription_id, prescriber_id)
    row.refills = row.total_refills_to_date or 0
    row.next_refill_date = None
    session.flush()
    refill_actions_total.labels(action="cancel_all", outcome="ok").inc()
    logger.info("refills_cancelled", prescription_id=row.id, refills=row.refills)
    return row


# ---------------------------------------------------------------------------
# Pharmacy status polling
# ---------------------------------------------------------------------------


def load_for_status_check(
    session: Session,
    *,
    prescription_ids: Optional[Sequence[str]] = None,
    prescriber_id: Optional[str] = None,
) -> List[Prescription]:
    """Return the rows to poll, narrowed by ids and/or owner."""

    if not prescription_ids and not prescriber_id:
        raise ValueError("prescription_ids or prescriber_id is required")
    query = select(Prescription)
    if prescription_ids:
        query = query.where(Prescription.id.in_(list(prescription_ids)))
    if prescriber_id:
        query = query.where(Prescription.prescriber_id == prescriber_id)
    return list(session.execute(query).scalars().all())


def _check_one(
    row_id: str,
    queue_id: Optional[str],
    backend: Optional[digitalrx.ResolvedBackend],
) -> Dict[str, Any]:
    if not queue_id:
        return {"prescription_id": row_id, "success": False, "error": "No queue_id available"}
    if backend is None:
        return {
            "prescription_id": row_id,
            "queue_id": queue_id,
            "success": False,
            "error": "Pharmacy backend not configured",
        }
    try:
        payload = digitalrx.fetch_status(backend, queue_id)
    except digitalrx.DigitalRxError as exc:
        logger.warning("status_check_failed", prescription_id=row_id, queue_id=queue_id, error=str(exc))
        return {"prescription_id": row_id, "queue_id": queue_id, "success": False, "error": str(exc)}
    return {"prescription_id": row_id, "queue_id": queue_id, "success": True, "status": payload}


async def refresh_pharmacy_statuses(
    session: Session, rows: Sequence[Prescription]
) -> List[Dict[str, Any]]:
    """Poll DigitalRx for every row and persist statuses that moved forward.

    Each pharmacy call runs in a worker thread; one failing call only marks its
    own result unsuccessful.
    """

    if not rows:
        return []
    backends = digitalrx.resolve_backends_batch(session, (row.pharmacy_id for row in rows))
    default = backends.get(digitalrx.DEFAULT_BACKEND_KEY)
    results = await asyncio.gather(
        *(
            asyncio.to_thread(
                _check_one, row.id, row.queue_id, backends.get(row.pharmacy_id or "", default)
            )
            for row in rows
        )
    )

    by_id = {row.id: row for row in rows}
    for result in results:
        row = by_id[result["prescription_id"]]
        if not result.get("success"):
            continue
        mapped = map_pharmacy_status(result["status"])
        candidate = mapped.status.value.lower()
        if advances(row.status, candidate):
            row.status = candidate
            status_updates_total.labels(status=candidate).inc()
        if mapped.tracking_number:
            row.tracking_number = mapped.tracking_number
        result["updated_status"] = row.status
    session.flush()
    logger.info(
        "status_batch_checked",
        total=len(results),
        succeeded=sum(1 for r in results if r.get("success")),
    )
    return list(results)


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------


def submit_to_pharmacy(
    session: Session,
    prescription_id: str,
    now: datetime,
    prescriber_id: Optional[str] = None,
) -> SubmissionResult:
    """Send a paid prescription to its pharmacy and record the queue id."""

    row = session.get(Prescription, prescription_id)
    if row is None or (prescriber_id is not None and row.prescriber_id != prescriber_id):
        raise SubmissionError("Prescription not found", status_code=404)
    provider = session.execute(
        select(Provider).where(Provider.user_id == row.prescriber_id)
    ).scalar_one_or_none()
    if provider is None:
        raise SubmissionError("Provider not found", status_code=404)
    if (row.status or "").lower() == "submitted" and row.queue_id:
        return SubmissionResult(queue_id=row.queue_id, already_submitted=True)
    if row.payment_status != "paid":
        raise SubmissionError("Payment not completed")

    backend = digitalrx.resolve_backend(session, row.pharmacy_id)
    if backend is None:
        raise SubmissionError("Pharmacy backend not configured")

    patient = session.get(Patient, row.patient_id) if row.patient_id else None
    payload = digitalrx.build_submission_payload(
        row, patient, provider, store_id=backend.store_id, now=now
    )
    try:
        queue_id = digitalrx.submit_prescription(backend, payload)
    except digitalrx.DigitalRxError as exc:
        raise SubmissionError(str(exc), status_code=exc.status_code or 502, details=exc.details) from exc

    row.queue_id = queue_id
    row.status = "submitted"
    row.order_progress = "pharmacy_processing"
    row.submitted_to_pharmacy_at = now
    session.flush()
    logger.info("prescription_submitted", prescription_id=row.id, queue_id=queue_id)
    return SubmissionResult(queue_id=queue_id)


# ---------------------------------------------------------------------------
# Refill engine
# ---------------------------------------------------------------------------

_CLONED_FIELDS = (
    "prescriber_id",
    "patient_id",
    "pharmacy_id",
    "medication",
    "dosage",
    "quantity",
    "sig",
    "refills",
)


def run_refill_check(session: Session, now: datetime) -> int:
    """Create refill rows for every prescription whose refill date has passed.

    Returns the number of refills created.
    """

    due = (
        session.execute(
            select(Prescription).where(
                Prescription.prescription_type == PrescriptionType.PRESCRIPTION.value,
                Prescription.next_refill_date.is_not(None),
                Prescription.next_refill_date <= ensure_utc(now),
            )
        )
        .scalars()
        .all()
    )
    processed = 0
    for row in due:
        record = normalise_record(row)
        if not has_remaining_refills(record):
            continue
        row.total_refills_to_date = record.total_refills_to_date + 1
        row.next_refill_date = skip_refill_date(ensure_utc(row.next_refill_date), row.refill_frequency_days)
        clone = Prescription(
            prescription_type=PrescriptionType.REFILL.value,
            parent_prescription_id=row.id,
            queue_id=None,
            status="pending_payment",
            payment_status="pending",
            submitted_at=now,
            **{name: getattr(row, name) for name in _CLONED_FIELDS},
        )
        session.add(clone)
        processed += 1
        logger.info(
            "refill_created",
            prescription_id=row.id,
            refill_number=row.total_refills_to_date,
            refills=row.refills,
        )
    session.flush()
    refill_actions_total.labels(action="engine", outcome="ok").inc(processed)
    return processed


__all__ = [
    "PrescriptionNotFoundError",
    "RefillNotScheduledError",
    "RefillRow",
    "SubmissionError",
    "SubmissionResult",
    "cancel_all_refills",
    "list_refills",
    "load_for_status_check",
    "refresh_pharmacy_statuses",
    "run_refill_check",
    "scheduled_refills",
    "skip_refill",
    "submit_to_pharmacy",
]
