"""Normalised prescription records.

Rows arrive from the store or from API payloads with optional and
inconsistently populated fields.  :func:`normalise_record` is the single place
where missing numbers become ``0``, missing statuses become ``submitted`` and
missing queue identifiers become the ``"N/A"`` sentinel, so the lifecycle rules
downstream never need to guess.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional

from rxportal.db.models import PrescriptionType
from rxportal.time_utils import parse_datetime

QUEUE_ID_PENDING = "N/A"

_RECORD_KEYS = (
    "id",
    "parent_prescription_id",
    "prescription_type",
    "status",
    "submitted_at",
    "next_refill_date",
    "refill_frequency_days",
    "refills",
    "total_refills_to_date",
    "queue_id",
    "tracking_number",
    "medication",
    "dosage",
    "patient_name",
    "pharmacy_name",
    "pharmacy_color",
)


@dataclass(frozen=True)
class PrescriptionRecord:
    id: str
    prescription_type: PrescriptionType = PrescriptionType.PRESCRIPTION
    parent_prescription_id: Optional[str] = None
    status: str = "submitted"
    submitted_at: Optional[datetime] = None
    next_refill_date: Optional[datetime] = None
    refill_frequency_days: int = 0
    refills: int = 0
    total_refills_to_date: int = 0
    queue_id: str = QUEUE_ID_PENDING
    tracking_number: Optional[str] = None
    medication: str = ""
    dosage: Optional[str] = None
    patient_name: str = "Unknown Patient"
    pharmacy_name: Optional[str] = None
    pharmacy_color: Optional[str] = None

    @property
    def is_refill(self) -> bool:
        return self.prescription_type is PrescriptionType.REFILL

    @property
    def remaining_refills(self) -> int:
        return max(0, self.refills - self.total_refills_to_date)


def _as_int(value: Any) -> int:
    if value in (None, ""):
        return 0
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


def _as_type(value: Any, parent_id: Optional[str]) -> PrescriptionType:
    if isinstance(value, PrescriptionType):
        return value
    try:
        return PrescriptionType(str(value).strip().lower())
    except ValueError:
        return PrescriptionType.REFILL if parent_id else PrescriptionType.PRESCRIPTION


def _row_to_mapping(row: Mapping[str, Any] | Any) -> Mapping[str, Any]:
    if isinstance(row, Mapping):
        return row
    return {key: getattr(row, key, None) for key in _RECORD_KEYS}


def normalise_record(row: Mapping[str, Any] | Any) -> PrescriptionRecord:
    """Return a :class:`PrescriptionRecord` with defaults applied to ``row``."""

    data = _row_to_mapping(row)
    parent_id = data.get("parent_prescription_id") or None
    status = str(data.get("status") or "").strip() or "submitted"
    return PrescriptionRecord(
        id=str(data.get("id")),
        prescription_type=_as_type(data.get("prescription_type"), parent_id),
        parent_prescription_id=str(parent_id) if parent_id else None,
        status=status,
        submitted_at=parse_datetime(data.get("submitted_at")),
        next_refill_date=parse_datetime(data.get("next_refill_date")),
        refill_frequency_days=_as_int(data.get("refill_frequency_days")),
        refills=_as_int(data.get("refills")),
        total_refills_to_date=_as_int(data.get("total_refills_to_date")),
        queue_id=str(data.get("queue_id") or QUEUE_ID_PENDING),
        tracking_number=data.get("tracking_number") or None,
        medication=str(data.get("medication") or ""),
        dosage=data.get("dosage"),
        patient_name=str(data.get("patient_name") or "Unknown Patient"),
        pharmacy_name=data.get("pharmacy_name"),
        pharmacy_color=data.get("pharmacy_color"),
    )


__all__ = ["PrescriptionRecord", "QUEUE_ID_PENDING", "normalise_record"]
