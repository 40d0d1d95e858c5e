"""Pharmacy status mapping.

DigitalRx reports progress as a set of optional milestone fields rather than a
single status.  :func:`map_pharmacy_status` is the one place that turns those
fields into a display status; the precedence is most-advanced milestone first:

``DeliveredDate`` > ``PickupDate`` > ``ApprovedDate`` > ``PackDateTime`` >
``BillingStatus`` > (nothing) ``Submitted``.

The mapper trusts upstream data.  A payload carrying both ``DeliveredDate`` and
``ApprovedDate`` is ``Delivered``; no attempt is made to validate that earlier
milestones were reported.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from rxportal.prescriptions.records import PrescriptionRecord


class DisplayStatus(str, enum.Enum):
    SUBMITTED = "Submitted"
    BILLING = "Billing"
    APPROVED = "Approved"
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"


# Lifecycle order used when persisting polled statuses.  Unknown statuses such
# as ``pending_payment`` rank below every pharmacy milestone.
STATUS_PROGRESSION: Tuple[str, ...] = (
    "submitted",
    "billing",
    "approved",
    "processing",
    "shipped",
    "delivered",
)

_PAYLOAD_FIELDS = (
    "BillingStatus",
    "PackDateTime",
    "ApprovedDate",
    "PickupDate",
    "DeliveredDate",
    "TrackingNumber",
)
_FIELD_LOOKUP = {name.lower(): name for name in _PAYLOAD_FIELDS}


class PharmacyStatusPayload(BaseModel):
    """Optional milestone fields reported by the pharmacy system.

    Keys are matched case-insensitively and blank strings count as absent.
    """

    model_config = ConfigDict(extra="allow")

    BillingStatus: Optional[str] = None
    PackDateTime: Optional[str] = None
    ApprovedDate: Optional[str] = None
    PickupDate: Optional[str] = None
    DeliveredDate: Optional[str] = None
    TrackingNumber: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _normalise_keys(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        normalised: Dict[str, Any] = {}
        for key, value in data.items():
            name = _FIELD_LOOKUP.get(str(key).lower(), str(key))
            if name in _PAYLOAD_FIELDS:
                if value is None:
                    continue
                text = str(value).strip()
                if not text:
                    continue
                value = text
            normalised[name] = value
        return normalised


@dataclass(frozen=True)
class MappedStatus:
    status: DisplayStatus
    tracking_number: Optional[str] = None


def _coerce_payload(payload: Any) -> PharmacyStatusPayload:
    if isinstance(payload, PharmacyStatusPayload):
        return payload
    if not isinstance(payload, Mapping):
        return PharmacyStatusPayload()
    try:
        return PharmacyStatusPayload.model_validate(payload)
    except ValidationError:
        return PharmacyStatusPayload()


def map_pharmacy_status(payload: Any) -> MappedStatus:
    """Return the display status for a pharmacy status ``payload``.

    Total for any input: unrecognised or empty payloads map to ``Submitted``.
    Tracking numbers are only carried for shipped and delivered parcels.
    """

    data = _coerce_payload(payload)
    if data.DeliveredDate:
        return MappedStatus(DisplayStatus.DELIVERED, data.TrackingNumber)
    if data.PickupDate:
        return MappedStatus(DisplayStatus.SHIPPED, data.TrackingNumber)
    if data.ApprovedDate:
        return MappedStatus(DisplayStatus.APPROVED)
    if data.PackDateTime:
        return MappedStatus(DisplayStatus.PROCESSING)
    if data.BillingStatus:
        return MappedStatus(DisplayStatus.BILLING)
    return MappedStatus(DisplayStatus.SUBMITTED)


def normalise_status(value: Optional[str]) -> str:
    """Return the comparison form of a free-text status."""

    text = (value or "").strip().lower()
    return text or "submitted"


def status_rank(value: Optional[str]) -> int:
    try:
        return STATUS_PROGRESSION.index(normalise_status(value))
    except ValueError:
        return -1


def advances(current: Optional[str], candidate: Optional[str]) -> bool:
    """Return ``True`` if ``candidate`` is further along than ``current``."""

    return status_rank(candidate) > status_rank(current)


def format_status_label(value: Optional[str]) -> str:
    """Return a human readable label such as ``Pending Payment``."""

    trimmed = (value or "").strip()
    if not trimmed:
        return ""
    if trimmed.upper() == "N/A":
        return "N/A"
    words = re.sub(r"\s+", " ", re.sub(r"[_-]+", " ", trimmed)).lower().split(" ")
    return " ".join(word[:1].upper() + word[1:] for word in words if word)


def _find_result(results: Sequence[Any], prescription_id: str) -> Optional[Mapping[str, Any]]:
    for item in results:
        if isinstance(item, Mapping) and str(item.get("prescription_id")) == prescription_id:
            return item
    return None


def apply_status_batch(
    records: Iterable[PrescriptionRecord],
    results: Sequence[Any],
) -> Tuple[PrescriptionRecord, ...]:
    """Return new records with successful pharmacy results applied.

    A record without a matching successful result (or whose result carries no
    status payload) is passed through unchanged.  The input is never mutated.
    """

    updated = []
    for record in records:
        match = _find_result(results, record.id)
        if match and match.get("success") and match.get("status"):
            mapped = map_pharmacy_status(match["status"])
            changes: Dict[str, Any] = {"status": mapped.status.value}
            if mapped.tracking_number:
                changes["tracking_number"] = mapped.tracking_number
            record = replace(record, **changes)
        updated.append(record)
    return tuple(updated)


__all__ = [
    "DisplayStatus",
    "MappedStatus",
    "PharmacyStatusPayload",
    "STATUS_PROGRESSION",
    "advances",
    "apply_status_batch",
    "format_status_label",
    "map_pharmacy_status",
    "normalise_status",
    "status_rank",
]
