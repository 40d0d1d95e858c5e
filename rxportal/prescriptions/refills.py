"""Refill numbering and list filtering."""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Sequence, Tuple

from rxportal.prescriptions.records import PrescriptionRecord
from rxportal.prescriptions.status import normalise_status

_EARLIEST = datetime.min.replace(tzinfo=timezone.utc)


def _submitted_key(record: PrescriptionRecord) -> datetime:
    return record.submitted_at or _EARLIEST


def group_refills_by_parent(refills: Iterable[PrescriptionRecord]) -> Dict[str, List[str]]:
    """Return refill ids per parent, oldest submission first.

    Equal ``submitted_at`` values keep their input order (``sorted`` is stable),
    which matters because the store records timestamps at second granularity.
    """

    grouped: Dict[str, List[str]] = defaultdict(list)
    for record in sorted(refills, key=_submitted_key):
        if record.parent_prescription_id:
            grouped[record.parent_prescription_id].append(record.id)
    return dict(grouped)


def number_refills(refills: Sequence[PrescriptionRecord]) -> Dict[str, int]:
    """Return the 1-based refill number of every row keyed by id.

    Rows without a parent are numbered ``1``.
    """

    grouped = group_refills_by_parent(refills)
    numbers: Dict[str, int] = {}
    for record in refills:
        siblings = grouped.get(record.parent_prescription_id or "")
        if siblings and record.id in siblings:
            numbers[record.id] = siblings.index(record.id) + 1
        else:
            numbers[record.id] = 1
    return numbers


def filter_refills(
    refills: Iterable[PrescriptionRecord], query: str = ""
) -> Tuple[PrescriptionRecord, ...]:
    """Return in-progress refills matching ``query``.

    Delivered refills are always hidden.  The query matches the patient name,
    the medication or the last four characters of the parent prescription id.
    """

    needle = (query or "").strip().lower()
    visible = []
    for record in refills:
        if normalise_status(record.status) == "delivered":
            continue
        if needle:
            parent_ref = (record.parent_prescription_id or "")[-4:].lower()
            if not (
                needle in record.patient_name.lower()
                or needle in record.medication.lower()
                or (parent_ref and needle in parent_ref)
            ):
                continue
        visible.append(record)
    return tuple(visible)


__all__ = ["filter_refills", "group_refills_by_parent", "number_refills"]
