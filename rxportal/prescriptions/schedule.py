"""Scheduled-refill selection and the skip / cancel-all rules.

A prescription is due for a refill when its ``next_refill_date`` falls between
local midnight today and local midnight ``lookahead_days`` ahead (both bounds
inclusive) and it still has authorised refills left.  The date window is what
the store query narrows on; the remaining-refill check is applied afterwards
because a prescription can exhaust its refills before anything clears its
``next_refill_date``.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, tzinfo
from typing import Iterable, Optional, Tuple

from rxportal.prescriptions.records import PrescriptionRecord
from rxportal.time_utils import local_date, local_midnight

DEFAULT_LOOKAHEAD_DAYS = 2

TODAY = "Today"
TOMORROW = "Tomorrow"


@dataclass(frozen=True)
class RefillWindow:
    start: datetime
    end: datetime

    def contains(self, moment: Optional[datetime]) -> bool:
        return moment is not None and self.start <= moment <= self.end


@dataclass(frozen=True)
class ScheduledRefill:
    record: PrescriptionRecord
    day: str


def refill_window(
    now: datetime,
    lookahead_days: int = DEFAULT_LOOKAHEAD_DAYS,
    tz: Optional[tzinfo] = None,
) -> RefillWindow:
    """Return the window from today's local midnight to ``lookahead_days`` later."""

    return RefillWindow(
        start=local_midnight(now, 0, tz),
        end=local_midnight(now, max(1, lookahead_days), tz),
    )


def has_remaining_refills(record: PrescriptionRecord) -> bool:
    return record.total_refills_to_date < record.refills


def classify_refill_day(
    next_refill_date: datetime,
    now: datetime,
    tz: Optional[tzinfo] = None,
    lookahead_days: int = DEFAULT_LOOKAHEAD_DAYS,
) -> str:
    """Return ``Today`` or ``Tomorrow`` for a date inside the window.

    Only the calendar date is compared.  With a lookahead longer than two days
    dates beyond tomorrow are labelled with their ISO date.
    """

    zone = tz or now.tzinfo
    today = local_date(now, zone)
    due = local_date(next_refill_date, zone)
    if due == today:
        return TODAY
    if lookahead_days <= DEFAULT_LOOKAHEAD_DAYS or due == today + timedelta(days=1):
        return TOMORROW
    return due.isoformat()


def select_scheduled_refills(
    records: Iterable[PrescriptionRecord],
    now: datetime,
    lookahead_days: int = DEFAULT_LOOKAHEAD_DAYS,
    tz: Optional[tzinfo] = None,
) -> Tuple[ScheduledRefill, ...]:
    """Return eligible original prescriptions due in the window, soonest first."""

    window = refill_window(now, lookahead_days, tz)
    due = [
        record
        for record in records
        if not record.is_refill
        and window.contains(record.next_refill_date)
        and has_remaining_refills(record)
    ]
    due.sort(key=lambda record: record.next_refill_date)
    return tuple(
        ScheduledRefill(
            record=record,
            day=classify_refill_day(record.next_refill_date, now, tz, lookahead_days),
        )
        for record in due
    )


def filter_scheduled(
    scheduled: Iterable[ScheduledRefill], query: str = ""
) -> Tuple[ScheduledRefill, ...]:
    """Return scheduled refills whose patient, medication or id tail match ``query``."""

    needle = (query or "").strip().lower()
    if not needle:
        return tuple(scheduled)
    return tuple(
        item
        for item in scheduled
        if needle in item.record.patient_name.lower()
        or needle in item.record.medication.lower()
        or needle in item.record.id[-4:].lower()
    )


def skip_refill_date(next_refill_date: datetime, refill_frequency_days: Optional[int]) -> datetime:
    """Return ``next_refill_date`` deferred by one cadence period.

    A missing cadence counts as zero days, which leaves the date unchanged.
    """

    return next_refill_date + timedelta(days=refill_frequency_days or 0)


def apply_skip(record: PrescriptionRecord) -> PrescriptionRecord:
    """Return ``record`` with its next refill deferred by one period."""

    if record.next_refill_date is None:
        return record
    return replace(
        record,
        next_refill_date=skip_refill_date(record.next_refill_date, record.refill_frequency_days),
    )


def apply_cancel_all(record: PrescriptionRecord) -> PrescriptionRecord:
    """Return ``record`` with no refills left and nothing scheduled."""

    return replace(record, refills=record.total_refills_to_date, next_refill_date=None)


__all__ = [
    "DEFAULT_LOOKAHEAD_DAYS",
    "RefillWindow",
    "ScheduledRefill",
    "TODAY",
    "TOMORROW",
    "apply_cancel_all",
    "apply_skip",
    "classify_refill_day",
    "filter_scheduled",
    "has_remaining_refills",
    "refill_window",
    "select_scheduled_refills",
    "skip_refill_date",
]
