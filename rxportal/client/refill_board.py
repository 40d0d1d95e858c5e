"""Controller for the refills screen.

The board owns two lists, the caller's refill rows and the prescriptions due
for a refill soon.  Both are tuples and are only ever replaced as a whole, so
a reader holding the previous value keeps a consistent snapshot while a poll
or an action swaps in the next one.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

import structlog

from rxportal.client.api import ApiError, PortalApiClient
from rxportal.client.notifications import Notifier
from rxportal.digitalrx import MISSING_QUEUE_ID_ERROR
from rxportal.prescriptions.records import PrescriptionRecord, normalise_record
from rxportal.prescriptions.schedule import ScheduledRefill
from rxportal.prescriptions.status import apply_status_batch

logger = structlog.get_logger(__name__)

DEFAULT_POLL_INTERVAL = 30.0

INVALID_PARAMETERS_MESSAGE = "Invalid parameters, check pharmacy integration details"
SUBMIT_FAILED_MESSAGE = "Failed to submit to pharmacy"

RefillListener = Callable[[Tuple[PrescriptionRecord, ...], Tuple[PrescriptionRecord, ...]], None]


def submission_error_message(payload: Any) -> str:
    """Return the notification text for a failed pharmacy submission."""

    if not isinstance(payload, Mapping):
        return SUBMIT_FAILED_MESSAGE
    error = payload.get("error")
    details = payload.get("details")
    detail_error = details.get("Error") if isinstance(details, Mapping) else None
    if (
        error == MISSING_QUEUE_ID_ERROR
        and isinstance(detail_error, str)
        and "Invalid Parameters" in detail_error
    ):
        return INVALID_PARAMETERS_MESSAGE
    if isinstance(error, str) and error:
        return error
    if isinstance(error, Mapping) and error.get("message"):
        return str(error["message"])
    return SUBMIT_FAILED_MESSAGE


class RefillBoard:
    def __init__(self, api: PortalApiClient, notifier: Notifier, user_id: str) -> None:
        self.api = api
        self.notifier = notifier
        self.user_id = user_id
        self.refills: Tuple[PrescriptionRecord, ...] = ()
        self.refill_numbers: Dict[str, int] = {}
        self.scheduled: Tuple[ScheduledRefill, ...] = ()
        self.search = ""
        self._listeners: List[RefillListener] = []

    # State ---------------------------------------------------------------

    def subscribe(self, listener: RefillListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: RefillListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _set_refills(self, refills: Tuple[PrescriptionRecord, ...]) -> None:
        previous, self.refills = self.refills, refills
        for listener in list(self._listeners):
            listener(previous, refills)

    # Loading -------------------------------------------------------------

    async def load_refills(self) -> bool:
        try:
            data = await self.api.list_refills(self.search)
        except ApiError as exc:
            logger.warning("refills_load_failed", status=exc.status, error=exc.message)
            self.notifier.error("Failed to load refills")
            return False
        rows = data.get("refills") or []
        self.refill_numbers = {
            str(row.get("id")): int(row.get("refill_number") or 1) for row in rows
        }
        self._set_refills(tuple(normalise_record(row) for row in rows))
        return True

    async def load_scheduled(self) -> bool:
        try:
            data = await self.api.list_scheduled(self.search)
        except ApiError as exc:
            logger.warning("scheduled_refills_load_failed", status=exc.status, error=exc.message)
            self.notifier.error("Failed to load scheduled refills")
            return False
        self.scheduled = tuple(
            ScheduledRefill(record=normalise_record(row), day=str(row.get("day") or ""))
            for row in data.get("scheduled") or []
        )
        return True

    async def load(self, search: Optional[str] = None) -> bool:
        if search is not None:
            self.search = search
        refills_ok, scheduled_ok = await asyncio.gather(self.load_refills(), self.load_scheduled())
        return refills_ok and scheduled_ok

    # Status polling ------------------------------------------------------

    async def fetch_status_updates(self) -> Optional[Dict[str, Any]]:
        """Return the batch status payload, or ``None`` when nothing is available.

        Failures are logged and swallowed; the last known statuses stay valid.
        """

        if not self.refills:
            return None
        try:
            return await self.api.status_batch(user_id=self.user_id)
        except ApiError as exc:
            logger.debug("status_poll_failed", status=exc.status, error=exc.message)
            return None

    def apply_status_updates(self, payload: Optional[Mapping[str, Any]]) -> bool:
        if not payload or not payload.get("success"):
            return False
        statuses = payload.get("statuses")
        if not isinstance(statuses, list):
            return False
        self._set_refills(apply_status_batch(self.refills, statuses))
        return True

    async def refresh_statuses(self) -> bool:
        return self.apply_status_updates(await self.fetch_status_updates())

    # Actions -------------------------------------------------------------

    async def _scheduled_action(self, call, prescription_id: str, failure: str, success: str) -> bool:
        try:
            await call(prescription_id)
        except ApiError as exc:
            if exc.status == 404:
                self.notifier.error("Original prescription not found")
            elif exc.status == 409:
                self.notifier.error(exc.message)
            else:
                self.notifier.error(failure)
            return False
        self.notifier.success(success)
        await self.load_scheduled()
        return True

    async def skip(self, prescription_id: str) -> bool:
        """Push the next refill back by one cadence period."""
        return await self._scheduled_action(
            self.api.skip_refill,
            prescription_id,
            "Failed to skip refill",
            "Refill skipped, next refill moved forward",
        )

    async def cancel_all(self, prescription_id: str) -> bool:
        """Stop every future refill of the prescription."""
        return await self._scheduled_action(
            self.api.cancel_refills,
            prescription_id,
            "Failed to cancel refills",
            "All future refills have been cancelled",
        )

    async def submit_to_pharmacy(self, prescription_id: str) -> Optional[str]:
        """Submit a refill and return its queue id, or ``None`` on failure."""
        try:
            data = await self.api.submit_to_pharmacy(prescription_id)
        except ApiError as exc:
            self.notifier.error(submission_error_message(exc.payload))
            return None
        if not data.get("success"):
            self.notifier.error(submission_error_message(data))
            return None
        self.notifier.success("Refill submitted to pharmacy successfully")
        await self.load_refills()
        return data.get("queue_id")


class StatusPoller:
    """Polls pharmacy statuses for a :class:`RefillBoard`.

    A poll runs every ``interval`` seconds and once more whenever the board's
    refill list goes from empty to non-empty.  At most one poll is in flight;
    ticks that arrive while one is running are skipped.  After :meth:`stop`
    no new polls start and results of a poll still in flight are dropped.
    """

    def __init__(self, board: RefillBoard, interval: float = DEFAULT_POLL_INTERVAL) -> None:
        self.board = board
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()
        self._in_flight = False
        self._stopped = True

    @property
    def running(self) -> bool:
        return not self._stopped

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def start(self) -> None:
        if not self._stopped:
            return
        self._stopped = False
        self.board.subscribe(self._on_refills_changed)
        self._task = asyncio.create_task(self._run())
        if self.board.refills:
            self._schedule_poll()

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self.board.unsubscribe(self._on_refills_changed)
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def poll_now(self) -> bool:
        """Run one poll unless stopped or another poll is in flight."""
        if self._stopped or self._in_flight:
            return False
        self._in_flight = True
        try:
            payload = await self.board.fetch_status_updates()
            if self._stopped:
                logger.debug("status_poll_result_dropped")
                return False
            return self.board.apply_status_updates(payload)
        finally:
            self._in_flight = False

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.poll_now()

    def _schedule_poll(self) -> None:
        task = asyncio.create_task(self.poll_now())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _on_refills_changed(
        self,
        previous: Tuple[PrescriptionRecord, ...],
        current: Tuple[PrescriptionRecord, ...],
    ) -> None:
        if not previous and current and not self._stopped:
            self._schedule_poll()


__all__ = [
    "INVALID_PARAMETERS_MESSAGE",
    "RefillBoard",
    "SUBMIT_FAILED_MESSAGE",
    "StatusPoller",
    "submission_error_message",
]
