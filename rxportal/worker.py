"""Background jobs run alongside the API process."""

import asyncio
from typing import Awaitable, Callable, List

import structlog

from rxportal.config import get_settings
from rxportal.db.session import session_scope
from rxportal.prescriptions.service import run_refill_check
from rxportal.time_utils import utc_now

logger = structlog.get_logger(__name__)

# Track running background tasks so they can be cancelled on shutdown
_background_tasks: List[asyncio.Task] = []


def _refill_check_once() -> int:
    with session_scope() as session:
        return run_refill_check(session, utc_now())


async def process_due_refills() -> None:
    """Create refill rows for every prescription whose refill date has passed."""
    processed = await asyncio.to_thread(_refill_check_once)
    logger.info("refill_check_completed", processed=processed)


async def _run_periodic(interval: float, coro: Callable[[], Awaitable[None]]) -> None:
    """Run ``coro`` every ``interval`` seconds."""
    while True:
        try:
            await coro()
        except Exception:
            logger.exception("scheduled_task_failed", task=getattr(coro, "__name__", repr(coro)))
        await asyncio.sleep(interval)


def start_scheduler() -> None:
    """Start background jobs; a zero refill interval disables the refill check."""
    interval = get_settings().refill_check_interval
    if interval <= 0:
        logger.info("refill_check_disabled")
        return
    _background_tasks.append(asyncio.create_task(_run_periodic(interval, process_due_refills)))


async def stop_scheduler() -> None:
    """Cancel all running background tasks."""
    for task in _background_tasks:
        task.cancel()
    await asyncio.gather(*_background_tasks, return_exceptions=True)
    _background_tasks.clear()


__all__ = ["process_due_refills", "start_scheduler", "stop_scheduler"]
