"""Transient user-facing notifications."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Deque, List

import structlog

logger = structlog.get_logger(__name__)

SUCCESS = "success"
ERROR = "error"


@dataclass(frozen=True)
class Notification:
    level: str
    message: str


class Notifier:
    """Keeps the most recent notifications and logs each one."""

    def __init__(self, limit: int = 50) -> None:
        self._items: Deque[Notification] = deque(maxlen=limit)

    def success(self, message: str) -> None:
        self._publish(Notification(SUCCESS, message))

    def error(self, message: str) -> None:
        self._publish(Notification(ERROR, message))

    def _publish(self, notification: Notification) -> None:
        self._items.append(notification)
        log = logger.warning if notification.level == ERROR else logger.info
        log("user_notification", level=notification.level, message=notification.message)

    @property
    def items(self) -> List[Notification]:
        return list(self._items)

    @property
    def last(self) -> Notification | None:
        return self._items[-1] if self._items else None

    def clear(self) -> None:
        self._items.clear()


__all__ = ["ERROR", "Notification", "Notifier", "SUCCESS"]
