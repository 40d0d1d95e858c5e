"""Async controllers that drive the refill and tag admin screens."""

from rxportal.client.api import ApiError, PortalApiClient
from rxportal.client.notifications import Notification, Notifier
from rxportal.client.refill_board import RefillBoard, StatusPoller
from rxportal.client.tag_list import TagListController

__all__ = [
    "ApiError",
    "Notification",
    "Notifier",
    "PortalApiClient",
    "RefillBoard",
    "StatusPoller",
    "TagListController",
]
