"""Controller for the admin tag list with optimistic deletion."""

from __future__ import annotations

from typing import Any, Dict, FrozenSet, List, Optional

import structlog

from rxportal.client.api import ApiError, PortalApiClient
from rxportal.client.notifications import Notifier
from rxportal.pagination import (
    PaginationState,
    calculate_page_after_deletion,
    create_optimistic_deletion,
)

logger = structlog.get_logger(__name__)

DEFAULT_PAGE_SIZE = 10


def deletion_message(resources_updated: Any) -> str:
    try:
        count = int(resources_updated or 0)
    except (TypeError, ValueError):
        count = 0
    if count > 0:
        suffix = "" if count == 1 else "s"
        return f"Tag deleted successfully and removed from {count} resource{suffix}"
    return "Tag deleted successfully"


class TagListController:
    def __init__(
        self, api: PortalApiClient, notifier: Notifier, page_size: int = DEFAULT_PAGE_SIZE
    ) -> None:
        self.api = api
        self.notifier = notifier
        self.page_size = page_size
        self.tags: List[Dict[str, Any]] = []
        self.total_count = 0
        self.current_page = 1
        self.loading = False
        self.error: Optional[str] = None
        self.deleting_ids: FrozenSet[str] = frozenset()

    async def fetch(self, page: int = 1, search: Optional[str] = None) -> bool:
        self.loading = True
        self.error = None
        try:
            data = await self.api.list_tags(page, self.page_size, search)
        except ApiError as exc:
            logger.warning("tags_fetch_failed", status=exc.status, error=exc.message)
            self.error = exc.message
            self.notifier.error("Failed to fetch tags")
            return False
        finally:
            self.loading = False
        self.tags = list(data.get("tags") or [])
        self.total_count = int(data.get("total") or 0)
        self.current_page = page
        return True

    async def create(self, name: str) -> Optional[Dict[str, Any]]:
        try:
            data = await self.api.create_tag(name)
        except ApiError as exc:
            self.notifier.error(exc.message or "Failed to create tag")
            return None
        self.notifier.success(data.get("message") or "Tag created successfully")
        return data.get("tag")

    async def update(self, tag_id: str, name: str) -> Optional[Dict[str, Any]]:
        try:
            data = await self.api.update_tag(tag_id, name)
        except ApiError as exc:
            self.notifier.error(exc.message or "Failed to update tag")
            return None
        self.notifier.success(data.get("message") or "Tag updated successfully")
        return data.get("tag")

    async def delete(self, tag_id: str, search: Optional[str] = None) -> bool:
        """Remove a tag immediately and reconcile with the server.

        Returns ``False`` when a deletion of the same tag is already running or
        the server rejects it; the list, total and page are then restored.
        """

        if tag_id in self.deleting_ids:
            return False

        original_total = self.total_count
        original_page = self.current_page
        self.deleting_ids = self.deleting_ids | {tag_id}

        deletion = create_optimistic_deletion(self.tags, tag_id, lambda tag: tag.get("id"))
        self.tags = deletion.updated_items
        self.total_count = max(0, original_total - 1)
        remaining_on_page = len(deletion.updated_items)

        try:
            try:
                data = await self.api.delete_tag(tag_id)
            except ApiError as exc:
                self.tags = deletion.revert()
                self.total_count = original_total
                self.current_page = original_page
                self.notifier.error(exc.message or "Failed to delete tag")
                return False

            self.notifier.success(deletion_message(data.get("resourcesUpdated")))
            outcome = calculate_page_after_deletion(
                PaginationState(original_page, original_total, self.page_size),
                remaining_on_page,
            )
            if outcome.is_empty:
                self.current_page = 1
                self.tags = []
            elif outcome.should_fetch:
                await self.fetch(outcome.new_page, search)
            return True
        finally:
            self.deleting_ids = self.deleting_ids - {tag_id}


__all__ = ["DEFAULT_PAGE_SIZE", "TagListController", "deletion_message"]
