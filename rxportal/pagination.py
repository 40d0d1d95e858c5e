"""Pagination bookkeeping for optimistic deletes from a server-paged list."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable, Generic, Hashable, List, Sequence, Tuple, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class PaginationState:
    current_page: int
    total_count: int
    page_size: int


@dataclass(frozen=True)
class PageAfterDeletion:
    new_page: int
    should_fetch: bool
    is_empty: bool


def total_pages(total_count: int, page_size: int) -> int:
    if page_size <= 0:
        return 0
    return math.ceil(max(0, total_count) / page_size)


def calculate_page_after_deletion(
    state: PaginationState, items_remaining_on_page: int
) -> PageAfterDeletion:
    """Return the page to show once one item has been deleted.

    ``state`` describes the list *before* the deletion and
    ``items_remaining_on_page`` is the local count after the item was removed.
    Rules are evaluated in order and the first match wins.
    """

    new_total = max(0, state.total_count - 1)
    new_pages = total_pages(new_total, state.page_size)

    if new_total == 0:
        return PageAfterDeletion(new_page=1, should_fetch=False, is_empty=True)
    if state.current_page > new_pages:
        return PageAfterDeletion(new_page=max(1, new_pages), should_fetch=True, is_empty=False)
    if items_remaining_on_page == 0 and state.current_page > 1:
        return PageAfterDeletion(
            new_page=max(1, state.current_page - 1), should_fetch=True, is_empty=False
        )
    return PageAfterDeletion(new_page=state.current_page, should_fetch=True, is_empty=False)


class OptimisticDeletion(Generic[T]):
    """Result of removing one item ahead of the remote delete.

    ``updated_items`` is a fresh list; ``revert()`` returns a copy of the
    original snapshot so neither side can alias the other.
    """

    __slots__ = ("updated_items", "_snapshot")

    def __init__(self, original: Sequence[T], updated_items: List[T]) -> None:
        self._snapshot: Tuple[T, ...] = tuple(original)
        self.updated_items = updated_items

    def revert(self) -> List[T]:
        return list(self._snapshot)


def create_optimistic_deletion(
    items: Sequence[T],
    item_id: Hashable,
    get_id: Callable[[T], Hashable],
) -> OptimisticDeletion[T]:
    """Return ``items`` without ``item_id`` plus a way back to the original."""

    updated = [item for item in items if get_id(item) != item_id]
    return OptimisticDeletion(items, updated)


__all__ = [
    "OptimisticDeletion",
    "PageAfterDeletion",
    "PaginationState",
    "calculate_page_after_deletion",
    "create_optimistic_deletion",
    "total_pages",
]
