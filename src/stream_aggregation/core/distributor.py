"""
Ordering of cached items for the consumer.

order_items() produces a one-off ordered snapshot. ItemCursor keeps the
per-type lists and positions behind get_next_item(), so a consumer can step
through the stream indefinitely while new items keep arriving.
"""

import random
from typing import Iterable, Optional

from stream_aggregation.models.enums import CONTENT_TYPES, ContentType, RetrievalOrder
from stream_aggregation.models.feed_item import FeedItem


def matches(content_type: ContentType, requested: ContentType) -> bool:
    return (content_type & requested) == content_type


def sort_items(
    items: Iterable[FeedItem],
    order: RetrievalOrder,
    rng: Optional[random.Random] = None,
) -> list[FeedItem]:
    """Sort items (given in arrival order) by a retrieval order."""
    items = list(items)
    if order == RetrievalOrder.CHRONOLOGICAL:
        return sorted(items, key=lambda item: item.date, reverse=True)
    if order == RetrievalOrder.RANDOM:
        (rng or random).shuffle(items)
    return items


def interleave(groups: list[list[FeedItem]]) -> list[FeedItem]:
    """Take one item from each group per round, skipping exhausted groups."""
    result = []
    for round_index in range(max((len(group) for group in groups), default=0)):
        for group in groups:
            if round_index < len(group):
                result.append(group[round_index])
    return result


def order_items(
    items: Iterable[FeedItem],
    order: RetrievalOrder = RetrievalOrder.CHRONOLOGICAL,
    distribute_evenly: bool = True,
    content_types: ContentType = ContentType.ALL,
    rng: Optional[random.Random] = None,
) -> list[FeedItem]:
    """Order items for display.

    Args:
        items: Items in arrival order
        order: Order within each list
        distribute_evenly: Interleave content types round-robin
        content_types: Content types to include
        rng: Random source for RANDOM order

    Returns:
        Ordered list of the selected items
    """
    selected = [item for item in items if matches(item.content_type, content_types)]
    if not distribute_evenly:
        return sort_items(selected, order, rng)

    groups = []
    for content_type in CONTENT_TYPES:
        if content_type & content_types:
            groups.append(sort_items((i for i in selected if i.content_type == content_type), order, rng))
    return interleave(groups)


class ItemCursor:
    """Stateful retrieval over the cache.

    Lists are built lazily per requested content type. Each list has its own
    position, wraps around when exhausted, and skips blocked items. New items
    are inserted at or after the current position so they come up next.
    """

    def __init__(
        self,
        order: RetrievalOrder = RetrievalOrder.CHRONOLOGICAL,
        distribute_evenly: bool = True,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.order = order
        self.distribute_evenly = distribute_evenly
        self._rng = rng or random.Random()
        self._items: list[FeedItem] = []
        self._lists: dict[ContentType, list[FeedItem]] = {}
        self._positions: dict[ContentType, int] = {}
        self._type_positions: dict[ContentType, int] = {}

    def rebuild(self, items: Iterable[FeedItem]) -> None:
        """Reset all lists and positions from items in arrival order."""
        self._items = list(items)
        self._lists.clear()
        self._positions.clear()
        self._type_positions.clear()

    def configure(
        self,
        order: Optional[RetrievalOrder] = None,
        distribute_evenly: Optional[bool] = None,
    ) -> None:
        if order is not None:
            self.order = order
        if distribute_evenly is not None:
            self.distribute_evenly = distribute_evenly
        self.rebuild(self._items)

    def add(self, item: FeedItem) -> None:
        self._items.append(item)
        for list_type, items in self._lists.items():
            if matches(item.content_type, list_type):
                items.insert(self._insert_position(list_type, items, item), item)

    def replace(self, old: FeedItem, new: FeedItem) -> None:
        self._items = [new if item is old else item for item in self._items]
        for items in self._lists.values():
            for index, item in enumerate(items):
                if item is old:
                    items[index] = new

    def remove(self, removed: Iterable[FeedItem]) -> None:
        removed_ids = {id(item) for item in removed}
        if not removed_ids:
            return
        self._items = [item for item in self._items if id(item) not in removed_ids]
        for list_type, items in self._lists.items():
            position = self._positions.get(list_type, 0)
            before = sum(1 for item in items[:position] if id(item) in removed_ids)
            self._lists[list_type] = [item for item in items if id(item) not in removed_ids]
            self._positions[list_type] = position - before

    def next_item(self, requested: ContentType = ContentType.ALL) -> Optional[FeedItem]:
        """Get the next visible item of the requested content types.

        Args:
            requested: Content type flags

        Returns:
            The next non-blocked item, or None if there is none
        """
        list_type = self._distributed_type(requested) if self.distribute_evenly else requested
        if list_type is None:
            return None

        items = self._list_for(list_type)
        position = self._positions.get(list_type, 0)
        for _ in range(len(items)):
            if position >= len(items):
                position = 0
            item = items[position]
            position += 1
            if not item.is_blocked:
                self._positions[list_type] = position
                return item

        self._positions[list_type] = position
        return None

    def _distributed_type(self, requested: ContentType) -> Optional[ContentType]:
        """Pick the next content type with visible items, round-robin."""
        types = [content_type for content_type in CONTENT_TYPES if content_type & requested]
        if not types:
            return None

        start = self._type_positions.get(requested, 0) % len(types)
        for step in range(len(types)):
            index = (start + step) % len(types)
            if any(not item.is_blocked for item in self._list_for(types[index])):
                self._type_positions[requested] = index + 1
                return types[index]
        return None

    def _list_for(self, list_type: ContentType) -> list[FeedItem]:
        if list_type not in self._lists:
            selected = [item for item in self._items if matches(item.content_type, list_type)]
            self._lists[list_type] = sort_items(selected, self.order, self._rng)
        return self._lists[list_type]

    def _insert_position(self, list_type: ContentType, items: list[FeedItem], item: FeedItem) -> int:
        if self.order == RetrievalOrder.CHRONOLOGICAL:
            index = sum(1 for other in items if other.date > item.date)
        elif self.order == RetrievalOrder.RANDOM:
            index = self._rng.randint(0, max(0, len(items) - 1))
        else:
            index = len(items)

        # Never insert behind the cursor
        position = self._positions.get(list_type, 0)
        if self.order == RetrievalOrder.ARRIVAL and position < len(items):
            index = position
        return min(max(index, position), len(items))
