"""
Duplicate detection for cached items.

ItemCache keeps items in arrival order and indexes them by service id and by
URI within each source. Deduplicator decides what happens when an incoming
item matches a cached one.
"""

from collections import defaultdict
from typing import Iterable, Iterator, Optional

from stream_aggregation.logger import get_logger
from stream_aggregation.models.enums import DuplicatePolicy, SourceType
from stream_aggregation.models.feed_item import FeedItem

logger = get_logger(__name__)


class ItemCache:
    """Items keyed by arrival sequence number."""

    def __init__(self) -> None:
        self._entries: dict[int, FeedItem] = {}
        self._by_id: dict[tuple[SourceType, str], int] = {}
        self._by_uri: dict[tuple[SourceType, str], list[int]] = defaultdict(list)
        self._next_seq = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[FeedItem]:
        return iter(list(self._entries.values()))

    def get(self, seq: int) -> FeedItem:
        return self._entries[seq]

    def sequences(self) -> list[int]:
        """Sequence numbers, oldest arrival first."""
        return list(self._entries)

    def find(self, item: FeedItem) -> Optional[int]:
        """Find the cached duplicate of an item.

        Service ids are compared first. A URI match only counts when one of
        the two items has no service id, so two distinct posts sharing a
        link are both kept.

        Args:
            item: Incoming item

        Returns:
            Sequence number of the duplicate, or None
        """
        if item.service_id:
            seq = self._by_id.get((item.source_type, item.service_id))
            if seq is not None:
                return seq

        for seq in self._by_uri.get((item.source_type, item.uri), []):
            if not item.service_id or not self._entries[seq].service_id:
                return seq
        return None

    def add(self, item: FeedItem) -> int:
        seq = self._next_seq
        self._next_seq += 1
        self._entries[seq] = item
        self._index(seq, item)
        return seq

    def replace(self, seq: int, item: FeedItem) -> FeedItem:
        """Put an item in the slot of a cached one, keeping its arrival position.

        Returns:
            The replaced item
        """
        old = self._entries[seq]
        self._unindex(seq, old)
        self._entries[seq] = item
        self._index(seq, item)
        return old

    def remove(self, seqs: Iterable[int]) -> list[FeedItem]:
        removed = []
        for seq in seqs:
            item = self._entries.pop(seq, None)
            if item is None:
                continue
            self._unindex(seq, item)
            removed.append(item)
        return removed

    def _index(self, seq: int, item: FeedItem) -> None:
        if item.service_id:
            self._by_id[(item.source_type, item.service_id)] = seq
        self._by_uri[(item.source_type, item.uri)].append(seq)

    def _unindex(self, seq: int, item: FeedItem) -> None:
        if item.service_id and self._by_id.get((item.source_type, item.service_id)) == seq:
            del self._by_id[(item.source_type, item.service_id)]
        key = (item.source_type, item.uri)
        seqs = self._by_uri.get(key)
        if seqs and seq in seqs:
            seqs.remove(seq)
            if not seqs:
                del self._by_uri[key]


class Deduplicator:
    """Resolves duplicates according to a DuplicatePolicy."""

    def __init__(self, policy: DuplicatePolicy = DuplicatePolicy.REPLACE_IF_NEW_INFO) -> None:
        self.policy = policy

    @staticmethod
    def carries_new_information(existing: FeedItem, incoming: FeedItem) -> bool:
        """Whether the incoming item fills a field the cached one lacks."""
        if type(existing) is not type(incoming):
            return False
        return bool(existing.missing_fields() - incoming.missing_fields())

    def should_replace(self, existing: FeedItem, incoming: FeedItem) -> bool:
        """Decide whether an incoming duplicate replaces the cached item.

        Args:
            existing: Cached item
            incoming: Newly polled item with the same key

        Returns:
            True to replace, False to drop the incoming item
        """
        if self.policy == DuplicatePolicy.REPLACE_ALWAYS:
            return True
        if self.policy == DuplicatePolicy.REPLACE_IF_NEW_INFO:
            return self.carries_new_information(existing, incoming)
        return False
