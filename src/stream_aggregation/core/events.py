"""
Notifications delivered to the consumer.

Handlers run on a dedicated single worker thread, so polling threads never
wait on consumer code and events arrive in the order they were published.
"""

import threading
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Callable, Optional

from stream_aggregation.logger import get_logger
from stream_aggregation.models.enums import SourceType
from stream_aggregation.models.feed_item import FeedItem, ImageFeedItem

logger = get_logger(__name__)


@dataclass(frozen=True)
class NewItemEvent:
    """A visible item was added to the cache (or replaced a cached one)."""

    item: FeedItem


@dataclass(frozen=True)
class SourceStatusEvent:
    """A poll finished; reports whether the service is reachable."""

    source_type: SourceType
    source_id: str
    is_up: bool


@dataclass(frozen=True)
class FeedUpdatedEvent:
    """A poll cycle completed, whatever its outcome."""

    source_type: SourceType
    source_id: str


@dataclass(frozen=True)
class CachePurgedEvent:
    """The set of visible items shrank; carries the items still visible."""

    valid_items: list[FeedItem] = field(default_factory=list)


@dataclass(frozen=True)
class ImageSizesEvent:
    """The renditions of an image were fetched; sizes is empty if the request failed."""

    item: ImageFeedItem


Handler = Callable[[object], None]


class EventHub:
    """Keeps handlers per event type and delivers events asynchronously."""

    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler]] = defaultdict(list)
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="events")
        self._closed = False

    def subscribe(self, event_type: type, handler: Handler) -> None:
        with self._lock:
            self._handlers[event_type].append(handler)

    def publish(self, event: object) -> None:
        """Queue an event for delivery to its handlers."""
        with self._lock:
            handlers = list(self._handlers.get(type(event), []))
            if not handlers:
                return
            if self._closed:
                logger.debug(f"Event hub closed, dropping {type(event).__name__}")
                return
            self._executor.submit(self._deliver, event, handlers)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until every event published so far has been delivered.

        Args:
            timeout: Seconds to wait (None waits indefinitely)

        Returns:
            True if all deliveries finished in time
        """
        with self._lock:
            if self._closed:
                return True
            marker = self._executor.submit(lambda: None)
        try:
            marker.result(timeout=timeout)
        except FutureTimeoutError:
            return False
        return True

    def close(self, wait: bool = True) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._executor.shutdown(wait=wait)

    @staticmethod
    def _deliver(event: object, handlers: list[Handler]) -> None:
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.exception(f"Handler {getattr(handler, '__name__', handler)} failed for {type(event).__name__}: {e}")
