"""
Aggregator: owns the pollers, the query lists, the filters and the item cache.

Pollers hand their items to the aggregator from transport threads. Every
mutation of the cache, the query lists and the filter settings happens under
one re-entrant lock; reads return copies. Notifications go through an
EventHub so consumer code never runs on a polling thread.
"""

import random
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Callable, Iterable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.interval import IntervalTrigger

from stream_aggregation.config import Config
from stream_aggregation.core.adapters.base import EPOCH, utcnow
from stream_aggregation.core.adapters.flickr import parse_image_sizes, sizes_query, validate_api_key
from stream_aggregation.core.adapters.twitter import promote_image_link
from stream_aggregation.core.deduplicator import ItemCache
from stream_aggregation.core.distributor import ItemCursor, order_items
from stream_aggregation.core.events import (
    CachePurgedEvent,
    EventHub,
    FeedUpdatedEvent,
    ImageSizesEvent,
    NewItemEvent,
    SourceStatusEvent,
)
from stream_aggregation.core.exceptions import ConfigurationError, StreamAggregationError
from stream_aggregation.core.factories import (
    create_adapter,
    create_deduplicator,
    create_filter_engine,
    create_scheduler,
    create_transport,
)
from stream_aggregation.core.poller import FeedPoller
from stream_aggregation.core.query import QueryTerms, normalize_terms, plan_queries
from stream_aggregation.core.transport import FetchResult, Transport
from stream_aggregation.logger import get_logger
from stream_aggregation.models.enums import ContentType, RetrievalOrder, SourceType
from stream_aggregation.models.feed_item import FeedItem, ImageFeedItem

logger = get_logger(__name__)

# Sources that can be polled
POLLED_SOURCES = (SourceType.NEWS, SourceType.FLICKR, SourceType.TWITTER)

# The cache is purged once it grows this much past cache_size
PURGE_THRESHOLD = 1.2

PURGE_JOB_ID = "stream-aggregation-purge"


@dataclass
class SourceStatus:
    """Reachability of one source as of its latest poll."""

    is_up: Optional[bool] = None
    last_update: Optional[datetime] = None

    @property
    def reported(self) -> bool:
        return self.is_up is not None


class Aggregator:
    """Polls every configured source and keeps a filtered, deduplicated cache."""

    def __init__(
        self,
        config: Optional[Config] = None,
        transport: Optional[Transport] = None,
        scheduler=None,
        clock: Optional[Callable[[], datetime]] = None,
        rng: Optional[random.Random] = None,
    ):
        """Initialize aggregator.

        Args:
            config: Application configuration (a fresh Config() if omitted)
            transport: Request transport (an HttpTransport if omitted)
            scheduler: APScheduler scheduler (a BackgroundScheduler if omitted)
            clock: Returns the current aware UTC time
            rng: Random source for RANDOM retrieval order
        """
        self.config = config or Config()
        self._clock = clock or utcnow
        self._rng = rng or random.Random()
        self._lock = threading.RLock()

        self._transport = transport or create_transport(self.config.transport)
        self._scheduler = scheduler or create_scheduler(self.config.scheduler)
        self.events = EventHub()

        settings = self.config.aggregator
        self._min_date = settings.min_date
        self._max_item_age = (
            timedelta(hours=settings.max_item_age_hours) if settings.max_item_age_hours else None
        )
        self._cache_size = settings.cache_size
        self._purge_interval = timedelta(seconds=settings.purge_interval_seconds)
        self._promote_image_links = settings.promote_image_links

        self._cache = ItemCache()
        self._deduplicator = create_deduplicator(settings)
        self._filter = create_filter_engine(settings)
        self._cursor = ItemCursor(settings.retrieval_order, settings.distribute_evenly, self._rng)

        self._terms: dict[SourceType, list[str]] = {source: [] for source in POLLED_SOURCES}
        self._pollers: dict[SourceType, list[FeedPoller]] = {source: [] for source in POLLED_SOURCES}
        self._status: dict[SourceType, SourceStatus] = {source: SourceStatus() for source in POLLED_SOURCES}
        self._config_errors: dict[SourceType, str] = {}

        self._running = False
        self._closed = False

        for source, terms in self.config.query_terms().items():
            self._apply_terms(source, terms)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start every poller and the periodic purge. Does nothing if running."""
        with self._lock:
            if self._closed:
                raise StreamAggregationError("Aggregator is closed")
            if self._running:
                return
            self._running = True

            if not self._scheduler.running:
                self._scheduler.start()
            self._scheduler.add_job(
                self.purge,
                trigger=IntervalTrigger(seconds=self._purge_interval.total_seconds()),
                id=PURGE_JOB_ID,
                name="Purge item cache",
                replace_existing=True,
            )

            for source in POLLED_SOURCES:
                self._report_config_error(source)

            pollers = self._all_pollers()
            logger.info(f"Aggregator started with {len(pollers)} pollers")
            for poller in pollers:
                poller.start()

    def stop(self) -> None:
        """Stop every poller and the periodic purge. Does nothing if stopped."""
        with self._lock:
            if not self._running:
                return
            self._running = False

            for poller in self._all_pollers():
                poller.stop()
            try:
                self._scheduler.remove_job(PURGE_JOB_ID)
            except JobLookupError:
                logger.debug("Purge job was already removed")
            logger.info("Aggregator stopped")

    def close(self) -> None:
        """Stop and release the scheduler, the transport and the event hub."""
        self.stop()
        with self._lock:
            if self._closed:
                return
            self._closed = True

        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._transport.close()
        self.events.close()
        logger.info("Aggregator closed")

    def __enter__(self) -> "Aggregator":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Query terms
    # ------------------------------------------------------------------

    def get_query_terms(self, source: SourceType) -> list[str]:
        with self._lock:
            return list(self._terms.get(source, []))

    def set_query_terms(self, source: SourceType, terms: Iterable[str]) -> None:
        """Replace a source's terms, re-filtering and re-planning its pollers."""
        with self._lock:
            self._apply_terms(source, terms)

    def add_query_term(self, source: SourceType, term: str) -> None:
        with self._lock:
            self._apply_terms(source, self._terms.get(source, []) + [term])

    def remove_query_term(self, source: SourceType, term: str) -> None:
        with self._lock:
            term = term.strip()
            self._apply_terms(source, [t for t in self._terms.get(source, []) if t != term])

    def _apply_terms(self, source: SourceType, terms: Iterable[str]) -> None:
        if source not in self._terms:
            raise ValueError(f"Source '{source.value}' cannot be polled")

        normalized = normalize_terms(terms)
        if normalized == self._terms[source] and source not in self._config_errors:
            return
        self._terms[source] = normalized

        parsed = QueryTerms.parse(normalized)
        self._filter.set_bans(source, parsed)
        self._refilter(source)
        self._plan_pollers(source, parsed)

    def _plan_pollers(self, source: SourceType, terms: QueryTerms) -> None:
        """Reconcile a source's pollers with its planned queries.

        Pollers whose (adapter kind, query) is still planned are kept along
        with their backoff state; the rest are stopped.
        """
        plans = plan_queries(source, terms)
        existing = {(p.adapter.kind, p.adapter.query): p for p in self._pollers[source]}

        kept: list[FeedPoller] = []
        created: list[FeedPoller] = []
        self._config_errors.pop(source, None)

        for plan in plans:
            poller = existing.pop((plan.kind, plan.query), None)
            if poller is not None:
                kept.append(poller)
                continue
            try:
                adapter = create_adapter(plan, self.config.sources, self.effective_min_date())
            except ConfigurationError as e:
                logger.error(f"Cannot poll {source.value}: {e}")
                self._config_errors[source] = str(e)
                break
            created.append(
                FeedPoller(
                    adapter,
                    self._scheduler,
                    self._transport,
                    self.config.sources.poll_interval(source),
                    on_items=self._on_items,
                    on_completed=self._on_completed,
                    clock=self._clock,
                )
            )

        for poller in existing.values():
            poller.stop()
            logger.info(f"Removed poller {poller.source_id}")

        pollers = kept + created
        self._pollers[source] = pollers

        # Sources share one request budget, so each poller slows down as more are added
        interval = self.config.sources.poll_interval(source) * max(1, len(pollers))
        for poller in pollers:
            poller.set_interval(interval)

        if not pollers:
            self._status[source] = SourceStatus()

        if self._running:
            self._report_config_error(source)
            for poller in created:
                logger.info(f"Added poller {poller.source_id}")
                poller.start()

    def _report_config_error(self, source: SourceType) -> None:
        if source not in self._config_errors:
            return
        status = self._status[source]
        status.is_up = False
        self.events.publish(SourceStatusEvent(source, f"{source.value}:config", False))

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    @property
    def profanity(self) -> list[str]:
        with self._lock:
            return self._filter.profanity

    @profanity.setter
    def profanity(self, words: Iterable[str]) -> None:
        with self._lock:
            self._filter.set_profanity(words)
            self._refilter()

    @property
    def profanity_enabled(self) -> bool:
        return self._filter.profanity_enabled

    @profanity_enabled.setter
    def profanity_enabled(self, enabled: bool) -> None:
        with self._lock:
            self._filter.profanity_enabled = enabled
            self._refilter()

    @property
    def distribute_evenly(self) -> bool:
        return self._cursor.distribute_evenly

    @distribute_evenly.setter
    def distribute_evenly(self, value: bool) -> None:
        with self._lock:
            self._cursor.configure(distribute_evenly=value)

    @property
    def retrieval_order(self) -> RetrievalOrder:
        return self._cursor.order

    @retrieval_order.setter
    def retrieval_order(self, order: RetrievalOrder) -> None:
        with self._lock:
            self._cursor.configure(order=order)

    @property
    def cache_size(self) -> int:
        return self._cache_size

    @cache_size.setter
    def cache_size(self, size: int) -> None:
        if size < 1:
            raise ValueError("cache_size must be at least 1")
        with self._lock:
            self._cache_size = size
            self.purge()

    @property
    def min_date(self) -> Optional[datetime]:
        return self._min_date

    @min_date.setter
    def min_date(self, value: Optional[datetime]) -> None:
        # Naive dates are UTC, like AGGREGATOR_MIN_DATE
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        with self._lock:
            self._min_date = value
            for poller in self._all_pollers():
                poller.adapter.min_date = self.effective_min_date() or EPOCH
            self.purge()

    def effective_min_date(self, now: Optional[datetime] = None) -> Optional[datetime]:
        """Oldest publish date an item may have to be cached."""
        candidates = []
        if self._min_date is not None:
            candidates.append(self._min_date)
        if self._max_item_age is not None:
            candidates.append((now or self._clock()) - self._max_item_age)
        return max(candidates) if candidates else None

    # ------------------------------------------------------------------
    # Ingestion and eviction
    # ------------------------------------------------------------------

    def ingest(self, items: Iterable[FeedItem]) -> int:
        """Filter, deduplicate and cache items.

        Args:
            items: Items produced by an adapter

        Returns:
            Number of items inserted or replacing a cached item
        """
        with self._lock:
            now = self._clock()
            min_date = self.effective_min_date(now)
            stored = 0

            for item in items:
                if min_date is not None and item.date < min_date:
                    continue
                if self._promote_image_links:
                    item = promote_image_link(item)

                self._filter.apply(item)

                seq = self._cache.find(item)
                if seq is not None:
                    existing = self._cache.get(seq)
                    if not self._deduplicator.should_replace(existing, item):
                        continue
                    self._cache.replace(seq, item)
                    self._cursor.replace(existing, item)
                    logger.debug(f"Replaced {existing.uri} with a more complete copy")
                else:
                    self._cache.add(item)
                    self._cursor.add(item)

                stored += 1
                if not item.is_blocked:
                    self.events.publish(NewItemEvent(item.model_copy()))

            if len(self._cache) >= self._cache_size * PURGE_THRESHOLD:
                self._purge(now)

            return stored

    def purge(self) -> int:
        """Evict items older than the minimum date and the oldest beyond cache_size.

        Returns:
            Number of items removed
        """
        with self._lock:
            return self._purge(self._clock())

    def _purge(self, now: datetime) -> int:
        min_date = self.effective_min_date(now)
        expired = []
        if min_date is not None:
            expired = [seq for seq in self._cache.sequences() if self._cache.get(seq).date < min_date]
        removed = self._cache.remove(expired)

        overflow = len(self._cache) - self._cache_size
        if overflow > 0:
            removed += self._cache.remove(self._cache.sequences()[:overflow])

        if not removed:
            return 0

        self._cursor.remove(removed)
        logger.info(f"Purged {len(removed)} items from cache, {len(self._cache)} remain")
        self.events.publish(CachePurgedEvent(self._valid_items()))
        return len(removed)

    def _refilter(self, source: Optional[SourceType] = None) -> None:
        changed = False
        for item in self._cache:
            if source is not None and item.source_type != source:
                continue
            changed |= self._filter.apply(item)
        if changed:
            logger.debug("Filter change altered the visible items")
            self.events.publish(CachePurgedEvent(self._valid_items()))

    def _on_items(self, poller: FeedPoller, items: list[FeedItem]) -> None:
        with self._lock:
            if not self._is_active(poller):
                logger.debug(f"Dropping {len(items)} items from inactive poller {poller.source_id}")
                return
            stored = self.ingest(items)
        logger.debug(f"{poller.source_id}: {stored} of {len(items)} items stored")

    def _on_completed(self, poller: FeedPoller, is_up: bool) -> None:
        with self._lock:
            if not self._is_active(poller):
                return
            source = poller.adapter.source_type
            status = self._status[source]
            status.is_up = is_up
            if poller.last_status == 200:
                status.last_update = poller.last_success

            self.events.publish(SourceStatusEvent(source, poller.source_id, is_up))
            self.events.publish(FeedUpdatedEvent(source, poller.source_id))

    def _is_active(self, poller: FeedPoller) -> bool:
        return self._running and poller in self._pollers.get(poller.adapter.source_type, [])

    # ------------------------------------------------------------------
    # Image sizes
    # ------------------------------------------------------------------

    def fetch_image_sizes(self, item: FeedItem) -> None:
        """Request the renditions of a Flickr photo.

        The sizes are merged into the cached copy of the photo and an
        ImageSizesEvent carries the updated item.

        Raises:
            ValueError: If the item is not a Flickr photo
            ConfigurationError: If no valid Flickr API key is configured
        """
        if not isinstance(item, ImageFeedItem) or item.source_type != SourceType.FLICKR or not item.service_id:
            raise ValueError(f"Not a Flickr photo: {item.uri}")

        sources = self.config.sources
        url = sizes_query(validate_api_key(sources.flickr_api_key), item.service_id, sources.flickr_rest_url)
        self._transport.fetch(url, partial(self._on_image_sizes, item))

    def _on_image_sizes(self, item: ImageFeedItem, result: FetchResult) -> None:
        sizes = {}
        if result.ok and result.body:
            sizes = parse_image_sizes(result.body)
        else:
            logger.warning(f"Sizes request for {item.uri} failed ({result.status_code}: {result.error})")

        with self._lock:
            seq = self._cache.find(item)
            cached = self._cache.get(seq) if seq is not None else None
            # An evicted photo is updated on a copy only
            target = cached if isinstance(cached, ImageFeedItem) else item.model_copy()
            if sizes:
                target.sizes = {**target.sizes, **sizes}
            updated = target.model_copy()

        if sizes:
            logger.debug(f"Got {len(sizes)} sizes for {item.uri}, largest {updated.largest_size()}")
        self.events.publish(ImageSizesEvent(updated))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def feed_count(self) -> int:
        """Number of feeds being polled, one per planned query."""
        with self._lock:
            return len(self._all_pollers())

    @property
    def item_count(self) -> int:
        """Number of cached items, blocked ones included."""
        with self._lock:
            return len(self._cache)

    def items(self) -> list[FeedItem]:
        """All cached items, blocked ones included, in arrival order."""
        with self._lock:
            return [item.model_copy() for item in self._cache]

    def valid_items(self) -> list[FeedItem]:
        """Cached items that are not blocked, in arrival order."""
        with self._lock:
            return self._valid_items()

    def _valid_items(self) -> list[FeedItem]:
        # Copies, so later re-filtering does not change what callers hold
        return [item.model_copy() for item in self._cache if not item.is_blocked]

    def ordered_items(self, content_types: ContentType = ContentType.ALL) -> list[FeedItem]:
        """Visible items in display order."""
        with self._lock:
            return order_items(
                self._valid_items(),
                order=self._cursor.order,
                distribute_evenly=self._cursor.distribute_evenly,
                content_types=content_types,
                rng=self._rng,
            )

    def get_next_item(self, content_types: ContentType = ContentType.ALL) -> Optional[FeedItem]:
        """Step the retrieval cursor; wraps around when the stream is exhausted."""
        with self._lock:
            item = self._cursor.next_item(content_types)
            return item.model_copy() if item is not None else None

    def source_status(self, source: SourceType) -> SourceStatus:
        with self._lock:
            status = self._status.get(source, SourceStatus())
            return SourceStatus(is_up=status.is_up, last_update=status.last_update)

    @property
    def all_sources_reported(self) -> bool:
        """Whether every source with pollers or a configuration error has reported."""
        with self._lock:
            for source in POLLED_SOURCES:
                if (self._pollers[source] or source in self._config_errors) and not self._status[source].reported:
                    return False
            return True

    def pollers(self, source: Optional[SourceType] = None) -> list[FeedPoller]:
        with self._lock:
            if source is not None:
                return list(self._pollers.get(source, []))
            return self._all_pollers()

    def _all_pollers(self) -> list[FeedPoller]:
        return [poller for source in POLLED_SOURCES for poller in self._pollers[source]]

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def on_new_item(self, handler: Callable[[NewItemEvent], None]) -> None:
        self.events.subscribe(NewItemEvent, handler)

    def on_source_status(self, handler: Callable[[SourceStatusEvent], None]) -> None:
        self.events.subscribe(SourceStatusEvent, handler)

    def on_feed_updated(self, handler: Callable[[FeedUpdatedEvent], None]) -> None:
        self.events.subscribe(FeedUpdatedEvent, handler)

    def on_cache_purged(self, handler: Callable[[CachePurgedEvent], None]) -> None:
        self.events.subscribe(CachePurgedEvent, handler)

    def on_image_sizes(self, handler: Callable[[ImageSizesEvent], None]) -> None:
        self.events.subscribe(ImageSizesEvent, handler)
