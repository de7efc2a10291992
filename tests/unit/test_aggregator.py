"""Unit tests for the aggregator."""

import random
from datetime import datetime, timedelta, timezone

import pytest

from conftest import FLICKR_KEY, NOW, FakeTransport, image_item, news_item, status_item
from stream_aggregation.config import AggregatorConfig, Config, SourcesConfig
from stream_aggregation.core import (
    Aggregator,
    CachePurgedEvent,
    ConfigurationError,
    FeedUpdatedEvent,
    ImageSizesEvent,
    NewItemEvent,
    PollerState,
    SourceStatusEvent,
    StreamAggregationError,
)
from stream_aggregation.models import (
    BlockReason,
    ContentType,
    ImageFeedItem,
    ImageSize,
    SourceType,
    StatusFeedItem,
)

FEED_URL = "https://example.com/feed.xml"
OTHER_FEED_URL = "https://example.org/rss"

RSS_FEED = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"><channel><title>T</title><link>https://example.com/</link>
<item><title>A</title><link>https://example.com/a</link>
<pubDate>Tue, 07 Sep 2021 10:00:00 GMT</pubDate><description>Text</description></item>
<item><title>B</title><link>https://example.com/b</link>
<pubDate>Tue, 07 Sep 2021 11:00:00 GMT</pubDate><description>More text</description></item>
</channel></rss>
"""


def make_config(flickr_api_key=FLICKR_KEY, **kwargs) -> Config:
    aggregator = {
        key: kwargs.pop(key)
        for key in list(kwargs)
        if key in AggregatorConfig.model_fields
    }
    return Config(
        sources=SourcesConfig(flickr_api_key=flickr_api_key),
        aggregator=AggregatorConfig(**aggregator),
        **kwargs,
    )


class Events:
    """Records every event an aggregator publishes."""

    def __init__(self, aggregator: Aggregator):
        self.aggregator = aggregator
        self.new_items: list[NewItemEvent] = []
        self.statuses: list[SourceStatusEvent] = []
        self.updates: list[FeedUpdatedEvent] = []
        self.purges: list[CachePurgedEvent] = []
        self.sizes: list[ImageSizesEvent] = []
        aggregator.on_new_item(self.new_items.append)
        aggregator.on_source_status(self.statuses.append)
        aggregator.on_feed_updated(self.updates.append)
        aggregator.on_cache_purged(self.purges.append)
        aggregator.on_image_sizes(self.sizes.append)

    def drain(self) -> "Events":
        assert self.aggregator.events.drain(timeout=5)
        return self


@pytest.fixture
def make_aggregator(fake_transport, scheduler, clock):
    created = []

    def factory(config=None, transport=None):
        aggregator = Aggregator(
            config or make_config(),
            transport=transport or fake_transport,
            scheduler=scheduler,
            clock=clock,
            rng=random.Random(1),
        )
        created.append(aggregator)
        return aggregator

    yield factory
    for aggregator in created:
        aggregator.close()


class TestIngest:
    """Tests for filtering, deduplication and caching of items."""

    def test_min_date_inclusive(self, make_aggregator):
        """Test that an item exactly at the minimum date is admitted."""
        aggregator = make_aggregator(make_config(min_date=NOW - timedelta(hours=1)))

        stored = aggregator.ingest([
            news_item("https://a/edge", NOW - timedelta(hours=1)),
            news_item("https://a/old", NOW - timedelta(hours=1, seconds=1)),
        ])

        assert stored == 1
        assert [item.uri for item in aggregator.items()] == ["https://a/edge"]

    def test_max_item_age(self, make_aggregator):
        aggregator = make_aggregator(make_config(max_item_age_hours=1))

        aggregator.ingest([
            news_item("https://a/new", NOW - timedelta(minutes=30)),
            news_item("https://a/old", NOW - timedelta(hours=2)),
        ])

        assert [item.uri for item in aggregator.items()] == ["https://a/new"]

    def test_no_duplicate_keys(self, make_aggregator):
        """Test that repeated ingestion never caches two items with one key."""
        aggregator = make_aggregator()
        batch = [
            news_item("https://a/1"),
            status_item("https://t/1", service_id="1"),
            status_item("https://t/1-copy", service_id="1"),
            image_item("https://f/1", service_id="f1"),
        ]

        for _ in range(3):
            aggregator.ingest([item.model_copy() for item in batch])

        keys = [item.dedup_key for item in aggregator.items()]
        assert len(keys) == len(set(keys)) == 3

    def test_replacement_with_new_information(self, make_aggregator):
        """Test that a richer duplicate replaces the cached item in place."""
        aggregator = make_aggregator()
        events = Events(aggregator)
        aggregator.ingest([news_item("https://a/1"), news_item("https://a/2")])

        stored = aggregator.ingest([news_item("https://a/1", author="Ed")])

        assert stored == 1
        assert aggregator.item_count == 2
        assert aggregator.items()[0].author == "Ed"
        assert len(events.drain().new_items) == 3

    def test_duplicate_without_new_information(self, make_aggregator):
        aggregator = make_aggregator()
        aggregator.ingest([news_item("https://a/1", author="Ed")])

        assert aggregator.ingest([news_item("https://a/1")]) == 0
        assert aggregator.items()[0].author == "Ed"

    def test_profanity_blocks(self, make_aggregator):
        """Test that blocked items are cached but hidden and not announced."""
        aggregator = make_aggregator(make_config(profanity_enabled=True, profanity=["xyz"]))
        events = Events(aggregator)

        aggregator.ingest([
            news_item("https://a/1"),
            news_item("https://a/bad", title="Some XYZ headline"),
            news_item("https://a/2"),
            news_item("https://a/3"),
        ])
        aggregator.cache_size = 3

        bad = [item for item in aggregator.items() if item.uri == "https://a/bad"]
        assert bad[0].block_reason == BlockReason.PROFANITY
        assert [item.uri for item in aggregator.valid_items()] == ["https://a/2", "https://a/3"]

        events.drain()
        assert "https://a/bad" not in [event.item.uri for event in events.new_items]
        assert len(events.purges) == 1
        assert [item.uri for item in events.purges[0].valid_items] == ["https://a/2", "https://a/3"]

        # Blocked items still count for deduplication
        assert aggregator.ingest([news_item("https://a/bad", title="Some XYZ headline")]) == 0
        assert aggregator.item_count == 3

    def test_threshold_purge(self, make_aggregator):
        """Test that the cache is trimmed once it grows past the threshold."""
        aggregator = make_aggregator(make_config(cache_size=5))
        events = Events(aggregator)

        aggregator.ingest([news_item(f"https://a/{i}") for i in range(5)])
        assert aggregator.item_count == 5

        aggregator.ingest([news_item("https://a/5")])

        assert aggregator.item_count == 5
        assert aggregator.items()[0].uri == "https://a/1"
        assert len(events.drain().purges) == 1

    def test_purge_removes_expired(self, make_aggregator, clock):
        aggregator = make_aggregator(make_config(max_item_age_hours=1))
        aggregator.ingest([news_item("https://a/1", NOW - timedelta(minutes=50))])

        clock.advance(minutes=20)

        assert aggregator.purge() == 1
        assert aggregator.item_count == 0

    def test_min_date_setter(self, make_aggregator):
        aggregator = make_aggregator()
        aggregator.ingest([
            news_item("https://a/old", NOW - timedelta(days=2)),
            news_item("https://a/new", NOW),
        ])

        aggregator.min_date = NOW - timedelta(days=1)

        assert [item.uri for item in aggregator.items()] == ["https://a/new"]

    def test_naive_min_date_is_utc(self, make_aggregator):
        """Test that a naive minimum date is read as UTC and ingestion keeps working."""
        aggregator = make_aggregator()

        aggregator.min_date = datetime(2021, 9, 6, 12, 0)
        stored = aggregator.ingest([
            news_item("https://a/old", NOW - timedelta(days=2)),
            news_item("https://a/new", NOW),
        ])

        assert aggregator.min_date == datetime(2021, 9, 6, 12, 0, tzinfo=timezone.utc)
        assert stored == 1
        assert [item.uri for item in aggregator.items()] == ["https://a/new"]

    def test_image_link_status_promoted(self, make_aggregator):
        """Test that a status linking a hosted image is cached as an image."""
        aggregator = make_aggregator()
        events = Events(aggregator)

        aggregator.ingest([
            status_item("https://t/1", service_id="1", author="alice", status="Sunset http://twitpic.com/abc123"),
            status_item("https://t/2", service_id="2", status="No picture here"),
        ])

        image, status = aggregator.items()
        assert isinstance(image, ImageFeedItem)
        assert image.content_type == ContentType.IMAGE
        assert image.source_type == SourceType.TWITTER
        assert image.caption == "Sunset"
        assert image.thumbnail_uri == "http://twitpic.com/show/large/abc123"
        assert image.author == "alice"
        assert isinstance(status, StatusFeedItem)
        assert [event.item.content_type for event in events.drain().new_items] == [
            ContentType.IMAGE,
            ContentType.STATUS,
        ]

        # The same status seen again is a duplicate of the image
        assert aggregator.ingest([
            status_item("https://t/1", service_id="1", author="alice", status="Sunset http://twitpic.com/abc123"),
        ]) == 0

    def test_image_link_promotion_disabled(self, make_aggregator):
        aggregator = make_aggregator(make_config(promote_image_links=False))

        aggregator.ingest([status_item("https://t/1", service_id="1", status="http://yfrog.com/abc")])

        assert isinstance(aggregator.items()[0], StatusFeedItem)

    def test_reads_are_snapshots(self, make_aggregator):
        """Test that items handed out are not changed by later filtering."""
        aggregator = make_aggregator()
        events = Events(aggregator)
        aggregator.ingest([news_item("https://a/1", title="spam offer"), news_item("https://a/2")])
        held = aggregator.valid_items()
        announced = [event.item for event in events.drain().new_items]

        aggregator.add_query_term(SourceType.NEWS, "!spam")
        held[1].author = "Someone else"

        assert [item.block_reason for item in held] == [BlockReason.NONE, BlockReason.NONE]
        assert announced[0].block_reason == BlockReason.NONE
        assert aggregator.items()[0].block_reason == BlockReason.KEYWORD
        assert aggregator.items()[1].author is None

    def test_cache_size_validation(self, make_aggregator):
        with pytest.raises(ValueError):
            make_aggregator().cache_size = 0


class TestFiltersAndOrdering:
    """Tests for filter changes and retrieval."""

    def test_ban_term_refilters_cache(self, make_aggregator):
        """Test that adding a ban hides cached items and reports the new visible set."""
        aggregator = make_aggregator()
        events = Events(aggregator)
        aggregator.ingest([news_item("https://a/1", title="spam offer"), news_item("https://a/2")])

        aggregator.add_query_term(SourceType.NEWS, "!spam")

        assert [item.uri for item in aggregator.valid_items()] == ["https://a/2"]
        purge = events.drain().purges[-1]
        assert [item.uri for item in purge.valid_items] == ["https://a/2"]

        aggregator.remove_query_term(SourceType.NEWS, "!spam")
        assert aggregator.item_count == len(aggregator.valid_items()) == 2

    def test_enable_profanity_later(self, make_aggregator):
        aggregator = make_aggregator(make_config(profanity=["xyz"]))
        aggregator.ingest([news_item("https://a/1", title="xyz")])

        aggregator.profanity_enabled = True

        assert aggregator.valid_items() == []
        assert aggregator.profanity == ["xyz"]

    def test_get_next_item_distributes(self, make_aggregator):
        """Test round-robin retrieval across content types."""
        aggregator = make_aggregator()
        aggregator.ingest([
            news_item("https://n/1", NOW - timedelta(hours=3)),
            news_item("https://n/2", NOW - timedelta(hours=2)),
            status_item("https://s/1", NOW - timedelta(hours=3)),
            status_item("https://s/2", NOW - timedelta(hours=2)),
            image_item("https://i/1", NOW - timedelta(hours=3)),
            image_item("https://i/2", NOW - timedelta(hours=2)),
        ])

        types = [aggregator.get_next_item().content_type for _ in range(3)]
        ordered = aggregator.ordered_items()

        assert types == [ContentType.IMAGE, ContentType.STATUS, ContentType.NEWS]
        assert [item.uri for item in ordered[:3]] == ["https://i/2", "https://s/2", "https://n/2"]

    def test_get_next_item_empty(self, make_aggregator):
        assert make_aggregator().get_next_item() is None


class TestPollerPlanning:
    """Tests for query terms and poller reconciliation."""

    def test_initial_terms_from_config(self, make_aggregator):
        aggregator = make_aggregator(make_config(news_query=[FEED_URL, "!spam"]))

        assert aggregator.get_query_terms(SourceType.NEWS) == [FEED_URL, "!spam"]
        assert [p.source_id for p in aggregator.pollers(SourceType.NEWS)] == [f"news:{FEED_URL}"]

    def test_pollers_kept_across_changes(self, make_aggregator):
        """Test that unchanged queries keep their pollers."""
        aggregator = make_aggregator()
        aggregator.set_query_terms(SourceType.TWITTER, ["python", "rust", "@alice"])
        search, user = aggregator.pollers(SourceType.TWITTER)

        aggregator.add_query_term(SourceType.TWITTER, "!spam")
        assert aggregator.pollers(SourceType.TWITTER) == [search, user]

        aggregator.add_query_term(SourceType.TWITTER, "go")
        pollers = aggregator.pollers(SourceType.TWITTER)

        assert user in pollers
        assert search not in pollers
        assert search.state == PollerState.STOPPED
        assert {p.adapter.query for p in pollers} == {"python OR rust OR go", "alice"}

    def test_interval_scales_with_pollers(self, make_aggregator):
        aggregator = make_aggregator()

        aggregator.set_query_terms(SourceType.FLICKR, ["sunset", "@123@N00", "+456@N01"])

        assert all(p.interval == timedelta(minutes=3) for p in aggregator.pollers(SourceType.FLICKR))

    def test_bad_flickr_key(self, make_aggregator):
        """Test that a configuration error marks the source down on start."""
        aggregator = make_aggregator(make_config(flickr_api_key=None, flickr_query=["sunset"]))
        events = Events(aggregator)

        aggregator.start()

        assert aggregator.pollers(SourceType.FLICKR) == []
        assert aggregator.source_status(SourceType.FLICKR).is_up is False
        assert aggregator.all_sources_reported
        statuses = events.drain().statuses
        assert statuses == [SourceStatusEvent(SourceType.FLICKR, "flickr:config", False)]

    def test_unpolled_source(self, make_aggregator):
        with pytest.raises(ValueError):
            make_aggregator().set_query_terms(SourceType.FACEBOOK, ["x"])


class TestLifecycle:
    """Tests for starting, stopping and polling end to end."""

    def test_end_to_end(self, make_aggregator, fake_transport, scheduler, clock):
        """Test that a started aggregator polls, caches and reports."""
        fake_transport.respond("example.com", 200, RSS_FEED)
        aggregator = make_aggregator(make_config(news_query=[FEED_URL]))
        events = Events(aggregator)

        aggregator.start()

        scheduler.start.assert_called_once()
        assert aggregator.is_running
        assert fake_transport.requests == [FEED_URL]
        assert aggregator.item_count == 2
        assert aggregator.all_sources_reported

        status = aggregator.source_status(SourceType.NEWS)
        assert status.is_up is True
        assert status.last_update == clock.now

        events.drain()
        assert len(events.new_items) == 2
        assert events.statuses == [SourceStatusEvent(SourceType.NEWS, f"news:{FEED_URL}", True)]
        assert events.updates == [FeedUpdatedEvent(SourceType.NEWS, f"news:{FEED_URL}")]

    def test_not_found_reports_down(self, make_aggregator, scheduler):
        transport = FakeTransport(404)
        aggregator = make_aggregator(make_config(news_query=[FEED_URL]), transport=transport)
        events = Events(aggregator)

        aggregator.start()
        aggregator.pollers(SourceType.NEWS)[0].poll()

        assert transport.requests == [FEED_URL]
        assert aggregator.source_status(SourceType.NEWS).is_up is False
        events.drain()
        assert [event.is_up for event in events.statuses] == [False]
        assert events.updates == [FeedUpdatedEvent(SourceType.NEWS, f"news:{FEED_URL}")]

    def test_server_error_reports_down(self, make_aggregator):
        """Test that a failed poll still completes a cycle but records no update time."""
        transport = FakeTransport(500)
        aggregator = make_aggregator(make_config(news_query=[FEED_URL]), transport=transport)
        events = Events(aggregator)

        aggregator.start()

        status = aggregator.source_status(SourceType.NEWS)
        assert status.is_up is False
        assert status.last_update is None
        assert aggregator.all_sources_reported
        assert aggregator.item_count == 0
        events.drain()
        assert events.statuses == [SourceStatusEvent(SourceType.NEWS, f"news:{FEED_URL}", False)]
        assert events.updates == [FeedUpdatedEvent(SourceType.NEWS, f"news:{FEED_URL}")]

    def test_feed_count_counts_feeds(self, make_aggregator, fake_transport):
        """Test that feed_count is the number of polled feeds, not cached items."""
        fake_transport.respond("example.com", 200, RSS_FEED)
        aggregator = make_aggregator(
            make_config(news_query=[FEED_URL, OTHER_FEED_URL], twitter_query=["python", "@alice"])
        )

        assert aggregator.feed_count == 4
        aggregator.start()

        assert aggregator.item_count == 2
        assert aggregator.feed_count == 4

        aggregator.remove_query_term(SourceType.TWITTER, "@alice")
        assert aggregator.feed_count == 3

    def test_late_response_after_stop(self, make_aggregator, deferred_transport):
        """Test that a response arriving after stop() mutates nothing and emits nothing."""
        aggregator = make_aggregator(make_config(news_query=[FEED_URL]), transport=deferred_transport)
        events = Events(aggregator)
        aggregator.start()

        aggregator.stop()
        deferred_transport.complete(200, RSS_FEED)

        assert aggregator.item_count == 0
        assert aggregator.source_status(SourceType.NEWS).is_up is None
        events.drain()
        assert events.new_items == events.statuses == events.updates == []

    def test_removed_poller_response_dropped(self, make_aggregator, deferred_transport):
        """Test that a poller removed mid-request no longer feeds the cache."""
        aggregator = make_aggregator(
            make_config(news_query=[FEED_URL, OTHER_FEED_URL]), transport=deferred_transport
        )
        aggregator.start()

        aggregator.remove_query_term(SourceType.NEWS, FEED_URL)
        deferred_transport.complete(200, RSS_FEED, index=0)

        assert aggregator.item_count == 0
        assert [p.adapter.query for p in aggregator.pollers(SourceType.NEWS)] == [OTHER_FEED_URL]

    def test_start_and_stop_idempotent(self, make_aggregator, scheduler):
        aggregator = make_aggregator()

        aggregator.start()
        aggregator.start()
        aggregator.stop()
        aggregator.stop()

        assert scheduler.add_job.call_count == 1
        assert scheduler.remove_job.call_count == 1
        assert not aggregator.is_running

    def test_start_after_close(self, make_aggregator, fake_transport):
        aggregator = make_aggregator()
        aggregator.close()

        assert fake_transport.closed
        with pytest.raises(StreamAggregationError):
            aggregator.start()

    def test_context_manager(self, make_aggregator):
        aggregator = make_aggregator()

        with aggregator as running:
            assert running.is_running

        assert not aggregator.is_running
        with pytest.raises(StreamAggregationError):
            aggregator.start()


SIZES_RESPONSE = """<?xml version="1.0" encoding="utf-8" ?>
<rsp stat="ok">
<sizes canblog="0" canprint="0" candownload="1">
  <size label="Square" width="75" height="75" source="https://live.staticflickr.com/1/101_s.jpg" media="photo" />
  <size label="Large" width="1024" height="768" source="https://live.staticflickr.com/1/101_b.jpg" media="photo" />
</sizes>
</rsp>
"""


class TestImageSizes:
    """Tests for fetching Flickr renditions on demand."""

    def test_sizes_stored_on_cached_item(self, make_aggregator, fake_transport):
        fake_transport.respond("flickr.photos.getSizes", 200, SIZES_RESPONSE)
        aggregator = make_aggregator()
        events = Events(aggregator)
        aggregator.ingest([image_item("https://f/101", service_id="101")])

        aggregator.fetch_image_sizes(aggregator.items()[0])

        assert "photo_id=101" in fake_transport.requests[-1]
        assert f"api_key={FLICKR_KEY}" in fake_transport.requests[-1]
        cached = aggregator.items()[0]
        assert cached.largest_size() == ImageSize(width=1024, height=768)
        assert cached.sizes[ImageSize(width=75, height=75)] == "https://live.staticflickr.com/1/101_s.jpg"
        assert [event.item.sizes for event in events.drain().sizes] == [cached.sizes]

    def test_failed_request_keeps_sizes(self, make_aggregator, fake_transport):
        """Test that a failed request still reports the item, unchanged."""
        fake_transport.respond("flickr.photos.getSizes", 500)
        aggregator = make_aggregator()
        events = Events(aggregator)
        aggregator.ingest([image_item("https://f/101", service_id="101")])

        aggregator.fetch_image_sizes(aggregator.items()[0])

        assert aggregator.items()[0].sizes == {}
        assert [event.item.uri for event in events.drain().sizes] == ["https://f/101"]

    def test_not_a_flickr_photo(self, make_aggregator):
        aggregator = make_aggregator()

        with pytest.raises(ValueError):
            aggregator.fetch_image_sizes(news_item("https://a/1"))

    def test_without_api_key(self, make_aggregator, fake_transport):
        aggregator = make_aggregator(make_config(flickr_api_key=None))

        with pytest.raises(ConfigurationError):
            aggregator.fetch_image_sizes(image_item("https://f/101", service_id="101"))
        assert fake_transport.requests == []
