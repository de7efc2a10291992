#!/usr/bin/env python3
"""
Run the aggregator and print items as they arrive.
"""

import sys
import time
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from stream_aggregation.config import Config, load_config_from_yaml
from stream_aggregation.core import Aggregator, CachePurgedEvent, NewItemEvent, SourceStatusEvent
from stream_aggregation.logger import get_logger, setup_logger
from stream_aggregation.models import ImageFeedItem, NewsFeedItem, SourceType, StatusFeedItem

logger = get_logger(__name__)


def describe(event: NewItemEvent) -> None:
    """Print one line for a new item."""
    item = event.item
    if isinstance(item, NewsFeedItem):
        text = item.title or item.summary
    elif isinstance(item, StatusFeedItem):
        text = item.status
    elif isinstance(item, ImageFeedItem):
        text = item.title or item.caption or item.thumbnail_uri
        largest = item.largest_size()
        if largest is not None:
            text = f"{text} [{largest}]"
    else:
        text = item.uri
    print(f"[{item.source_type.value:7}] {item.date:%Y-%m-%d %H:%M} {item.author or '-'}: {text}")


def report_status(event: SourceStatusEvent) -> None:
    state = "up" if event.is_up else "DOWN"
    print(f"  {event.source_id} is {state}")


def report_purge(event: CachePurgedEvent) -> None:
    print(f"  cache purged, {len(event.valid_items)} visible items remain")


def main() -> None:
    """Poll the configured sources until interrupted."""
    import argparse

    parser = argparse.ArgumentParser(description="Poll feeds and print the aggregated stream")
    parser.add_argument("--config", help="YAML configuration file")
    parser.add_argument("--news", action="append", default=[], help="News feed URL (repeatable)")
    parser.add_argument("--twitter", action="append", default=[], help="Twitter term, @user or !ban")
    parser.add_argument("--flickr", action="append", default=[], help="Flickr tag, @nsid, +group or !ban")
    parser.add_argument("--duration", type=int, default=0, help="Seconds to run (0 runs until Ctrl+C)")
    args = parser.parse_args()

    config = load_config_from_yaml(args.config) if args.config else Config()
    setup_logger(log_config=config.logging)

    aggregator = Aggregator(config)
    for source, terms in (
        (SourceType.NEWS, args.news),
        (SourceType.TWITTER, args.twitter),
        (SourceType.FLICKR, args.flickr),
    ):
        for term in terms:
            aggregator.add_query_term(source, term)

    aggregator.on_new_item(describe)
    aggregator.on_source_status(report_status)
    aggregator.on_cache_purged(report_purge)

    started = time.monotonic()
    aggregator.start()
    try:
        while not args.duration or time.monotonic() - started < args.duration:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nStopping...")
    finally:
        aggregator.close()

    logger.info(f"Polled {aggregator.feed_count} feeds, finished with {aggregator.item_count} cached items")


if __name__ == "__main__":
    main()
