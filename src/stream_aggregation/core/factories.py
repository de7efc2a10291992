"""
Factory functions for creating core components from configuration.

Usage:
    from stream_aggregation.core.factories import (
        create_adapter,
        create_transport,
        create_scheduler,
        create_filter_engine,
        create_deduplicator,
    )

    # Create with default configuration
    transport = create_transport()

    # Create from an explicit configuration section
    scheduler = create_scheduler(config.scheduler)
"""

from datetime import datetime, timedelta
from typing import Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler

from stream_aggregation.config import (
    AggregatorConfig,
    SchedulerConfig,
    SourcesConfig,
    TransportConfig,
    get_config,
)
from stream_aggregation.core.adapters import (
    FlickrGroupAdapter,
    FlickrSearchAdapter,
    FlickrUserAdapter,
    NewsAdapter,
    SourceAdapter,
    TwitterSearchAdapter,
    TwitterUserAdapter,
)
from stream_aggregation.core.deduplicator import Deduplicator
from stream_aggregation.core.filter_engine import FilterEngine
from stream_aggregation.core.query import (
    FLICKR_GROUP,
    FLICKR_SEARCH,
    FLICKR_USER,
    NEWS,
    TWITTER_SEARCH,
    TWITTER_USER,
    QueryPlan,
)
from stream_aggregation.core.transport import HttpTransport


def create_adapter(
    plan: QueryPlan,
    sources: Optional[SourcesConfig] = None,
    min_date: Optional[datetime] = None,
) -> SourceAdapter:
    """Create the adapter for a planned query.

    Args:
        plan: Adapter kind and query fragment
        sources: Endpoint, credential and page size settings
        min_date: Entries older than this are dropped by the adapter

    Returns:
        Configured SourceAdapter instance

    Raises:
        ConfigurationError: If the source's settings cannot be used
        ValueError: If the plan names an unknown adapter kind
    """
    sources = sources or get_config().sources

    if plan.kind == NEWS:
        return NewsAdapter(
            plan.query,
            min_date=min_date,
            error_cooldown=timedelta(minutes=sources.news_error_cooldown_minutes),
        )

    flickr_adapters = {
        FLICKR_SEARCH: FlickrSearchAdapter,
        FLICKR_GROUP: FlickrGroupAdapter,
        FLICKR_USER: FlickrUserAdapter,
    }
    if plan.kind in flickr_adapters:
        return flickr_adapters[plan.kind](
            plan.query,
            api_key=sources.flickr_api_key,
            min_date=min_date,
            rest_url=sources.flickr_rest_url,
            page_size=sources.flickr_page_size,
        )

    if plan.kind == TWITTER_SEARCH:
        return TwitterSearchAdapter(
            plan.query,
            min_date=min_date,
            endpoint=sources.twitter_search_url,
            page_size=sources.twitter_page_size,
        )

    if plan.kind == TWITTER_USER:
        return TwitterUserAdapter(
            plan.query,
            min_date=min_date,
            endpoint=sources.twitter_user_url,
            page_size=sources.twitter_user_page_size,
        )

    raise ValueError(f"Unknown adapter kind: {plan.kind}")


def create_transport(config: Optional[TransportConfig] = None) -> HttpTransport:
    """Create a configured HttpTransport instance.

    Args:
        config: Transport section (default from the global configuration)

    Returns:
        Configured HttpTransport instance
    """
    return HttpTransport(config=config or get_config().transport)


def create_scheduler(config: Optional[SchedulerConfig] = None) -> BackgroundScheduler:
    """Create the background scheduler that drives the poll timers.

    Args:
        config: Scheduler section (default from the global configuration)

    Returns:
        BackgroundScheduler instance (not started)
    """
    config = config or get_config().scheduler
    return BackgroundScheduler(
        executors={"default": ThreadPoolExecutor(max_workers=config.max_workers)},
        job_defaults={
            "coalesce": config.coalesce,
            "misfire_grace_time": config.misfire_grace_time,
            "max_instances": 1,
        },
        timezone=config.timezone,
    )


def create_filter_engine(
    config: Optional[AggregatorConfig] = None,
    profanity: Optional[list[str]] = None,
) -> FilterEngine:
    """Create a configured FilterEngine instance.

    Args:
        config: Aggregator section (default from the global configuration)
        profanity: Override the configured banned words

    Returns:
        Configured FilterEngine instance
    """
    config = config or get_config().aggregator
    return FilterEngine(
        profanity=profanity if profanity is not None else config.load_profanity(),
        profanity_enabled=config.profanity_enabled,
        whole_words=config.profanity_whole_words,
    )


def create_deduplicator(config: Optional[AggregatorConfig] = None) -> Deduplicator:
    """Create a Deduplicator using the configured duplicate policy."""
    config = config or get_config().aggregator
    return Deduplicator(policy=config.duplicate_policy)
