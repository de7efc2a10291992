"""Core polling and aggregation modules for stream aggregation.

External code (scripts, consumers) should use the Aggregator facade and the
event types it publishes:

    from stream_aggregation.core import Aggregator, NewItemEvent

    aggregator = Aggregator(config)
    aggregator.on_new_item(lambda event: print(event.item))
    aggregator.start()

Adapters, pollers and the transport are exposed for tests and for embedding
single sources.
"""

from stream_aggregation.core.aggregator import Aggregator, SourceStatus
from stream_aggregation.core.events import (
    CachePurgedEvent,
    EventHub,
    FeedUpdatedEvent,
    ImageSizesEvent,
    NewItemEvent,
    SourceStatusEvent,
)
from stream_aggregation.core.exceptions import ConfigurationError, StreamAggregationError
from stream_aggregation.core.poller import FeedPoller, PollerState
from stream_aggregation.core.transport import FetchResult, HttpTransport, Transport

__all__ = [
    "Aggregator",
    "SourceStatus",
    "CachePurgedEvent",
    "EventHub",
    "FeedUpdatedEvent",
    "ImageSizesEvent",
    "NewItemEvent",
    "SourceStatusEvent",
    "ConfigurationError",
    "StreamAggregationError",
    "FeedPoller",
    "PollerState",
    "FetchResult",
    "HttpTransport",
    "Transport",
]
