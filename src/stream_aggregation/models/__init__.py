"""Data models for stream aggregation."""

from stream_aggregation.models.enums import (
    CONTENT_TYPES,
    BlockReason,
    ContentType,
    DuplicatePolicy,
    RetrievalOrder,
    SourceType,
)
from stream_aggregation.models.feed_item import (
    FeedItem,
    ImageFeedItem,
    ImageSize,
    NewsFeedItem,
    StatusFeedItem,
)

__all__ = [
    "CONTENT_TYPES",
    "BlockReason",
    "ContentType",
    "DuplicatePolicy",
    "RetrievalOrder",
    "SourceType",
    "FeedItem",
    "ImageFeedItem",
    "ImageSize",
    "NewsFeedItem",
    "StatusFeedItem",
]
