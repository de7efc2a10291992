"""Source adapters for the supported services."""

from stream_aggregation.core.adapters.base import (
    EPOCH,
    NEVER,
    SourceAdapter,
    decode_html,
    strip_html,
    struct_time_to_datetime,
    utcnow,
)
from stream_aggregation.core.adapters.flickr import (
    FlickrAdapter,
    FlickrGroupAdapter,
    FlickrSearchAdapter,
    FlickrUserAdapter,
    parse_image_sizes,
    sizes_query,
)
from stream_aggregation.core.adapters.news import NewsAdapter
from stream_aggregation.core.adapters.twitter import (
    TwitterSearchAdapter,
    TwitterUserAdapter,
    find_image_link,
    promote_image_link,
)

__all__ = [
    "EPOCH",
    "NEVER",
    "SourceAdapter",
    "decode_html",
    "strip_html",
    "struct_time_to_datetime",
    "utcnow",
    "FlickrAdapter",
    "FlickrGroupAdapter",
    "FlickrSearchAdapter",
    "FlickrUserAdapter",
    "parse_image_sizes",
    "sizes_query",
    "NewsAdapter",
    "TwitterSearchAdapter",
    "TwitterUserAdapter",
    "find_image_link",
    "promote_image_link",
]
