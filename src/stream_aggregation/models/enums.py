"""
Enumerations shared by the item model, the filters and the aggregator.
"""

from enum import Enum, Flag


class SourceType(str, Enum):
    """Service an item was retrieved from."""

    NEWS = "news"
    FLICKR = "flickr"
    TWITTER = "twitter"
    FACEBOOK = "facebook"


class ContentType(Flag):
    """Kind of content an item carries.

    Values are flags so a consumer can ask for several kinds at once,
    e.g. ``ContentType.STATUS | ContentType.NEWS``.
    """

    IMAGE = 1
    STATUS = 2
    NEWS = 4
    ALL = IMAGE | STATUS | NEWS


# Round-robin order used when distributing content evenly
CONTENT_TYPES: tuple[ContentType, ...] = (
    ContentType.IMAGE,
    ContentType.STATUS,
    ContentType.NEWS,
)


class BlockReason(str, Enum):
    """Why an item is hidden from the consumer."""

    NONE = "none"
    PROFANITY = "profanity"
    KEYWORD = "keyword"
    AUTHOR = "author"
    URI = "uri"


class RetrievalOrder(str, Enum):
    """Order in which items are offered to the consumer."""

    CHRONOLOGICAL = "chronological"
    ARRIVAL = "arrival"
    RANDOM = "random"


class DuplicatePolicy(str, Enum):
    """What to do when an incoming item has the same key as a cached one."""

    KEEP_EXISTING = "keep_existing"
    REPLACE_IF_NEW_INFO = "replace_if_new_info"
    REPLACE_ALWAYS = "replace_always"
