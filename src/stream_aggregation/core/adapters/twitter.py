"""
Twitter Atom adapters for keyword search and user timelines.
"""

import re
from datetime import datetime, timedelta
from typing import Any, Optional
from urllib.parse import urlencode

import feedparser

from stream_aggregation.core.adapters.base import (
    SourceAdapter,
    decode_html,
    strip_html,
    struct_time_to_datetime,
)
from stream_aggregation.logger import get_logger
from stream_aggregation.models.enums import SourceType
from stream_aggregation.models.feed_item import FeedItem, ImageFeedItem, StatusFeedItem

logger = get_logger(__name__)

DEFAULT_SEARCH_URL = "https://search.twitter.com/search.atom"
DEFAULT_USER_URL = "https://api.twitter.com/1/statuses/user_timeline.atom"

# Rate limit replies ("Enhance Your Calm" and Too Many Requests)
RATE_LIMITED = (420, 429)

# Image hosting links and the direct image URL for each; the first match wins
IMAGE_HOSTS = (
    (re.compile(r"https?://(?:www\.)?yfrog\.com/(\w+)\b", re.IGNORECASE), "http://yfrog.com/{}:iphone"),
    (re.compile(r"https?://(?:www\.)?twitpic\.com/(\w+)\b", re.IGNORECASE), "http://twitpic.com/show/large/{}"),
    (
        re.compile(r"https?://(?:www\.)?tweetphoto\.com/(\d+)\b", re.IGNORECASE),
        "http://tweetphotoapi.com/api/TPAPI.svc/imagefromurl?size=big&url=http://tweetphoto.com/{}",
    ),
)


class TwitterSearchAdapter(SourceAdapter):
    """Recent statuses matching an OR-joined term list."""

    source_type = SourceType.TWITTER
    min_poll_interval = timedelta(hours=1) / 150
    error_cooldown = timedelta(minutes=10)
    status_cooldowns = {
        420: timedelta(minutes=5),
        429: timedelta(minutes=5),
        502: timedelta(minutes=5),
        408: timedelta(minutes=5),
        500: timedelta(minutes=2),
        503: timedelta(minutes=2),
    }

    def __init__(
        self,
        query: str,
        min_date: Optional[datetime] = None,
        endpoint: str = DEFAULT_SEARCH_URL,
        page_size: int = 100,
    ):
        super().__init__(query, min_date)
        self.endpoint = endpoint
        self.page_size = page_size

        # Highest status id seen
        self.last_id = 0

    def query_params(self) -> dict:
        return {
            "q": self.query,
            "page": 1,
            "rpp": self.page_size,
            "result_type": "recent",
        }

    def build_query(self) -> str:
        params = self.query_params()
        if self.last_id > 0:
            params["since_id"] = self.last_id
        return f"{self.endpoint}?{urlencode(params)}"

    def is_source_up(self, status_code: int) -> bool:
        return status_code == 200 or status_code in RATE_LIMITED

    def parse(self, body: str) -> list[StatusFeedItem]:
        parsed = feedparser.parse(body)
        if parsed.bozo and not parsed.entries:
            raise ValueError(f"Not an Atom feed: {parsed.get('bozo_exception')}")

        items = []
        for entry in parsed.entries:
            try:
                item = self._transform(entry)
            except Exception as e:
                logger.debug(f"Skipping malformed status: {type(e).__name__}: {e}")
                continue
            if item is not None:
                items.append(item)
        return items

    def _transform(self, entry: Any) -> Optional[StatusFeedItem]:
        link = entry["link"]
        status_id = int(link.rstrip("/").rsplit("/", 1)[-1])
        self.last_id = max(self.last_id, status_id)

        date = struct_time_to_datetime(entry.get("published_parsed") or entry.get("updated_parsed"))
        if date is None or self.is_too_old(date):
            return None

        author, text = self._split_title(entry)
        status = decode_html(strip_html(text)).strip()
        if not status:
            return None

        return StatusFeedItem(
            uri=link,
            date=date,
            author=decode_html(author).strip() or None,
            avatar_uri=self._avatar_uri(entry),
            source_type=SourceType.TWITTER,
            service_id=str(status_id),
            status=status,
        )

    def _split_title(self, entry: Any) -> tuple[str, str]:
        """Get (author, status text) for a search result.

        The author name reads like "screen_name (Full Name)", so the screen
        name is taken from the author URI instead.
        """
        author_uri = (entry.get("author_detail") or {}).get("href") or ""
        if author_uri:
            author = author_uri.rstrip("/").rsplit("/", 1)[-1]
        else:
            author = (entry.get("author") or "").split(" ", 1)[0]
        return author, entry.get("title") or ""

    @staticmethod
    def _avatar_uri(entry: Any) -> Optional[str]:
        for link in entry.get("links") or []:
            if link.get("rel") == "image" and link.get("href"):
                return link["href"]
        return None


class TwitterUserAdapter(TwitterSearchAdapter):
    """Statuses of one user; the query is the screen name."""

    def __init__(
        self,
        query: str,
        min_date: Optional[datetime] = None,
        endpoint: str = DEFAULT_USER_URL,
        page_size: int = 200,
    ):
        super().__init__(query, min_date, endpoint=endpoint, page_size=page_size)

    def query_params(self) -> dict:
        return {
            "screen_name": self.query,
            "count": self.page_size,
            "page": 1,
        }

    def _split_title(self, entry: Any) -> tuple[str, str]:
        # Timeline titles read "screen_name: status text"
        title = entry.get("title") or ""
        author, sep, text = title.partition(": ")
        if not sep:
            return self.query, title
        return author, text


def find_image_link(status: str) -> Optional[tuple[str, str]]:
    """Find a hosted image link in a status.

    Returns:
        (image URL, status with the link removed), or None if no known host is linked
    """
    for pattern, template in IMAGE_HOSTS:
        match = pattern.search(status)
        if match:
            return template.format(match.group(1)), status.replace(match.group(0), "").strip()
    return None


def promote_image_link(item: FeedItem) -> FeedItem:
    """Turn a status that links a hosted image into an image item.

    The image keeps the status's identity, so a later copy of the same
    status deduplicates against it. Other items are returned unchanged.
    """
    if not isinstance(item, StatusFeedItem) or not item.status:
        return item

    found = find_image_link(item.status)
    if found is None:
        return item

    image_uri, caption = found
    return ImageFeedItem(
        uri=item.uri,
        date=item.date,
        author=item.author,
        avatar_uri=item.avatar_uri,
        source_type=item.source_type,
        service_id=item.service_id,
        block_reason=item.block_reason,
        caption=caption or None,
        thumbnail_uri=image_uri,
    )
