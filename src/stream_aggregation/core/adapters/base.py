"""
Base class for source adapters.

An adapter knows one service: how to build a request URL from its query,
how to turn a response body into FeedItems, how long to wait after a failed
request, and whether a status code means the service is reachable.
"""

import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from html import unescape
from typing import Optional

from bs4 import BeautifulSoup

from stream_aggregation.logger import get_logger
from stream_aggregation.models.enums import SourceType
from stream_aggregation.models.feed_item import FeedItem

logger = get_logger(__name__)

# Retry sentinels: poll at any time / never poll again
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
NEVER = datetime.max.replace(tzinfo=timezone.utc)


def utcnow() -> datetime:
    """Get the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def strip_html(html: Optional[str]) -> str:
    """Remove markup from a fragment, keeping its text.

    Args:
        html: HTML fragment

    Returns:
        Plain text content
    """
    if not html:
        return ""

    soup = BeautifulSoup(html, "html.parser")
    for element in soup(["script", "style", "noscript"]):
        element.decompose()
    return soup.get_text()


def decode_html(text: Optional[str]) -> str:
    """Decode HTML entities."""
    if not text:
        return ""
    return unescape(text)


def struct_time_to_datetime(parsed: Optional[time.struct_time]) -> Optional[datetime]:
    """Convert a feedparser UTC struct_time to an aware datetime."""
    if not parsed:
        return None
    return datetime(*parsed[:6], tzinfo=timezone.utc)


class SourceAdapter(ABC):
    """Translates between one service's wire format and FeedItems."""

    source_type: SourceType
    min_poll_interval: timedelta = timedelta(0)
    error_cooldown: timedelta = timedelta(minutes=10)

    # Cooldowns that differ from error_cooldown, keyed by status code
    status_cooldowns: dict[int, timedelta] = {}

    def __init__(self, query: str, min_date: Optional[datetime] = None):
        """Initialize adapter.

        Args:
            query: Planned query fragment (feed URL, tag list, user id...)
            min_date: Entries published before this date are dropped
        """
        self.query = query
        self.min_date = min_date or EPOCH

    @property
    def kind(self) -> str:
        """Name identifying the request shape, used to match re-planned queries."""
        return type(self).__name__

    @abstractmethod
    def build_query(self) -> str:
        """Build the request URL from the adapter's positive query.

        Returns:
            Absolute request URL
        """

    @abstractmethod
    def parse(self, body: str) -> list[FeedItem]:
        """Parse a response body.

        Malformed entries are skipped. May raise when the body as a whole
        cannot be parsed; process_response() handles that.
        """

    def process_response(self, body: str) -> list[FeedItem]:
        """Turn a response body into items without ever raising.

        Args:
            body: Response body of a successful request

        Returns:
            Items found in the response (possibly empty)
        """
        try:
            items = self.parse(body)
        except Exception as e:
            logger.warning(
                f"Unparseable {self.source_type.value} response for '{self.query}', "
                f"zero items produced: {type(e).__name__}: {e}"
            )
            return []

        logger.debug(f"{self.kind} '{self.query}' produced {len(items)} items")
        return items

    def retry_time(self, status_code: int, now: datetime) -> datetime:
        """Get the earliest time the next request may be issued.

        Args:
            status_code: Status code of the last request
            now: Current time

        Returns:
            EPOCH after a success, NEVER after a 404, otherwise now plus a cooldown
        """
        if status_code == 200:
            return EPOCH
        if status_code == 404:
            return NEVER
        return now + self.status_cooldowns.get(status_code, self.error_cooldown)

    def is_source_up(self, status_code: int) -> bool:
        """Whether a status code means the service is reachable."""
        return status_code == 200

    def is_too_old(self, date: datetime) -> bool:
        return date < self.min_date

    def __repr__(self) -> str:
        return f"<{self.kind}(query='{self.query}')>"
