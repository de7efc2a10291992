"""
RSS/Atom news feed adapter.
"""

from datetime import timedelta
from typing import Any, Optional

import feedparser

from stream_aggregation.core.adapters.base import (
    SourceAdapter,
    decode_html,
    strip_html,
    struct_time_to_datetime,
)
from stream_aggregation.logger import get_logger
from stream_aggregation.models.enums import SourceType
from stream_aggregation.models.feed_item import NewsFeedItem

logger = get_logger(__name__)


class NewsAdapter(SourceAdapter):
    """Polls one syndication feed; the query is the feed URL."""

    source_type = SourceType.NEWS
    min_poll_interval = timedelta(minutes=5)
    error_cooldown = timedelta(hours=2)

    def __init__(self, query: str, min_date=None, error_cooldown: Optional[timedelta] = None):
        super().__init__(query, min_date)
        if error_cooldown is not None:
            self.error_cooldown = error_cooldown

    def build_query(self) -> str:
        return self.query

    def parse(self, body: str) -> list[NewsFeedItem]:
        parsed = feedparser.parse(body)
        if parsed.bozo and not parsed.entries:
            raise ValueError(f"Not a feed: {parsed.get('bozo_exception')}")

        items = []
        for entry in parsed.entries:
            try:
                item = self._transform(entry)
            except Exception as e:
                logger.debug(f"Skipping malformed entry in {self.query}: {type(e).__name__}: {e}")
                continue
            if item is not None:
                items.append(item)
        return items

    def _transform(self, entry: Any) -> Optional[NewsFeedItem]:
        """Convert a feedparser entry, or return None when it must be skipped."""
        date = struct_time_to_datetime(entry.get("published_parsed") or entry.get("updated_parsed"))
        if date is None:
            logger.debug(f"Skipping undated entry in {self.query}")
            return None
        if self.is_too_old(date):
            return None

        body = self._extract_body(entry)
        if not body:
            logger.debug(f"Skipping entry without content in {self.query}")
            return None

        summary = decode_html(strip_html(entry.get("summary") or body)).strip()
        title = decode_html(entry.get("title")).strip()
        author = decode_html(entry.get("author")).strip()

        return NewsFeedItem(
            uri=self._resolve_link(entry),
            date=date,
            author=author or None,
            source_type=SourceType.NEWS,
            title=title or None,
            summary=summary or None,
            body=body,
        )

    def _extract_body(self, entry: Any) -> str:
        """Get the full content, falling back to the summary."""
        for content in entry.get("content") or []:
            value = content.get("value")
            if value and value.strip():
                return value.strip()
        return (entry.get("summary") or "").strip()

    def _resolve_link(self, entry: Any) -> str:
        """Pick the article link.

        Priority: permalink guid, feedburner original link, first alternate
        link, first link of any kind, then the feed URL itself.
        """
        guid = entry.get("id")
        if entry.get("guidislink") and guid and guid.startswith(("http://", "https://")):
            return guid

        origlink = entry.get("feedburner_origlink")
        if origlink:
            return origlink

        links = [link for link in entry.get("links") or [] if link.get("href")]
        for link in links:
            if link.get("rel", "alternate").lower() == "alternate":
                return link["href"]
        if links:
            return links[0]["href"]

        return self.query
