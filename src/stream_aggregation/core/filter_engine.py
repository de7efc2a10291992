"""
Filter engine deciding whether a cached item is shown.

Rules are checked in a fixed order and the first match wins:
profanity, keyword ban, author ban, URI ban. Ban rules are kept per
source type; the profanity list applies to every source.
"""

import re
from typing import Iterable, Optional

from stream_aggregation.core.query import QueryTerms
from stream_aggregation.logger import get_logger
from stream_aggregation.models.enums import BlockReason, SourceType
from stream_aggregation.models.feed_item import FeedItem

logger = get_logger(__name__)


class FilterResult:
    """Result of filtering an item."""

    def __init__(self, block_reason: BlockReason = BlockReason.NONE, matched: Optional[str] = None) -> None:
        """Initialize filter result.

        Args:
            block_reason: Why the item is blocked (NONE if it passed)
            matched: The word, term, author or URI that matched
        """
        self.block_reason = block_reason
        self.matched = matched

    @property
    def passed(self) -> bool:
        return self.block_reason == BlockReason.NONE

    def __repr__(self) -> str:
        return f"<FilterResult(block_reason={self.block_reason.value}, matched={self.matched!r})>"


def _compile_terms(terms: Iterable[str], whole_words: bool) -> Optional[re.Pattern]:
    """Compile terms into one case-insensitive alternation."""
    escaped = [re.escape(term) for term in terms if term]
    if not escaped:
        return None
    pattern = "|".join(sorted(escaped, key=len, reverse=True))
    if whole_words:
        pattern = rf"(?<!\w)(?:{pattern})(?!\w)"
    return re.compile(pattern, re.IGNORECASE)


class _SourceBans:
    """Compiled ban rules for one source."""

    def __init__(self, terms: QueryTerms) -> None:
        self.keywords = _compile_terms(terms.keyword_bans, whole_words=True)
        self.authors = {author.casefold() for author in terms.author_bans}
        self.uris = {uri.casefold() for uri in terms.uri_bans}


class FilterEngine:
    """Applies profanity and ban rules to items."""

    def __init__(
        self,
        profanity: Optional[list[str]] = None,
        profanity_enabled: bool = False,
        whole_words: bool = False,
    ) -> None:
        """Initialize filter engine.

        Args:
            profanity: Banned words
            profanity_enabled: Whether the profanity list is applied
            whole_words: Match banned words on word boundaries only
        """
        self.profanity_enabled = profanity_enabled
        self.whole_words = whole_words
        self._bans: dict[SourceType, _SourceBans] = {}
        self.set_profanity(profanity or [])

    @property
    def profanity(self) -> list[str]:
        return list(self._profanity)

    def set_profanity(self, words: Iterable[str]) -> None:
        """Replace the banned word list."""
        self._profanity = [word.strip() for word in words if word and word.strip()]
        self._profanity_pattern = _compile_terms(self._profanity, self.whole_words)
        logger.debug(f"Profanity list set to {len(self._profanity)} words")

    def set_whole_words(self, whole_words: bool) -> None:
        self.whole_words = whole_words
        self._profanity_pattern = _compile_terms(self._profanity, whole_words)

    def set_bans(self, source_type: SourceType, terms: QueryTerms) -> None:
        """Replace the ban rules of one source."""
        if terms.has_bans:
            self._bans[source_type] = _SourceBans(terms)
        else:
            self._bans.pop(source_type, None)

    def evaluate(self, item: FeedItem) -> FilterResult:
        """Check an item against all rules.

        Args:
            item: Item to check

        Returns:
            FilterResult with the first matching rule's reason
        """
        texts = item.text_fields()

        if self.profanity_enabled and self._profanity_pattern is not None:
            match = self._search(self._profanity_pattern, texts)
            if match:
                return FilterResult(BlockReason.PROFANITY, match)

        bans = self._bans.get(item.source_type)
        if bans is None:
            return FilterResult()

        if bans.keywords is not None:
            match = self._search(bans.keywords, texts)
            if match:
                return FilterResult(BlockReason.KEYWORD, match)

        if item.author and item.author.casefold() in bans.authors:
            return FilterResult(BlockReason.AUTHOR, item.author)

        if item.uri.casefold() in bans.uris:
            return FilterResult(BlockReason.URI, item.uri)

        return FilterResult()

    def apply(self, item: FeedItem) -> bool:
        """Set the item's block reason.

        Returns:
            True if the block reason changed
        """
        reason = self.evaluate(item).block_reason
        if reason == item.block_reason:
            return False
        item.block_reason = reason
        return True

    @staticmethod
    def _search(pattern: re.Pattern, texts: list[str]) -> Optional[str]:
        for text in texts:
            match = pattern.search(text)
            if match:
                return match.group(0)
        return None
