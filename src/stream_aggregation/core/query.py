"""
Query term parsing and request planning.

Each source keeps an ordered list of terms. Terms carry a one-character
marker:

    !term        ban items containing "term"
    !@name       ban items by author "name"
    !http://...  ban an item URI
    @name        follow a user (Twitter timeline, Flickr member NSID)
    +group       follow a Flickr group pool (group id)
    term         search term, or a feed URL for news

Ban terms never reach a request. Positive terms are grouped into as few
requests as each service allows; every request becomes one poller.
"""

from dataclasses import dataclass, field
from typing import Iterable, NamedTuple
from urllib.parse import quote_plus, urlparse

from stream_aggregation.logger import get_logger
from stream_aggregation.models.enums import SourceType

logger = get_logger(__name__)

BAN_MARKER = "!"
AUTHOR_MARKER = "@"
GROUP_MARKER = "+"

# Limits imposed by the services
MAX_FLICKR_TAGS = 20
MAX_TWITTER_QUERY_LENGTH = 140


class QueryPlan(NamedTuple):
    """One request shape: adapter kind plus its query fragment."""

    kind: str
    query: str


# Adapter kinds
NEWS = "NewsAdapter"
FLICKR_SEARCH = "FlickrSearchAdapter"
FLICKR_GROUP = "FlickrGroupAdapter"
FLICKR_USER = "FlickrUserAdapter"
TWITTER_SEARCH = "TwitterSearchAdapter"
TWITTER_USER = "TwitterUserAdapter"


def normalize_terms(terms: Iterable[str]) -> list[str]:
    """Trim terms and drop blanks and duplicates, keeping first occurrence order."""
    result = []
    for term in terms:
        term = (term or "").strip()
        if term and term not in result:
            result.append(term)
    return result


def is_absolute_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme.lower() in ("http", "https") and bool(parsed.netloc)


@dataclass
class QueryTerms:
    """A term list split by marker."""

    search: list[str] = field(default_factory=list)
    authors: list[str] = field(default_factory=list)
    groups: list[str] = field(default_factory=list)
    keyword_bans: list[str] = field(default_factory=list)
    author_bans: list[str] = field(default_factory=list)
    uri_bans: list[str] = field(default_factory=list)

    @classmethod
    def parse(cls, terms: Iterable[str]) -> "QueryTerms":
        """Split a term list.

        Args:
            terms: Raw terms as configured

        Returns:
            QueryTerms with markers removed
        """
        parsed = cls()
        for term in normalize_terms(terms):
            if term.startswith(BAN_MARKER):
                parsed._add_ban(term[len(BAN_MARKER):].strip())
            elif term.startswith(AUTHOR_MARKER):
                _append(parsed.authors, term[len(AUTHOR_MARKER):].strip())
            elif term.startswith(GROUP_MARKER):
                _append(parsed.groups, term[len(GROUP_MARKER):].strip())
            else:
                _append(parsed.search, term)
        return parsed

    def _add_ban(self, term: str) -> None:
        if term.startswith(AUTHOR_MARKER):
            _append(self.author_bans, term[len(AUTHOR_MARKER):].strip())
        elif is_absolute_url(term):
            _append(self.uri_bans, term)
        else:
            _append(self.keyword_bans, term)

    @property
    def has_bans(self) -> bool:
        return bool(self.keyword_bans or self.author_bans or self.uri_bans)


def _append(values: list[str], value: str) -> None:
    if value and value not in values:
        values.append(value)


def batch_terms(terms: list[str], joiner: str, max_length: int) -> list[str]:
    """Join terms into as few queries as possible under an encoded length limit.

    A single term longer than the limit still gets a query of its own.

    Args:
        terms: Terms to join
        joiner: Separator placed between terms
        max_length: Maximum URL-encoded query length

    Returns:
        Joined queries in term order
    """
    batches: list[list[str]] = []
    for term in terms:
        if batches:
            candidate = joiner.join(batches[-1] + [term])
            if len(quote_plus(candidate)) <= max_length:
                batches[-1].append(term)
                continue
        batches.append([term])
    return [joiner.join(batch) for batch in batches]


def chunk_terms(terms: list[str], size: int) -> list[list[str]]:
    return [terms[i:i + size] for i in range(0, len(terms), size)]


def plan_queries(source_type: SourceType, terms: QueryTerms) -> list[QueryPlan]:
    """Plan the requests needed to cover a source's positive terms.

    Args:
        source_type: Source the terms belong to
        terms: Parsed terms

    Returns:
        One QueryPlan per poller
    """
    plans: list[QueryPlan] = []

    if source_type == SourceType.NEWS:
        for term in terms.search:
            if is_absolute_url(term):
                plans.append(QueryPlan(NEWS, term))
            else:
                logger.debug(f"Ignoring news term that is not a feed URL: '{term}'")

    elif source_type == SourceType.FLICKR:
        for chunk in chunk_terms(terms.search, MAX_FLICKR_TAGS):
            plans.append(QueryPlan(FLICKR_SEARCH, ",".join(chunk)))
        plans.extend(QueryPlan(FLICKR_USER, user) for user in terms.authors)
        plans.extend(QueryPlan(FLICKR_GROUP, group) for group in terms.groups)

    elif source_type == SourceType.TWITTER:
        for query in batch_terms(terms.search, " OR ", MAX_TWITTER_QUERY_LENGTH):
            plans.append(QueryPlan(TWITTER_SEARCH, query))
        plans.extend(QueryPlan(TWITTER_USER, user) for user in terms.authors)
        if terms.groups:
            logger.debug(f"Ignoring group terms for twitter: {terms.groups}")

    else:
        logger.debug(f"No request planning for source '{source_type.value}'")

    return plans
