"""Shared fixtures: fake transports, a fixed clock and item builders."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from stream_aggregation.core.transport import FetchResult, Transport
from stream_aggregation.models import (
    ImageFeedItem,
    NewsFeedItem,
    SourceType,
    StatusFeedItem,
)

FLICKR_KEY = "0123456789abcdef0123456789abcdef"
NOW = datetime(2021, 9, 7, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Clock returning a settable time."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeTransport(Transport):
    """Completes every request synchronously with a canned response."""

    def __init__(self, status_code: int = 200, body: str = ""):
        self.default = (status_code, body)
        self.routes: dict[str, tuple[int, str]] = {}
        self.requests: list[str] = []
        self.closed = False

    def respond(self, match: str, status_code: int, body: str = "") -> None:
        """Answer requests whose URL contains ``match``."""
        self.routes[match] = (status_code, body)

    def fetch(self, url, callback):
        self.requests.append(url)
        status_code, body = self.default
        for match, response in self.routes.items():
            if match in url:
                status_code, body = response
                break
        callback(FetchResult(url=url, status_code=status_code, body=body))

    def close(self):
        self.closed = True


class DeferredTransport(Transport):
    """Holds requests until the test completes them."""

    def __init__(self):
        self.pending: list[tuple[str, object]] = []
        self.requests: list[str] = []

    def fetch(self, url, callback):
        self.requests.append(url)
        self.pending.append((url, callback))

    def complete(self, status_code: int = 200, body: str = "", index: int = 0) -> None:
        url, callback = self.pending.pop(index)
        callback(FetchResult(url=url, status_code=status_code, body=body))


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def deferred_transport():
    return DeferredTransport()


@pytest.fixture
def scheduler():
    """Mock APScheduler scheduler that never fires jobs on its own."""
    mock = MagicMock()
    mock.running = False
    return mock


def news_item(uri: str, date: datetime = NOW, **kwargs) -> NewsFeedItem:
    kwargs.setdefault("title", f"Title of {uri}")
    kwargs.setdefault("body", f"Body of {uri}")
    return NewsFeedItem(uri=uri, date=date, source_type=SourceType.NEWS, **kwargs)


def status_item(uri: str, date: datetime = NOW, **kwargs) -> StatusFeedItem:
    kwargs.setdefault("status", f"Status {uri}")
    return StatusFeedItem(uri=uri, date=date, source_type=SourceType.TWITTER, **kwargs)


def image_item(uri: str, date: datetime = NOW, **kwargs) -> ImageFeedItem:
    kwargs.setdefault("title", f"Photo {uri}")
    return ImageFeedItem(uri=uri, date=date, source_type=SourceType.FLICKR, **kwargs)
