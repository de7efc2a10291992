"""Unit tests for the HTTP transport."""

import threading

import httpx
import pytest

from stream_aggregation.config import TransportConfig
from stream_aggregation.core.transport import (
    STATUS_TIMEOUT,
    STATUS_UNAVAILABLE,
    FetchResult,
    FetchStats,
    HttpTransport,
)


def make_transport(handler) -> HttpTransport:
    """Create a transport whose client answers through a handler."""
    transport = HttpTransport(config=TransportConfig(max_workers=2))
    transport._client.close()
    transport._client = httpx.Client(transport=httpx.MockTransport(handler))
    return transport


def ok_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/missing":
        return httpx.Response(404, text="Not found")
    return httpx.Response(200, text="<rss/>")


@pytest.fixture
def transport():
    transport = make_transport(ok_handler)
    yield transport
    transport.close()


class TestFetchResult:
    """Tests for FetchResult dataclass."""

    def test_ok(self):
        assert FetchResult(url="https://a", status_code=200).ok
        assert not FetchResult(url="https://a", status_code=500).ok


class TestFetchStats:
    """Tests for FetchStats dataclass."""

    def test_add_results(self):
        """Test counters, success rate and average time."""
        stats = FetchStats()
        stats.add_result(FetchResult(url="https://a", status_code=200, fetch_time_seconds=1.0))
        stats.add_result(FetchResult(url="https://a", status_code=503, fetch_time_seconds=3.0))

        assert stats.total_requests == 2
        assert stats.successful_requests == 1
        assert stats.failed_requests == 1
        assert stats.errors_by_status == {503: 1}
        assert stats.success_rate == 0.5
        assert stats.avg_time_seconds == 2.0

    def test_empty_stats(self):
        stats = FetchStats()

        assert stats.success_rate == 0.0
        assert stats.avg_time_seconds == 0.0


class TestHttpTransport:
    """Tests for HttpTransport."""

    def test_success(self, transport):
        """Test a successful request."""
        result = transport.fetch_sync("https://example.com/feed.xml")

        assert result.status_code == 200
        assert result.body == "<rss/>"
        assert result.error is None

    def test_not_found(self, transport):
        """Test that HTTP errors are returned, not raised."""
        result = transport.fetch_sync("https://example.com/missing")

        assert result.status_code == 404
        assert result.error == "HTTP 404"

    def test_timeout(self):
        """Test that a timeout is reported as 408."""

        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        transport = make_transport(handler)
        try:
            result = transport.fetch_sync("https://example.com/slow")
        finally:
            transport.close()

        assert result.status_code == STATUS_TIMEOUT
        assert "Timeout" in result.error

    def test_network_error(self):
        """Test that a connection failure is reported as 503."""

        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        transport = make_transport(handler)
        try:
            result = transport.fetch_sync("https://example.com/down")
        finally:
            transport.close()

        assert result.status_code == STATUS_UNAVAILABLE
        assert result.body is None

    def test_stats_updated(self, transport):
        transport.fetch_sync("https://example.com/feed.xml")
        transport.fetch_sync("https://example.com/missing")

        assert transport.stats.total_requests == 2
        assert transport.stats.errors_by_status == {404: 1}

    def test_async_fetch(self, transport):
        """Test that fetch() completes on a worker thread."""
        done = threading.Event()
        results = []

        def callback(result):
            results.append(result)
            done.set()

        transport.fetch("https://example.com/feed.xml", callback)

        assert done.wait(timeout=5)
        assert results[0].status_code == 200

    def test_fetch_after_close(self, transport):
        """Test that a closed transport answers immediately with 503."""
        transport.close()
        results = []

        transport.fetch("https://example.com/feed.xml", results.append)

        assert results[0].status_code == STATUS_UNAVAILABLE
        assert results[0].error == "Transport closed"

    def test_user_agent(self):
        """Test the configured User-Agent header."""
        transport = HttpTransport(user_agent="TestAgent/1.0", config=TransportConfig())
        try:
            assert transport._client.headers["User-Agent"] == "TestAgent/1.0"
        finally:
            transport.close()
