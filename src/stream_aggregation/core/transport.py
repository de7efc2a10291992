"""
HTTP transport used by the pollers.

A request is issued with ``fetch(url, callback)`` and completes on a worker
thread. HTTP and network failures are never raised; they are reported as a
FetchResult with a non-200 status code.
"""

import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Optional

import httpx

from stream_aggregation.config import TransportConfig, get_config
from stream_aggregation.logger import get_logger

logger = get_logger(__name__)

# Status codes reported for failures that never produced a response
STATUS_TIMEOUT = 408
STATUS_UNAVAILABLE = 503


@dataclass
class FetchResult:
    """Outcome of one request."""

    url: str
    status_code: int
    body: Optional[str] = None
    error: Optional[str] = None
    fetch_time_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status_code == 200


FetchCallback = Callable[[FetchResult], None]


@dataclass
class FetchStats:
    """Statistics for transport operations."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    total_time_seconds: float = 0.0
    errors_by_status: dict = field(default_factory=dict)

    def add_result(self, result: FetchResult) -> None:
        """Add a fetch result to statistics.

        Args:
            result: FetchResult to add
        """
        self.total_requests += 1
        self.total_time_seconds += result.fetch_time_seconds

        if result.ok:
            self.successful_requests += 1
        else:
            self.failed_requests += 1
            self.errors_by_status[result.status_code] = (
                self.errors_by_status.get(result.status_code, 0) + 1
            )

    @property
    def success_rate(self) -> float:
        """Calculate success rate."""
        if self.total_requests == 0:
            return 0.0
        return self.successful_requests / self.total_requests

    @property
    def avg_time_seconds(self) -> float:
        """Calculate average request time."""
        if self.total_requests == 0:
            return 0.0
        return self.total_time_seconds / self.total_requests


class Transport(ABC):
    """Asynchronous request/response channel."""

    @abstractmethod
    def fetch(self, url: str, callback: FetchCallback) -> None:
        """Issue a GET request and invoke ``callback`` exactly once with the outcome."""

    def close(self) -> None:
        """Release resources held by the transport."""


class HttpTransport(Transport):
    """Transport backed by a shared httpx client and a worker pool."""

    def __init__(
        self,
        timeout_seconds: Optional[int] = None,
        user_agent: Optional[str] = None,
        max_workers: Optional[int] = None,
        config: Optional[TransportConfig] = None,
    ):
        """Initialize HTTP transport.

        Args:
            timeout_seconds: Request timeout in seconds
            user_agent: User-Agent header for HTTP requests
            max_workers: Number of requests that may be in flight at once
            config: Transport section to use instead of the global configuration
        """
        config = config or get_config().transport

        self.timeout_seconds = timeout_seconds or config.timeout_seconds
        self.user_agent = user_agent or config.user_agent
        self.max_workers = max_workers or config.max_workers

        self._client = httpx.Client(
            timeout=self.timeout_seconds,
            follow_redirects=config.follow_redirects,
            max_redirects=config.max_redirects,
            headers={"User-Agent": self.user_agent},
        )
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="transport"
        )

        self.stats = FetchStats()
        self._stats_lock = threading.Lock()
        self._closed = False

    def fetch(self, url: str, callback: FetchCallback) -> None:
        if self._closed:
            callback(FetchResult(url=url, status_code=STATUS_UNAVAILABLE, error="Transport closed"))
            return
        self._executor.submit(self._complete, url, callback)

    def fetch_sync(self, url: str) -> FetchResult:
        """Perform a request on the calling thread.

        Args:
            url: URL to fetch

        Returns:
            FetchResult carrying the status code and body
        """
        start_time = time.time()
        logger.debug(f"GET {url}")

        try:
            response = self._client.get(url)
            result = FetchResult(
                url=url,
                status_code=response.status_code,
                body=response.text,
                fetch_time_seconds=time.time() - start_time,
            )
            if not result.ok:
                result.error = f"HTTP {response.status_code}"

        except httpx.TimeoutException as e:
            logger.warning(f"Timeout fetching {url}: {e}")
            result = FetchResult(
                url=url,
                status_code=STATUS_TIMEOUT,
                error=f"Timeout: {str(e)}",
                fetch_time_seconds=time.time() - start_time,
            )

        except httpx.RequestError as e:
            logger.warning(f"Network error fetching {url}: {e}")
            result = FetchResult(
                url=url,
                status_code=STATUS_UNAVAILABLE,
                error=f"Request error: {str(e)}",
                fetch_time_seconds=time.time() - start_time,
            )

        except Exception as e:
            logger.error(f"Error fetching {url}: {type(e).__name__}: {e}")
            result = FetchResult(
                url=url,
                status_code=STATUS_UNAVAILABLE,
                error=f"Unexpected error: {type(e).__name__}: {str(e)}",
                fetch_time_seconds=time.time() - start_time,
            )

        with self._stats_lock:
            self.stats.add_result(result)

        logger.debug(f"{url} -> {result.status_code} in {result.fetch_time_seconds:.2f}s")
        return result

    def _complete(self, url: str, callback: FetchCallback) -> None:
        result = self.fetch_sync(url)
        try:
            callback(result)
        except Exception as e:
            logger.exception(f"Response handler failed for {url}: {e}")

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._client.close()
        logger.debug("HTTP transport closed")
