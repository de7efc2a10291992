"""
Polling state machine for one planned query.

A FeedPoller owns a repeating APScheduler job. Each tick issues at most one
request; the job is paused while the request is in flight and resumed once
the response has been handled. After a failure the adapter decides how long
to back off; after a 404 the poller never requests again.
"""

import threading
import uuid
from datetime import datetime, timedelta
from enum import Enum
from functools import partial
from typing import Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.interval import IntervalTrigger

from stream_aggregation.core.adapters.base import EPOCH, SourceAdapter, utcnow
from stream_aggregation.core.transport import FetchResult, Transport
from stream_aggregation.logger import get_logger
from stream_aggregation.models.feed_item import FeedItem


class PollerState(str, Enum):
    """Lifecycle state of a poller."""

    IDLE = "idle"
    REQUESTING = "requesting"
    PARSING = "parsing"
    BACKOFF = "backoff"
    STOPPED = "stopped"


ItemsCallback = Callable[["FeedPoller", list[FeedItem]], None]
CompletedCallback = Callable[["FeedPoller", bool], None]


class FeedPoller:
    """Polls one adapter on a repeating timer."""

    def __init__(
        self,
        adapter: SourceAdapter,
        scheduler,
        transport: Transport,
        interval: timedelta,
        on_items: Optional[ItemsCallback] = None,
        on_completed: Optional[CompletedCallback] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize poller.

        Args:
            adapter: Adapter that builds requests and parses responses
            scheduler: APScheduler scheduler hosting the poll job
            transport: Transport used to issue requests
            interval: Requested poll interval (raised to the adapter's minimum)
            on_items: Called with the items parsed from a successful response
            on_completed: Called after every response with the source status
            clock: Returns the current aware UTC time
        """
        self.adapter = adapter
        self.scheduler = scheduler
        self.transport = transport
        self.interval = max(interval, adapter.min_poll_interval)
        self.on_items = on_items
        self.on_completed = on_completed
        self.clock = clock or utcnow

        self.state = PollerState.IDLE
        self.retry_not_before = EPOCH
        self.is_up: Optional[bool] = None
        self.last_status: Optional[int] = None
        self.last_success: Optional[datetime] = None
        self.polls_issued = 0
        self.polls_completed = 0

        self.log = get_logger(__name__, source_id=self.source_id)

        self._lock = threading.Lock()
        self._generation = 0
        self._in_flight = False
        self._job_id: Optional[str] = None

    @property
    def source_id(self) -> str:
        return f"{self.adapter.source_type.value}:{self.adapter.query}"

    @property
    def is_started(self) -> bool:
        return self._job_id is not None

    def start(self) -> None:
        """Arm the repeating job and poll immediately."""
        with self._lock:
            if self._job_id is not None:
                return
            if self.state == PollerState.STOPPED:
                self.state = PollerState.IDLE
            self._job_id = f"poll-{uuid.uuid4().hex[:12]}"
            self.scheduler.add_job(
                self.poll,
                trigger=IntervalTrigger(seconds=self.interval.total_seconds()),
                id=self._job_id,
                name=f"Poll {self.source_id}",
                replace_existing=True,
                max_instances=1,
            )

        self.log.info(f"Started poller {self.source_id} every {self.interval.total_seconds():.0f}s")
        self.poll()

    def stop(self) -> None:
        """Remove the job; responses still in flight are discarded."""
        with self._lock:
            if self.state == PollerState.STOPPED:
                return
            self._generation += 1
            self._in_flight = False
            self.state = PollerState.STOPPED
            job_id, self._job_id = self._job_id, None

        if job_id is not None:
            try:
                self.scheduler.remove_job(job_id)
            except JobLookupError:
                self.log.debug(f"Poll job {job_id} was already removed")
        self.log.info(f"Stopped poller {self.source_id}")

    def set_interval(self, interval: timedelta) -> None:
        """Change the poll interval, rescheduling the job if armed."""
        interval = max(interval, self.adapter.min_poll_interval)
        with self._lock:
            if interval == self.interval:
                return
            self.interval = interval
            job_id = self._job_id
            paused = self._in_flight

        if job_id is None:
            return
        try:
            self.scheduler.reschedule_job(job_id, trigger=IntervalTrigger(seconds=interval.total_seconds()))
            if paused:
                self.scheduler.pause_job(job_id)
        except JobLookupError as e:
            self.log.warning(f"Failed to reschedule {self.source_id}: {e}")

    def poll(self) -> bool:
        """Issue a request unless suppressed.

        Returns:
            True if a request was issued
        """
        with self._lock:
            if self.state == PollerState.STOPPED:
                return False
            if self._in_flight:
                self.log.debug(f"Skipping poll of {self.source_id}: request in flight")
                return False
            if self.clock() < self.retry_not_before:
                self.state = PollerState.BACKOFF
                return False

            self._in_flight = True
            self.state = PollerState.REQUESTING
            self.polls_issued += 1
            generation = self._generation
            self._pause_job()

        try:
            url = self.adapter.build_query()
        except Exception as e:
            self.log.error(f"Failed to build query for {self.source_id}: {type(e).__name__}: {e}")
            self._handle_result(generation, FetchResult(url="", status_code=0, error=str(e)))
            return True

        self.transport.fetch(url, partial(self._handle_result, generation))
        return True

    def _handle_result(self, generation: int, result: FetchResult) -> None:
        with self._lock:
            if generation != self._generation:
                self.log.debug(f"Discarding late response for {self.source_id}")
                return

            items: list[FeedItem] = []
            if result.ok and result.body is not None:
                self.state = PollerState.PARSING
                items = self.adapter.process_response(result.body)

            now = self.clock()
            self.retry_not_before = self.adapter.retry_time(result.status_code, now)
            self.is_up = self.adapter.is_source_up(result.status_code)
            self.last_status = result.status_code
            if result.ok:
                self.last_success = now
            else:
                self.log.warning(
                    f"Poll of {self.source_id} failed ({result.status_code}: {result.error}), "
                    f"next attempt not before {self.retry_not_before.isoformat()}"
                )
            self.polls_completed += 1
            self._in_flight = False
            self.state = PollerState.IDLE if self.retry_not_before <= now else PollerState.BACKOFF
            self._resume_job()
            is_up = self.is_up

        if result.ok and self.on_items is not None:
            self.on_items(self, items)
        if self.on_completed is not None:
            self.on_completed(self, is_up)

    def _pause_job(self) -> None:
        if self._job_id is None:
            return
        try:
            self.scheduler.pause_job(self._job_id)
        except JobLookupError as e:
            self.log.warning(f"Failed to pause poll job for {self.source_id}: {e}")

    def _resume_job(self) -> None:
        if self._job_id is None:
            return
        try:
            self.scheduler.resume_job(self._job_id)
        except JobLookupError as e:
            self.log.warning(f"Failed to resume poll job for {self.source_id}: {e}")

    def __repr__(self) -> str:
        return f"<FeedPoller({self.source_id}, state={self.state.value})>"
