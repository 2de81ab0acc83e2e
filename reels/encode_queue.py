"""
Process-wide encode queue.

Every ffmpeg invocation from every job goes through one bounded executor, so
the number of concurrent encoder processes never exceeds
FFMPEG_MAX_CONCURRENT_JOBS. Work starts in submission order. Each submission
carries a ticket with its timeout and a cancellation event; cancelling a job
sets the event on its queued and running tickets.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from .errors import EncodeError, EncodeFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(eq=False)
class EncodeTicket:
    job_id: str
    timeout: float
    label: str = ""
    cancel_event: threading.Event = field(default_factory=threading.Event)
    submitted_at: float = field(default_factory=time.monotonic)
    started_at: float | None = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def remaining(self) -> float:
        if self.started_at is None:
            return self.timeout
        return self.timeout - (time.monotonic() - self.started_at)


class EncodeQueue:
    def __init__(self, max_concurrent: int = 1, default_timeout: float = 900.0):
        self.max_concurrent = max(1, int(max_concurrent))
        self.default_timeout = default_timeout
        self._executor = ThreadPoolExecutor(max_workers=self.max_concurrent, thread_name_prefix="encode")
        self._lock = threading.Lock()
        self._tickets: dict[str, set[EncodeTicket]] = {}
        self._cancelled_jobs: set[str] = set()
        self._active = 0

    def submit(
        self,
        fn: Callable[[EncodeTicket], T],
        *,
        job_id: str,
        timeout: float | None = None,
        label: str = "",
    ) -> Future:
        job_id = str(job_id)
        ticket = EncodeTicket(job_id=job_id, timeout=timeout or self.default_timeout, label=label)
        with self._lock:
            if job_id in self._cancelled_jobs:
                ticket.cancel_event.set()
            self._tickets.setdefault(job_id, set()).add(ticket)
            queued = self._queued_locked()
        logger.debug("[%s] Queued encode %s (%d waiting)", job_id, label or "-", queued)
        future = self._executor.submit(self._execute, fn, ticket)
        future.add_done_callback(lambda _f: self._discard(ticket))
        return future

    def run(self, fn: Callable[[EncodeTicket], T], *, job_id: str, timeout: float | None = None, label: str = "") -> T:
        return self.submit(fn, job_id=job_id, timeout=timeout, label=label).result()

    def _execute(self, fn: Callable[[EncodeTicket], T], ticket: EncodeTicket) -> T:
        if ticket.cancelled:
            raise EncodeError(f"Encode {ticket.label or ''} cancelled before start", kind=EncodeFailure.CANCELLED)
        ticket.started_at = time.monotonic()
        waited = ticket.started_at - ticket.submitted_at
        with self._lock:
            self._active += 1
        logger.debug("[%s] Starting encode %s after %.1fs in queue", ticket.job_id, ticket.label or "-", waited)
        try:
            return fn(ticket)
        finally:
            with self._lock:
                self._active -= 1

    def _discard(self, ticket: EncodeTicket) -> None:
        with self._lock:
            tickets = self._tickets.get(ticket.job_id)
            if tickets is not None:
                tickets.discard(ticket)
                if not tickets:
                    del self._tickets[ticket.job_id]

    def cancel_job(self, job_id: str) -> int:
        """Signal every queued or running encode of `job_id`; later submissions start cancelled."""
        job_id = str(job_id)
        with self._lock:
            self._cancelled_jobs.add(job_id)
            tickets = list(self._tickets.get(job_id, ()))
        for ticket in tickets:
            ticket.cancel_event.set()
        if tickets:
            logger.info("[%s] Cancelled %d encode(s)", job_id, len(tickets))
        return len(tickets)

    def is_cancelled(self, job_id: str) -> bool:
        with self._lock:
            return str(job_id) in self._cancelled_jobs

    def forget_job(self, job_id: str) -> None:
        with self._lock:
            self._cancelled_jobs.discard(str(job_id))

    @property
    def active_count(self) -> int:
        with self._lock:
            return self._active

    def _queued_locked(self) -> int:
        return sum(1 for tickets in self._tickets.values() for t in tickets if t.started_at is None)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
