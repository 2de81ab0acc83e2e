"""
Tracks the lifecycle of transient artifacts and reclaims them once no stage needs them.

The pipeline registers every working directory, intermediate clip and uploaded
scratch object here. A sweep (periodic thread, Celery beat, or an explicit call)
deletes them in priority order, skipping anything a running stage still uses.
"""

from __future__ import annotations

import logging
import shutil
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any

from .s3 import parse_s3_url

logger = logging.getLogger(__name__)


class ResourceState(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    UPLOADED = "uploaded"
    FAILED = "failed"
    RELEASED = "released"


RECLAIMABLE_STATES = {ResourceState.UPLOADED, ResourceState.RELEASED, ResourceState.FAILED}


class ResourceTracker:
    """
    Thread-safe map of resource path -> lifecycle state.

    A path being reclaimed is fenced: ``track``/``update`` on it wait until the
    reclaim has finished, so a stage re-using the path never sees it vanish.
    """

    def __init__(self):
        self._states: dict[str, ResourceState] = {}
        self._reclaiming: set[str] = set()
        self._cond = threading.Condition()

    def _set(self, path, state: ResourceState) -> None:
        key = str(path)
        with self._cond:
            while key in self._reclaiming:
                self._cond.wait()
            self._states[key] = ResourceState(state)

    def track(self, path, state: ResourceState = ResourceState.PENDING) -> None:
        self._set(path, state)

    def update(self, path, state: ResourceState) -> None:
        self._set(path, state)

    def state(self, path) -> ResourceState | None:
        with self._cond:
            return self._states.get(str(path))

    def release(self, path) -> None:
        self.update(path, ResourceState.RELEASED)

    def begin_reclaim(self, path, force: bool = False) -> bool:
        """Fence ``path`` for reclaiming; False if a stage still uses it."""
        key = str(path)
        with self._cond:
            state = self._states.get(key)
            if key in self._reclaiming:
                return False
            if not force and state is not None and state not in RECLAIMABLE_STATES:
                return False
            self._reclaiming.add(key)
            return True

    def end_reclaim(self, path, reclaimed: bool) -> None:
        key = str(path)
        with self._cond:
            self._reclaiming.discard(key)
            if reclaimed:
                self._states.pop(key, None)
            self._cond.notify_all()


class CleanupKind(str, Enum):
    FILE = "file"
    STORAGE_OBJECT = "storage_object"
    DIRECTORY = "directory"


@dataclass(frozen=True)
class CleanupTask:
    path: str
    kind: CleanupKind
    priority: int = 0
    retries: int = 0
    job_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class CleanupReport:
    completed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    retried: list[str] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)


class CleanupCoordinator:
    def __init__(
        self,
        tracker: ResourceTracker,
        storage=None,
        *,
        interval_seconds: float = 300.0,
        task_timeout_seconds: float = 30.0,
        max_retries: int = 3,
    ):
        self.tracker = tracker
        self.storage = storage
        self.interval = interval_seconds
        self.task_timeout = task_timeout_seconds
        self.max_retries = max_retries

        self._queue: dict[str, CleanupTask] = {}
        self._queue_lock = threading.Lock()
        self._sweep_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="cleanup")
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # -- registration -----------------------------------------------------

    def register(self, path, kind: CleanupKind, priority: int = 0, metadata=None, job_id=None) -> CleanupTask:
        task = CleanupTask(
            path=str(path),
            kind=CleanupKind(kind),
            priority=int(priority),
            job_id=str(job_id) if job_id else None,
            metadata=dict(metadata or {}),
        )
        with self._queue_lock:
            self._queue[task.path] = task
            size = len(self._queue)
        logger.debug("Cleanup registered %s (%s, priority=%d, queue=%d)", task.path, task.kind.value, task.priority, size)
        return task

    def get_pending_tasks(self) -> list[CleanupTask]:
        with self._queue_lock:
            return list(self._queue.values())

    # -- sweep ------------------------------------------------------------

    def execute_cleanup(self, force: bool = False, job_id=None) -> CleanupReport:
        """
        Reclaim pending resources, highest priority first.

        ``job_id`` restricts the pass to resources registered for that job.
        Without ``force`` a sweep already in progress makes this call a no-op.
        """
        report = CleanupReport()
        if not self._sweep_lock.acquire(blocking=force):
            logger.log(
                logging.DEBUG if job_id else logging.WARNING,
                "Cleanup already in progress%s", f" (skipping pass for job {job_id})" if job_id else "",
            )
            return report
        try:
            tasks = self.get_pending_tasks()
            if job_id is not None:
                tasks = [t for t in tasks if t.job_id == str(job_id)]
            tasks.sort(key=lambda t: t.priority, reverse=True)
            for task in tasks:
                if not self.tracker.begin_reclaim(task.path, force=force):
                    logger.debug("Skipping cleanup of in-use resource %s", task.path)
                    report.skipped.append(task.path)
                    continue
                try:
                    self._run_with_timeout(task)
                except Exception as exc:
                    self._record_failure(task, exc, report)
                    continue
                with self._queue_lock:
                    if self._queue.get(task.path) is task:
                        del self._queue[task.path]
                report.completed.append(task.path)
                logger.info("Cleanup task completed: %s (%s)", task.path, task.kind.value)
            if report.dropped:
                logger.warning("%d cleanup tasks failed permanently out of %d", len(report.dropped), len(tasks))
        finally:
            self._sweep_lock.release()
        return report

    def _record_failure(self, task: CleanupTask, exc: Exception, report: CleanupReport) -> None:
        retries = task.retries + 1
        with self._queue_lock:
            # a re-registration since the sweep began replaces this task
            if self._queue.get(task.path) is task:
                if retries < self.max_retries:
                    self._queue[task.path] = replace(task, retries=retries)
                else:
                    del self._queue[task.path]
        if retries < self.max_retries:
            report.retried.append(task.path)
            logger.warning("Cleanup of %s failed (attempt %d), will retry: %s", task.path, retries, exc)
        else:
            report.dropped.append(task.path)
            logger.error("Cleanup of %s failed permanently after %d attempts: %s", task.path, retries, exc)

    def _run_with_timeout(self, task: CleanupTask) -> None:
        future = self._executor.submit(self._reclaim_fenced, task)
        try:
            future.result(timeout=self.task_timeout)
        except FutureTimeout:
            if future.cancel():
                self.tracker.end_reclaim(task.path, False)
            raise TimeoutError(f"cleanup timed out after {self.task_timeout}s") from None

    def _reclaim_fenced(self, task: CleanupTask) -> None:
        # lifted here, not by the sweep, so a timed-out reclaim stays fenced until it ends
        reclaimed = False
        try:
            self._reclaim(task)
            reclaimed = True
        finally:
            self.tracker.end_reclaim(task.path, reclaimed)

    def _reclaim(self, task: CleanupTask) -> None:
        if task.kind is CleanupKind.FILE:
            Path(task.path).unlink(missing_ok=True)
        elif task.kind is CleanupKind.DIRECTORY:
            path = Path(task.path)
            if path.exists():
                shutil.rmtree(path)
        elif task.kind is CleanupKind.STORAGE_OBJECT:
            if self.storage is None:
                raise RuntimeError("no storage configured for object cleanup")
            bucket, key = parse_s3_url(task.path)
            if self.storage.exists(bucket, key):
                self.storage.delete(bucket, key)

    # -- background sweep -------------------------------------------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="cleanup-sweep", daemon=True)
        self._thread.start()
        logger.info("Cleanup sweep started (every %ss)", self.interval)

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.execute_cleanup()
            except Exception:
                logger.exception("Periodic cleanup failed")

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
