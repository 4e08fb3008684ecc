"""
Upload dispatcher for S3 Mirror.

Turns stable ``UPSERTED`` change events into uploads.  A single loop
thread owns the task map; uploads run on a bounded worker pool and post
their results back to the loop's inbox.  At most one upload per path is
in flight at a time, a newer event for a path supersedes its older task,
and transient failures are retried with exponential backoff up to a
configured bound.
"""

import heapq
import itertools
import logging
import os
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from s3_mirror.errors import StoreError, TransientStoreError
from s3_mirror.events import ChangeKind, StableChangeEvent
from s3_mirror.keys import remote_key
from s3_mirror.store import RemoteStore

logger = logging.getLogger(__name__)

# Outcome statuses reported through UploadRecord
STATUS_DONE = "done"
STATUS_RETRY = "retry"
STATUS_DROPPED = "dropped"
STATUS_SUPERSEDED = "superseded"


class TaskState(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DONE = "done"
    DROPPED = "dropped"
    SUPERSEDED = "superseded"


@dataclass
class UploadTask:
    path: str
    key: str
    task_id: int
    attempts: int = 0
    state: TaskState = TaskState.PENDING
    ready_at: float = 0.0


@dataclass
class UploadRecord:
    """Record of one upload outcome (terminal, or a scheduled retry)."""
    path: str
    key: str
    status: str
    attempts: int = 0
    size_bytes: int = 0
    started: float = 0.0
    finished: float = 0.0
    error: str = ""

    @property
    def duration(self) -> float:
        if self.finished and self.started:
            return self.finished - self.started
        return 0.0


@dataclass
class UploadStats:
    """Aggregated upload statistics."""
    total_uploaded: int = 0
    total_failed: int = 0
    total_retries: int = 0
    total_superseded: int = 0
    total_bytes: int = 0
    last_uploaded_key: str = ""
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record(self, rec: UploadRecord) -> None:
        with self._lock:
            if rec.status == STATUS_DONE:
                self.total_uploaded += 1
                self.total_bytes += rec.size_bytes
                self.last_uploaded_key = rec.key
            elif rec.status == STATUS_RETRY:
                self.total_retries += 1
            elif rec.status == STATUS_SUPERSEDED:
                self.total_superseded += 1
            else:
                self.total_failed += 1


@dataclass
class _Completion:
    task: UploadTask
    future: Future
    started: float


@dataclass
class _Result:
    size_bytes: int
    finished: float


class SyncDispatcher:
    """
    Delivers upserted paths to the remote store.

    Parameters
    ----------
    store : RemoteStore
        Performs the actual put.
    bucket : str
        Destination bucket.
    prefix : str
        Remote key prefix, passed to :func:`remote_key`.
    max_concurrent : int
        Maximum number of uploads in flight at once.
    retry_count : int
        Number of retries after a transient failure (0 = no retries).
    retry_delay : float
        Backoff base in seconds; attempt *n* waits ``retry_delay * 2**(n-1)``.
    max_backoff : float
        Upper bound for a single backoff wait.
    on_outcome : callable, optional
        Invoked on the dispatcher thread with every UploadRecord.
    max_queue : int
        Capacity of the event inbox; ``submit`` blocks while it is full.
    """

    def __init__(
        self,
        store: RemoteStore,
        bucket: str,
        prefix: str = "",
        max_concurrent: int = 4,
        retry_count: int = 5,
        retry_delay: float = 1.0,
        max_backoff: float = 60.0,
        on_outcome: Callable[[UploadRecord], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        max_queue: int = 10_000,
    ):
        self.bucket = bucket
        self.prefix = prefix
        self.max_concurrent = max(1, max_concurrent)
        self.retry_count = max(0, retry_count)
        self.retry_delay = max(0.0, retry_delay)
        self.max_backoff = max_backoff
        self.clock = clock
        self.stats = UploadStats()
        self._store = store
        self._on_outcome = on_outcome
        self.max_queue = max(1, max_queue)
        # Inbox: bounded stable events plus worker completions, which never block.
        self._cond = threading.Condition()
        self._events: deque[StableChangeEvent] = deque()
        self._completions: deque[_Completion] = deque()
        self._stopping = False
        # Newest task per path; anything else still running is superseded.
        self._tasks: dict[str, UploadTask] = {}
        self._in_flight: dict[str, UploadTask] = {}
        self._ready: deque[UploadTask] = deque()
        self._delayed: list[tuple[float, int, str]] = []
        self._ids = itertools.count(1)
        self._executor: ThreadPoolExecutor | None = None
        self._thread: threading.Thread | None = None
        # Snapshot of the loop's counts, readable from any thread
        self._pending_total = 0
        self._in_flight_total = 0

    # ---- lifecycle ----

    def start(self) -> None:
        with self._cond:
            self._stopping = False
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_concurrent, thread_name_prefix="upload"
        )
        self._thread = threading.Thread(
            target=self._run, daemon=True, name="SyncDispatcher"
        )
        self._thread.start()
        logger.info(
            "Dispatcher started (bucket=%s, prefix=%r, concurrency=%d, retries=%d)",
            self.bucket, self.prefix, self.max_concurrent, self.retry_count,
        )

    def stop(self) -> None:
        """Stop accepting events; queued and in-flight uploads still finish."""
        with self._cond:
            self._stopping = True
            self._cond.notify_all()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def backoff(self, attempt: int) -> float:
        """Return the wait before retrying after failed attempt number *attempt*."""
        return min(self.retry_delay * (2 ** (attempt - 1)), self.max_backoff)

    # ---- producer side ----

    def submit(self, event: StableChangeEvent) -> bool:
        """Queue an upload for *event*.  Non-upsert events are ignored."""
        if event.kind is not ChangeKind.UPSERTED:
            logger.debug("Not dispatching %s", event.describe())
            return False
        with self._cond:
            while len(self._events) >= self.max_queue and not self._stopping:
                self._cond.wait()
            if self._stopping:
                logger.warning("Dispatcher stopping; not uploading %s", event.path)
                return False
            self._events.append(event)
            self._cond.notify_all()
        return True

    def _post_completion(self, done: _Completion) -> None:
        with self._cond:
            self._completions.append(done)
            self._cond.notify_all()

    # ---- loop ----

    def _run(self) -> None:
        while True:
            self._promote_delayed(self.clock())
            self._dispatch_ready()
            self._refresh_counts()
            with self._cond:
                if not self._events and not self._completions:
                    if self._stopping and not self._tasks and not self._in_flight:
                        break
                    self._cond.wait(self._next_timeout())
                completions = list(self._completions)
                self._completions.clear()
                events = list(self._events)
                self._events.clear()
                if events:
                    # Room again for producers blocked in submit()
                    self._cond.notify_all()
            for msg in completions + events:
                try:
                    if isinstance(msg, _Completion):
                        self._complete(msg)
                    else:
                        self._enqueue(msg)
                except Exception:
                    logger.exception("Dispatcher failed handling %r", msg)
        self._refresh_counts()
        if self._executor is not None:
            self._executor.shutdown(wait=True)
        logger.info("Dispatcher stopped.")

    def _next_timeout(self) -> float | None:
        if not self._delayed:
            return None
        return max(0.0, self._delayed[0][0] - self.clock())

    def _enqueue(self, event: StableChangeEvent) -> None:
        existing = self._tasks.get(event.path)
        task = UploadTask(
            path=event.path,
            key=remote_key(event.path, self.prefix),
            task_id=next(self._ids),
            ready_at=self.clock(),
        )
        if existing is not None:
            if existing.state is TaskState.IN_FLIGHT:
                logger.info("Superseding in-flight upload of %s", event.path)
            else:
                # Pending: cancelling costs nothing
                self._report(UploadRecord(
                    path=existing.path,
                    key=existing.key,
                    status=STATUS_SUPERSEDED,
                    attempts=existing.attempts,
                    finished=time.time(),
                ))
            existing.state = TaskState.SUPERSEDED
        self._tasks[event.path] = task
        self._ready.append(task)
        logger.debug("Queued upload %s -> %s", task.path, task.key)

    def _promote_delayed(self, now: float) -> None:
        while self._delayed and self._delayed[0][0] <= now:
            _, task_id, path = heapq.heappop(self._delayed)
            task = self._tasks.get(path)
            if task is not None and task.task_id == task_id:
                self._ready.append(task)

    def _dispatch_ready(self) -> None:
        blocked = []
        while self._ready and len(self._in_flight) < self.max_concurrent:
            task = self._ready.popleft()
            if self._tasks.get(task.path) is not task:
                continue
            if task.path in self._in_flight:
                # Superseded upload for this path still running
                blocked.append(task)
                continue
            self._launch(task)
        self._ready.extendleft(reversed(blocked))

    def _launch(self, task: UploadTask) -> None:
        task.state = TaskState.IN_FLIGHT
        task.attempts += 1
        self._in_flight[task.path] = task
        started = time.time()
        logger.debug(
            "Uploading %s -> s3://%s/%s (attempt %d/%d)",
            task.path, self.bucket, task.key, task.attempts, 1 + self.retry_count,
        )
        future = self._executor.submit(self._upload, task.path, task.key)
        future.add_done_callback(
            lambda f, t=task, s=started: self._post_completion(_Completion(t, f, s))
        )

    def _upload(self, path: str, key: str) -> _Result:
        """Worker body: read the file as it is now and put it."""
        with open(path, "rb") as fh:
            size = os.fstat(fh.fileno()).st_size
            self._store.put(self.bucket, key, fh)
        return _Result(size, time.time())

    def _complete(self, done: _Completion) -> None:
        task = done.task
        if self._in_flight.get(task.path) is task:
            del self._in_flight[task.path]
        exc = done.future.exception()
        result = None if exc is not None else done.future.result()
        rec = UploadRecord(
            path=task.path,
            key=task.key,
            status=STATUS_DONE,
            attempts=task.attempts,
            size_bytes=result.size_bytes if result else 0,
            started=done.started,
            finished=result.finished if result else time.time(),
            error=_describe(exc) if exc is not None else "",
        )

        if self._tasks.get(task.path) is not task:
            rec.status = STATUS_SUPERSEDED
            logger.info("Discarding result of superseded upload for %s", task.path)
            self._report(rec)
            return

        if exc is None:
            task.state = TaskState.DONE
            del self._tasks[task.path]
            logger.info(
                "Uploaded %s -> s3://%s/%s (%d bytes, attempt %d) in %.1fs",
                task.path, self.bucket, task.key, rec.size_bytes, task.attempts,
                rec.duration,
            )
        elif isinstance(exc, TransientStoreError) and task.attempts <= self.retry_count:
            delay = self.backoff(task.attempts)
            task.state = TaskState.PENDING
            task.ready_at = self.clock() + delay
            heapq.heappush(self._delayed, (task.ready_at, task.task_id, task.path))
            rec.status = STATUS_RETRY
            logger.warning(
                "Upload of %s failed (attempt %d/%d): %s; retrying in %.1fs",
                task.path, task.attempts, 1 + self.retry_count, rec.error, delay,
            )
        else:
            task.state = TaskState.DROPPED
            del self._tasks[task.path]
            rec.status = STATUS_DROPPED
            if isinstance(exc, TransientStoreError):
                rec.error = f"Gave up after {task.attempts} attempts: {rec.error}"
            if isinstance(exc, (StoreError, OSError)):
                logger.error("Upload of %s dropped: %s", task.path, rec.error)
            else:
                logger.error(
                    "Upload of %s dropped after unexpected error", task.path,
                    exc_info=exc,
                )
        self._report(rec)

    def _report(self, rec: UploadRecord) -> None:
        self.stats.record(rec)
        if self._on_outcome:
            try:
                self._on_outcome(rec)
            except Exception:
                logger.exception("Error in on_outcome callback")

    # ---- status ----

    def _refresh_counts(self) -> None:
        self._in_flight_total = len(self._in_flight)
        self._pending_total = sum(
            1 for t in self._tasks.values() if t.state is TaskState.PENDING
        )

    @property
    def in_flight_count(self) -> int:
        return self._in_flight_total

    @property
    def pending_count(self) -> int:
        return self._pending_total


def _describe(exc: BaseException) -> str:
    if isinstance(exc, OSError):
        return f"Cannot read source file: {exc.strerror or exc}"
    if isinstance(exc, StoreError) and exc.code:
        return f"{exc.code}: {exc}"
    return str(exc) or type(exc).__name__
