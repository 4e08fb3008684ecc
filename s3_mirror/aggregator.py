"""Debounced aggregation of raw watcher events.

Raw events are consumed on a single loop thread.  Each path keeps a
pending bucket whose quiescence timer is restarted by every new event;
when a timer expires with no intervening event the bucket is closed and
one :class:`StableChangeEvent` is emitted for that path.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import queue
import threading
import time
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass

from s3_mirror.events import (
    ChangeKind,
    RawEvent,
    RawEventKind,
    StableChangeEvent,
)
from s3_mirror.identity import IdentityCache

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = 2.0

_STOP = object()

_CLASSIFY = {
    RawEventKind.CREATE: ChangeKind.UPSERTED,
    RawEventKind.MODIFY: ChangeKind.UPSERTED,
    RawEventKind.RENAME_TO: ChangeKind.UPSERTED,
    RawEventKind.REMOVE: ChangeKind.REMOVED,
    RawEventKind.RENAME_FROM: ChangeKind.REMOVED,
}


@dataclass
class _Bucket:
    kind: ChangeKind | None = None
    last_seen: float = 0.0
    moved_from: str | None = None
    # Content changed during this window (survives a stitched move).
    dirty: bool = False
    timer: int = -1


class DebouncedAggregator:
    """Collapse bursts of raw events into one stable event per path per window.

    Parameters
    ----------
    sink : callable
        Receives every ``UPSERTED`` stable event (normally
        ``SyncDispatcher.submit``).
    identity_cache : IdentityCache, optional
        Used to stitch remove/create pairs into moves.
    window : float
        Quiescence window in seconds.
    on_event : callable, optional
        Observer invoked with every stable event, whatever its kind.
    clock : callable
        Time source; raw event timestamps must come from the same clock.
    """

    def __init__(
        self,
        sink: Callable[[StableChangeEvent], None],
        identity_cache: IdentityCache | None = None,
        window: float = DEFAULT_WINDOW,
        on_event: Callable[[StableChangeEvent], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        max_queue: int = 10_000,
    ):
        self.window = window
        self.clock = clock
        self._sink = sink
        self._on_event = on_event
        self._cache = identity_cache or IdentityCache(grace=window)
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue)
        self._buckets: dict[str, _Bucket] = {}
        # (deadline, timer id, path); entries whose id no longer matches
        # the bucket's are stale and skipped.
        self._timers: list[tuple[float, int, str]] = []
        self._timer_ids = itertools.count()
        self._stopping = threading.Event()
        # Serialises feed() against stop() so nothing lands behind _STOP
        self._feed_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self.emitted: Counter = Counter()

    @property
    def identity_cache(self) -> IdentityCache:
        return self._cache

    # ---- lifecycle ----

    def start(self) -> None:
        self._stopping.clear()
        self._thread = threading.Thread(
            target=self._run, daemon=True, name="DebouncedAggregator"
        )
        self._thread.start()
        logger.info("Aggregator started (window=%.2fs)", self.window)

    def stop(self) -> None:
        """Stop accepting events; remaining timers still fire before exit."""
        with self._feed_lock:
            if self._stopping.is_set():
                return
            self._stopping.set()
            self._queue.put(_STOP)

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # ---- producer side ----

    def feed(self, raw: RawEvent) -> bool:
        """Enqueue *raw* for the loop.  Blocks while the queue is full."""
        with self._feed_lock:
            if self._stopping.is_set():
                logger.debug("Aggregator stopping; dropped %s", raw)
                return False
            self._queue.put(raw)
        return True

    # ---- loop ----

    def _run(self) -> None:
        draining = False
        while True:
            if draining and not self._timers:
                break
            try:
                item = self._queue.get(timeout=self._next_timeout())
            except queue.Empty:
                item = None
            if item is _STOP:
                draining = True
            elif item is not None:
                try:
                    self.process(item)
                except Exception:
                    logger.exception("Error processing raw event %s", item)
            self.fire_due(self.clock())
        logger.info("Aggregator stopped.")

    def _next_timeout(self) -> float | None:
        if not self._timers:
            return None
        return max(0.0, self._timers[0][0] - self.clock())

    def process(self, raw: RawEvent) -> None:
        """Fold one raw event into its path's bucket and restart its timer."""
        hint = self._cache.observe(raw)
        bucket = self._buckets.get(raw.path)
        if bucket is None:
            bucket = _Bucket(last_seen=raw.timestamp)
            self._buckets[raw.path] = bucket

        kind = _CLASSIFY.get(raw.kind)
        if kind is ChangeKind.UPSERTED:
            if hint is not None and hint.moved_from is not None:
                self._stitch(bucket, hint.moved_from)
            else:
                bucket.kind = ChangeKind.UPSERTED
                bucket.moved_from = None
                bucket.dirty = True
        elif kind is ChangeKind.REMOVED:
            # moved_from is kept so a follow-up move can chain back to the origin
            bucket.kind = ChangeKind.REMOVED

        bucket.last_seen = max(bucket.last_seen, raw.timestamp)
        bucket.timer = next(self._timer_ids)
        heapq.heappush(
            self._timers, (bucket.last_seen + self.window, bucket.timer, raw.path)
        )

    def _stitch(self, bucket: _Bucket, src_path: str) -> None:
        src = self._buckets.pop(src_path, None)
        if src is not None and src.dirty:
            # Unsettled content travelled with the move; it still needs uploading.
            bucket.kind = ChangeKind.UPSERTED
            bucket.moved_from = None
            bucket.dirty = True
            return
        bucket.kind = ChangeKind.MOVED
        if src is not None and src.moved_from is not None:
            bucket.moved_from = src.moved_from
        else:
            bucket.moved_from = src_path

    def fire_due(self, now: float) -> list[StableChangeEvent]:
        """Close every bucket whose quiescence deadline has passed."""
        fired = []
        while self._timers and self._timers[0][0] <= now:
            _, timer, path = heapq.heappop(self._timers)
            bucket = self._buckets.get(path)
            if bucket is None or bucket.timer != timer:
                continue
            del self._buckets[path]
            event = self._close(path, bucket)
            if event is not None:
                fired.append(event)
        for path in self._cache.expire(now):
            logger.debug("Identity grace expired for %s", path)
        return fired

    def _close(self, path: str, bucket: _Bucket) -> StableChangeEvent | None:
        if bucket.kind is None:
            return None
        event = StableChangeEvent(
            path=path,
            kind=bucket.kind,
            observed_at=bucket.last_seen,
            src_path=bucket.moved_from if bucket.kind is ChangeKind.MOVED else None,
        )
        if bucket.kind is ChangeKind.REMOVED:
            # A removal already reported can no longer pair up into a move
            self._cache.forget(path)
            self._cache.bury(path)
        self.emitted[bucket.kind] += 1
        logger.info("Stable change: %s", event.describe())

        if self._on_event:
            try:
                self._on_event(event)
            except Exception:
                logger.exception("Error in on_event callback for %s", path)
        if event.kind is ChangeKind.UPSERTED:
            try:
                self._sink(event)
            except Exception:
                logger.exception("Error forwarding %s downstream", path)
        return event

    # ---- status ----

    @property
    def pending_count(self) -> int:
        return len(self._buckets)

    @property
    def pending_paths(self) -> list[str]:
        return list(self._buckets)
