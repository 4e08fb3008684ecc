"""
Pipeline assembly for S3 Mirror.

watcher -> identity cache -> debounced aggregator -> key mapper -> dispatcher -> store

Each stage owns its own state; stages talk only through the aggregator's
raw-event queue and the dispatcher's inbox.
"""

import logging
import time
from typing import Callable

from s3_mirror.aggregator import DebouncedAggregator
from s3_mirror.dispatcher import SyncDispatcher, UploadRecord
from s3_mirror.events import StableChangeEvent
from s3_mirror.identity import IdentityCache
from s3_mirror.store import RemoteStore
from s3_mirror.watcher import FolderWatcher

logger = logging.getLogger(__name__)


class MirrorPipeline:
    """
    Mirrors *root* into *bucket* under *prefix* until stopped.

    ``start()`` raises :class:`~s3_mirror.errors.SetupError` when the
    watcher cannot attach; nothing is left running in that case.
    """

    def __init__(
        self,
        root: str,
        store: RemoteStore,
        bucket: str,
        prefix: str = "",
        quiescence: float = 2.0,
        max_concurrent: int = 4,
        retry_count: int = 5,
        retry_delay: float = 1.0,
        max_backoff: float = 60.0,
        include_patterns: list[str] | None = None,
        exclude_patterns: list[str] | None = None,
        on_change: Callable[[StableChangeEvent], None] | None = None,
        on_outcome: Callable[[UploadRecord], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.root = root
        self.dispatcher = SyncDispatcher(
            store,
            bucket,
            prefix,
            max_concurrent=max_concurrent,
            retry_count=retry_count,
            retry_delay=retry_delay,
            max_backoff=max_backoff,
            on_outcome=on_outcome,
            clock=clock,
        )
        self.identity_cache = IdentityCache(grace=quiescence)
        self.aggregator = DebouncedAggregator(
            self.dispatcher.submit,
            self.identity_cache,
            window=quiescence,
            on_event=on_change,
            clock=clock,
        )
        self.watcher = FolderWatcher(
            root,
            self.aggregator.feed,
            clock=clock,
            include_patterns=include_patterns,
            exclude_patterns=exclude_patterns,
            recursive=True,
        )

    def start(self) -> None:
        self.identity_cache.register_root(self.root)
        self.dispatcher.start()
        self.aggregator.start()
        try:
            self.watcher.start()
        except Exception:
            self.aggregator.stop()
            self.dispatcher.stop()
            raise

    def stop(self, timeout: float | None = None) -> None:
        """Drain in order: watcher, pending quiescence timers, then uploads."""
        logger.info("Stopping pipeline…")
        self.watcher.stop()
        self.aggregator.stop()
        self.aggregator.join(timeout)
        self.dispatcher.stop()
        self.dispatcher.join(timeout)
        stats = self.dispatcher.stats
        logger.info(
            "Pipeline stopped: %d uploaded, %d failed, %d retries",
            stats.total_uploaded, stats.total_failed, stats.total_retries,
        )

    @property
    def is_running(self) -> bool:
        return self.watcher.is_running

    def get_status_summary(self) -> str:
        """Return a short human-readable status string."""
        stats = self.dispatcher.stats
        return (
            f"{self.aggregator.pending_count} settling, "
            f"{self.dispatcher.pending_count} queued, "
            f"{self.dispatcher.in_flight_count} uploading, "
            f"{stats.total_uploaded} uploaded, {stats.total_failed} failed"
        )
