"""File system watcher for S3 Mirror.

Uses the watchdog library to monitor a directory tree and translates its
notifications into :class:`RawEvent` objects for the aggregator.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import time
from collections.abc import Callable, Hashable
from typing import Any

from watchdog.events import (
    EVENT_TYPE_CLOSED_NO_WRITE,
    EVENT_TYPE_OPENED,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from s3_mirror.errors import SetupError
from s3_mirror.events import RawEvent, RawEventKind

logger = logging.getLogger(__name__)

# Read-only access; never a reason to restart a quiescence timer.
_IGNORED_EVENT_TYPES = (EVENT_TYPE_OPENED, EVENT_TYPE_CLOSED_NO_WRITE)


def file_identity(path: str) -> Hashable | None:
    """Return ``(st_dev, st_ino)`` for *path*, or None if unavailable."""
    try:
        st = os.stat(path)
    except OSError:
        return None
    if not st.st_ino:
        # Platform cannot supply a stable token; fall back to path tracking
        return None
    return (st.st_dev, st.st_ino)


class RawEventHandler(FileSystemEventHandler):
    """Watchdog handler that turns file events into RawEvents."""

    def __init__(
        self,
        emit: Callable[[RawEvent], Any],
        clock: Callable[[], float] = time.monotonic,
        include_patterns: list[str] | None = None,
        exclude_patterns: list[str] | None = None,
    ):
        """Initialise the handler with optional filters."""
        super().__init__()
        self._emit = emit
        self._clock = clock
        self._include_patterns = include_patterns or []
        self._exclude_patterns = exclude_patterns or []

    def _should_track(self, path: str) -> bool:
        name = os.path.basename(path)
        # Check include patterns first; file must match at least one
        if self._include_patterns:
            matched = any(
                fnmatch.fnmatch(name.lower(), p.lower()) for p in self._include_patterns
            )
            if not matched:
                logger.debug(
                    "Ignoring %s (does not match any include pattern)",
                    name,
                )
                return False
        for pattern in self._exclude_patterns:
            if fnmatch.fnmatch(name.lower(), pattern.lower()):
                logger.debug("Excluding %s (matches %s)", name, pattern)
                return False
        return True

    def translate(self, event: FileSystemEvent) -> list[RawEvent]:
        """Map one watchdog event onto zero or more RawEvents."""
        if event.is_directory or event.event_type in _IGNORED_EVENT_TYPES:
            return []
        now = self._clock()
        src = os.fsdecode(event.src_path)

        if isinstance(event, FileMovedEvent):
            dest = os.fsdecode(event.dest_path)
            identity = file_identity(dest)
            raws = []
            if self._should_track(src):
                raws.append(RawEvent(src, RawEventKind.RENAME_FROM, now, identity))
            if self._should_track(dest):
                raws.append(RawEvent(dest, RawEventKind.RENAME_TO, now, identity))
            return raws

        if not self._should_track(src):
            return []
        if isinstance(event, FileDeletedEvent):
            return [RawEvent(src, RawEventKind.REMOVE, now)]
        if isinstance(event, FileCreatedEvent):
            kind = RawEventKind.CREATE
        elif isinstance(event, FileModifiedEvent):
            kind = RawEventKind.MODIFY
        else:
            kind = RawEventKind.OTHER
        return [RawEvent(src, kind, now, file_identity(src))]

    def on_any_event(self, event: FileSystemEvent) -> None:
        try:
            for raw in self.translate(event):
                self._emit(raw)
        except Exception:
            # Report and keep the observer alive for the remaining events
            logger.exception("Error handling watcher event %r", event)


class FolderWatcher:
    """Recursive watchdog observer feeding RawEvents to a callback.

    Usage:
        watcher = FolderWatcher("/data", aggregator.feed)
        watcher.start()
        ...
        watcher.stop()
    """

    def __init__(
        self,
        source_folder: str,
        on_raw_event: Callable[[RawEvent], Any],
        clock: Callable[[], float] = time.monotonic,
        include_patterns: list[str] | None = None,
        exclude_patterns: list[str] | None = None,
        recursive: bool = True,
    ):
        """Create a new folder watcher."""
        self.source_folder = source_folder
        self._recursive = recursive
        self._handler = RawEventHandler(
            on_raw_event,
            clock,
            include_patterns or None,
            exclude_patterns or None,
        )
        self._observer: Any | None = None

    # ---- lifecycle ----

    def start(self) -> None:
        """Start watching the source folder."""
        if not os.path.isdir(self.source_folder):
            logger.error("Source folder does not exist: %s", self.source_folder)
            raise SetupError(f"Source folder does not exist: {self.source_folder}")

        observer = Observer()
        try:
            observer.schedule(
                self._handler, self.source_folder, recursive=self._recursive
            )
            observer.start()
        except OSError as exc:
            logger.error("Cannot watch %s: %s", self.source_folder, exc)
            raise SetupError(f"Cannot watch {self.source_folder}: {exc}") from exc
        self._observer = observer
        logger.info(
            "Watching '%s' (recursive=%s)", self.source_folder, self._recursive
        )

    def stop(self) -> None:
        """Stop watching and release resources."""
        if self._observer:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
        logger.info("Watcher stopped.")

    @property
    def is_running(self) -> bool:
        """Return whether the watcher is currently active."""
        return self._observer is not None and self._observer.is_alive()
