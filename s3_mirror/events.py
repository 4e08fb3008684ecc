"""Event types flowing through the S3 Mirror pipeline.

Raw events come from the filesystem watcher; stable change events come out
of the debounced aggregator once a path has been quiet for the quiescence
window.
"""

from __future__ import annotations

from collections.abc import Hashable
from dataclasses import dataclass
from enum import Enum


class RawEventKind(str, Enum):
    CREATE = "create"
    MODIFY = "modify"
    REMOVE = "remove"
    RENAME_FROM = "rename_from"
    RENAME_TO = "rename_to"
    OTHER = "other"


class ChangeKind(str, Enum):
    UPSERTED = "upserted"
    REMOVED = "removed"
    MOVED = "moved"


@dataclass(frozen=True)
class RawEvent:
    """A single notification reported by the watcher."""
    path: str
    kind: RawEventKind
    timestamp: float
    identity: Hashable | None = None


@dataclass(frozen=True)
class IdentityHint:
    """What the identity cache knows about the file behind a raw event."""
    identity: Hashable
    moved_from: str | None = None


@dataclass(frozen=True)
class StableChangeEvent:
    """One settled change for a path, emitted after quiescence."""
    path: str
    kind: ChangeKind
    observed_at: float
    src_path: str | None = None

    def describe(self) -> str:
        if self.kind is ChangeKind.MOVED:
            return f"moved {self.src_path} -> {self.path}"
        return f"{self.kind.value} {self.path}"
