"""Identity cache used to stitch split remove/create notifications into moves.

Owned by the aggregator loop; not thread-safe.
"""

from __future__ import annotations

import logging
from collections.abc import Hashable
from dataclasses import dataclass

from s3_mirror.events import IdentityHint, RawEvent, RawEventKind

logger = logging.getLogger(__name__)

_REMOVAL_KINDS = (RawEventKind.REMOVE, RawEventKind.RENAME_FROM)
_ARRIVAL_KINDS = (RawEventKind.CREATE, RawEventKind.RENAME_TO)


@dataclass
class IdentityRecord:
    path: str
    identity: Hashable | None
    last_seen: float


class IdentityCache:
    """Tracks a stable identity token per watched path.

    Removed paths keep their identity for *grace* seconds so that a later
    create carrying the same token can be recognised as the other half of
    a move.  Paths without a token are tracked by path alone.
    """

    def __init__(self, grace: float = 2.0):
        self.grace = grace
        self._roots: list[str] = []
        self._records: dict[str, IdentityRecord] = {}
        # identity -> (record, expires_at)
        self._graveyard: dict[Hashable, tuple[IdentityRecord, float]] = {}

    def register_root(self, path: str) -> None:
        """Begin tracking *path*; records are populated lazily from events."""
        if path not in self._roots:
            self._roots.append(path)
            logger.debug("Identity cache tracking root %s", path)

    @property
    def roots(self) -> list[str]:
        return list(self._roots)

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, path: object) -> bool:
        return path in self._records

    def identity_of(self, path: str) -> Hashable | None:
        rec = self._records.get(path)
        return rec.identity if rec else None

    def observe(self, raw: RawEvent) -> IdentityHint | None:
        """Update the record for *raw*'s path and return what is known about it."""
        if raw.kind in _REMOVAL_KINDS:
            return self._observe_removal(raw)

        identity = raw.identity
        moved_from = None
        if raw.kind in _ARRIVAL_KINDS and identity is not None:
            buried = self._graveyard.get(identity)
            if buried is not None:
                old, expires_at = buried
                if raw.timestamp <= expires_at and old.path != raw.path:
                    del self._graveyard[identity]
                    moved_from = old.path
                    logger.debug("Identity match: %s -> %s", old.path, raw.path)

        rec = self._records.get(raw.path)
        if rec is None:
            rec = IdentityRecord(raw.path, identity, raw.timestamp)
            self._records[raw.path] = rec
        else:
            rec.last_seen = raw.timestamp
            if identity is not None:
                rec.identity = identity

        if rec.identity is None:
            return None
        return IdentityHint(rec.identity, moved_from)

    def _observe_removal(self, raw: RawEvent) -> IdentityHint | None:
        rec = self._records.pop(raw.path, None)
        identity = raw.identity
        if identity is None and rec is not None:
            identity = rec.identity
        if identity is None:
            return None
        if rec is None:
            rec = IdentityRecord(raw.path, identity, raw.timestamp)
        rec.identity = identity
        rec.last_seen = raw.timestamp
        self._graveyard[identity] = (rec, raw.timestamp + self.grace)
        return IdentityHint(identity)

    def expire(self, now: float) -> list[str]:
        """Drop grace entries that outlived the window; return their paths."""
        gone = [
            ident for ident, (_, expires_at) in self._graveyard.items()
            if expires_at < now
        ]
        paths = []
        for ident in gone:
            rec, _ = self._graveyard.pop(ident)
            paths.append(rec.path)
        return paths

    def forget(self, path: str) -> None:
        self._records.pop(path, None)

    def bury(self, path: str) -> None:
        """Drop the grace entry for *path* once its removal has been reported."""
        for ident, (rec, _) in list(self._graveyard.items()):
            if rec.path == path:
                del self._graveyard[ident]
