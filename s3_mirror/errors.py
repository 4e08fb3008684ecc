"""Exception taxonomy for S3 Mirror.

Setup failures are fatal to the process.  Store failures are classified
as transient (worth retrying) or permanent (reported once and dropped).
"""

from __future__ import annotations


class MirrorError(Exception):
    """Base class for all S3 Mirror errors."""


class SetupError(MirrorError):
    """The pipeline could not be assembled (bad root, watcher attach failure)."""


class StoreError(MirrorError):
    """A remote put failed."""

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


class TransientStoreError(StoreError):
    """Network, timeout or throttling failure; the put may be retried."""


class PermanentStoreError(StoreError):
    """Auth, validation or other failure that retrying cannot fix."""
