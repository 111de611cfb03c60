"""Database models package."""

from hooksync.models.sync_target import SyncTarget
from hooksync.models.advisory_lock import AdvisoryLock

__all__ = [
    "SyncTarget",
    "AdvisoryLock",
]
