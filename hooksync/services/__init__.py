"""Services package."""

from hooksync.services.encryption_service import EncryptionService
from hooksync.services.connection_cache import ConnectionCache
from hooksync.services.sync_target_service import SyncTargetService, SyncResult, SyncStatus

__all__ = ["EncryptionService", "ConnectionCache", "SyncTargetService", "SyncResult", "SyncStatus"]
