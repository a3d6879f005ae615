"""
Remote sync -- mirror the credential document to the sync service.

Every pull is preceded by a local backup. If pulling or applying the
remote snapshot fails for any reason, the backup is restored so the
store is either fully updated or exactly as it was.

Backends: HTTP sync API (default), local directory (USB drives, NAS,
offline mirrors).
"""

from .backends import HttpSyncBackend, LocalSyncBackend, SyncBackend, create_backend
from .coordinator import SyncCoordinator

__all__ = [
    "HttpSyncBackend",
    "LocalSyncBackend",
    "SyncBackend",
    "SyncCoordinator",
    "create_backend",
]
