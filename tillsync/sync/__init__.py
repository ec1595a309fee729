"""Sync infrastructure for point-of-sale terminals.

Provides the durable local change queue, the push/pull client and its
scheduler, and the wire schemas shared with the gateway.
"""

from .change_log import ChangeLog, ChangeLogError, ChangeRecord, ChangeStatus
from .scheduler import SyncScheduler
from .schemas import EntityType, Operation
from .sync_client import SyncClient, SyncResult, SyncState, SyncStatus

__all__ = [
    "ChangeLog",
    "ChangeLogError",
    "ChangeRecord",
    "ChangeStatus",
    "EntityType",
    "Operation",
    "SyncClient",
    "SyncResult",
    "SyncScheduler",
    "SyncState",
    "SyncStatus",
]
