"""Sync engine for crdtrelay.

Provides the SQLite message log, the server-side coordinator that applies
sync requests, and the replica-side HTTP client.
"""

from .coordinator import SyncCoordinator, SyncRequest, SyncResponse
from .message_log import LogTransaction, MessageLog
from .sync_client import SyncClient, SyncResult, SyncStatus

__all__ = [
    "LogTransaction",
    "MessageLog",
    "SyncClient",
    "SyncCoordinator",
    "SyncRequest",
    "SyncResponse",
    "SyncResult",
    "SyncStatus",
]
