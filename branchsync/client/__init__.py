"""Terminal-side offline queue and sync dispatcher."""

from branchsync.client.dispatcher import SyncCycleResult, SyncDispatcher
from branchsync.client.queue import DurableLocalQueue
from branchsync.client.runtime import SyncClient, SyncClientStatus
from branchsync.client.state import QueueStatus
from branchsync.client.transport import HttpSyncTransport, SyncTransport

__all__ = [
    "DurableLocalQueue",
    "HttpSyncTransport",
    "QueueStatus",
    "SyncClient",
    "SyncClientStatus",
    "SyncCycleResult",
    "SyncDispatcher",
    "SyncTransport",
]
