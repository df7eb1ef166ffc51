"""
Sync client runtime for one terminal.

Owns the local queue, the transport and the dispatcher of a single branch
context. Construct it explicitly and bracket its use with ``init()`` and
``shutdown()`` (or ``async with``); nothing starts on import.

    async with SyncClient(branch_id="downtown") as client:
        client.queue_transaction("sale", payload, user_id="cashier-7")
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from branchsync.client.dispatcher import SyncCycleResult, SyncDispatcher
from branchsync.client.queue import DurableLocalQueue
from branchsync.client.state import QueueStatus
from branchsync.client.transport import HttpSyncTransport, SyncTransport
from branchsync.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class SyncClientStatus:
    """What a terminal shows its operator about offline work."""

    pending_count: int
    syncing_count: int
    failed_count: int
    completed_count: int
    is_online: bool
    is_syncing: bool
    last_sync_at: Optional[datetime]
    recent_errors: List[str] = field(default_factory=list)


class SyncClient:
    def __init__(
        self,
        branch_id: str,
        settings: Optional[Settings] = None,
        queue: Optional[DurableLocalQueue] = None,
        transport: Optional[SyncTransport] = None,
    ):
        settings = settings or get_settings()
        self.branch_id = branch_id
        self.queue = queue or DurableLocalQueue(settings.sync_queue_database_url)
        self.transport = transport or HttpSyncTransport(
            settings.sync_server_url,
            token=settings.sync_access_token,
            timeout=settings.sync_request_timeout_seconds,
            health_path=settings.sync_health_path,
        )
        self.dispatcher = SyncDispatcher(
            self.queue,
            self.transport,
            branch_id,
            batch_size=settings.sync_batch_size,
            max_retries=settings.sync_max_retries,
            retry_delays=settings.sync_retry_delays_list,
            interval_seconds=settings.sync_interval_seconds,
        )
        self._started = False

    async def init(self) -> None:
        recovered = self.queue.init()
        if recovered:
            logger.info(f"Resubmitting {recovered} transactions interrupted by the last shutdown")
        await self.dispatcher.start()
        self._started = True

    async def shutdown(self) -> None:
        if not self._started:
            return
        await self.dispatcher.shutdown()
        await self.transport.aclose()
        self.queue.close()
        self._started = False

    async def __aenter__(self) -> "SyncClient":
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    def queue_transaction(
        self,
        type: str,
        payload: Dict[str, Any],
        user_id: str,
        timestamp: Optional[datetime] = None,
    ) -> str:
        """Persist a transaction locally and nudge the dispatcher.

        Raises QueueStorageError if it could not be stored; the caller must
        not report the sale as saved in that case.
        """
        item_id = self.queue.enqueue(type, self.branch_id, user_id, payload, timestamp=timestamp)
        if self.dispatcher.is_online:
            self.dispatcher.trigger("enqueue")
        return item_id

    def set_online(self, online: bool) -> None:
        self.dispatcher.notify_connectivity(online)

    async def sync_now(self) -> SyncCycleResult:
        return await self.dispatcher.sync_now()

    def retry_failed(self, ids: Optional[Iterable[str]] = None) -> int:
        """Operator "retry all failed": fresh retry budget, then a sync attempt."""
        requeued = self.queue.retry_failed(ids)
        if requeued:
            self.dispatcher.trigger("retry_failed")
        return requeued

    def purge_completed(self) -> int:
        return self.queue.purge_completed()

    def discard_failed(self, ids: Optional[Iterable[str]] = None) -> int:
        """Operator "discard": failed items are removed and will never be sent."""
        return self.queue.discard_failed(ids)

    def status(self) -> SyncClientStatus:
        counts = self.queue.counts(branch_id=self.branch_id)
        failed_errors = [
            f"{item.id}: {item.last_error.splitlines()[-1]}"
            for item in self.queue.list_failed(branch_id=self.branch_id)
            if item.last_error
        ]
        return SyncClientStatus(
            pending_count=counts[QueueStatus.PENDING.value],
            syncing_count=counts[QueueStatus.SYNCING.value],
            failed_count=counts[QueueStatus.FAILED.value],
            completed_count=counts[QueueStatus.COMPLETED.value],
            is_online=self.dispatcher.is_online,
            is_syncing=self.dispatcher.is_syncing,
            last_sync_at=self.dispatcher.last_sync_at,
            recent_errors=(failed_errors + list(self.dispatcher.recent_errors))[-10:],
        )
