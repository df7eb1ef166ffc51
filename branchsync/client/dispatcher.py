"""
Sync Dispatcher

Single-flight background worker that drains the local queue to the branch
server. Only one batch is ever in flight per branch, so the server sees
transactions in the order the terminal created them.

Triggers (connectivity restored, periodic timer, enqueue, manual "sync now")
arrive on an ``asyncio.Queue`` of size one: while a batch is in flight,
further triggers coalesce into a single follow-up cycle.

An item is only marked completed on an explicit ``accepted`` from the
server. A timeout or malformed response is ambiguous: every item in the
batch goes back to pending (or to terminal ``failed`` once its retry budget
is spent) and is resubmitted with the same id later.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Deque, List, Optional, Sequence, Set

from branchsync.client.models import QueuedTransactionRecord
from branchsync.client.queue import DurableLocalQueue
from branchsync.client.transport import SyncTransport
from branchsync.core.clock import utcnow
from branchsync.core.errors import (
    InvalidTransitionError,
    QueueItemNotFoundError,
    QueueStorageError,
    TransientTransportError,
)

logger = logging.getLogger(__name__)


@dataclass
class SyncCycleResult:
    attempted: int = 0
    completed: int = 0
    failed: int = 0
    retrying: int = 0
    skipped_reason: Optional[str] = None

    def merge(self, other: "SyncCycleResult") -> None:
        self.attempted += other.attempted
        self.completed += other.completed
        self.failed += other.failed
        self.retrying += other.retrying


class SyncDispatcher:
    """Drains one branch's pending transactions, one batch at a time."""

    def __init__(
        self,
        queue: DurableLocalQueue,
        transport: SyncTransport,
        branch_id: str,
        batch_size: int = 10,
        max_retries: int = 3,
        retry_delays: Sequence[float] = (1.0, 5.0, 15.0),
        interval_seconds: float = 30.0,
    ):
        if not retry_delays:
            raise ValueError("retry_delays must not be empty")
        self.queue = queue
        self.transport = transport
        self.branch_id = branch_id
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.retry_delays = list(retry_delays)
        self.interval_seconds = interval_seconds

        self.is_online = True
        self.last_sync_at: Optional[datetime] = None
        self.recent_errors: Deque[str] = deque(maxlen=10)

        self._lock = asyncio.Lock()
        self._not_before = 0.0  # Event loop time before which automatic cycles wait
        self._triggers: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.Task] = None
        self._backoff_handle: Optional[asyncio.TimerHandle] = None

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    # ==================== LIFECYCLE ====================

    async def start(self) -> None:
        if self._worker is not None:
            return
        self._triggers = asyncio.Queue(maxsize=1)
        self._worker = asyncio.create_task(self._run_worker())
        if self.interval_seconds > 0:
            self._timer = asyncio.create_task(self._run_timer())
        logger.info(f"Sync dispatcher started for branch '{self.branch_id}'")
        self.trigger("startup")

    async def shutdown(self) -> None:
        """Stop the timer, let an in-flight batch finish, then stop the worker."""
        if self._backoff_handle is not None:
            self._backoff_handle.cancel()
            self._backoff_handle = None

        if self._timer is not None:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None

        if self._worker is not None:
            async with self._lock:
                self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        self._triggers = None
        logger.info(f"Sync dispatcher stopped for branch '{self.branch_id}'")

    # ==================== TRIGGERS ====================

    def trigger(self, reason: str = "manual") -> None:
        """Ask the worker for a cycle. Coalesces with a trigger already waiting."""
        if self._triggers is None:
            return
        try:
            self._triggers.put_nowait(reason)
        except asyncio.QueueFull:
            pass

    def notify_connectivity(self, online: bool) -> None:
        was_online = self.is_online
        self.is_online = online
        if online and not was_online:
            logger.info("Connectivity restored, triggering sync")
            self.trigger("connectivity")
        elif was_online and not online:
            logger.warning("Connectivity lost, queuing transactions locally")

    async def sync_now(self) -> SyncCycleResult:
        """Manual sync: runs even when offline or inside a backoff window."""
        return await self.run_cycle(force=True)

    async def _run_worker(self) -> None:
        while True:
            reason = await self._triggers.get()
            try:
                result = await self.run_cycle()
                if result.skipped_reason is None and result.attempted:
                    logger.debug(f"Sync cycle ({reason}): {result}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Sync cycle ({reason}) failed")
                self.recent_errors.append(str(e))

    async def _run_timer(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                online = await self.transport.ping()
            except Exception as e:
                logger.warning(f"Connectivity check failed: {e}")
                online = False
            self.notify_connectivity(online)
            if online:
                self.trigger("timer")

    # ==================== CYCLE ====================

    async def run_cycle(self, force: bool = False) -> SyncCycleResult:
        """Send batches until the queue is empty or a retry is scheduled."""
        loop = asyncio.get_running_loop()
        if not force:
            if not self.is_online:
                return SyncCycleResult(skipped_reason="offline")
            if loop.time() < self._not_before:
                return SyncCycleResult(skipped_reason="backoff")
        if self._lock.locked():
            return SyncCycleResult(skipped_reason="in_flight")

        total = SyncCycleResult()
        async with self._lock:
            while True:
                batch = self.queue.list_pending(branch_id=self.branch_id, limit=self.batch_size)
                if not batch:
                    break
                result = await self._send_batch(batch)
                total.merge(result)
                if result.retrying or result.attempted == 0:
                    break
        return total

    async def _send_batch(self, pending: List[QueuedTransactionRecord]) -> SyncCycleResult:
        result = SyncCycleResult()
        batch: List[QueuedTransactionRecord] = []
        for item in pending:
            try:
                batch.append(self.queue.mark_syncing(item.id))
            except InvalidTransitionError:
                # Changed by an operator since it was listed
                continue
        if not batch:
            return result
        result.attempted = len(batch)

        settled: Set[str] = set()
        try:
            await self._deliver(batch, result, settled)
        except QueueStorageError:
            # Unsettled items would stay hidden as syncing until the next restart
            self._release([item for item in batch if item.id not in settled])
            raise
        return result

    async def _deliver(
        self, batch: List[QueuedTransactionRecord], result: SyncCycleResult, settled: Set[str]
    ) -> None:
        try:
            item_results = await self.transport.submit_batch(batch)
        except asyncio.CancelledError:
            # Left as syncing; recovered to pending on the next start
            raise
        except TransientTransportError as e:
            logger.warning(f"Sync batch of {len(batch)} not acknowledged: {e}")
            self.recent_errors.append(str(e))
            for item in batch:
                self._retry_later(item, str(e), result)
                settled.add(item.id)
            return
        except Exception as e:
            logger.exception(f"Unexpected transport error for batch of {len(batch)}")
            self.recent_errors.append(str(e))
            for item in batch:
                self._retry_later(item, f"Unexpected transport error: {e}", result)
                settled.add(item.id)
            return

        self.last_sync_at = utcnow()
        for item, item_result in zip(batch, item_results):
            if item_result.accepted:
                self.queue.mark_completed(item.id)
                result.completed += 1
            elif not item_result.retryable:
                reason = item_result.reason or "Rejected by server"
                self.queue.mark_failed(item.id, reason)
                self.recent_errors.append(f"{item.id}: {reason}")
                logger.warning(f"Transaction {item.id} rejected: {reason}")
                result.failed += 1
            else:
                self._retry_later(item, item_result.reason or "Server asked to retry", result)
            settled.add(item.id)

    def _release(self, items: List[QueuedTransactionRecord]) -> None:
        """Put unsettled items back to pending after a local storage error."""
        for item in items:
            try:
                self.queue.revert_to_pending(item.id, "Local queue storage error during sync")
            except (QueueStorageError, InvalidTransitionError, QueueItemNotFoundError) as e:
                logger.error(f"Could not release {item.id} back to pending: {e}")
        if items:
            logger.error(f"Local queue storage error; released {len(items)} in-flight transactions")

    def _retry_later(self, item: QueuedTransactionRecord, error: str, result: SyncCycleResult) -> None:
        retry_count = self.queue.increment_retry(item.id)
        if retry_count >= self.max_retries:
            self.queue.mark_failed(item.id, f"Retry budget exhausted after {retry_count} attempts: {error}")
            logger.error(f"Transaction {item.id} failed after {retry_count} attempts: {error}")
            result.failed += 1
            return

        self.queue.revert_to_pending(item.id, error)
        result.retrying += 1
        self._schedule_retry(self.backoff_delay(retry_count))

    def backoff_delay(self, retry_count: int) -> float:
        """Delay after the ``retry_count``-th failure; the last value repeats."""
        index = min(max(retry_count, 1), len(self.retry_delays)) - 1
        return self.retry_delays[index]

    def _schedule_retry(self, delay: float) -> None:
        loop = asyncio.get_running_loop()
        not_before = loop.time() + delay
        if not_before <= self._not_before:
            return
        self._not_before = not_before
        if self._backoff_handle is not None:
            self._backoff_handle.cancel()
        self._backoff_handle = loop.call_later(delay, self.trigger, "backoff")
