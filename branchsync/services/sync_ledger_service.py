"""
Sync Ledger Service

Accepts transactions replayed by offline terminals and applies each one to
the branch store exactly once.

Terminals deliver at-least-once: a batch whose response was lost is sent
again with the same ids. The ledger row keyed by ``sync_id`` is what makes
the second delivery harmless. A settled row (``processed`` or
``superseded``) is acknowledged without touching business state again.

Per item, the ledger row and the domain effects commit in one database
transaction. Domain effects run inside a savepoint so a rejected or failed
apply leaves the ledger row behind (for audit and retry) with nothing else.
"""

import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from branchsync.core.clock import ensure_utc, utcnow
from branchsync.core.config import settings
from branchsync.core.errors import ValidationError
from branchsync.core.metrics import metrics
from branchsync.models.sync_ledger import (
    SETTLED_STATUSES,
    LedgerSyncStatus,
    SyncLedgerEntry,
    SyncOperation,
)
from branchsync.schemas.sync import SyncItemResult, SyncStatusResponse, SyncTransactionIn
from branchsync.services.conflict_resolver import ConflictResolver
from branchsync.services.domain_apply import (
    ApplyContext,
    ApplyResult,
    DomainApplier,
    EntityDescriptor,
    InventoryDomainApplier,
)

logger = logging.getLogger(__name__)

_CLAIMABLE_STATUSES = (LedgerSyncStatus.PENDING.value, LedgerSyncStatus.FAILED.value)


class SyncLedgerService:
    """Idempotent apply of replayed transactions for one branch store."""

    def __init__(
        self,
        db: Session,
        branch_id: str,
        applier: Optional[DomainApplier] = None,
        resolver: Optional[ConflictResolver] = None,
    ):
        self.db = db
        self.branch_id = branch_id
        self.resolver = resolver or ConflictResolver(settings.sync_max_clock_skew_seconds)
        self.applier = applier or InventoryDomainApplier(self.resolver)

    # ==================== PROCESSING ====================

    def process_batch(self, items: List[SyncTransactionIn]) -> List[SyncItemResult]:
        """Process items strictly in submission order; one commit per item."""
        metrics.record_sync_batch()
        results = [self.process_transaction(item) for item in items]
        accepted = sum(1 for r in results if r.accepted)
        logger.info(
            f"Sync batch for branch '{self.branch_id}': "
            f"{len(results)} items, {accepted} accepted, {len(results) - accepted} not accepted"
        )
        return results

    def process_transaction(self, item: SyncTransactionIn) -> SyncItemResult:
        if item.branch_id != self.branch_id:
            # Not ours: never written to this branch's ledger
            metrics.record_sync_outcome("rejected")
            return SyncItemResult(
                id=item.id,
                accepted=False,
                retryable=False,
                status=LedgerSyncStatus.FAILED.value,
                reason=f"Transaction belongs to branch '{item.branch_id}', not '{self.branch_id}'",
            )

        existing = self.get_entry(item.id)
        if existing is not None and existing.sync_status in SETTLED_STATUSES:
            return self._duplicate(existing)

        describe_error: Optional[str] = None
        try:
            descriptor = self.applier.describe(item.type, item.payload, item.id)
        except ValidationError as e:
            describe_error = str(e)
            descriptor = EntityDescriptor(
                transaction_type=item.type[:50],
                entity_type=item.type[:50],
                entity_id=item.id,
                operation=SyncOperation.CREATE,
                data=item.payload,
            )

        entry, early_result = self._claim(item, descriptor, existing)
        if early_result is not None:
            return early_result

        if describe_error is not None:
            entry.sync_status = LedgerSyncStatus.FAILED.value
            entry.error_message = describe_error
            return self._commit(entry, self._rejected(item.id, describe_error))

        try:
            return self._apply(entry, descriptor, item)
        except Exception as e:
            logger.exception(f"Unexpected error processing sync {item.id}")
            self.db.rollback()
            metrics.record_sync_outcome("retryable")
            return SyncItemResult(
                id=item.id,
                accepted=False,
                retryable=True,
                status=LedgerSyncStatus.PENDING.value,
                reason=f"Internal error: {e}",
            )

    def _claim(
        self,
        item: SyncTransactionIn,
        descriptor: EntityDescriptor,
        existing: Optional[SyncLedgerEntry],
    ) -> Tuple[Optional[SyncLedgerEntry], Optional[SyncItemResult]]:
        """Insert the ledger row, or claim an unsettled one for another attempt.

        Returns the claimed row, or a finished result when another submission
        of the same sync id got there first.
        """
        if existing is None:
            entry = SyncLedgerEntry(
                sync_id=item.id,
                transaction_type=descriptor.transaction_type,
                entity_type=descriptor.entity_type,
                entity_id=descriptor.entity_id,
                operation=descriptor.operation.value,
                data=descriptor.data,
                user_id=item.user_id,
                timestamp=ensure_utc(item.timestamp),
                sync_status=LedgerSyncStatus.PENDING.value,
                attempts=1,
            )
            self.db.add(entry)
            try:
                self.db.flush()
            except IntegrityError:
                # Unique sync_id: a concurrent submission inserted first
                self.db.rollback()
                winner = self.get_entry(item.id)
                if winner is not None and winner.sync_status in SETTLED_STATUSES:
                    return None, self._duplicate(winner)
                return None, self._in_flight(item.id)
            return entry, None

        seen = existing.attempts
        claimed = self.db.execute(
            update(SyncLedgerEntry)
            .where(
                SyncLedgerEntry.id == existing.id,
                SyncLedgerEntry.attempts == seen,
                SyncLedgerEntry.sync_status.in_(_CLAIMABLE_STATUSES),
            )
            .values(attempts=seen + 1, sync_status=LedgerSyncStatus.PENDING.value)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            self.db.rollback()
            winner = self.get_entry(item.id)
            if winner is not None and winner.sync_status in SETTLED_STATUSES:
                return None, self._duplicate(winner)
            return None, self._in_flight(item.id)

        self.db.refresh(existing)
        return existing, None

    def _apply(
        self, entry: SyncLedgerEntry, descriptor: EntityDescriptor, item: SyncTransactionIn
    ) -> SyncItemResult:
        now = utcnow()
        context = ApplyContext(
            sync_id=item.id,
            branch_id=self.branch_id,
            user_id=item.user_id,
            timestamp=ensure_utc(item.timestamp),
            ordering_timestamp=self.resolver.effective_timestamp(item.timestamp, now),
        )

        savepoint = self.db.begin_nested()
        try:
            decision = self.resolver.resolve(self.db, entry, now)
            if decision.should_apply:
                result = self.applier.apply(self.db, descriptor, context)
            else:
                result = None
        except Exception as e:
            savepoint.rollback()
            logger.exception(f"Apply of sync {item.id} raised")
            result = ApplyResult.transient(f"Unexpected error: {e}")
            decision = None
        else:
            if result is not None and not result.success:
                savepoint.rollback()
            else:
                savepoint.commit()

        if decision is not None and not decision.should_apply:
            entry.sync_status = LedgerSyncStatus.SUPERSEDED.value
            entry.processed_at = now
            entry.error_message = None
            return self._commit(entry, SyncItemResult(
                id=item.id,
                accepted=True,
                status=LedgerSyncStatus.SUPERSEDED.value,
                reason=f"Superseded by {decision.winner_sync_id}",
                entity_id=entry.entity_id,
            ))

        if result.success:
            entry.sync_status = LedgerSyncStatus.PROCESSED.value
            entry.processed_at = now
            entry.sequence = decision.sequence
            entry.result_entity_id = result.entity_id
            entry.error_message = None
            return self._commit(entry, SyncItemResult(
                id=item.id,
                accepted=True,
                status=LedgerSyncStatus.PROCESSED.value,
                entity_id=result.entity_id,
            ))

        entry.error_message = result.error_message
        if result.retryable:
            entry.sync_status = LedgerSyncStatus.PENDING.value
            return self._commit(entry, SyncItemResult(
                id=item.id,
                accepted=False,
                retryable=True,
                status=LedgerSyncStatus.PENDING.value,
                reason=result.error_message,
            ))

        entry.sync_status = LedgerSyncStatus.FAILED.value
        return self._commit(entry, self._rejected(item.id, result.error_message))

    def _commit(self, entry: SyncLedgerEntry, result: SyncItemResult) -> SyncItemResult:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to commit sync {entry.sync_id}: {e}")
            metrics.record_sync_outcome("retryable")
            return self._in_flight(result.id, reason=f"Commit failed: {e}")

        metrics.record_sync_outcome(
            "retryable" if result.retryable else (result.status or "unknown")
        )
        if result.status == LedgerSyncStatus.FAILED.value:
            logger.warning(f"Sync {entry.sync_id} rejected: {result.reason}")
        return result

    # ==================== RESULTS ====================

    def _duplicate(self, entry: SyncLedgerEntry) -> SyncItemResult:
        metrics.record_sync_outcome("duplicate")
        logger.info(f"Duplicate sync {entry.sync_id} acknowledged ({entry.sync_status})")
        return SyncItemResult(
            id=entry.sync_id,
            accepted=True,
            status="duplicate",
            reason=f"Already {entry.sync_status}",
            entity_id=entry.result_entity_id or entry.entity_id,
        )

    @staticmethod
    def _in_flight(sync_id: str, reason: str = "Another submission of this transaction is in progress") -> SyncItemResult:
        return SyncItemResult(
            id=sync_id,
            accepted=False,
            retryable=True,
            status=LedgerSyncStatus.PENDING.value,
            reason=reason,
        )

    @staticmethod
    def _rejected(sync_id: str, reason: Optional[str]) -> SyncItemResult:
        return SyncItemResult(
            id=sync_id,
            accepted=False,
            retryable=False,
            status=LedgerSyncStatus.FAILED.value,
            reason=reason,
        )

    # ==================== QUERIES ====================

    def get_entry(self, sync_id: str) -> Optional[SyncLedgerEntry]:
        return self.db.execute(
            select(SyncLedgerEntry).where(SyncLedgerEntry.sync_id == sync_id)
        ).scalar_one_or_none()

    def list_entries(
        self,
        status: Optional[str] = None,
        entity_type: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[SyncLedgerEntry], int]:
        query = select(SyncLedgerEntry)
        if status:
            query = query.where(SyncLedgerEntry.sync_status == status)
        if entity_type:
            query = query.where(SyncLedgerEntry.entity_type == entity_type)

        total = self.db.execute(
            select(func.count()).select_from(query.subquery())
        ).scalar_one()
        items = self.db.execute(
            query.order_by(SyncLedgerEntry.id.desc()).offset(skip).limit(limit)
        ).scalars().all()
        return list(items), total

    def get_status(self, recent_errors_limit: int = 10) -> SyncStatusResponse:
        counts = dict(
            self.db.execute(
                select(SyncLedgerEntry.sync_status, func.count())
                .group_by(SyncLedgerEntry.sync_status)
            ).all()
        )
        last_processed: Optional[datetime] = self.db.execute(
            select(func.max(SyncLedgerEntry.processed_at))
        ).scalar_one()

        errored = self.db.execute(
            select(SyncLedgerEntry)
            .where(
                SyncLedgerEntry.error_message.is_not(None),
                SyncLedgerEntry.sync_status.in_(_CLAIMABLE_STATUSES),
            )
            .order_by(SyncLedgerEntry.id.desc())
            .limit(recent_errors_limit)
        ).scalars().all()

        return SyncStatusResponse(
            pending_count=counts.get(LedgerSyncStatus.PENDING.value, 0),
            processed_count=counts.get(LedgerSyncStatus.PROCESSED.value, 0),
            failed_count=counts.get(LedgerSyncStatus.FAILED.value, 0),
            superseded_count=counts.get(LedgerSyncStatus.SUPERSEDED.value, 0),
            last_processed_at=ensure_utc(last_processed),
            recent_errors=[f"{e.sync_id}: {e.error_message}" for e in errored],
            server_timestamp=utcnow(),
        )
