"""
Conflict Resolver - last-commit-wins by origin timestamp

Additive operations (``create``) never conflict: two offline sales of the
same product both count. State-replacing operations (``update``/``delete``)
race on the entity they touch; the one with the newer origin timestamp
wins, and an older one arriving later is recorded as ``superseded``.

Every winning state-replacing write also gets a server-assigned, per-entity
sequence number so the ledger shows the order writes actually took effect.

Additive writes still advance the entity's version (``record_additive``): a
stock count taken before a later sale cannot wipe that sale out, and a sale
older than a later count is already included in the counted level.

Must be called inside the same savepoint as the domain apply: if the apply
fails, the version bump is rolled back with it.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from branchsync.core.clock import ensure_utc
from branchsync.models.sync_ledger import EntityVersion, SyncLedgerEntry, SyncOperation

logger = logging.getLogger(__name__)


class Resolution(str, enum.Enum):
    APPLY = "apply"
    SUPERSEDED = "superseded"


@dataclass
class ConflictDecision:
    resolution: Resolution
    sequence: Optional[int] = None
    winner_sync_id: Optional[str] = None

    @property
    def should_apply(self) -> bool:
        return self.resolution is Resolution.APPLY


class ConflictResolver:
    def __init__(self, max_clock_skew_seconds: int = 300):
        self.max_clock_skew = timedelta(seconds=max_clock_skew_seconds)

    def effective_timestamp(self, timestamp: datetime, received_at: datetime) -> datetime:
        """Origin timestamp, clamped to receipt time when it is implausibly in the future.

        A terminal with a fast clock would otherwise win every conflict until
        real time caught up with it.
        """
        ts = ensure_utc(timestamp)
        received = ensure_utc(received_at)
        if ts > received + self.max_clock_skew:
            logger.warning(
                f"Clamping future timestamp {ts.isoformat()} to receipt time {received.isoformat()}"
            )
            return received
        return ts

    def _lock_version(self, db: Session, entity_type: str, entity_id: str) -> Optional[EntityVersion]:
        # Serializes concurrent writers to the same entity
        return db.execute(
            select(EntityVersion)
            .where(
                EntityVersion.entity_type == entity_type,
                EntityVersion.entity_id == entity_id,
            )
            .with_for_update()
        ).scalar_one_or_none()

    def resolve(self, db: Session, entry: SyncLedgerEntry, now: datetime) -> ConflictDecision:
        if entry.operation == SyncOperation.CREATE.value:
            return ConflictDecision(Resolution.APPLY)

        ts = self.effective_timestamp(entry.timestamp, now)
        version = self._lock_version(db, entry.entity_type, entry.entity_id)

        if version is None:
            version = EntityVersion(
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                last_timestamp=ts,
                last_sync_id=entry.sync_id,
                sequence=1,
                replaced_at=ts,
                replaced_by_sync_id=entry.sync_id,
            )
            db.add(version)
            db.flush()
            return ConflictDecision(Resolution.APPLY, sequence=1)

        # Equal timestamps: the later arrival wins
        if ensure_utc(version.last_timestamp) > ts:
            logger.info(
                f"Sync {entry.sync_id} superseded by {version.last_sync_id} "
                f"on {entry.entity_type}:{entry.entity_id}"
            )
            return ConflictDecision(Resolution.SUPERSEDED, winner_sync_id=version.last_sync_id)

        version.last_timestamp = ts
        version.last_sync_id = entry.sync_id
        version.replaced_at = ts
        version.replaced_by_sync_id = entry.sync_id
        version.sequence = (version.sequence or 0) + 1
        db.flush()
        return ConflictDecision(Resolution.APPLY, sequence=version.sequence)

    def record_additive(
        self, db: Session, entity_type: str, entity_id: str, sync_id: str, timestamp: datetime
    ) -> Optional[str]:
        """Note an applied additive change (a stock movement) on an entity.

        Additive changes are never superseded, but they do advance the
        entity's version so an older state-replacing write arriving later
        loses to them. Returns the sync id of a newer state-replacing write
        that already reflects this change, if there is one.
        """
        ts = ensure_utc(timestamp)
        version = self._lock_version(db, entity_type, entity_id)

        if version is None:
            db.add(EntityVersion(
                entity_type=entity_type,
                entity_id=entity_id,
                last_timestamp=ts,
                last_sync_id=sync_id,
                sequence=0,
            ))
            db.flush()
            return None

        if ts >= ensure_utc(version.last_timestamp):
            version.last_timestamp = ts
            version.last_sync_id = sync_id
            db.flush()

        if version.replaced_at is not None and ensure_utc(version.replaced_at) > ts:
            return version.replaced_by_sync_id
        return None
