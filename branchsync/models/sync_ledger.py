"""
Sync Ledger Models - Append-only record of replayed offline transactions

Every transaction a terminal replays is recorded here exactly once, keyed by
the client-generated ``sync_id``. The unique index on ``sync_id`` is what
turns at-least-once delivery into exactly-once application. Rows are never
deleted; they are the audit trail of everything a branch has received.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from branchsync.db.base import Base


class LedgerSyncStatus(str, enum.Enum):
    """Ledger row status."""
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"
    SUPERSEDED = "superseded"  # Older write that lost to a newer one


class SyncOperation(str, enum.Enum):
    """What the mutation does to its entity."""
    CREATE = "create"  # Additive: never conflicts
    UPDATE = "update"  # State-replacing: last-commit-wins
    DELETE = "delete"  # State-replacing: last-commit-wins


# Statuses that short-circuit a resubmission without reapplying
SETTLED_STATUSES = (LedgerSyncStatus.PROCESSED.value, LedgerSyncStatus.SUPERSEDED.value)


class SyncLedgerEntry(Base):
    """One replayed transaction, as received by this branch."""

    __tablename__ = "sync_queue"
    __table_args__ = (
        UniqueConstraint("sync_id", name="uq_sync_queue_sync_id"),
        Index("idx_sync_queue_entity", "entity_type", "entity_id"),
        Index("idx_sync_queue_status", "sync_status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    sync_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # Mutation descriptor
    transaction_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    operation: Mapped[str] = mapped_column(String(20), nullable=False)
    data: Mapped[Any] = mapped_column(JSON, nullable=False)

    # Origin
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Processing state
    sync_status: Mapped[str] = mapped_column(
        String(20), default=LedgerSyncStatus.PENDING.value, nullable=False
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)  # Also the claim counter
    sequence: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    result_entity_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<SyncLedgerEntry {self.sync_id} {self.entity_type}:{self.entity_id} {self.sync_status}>"


class EntityVersion(Base):
    """
    Newest applied write per entity.

    ``last_timestamp`` advances on every applied write, additive ones included,
    so an older state-replacing write arriving late loses to them.
    ``replaced_at`` is the origin time of the last state-replacing write; an
    additive change older than it is already reflected in that state.

    Read with ``FOR UPDATE`` so two terminals writing the same entity
    serialize on this row.
    """

    __tablename__ = "entity_versions"
    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", name="uq_entity_version"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    last_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_sync_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    replaced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    replaced_by_sync_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
