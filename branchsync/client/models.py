"""Terminal-side queue table.

Lives in its own embedded database, separate from any branch store, so it
has its own declarative base.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from branchsync.client.state import QueueStatus


class QueueBase(DeclarativeBase):
    """Base class for the terminal's local queue store."""

    pass


class QueuedTransactionRecord(QueueBase):
    """A business mutation captured on the terminal, waiting to reach the branch server."""

    __tablename__ = "queued_transactions"
    __table_args__ = (
        Index("idx_queued_status", "status"),
        Index("idx_queued_timestamp", "timestamp"),
        Index("idx_queued_type", "type"),
        Index("idx_queued_branch", "branch_id"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)  # Becomes the server sync_id
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    branch_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payload: Mapped[Any] = mapped_column(JSON, nullable=False)

    status: Mapped[str] = mapped_column(String(20), default=QueueStatus.PENDING.value, nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<QueuedTransaction {self.id} {self.type} {self.status} retries={self.retry_count}>"
