"""Sync schemas: the wire contract between terminals and a branch server.

Field names on the wire are camelCase (``branchId``, ``entityId``) to match
the terminal payloads; Python code uses the snake_case attribute names.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class TransactionType(str, Enum):
    """Closed set of mutation kinds a terminal can queue."""

    SALE = "sale"
    PURCHASE = "purchase"
    EXPENSE = "expense"
    INVENTORY_ADJUST = "inventory_adjust"


class SyncTransactionIn(BaseModel):
    """One queued transaction replayed by a terminal.

    ``type`` is kept as a plain string so an unknown kind is rejected per
    item (non-retryable) instead of failing the whole batch.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., min_length=1, max_length=64)
    type: str = Field(..., min_length=1, max_length=50)
    branch_id: str = Field(..., alias="branchId", min_length=1, max_length=64)
    user_id: str = Field(..., alias="userId", min_length=1, max_length=64)
    timestamp: datetime
    payload: Dict[str, Any] = Field(default_factory=dict)


class SyncBatchRequest(BaseModel):
    """Ordered batch of transactions, oldest first."""

    transactions: List[SyncTransactionIn]


class SyncItemResult(BaseModel):
    """Per-item acknowledgement, in the same order as the request."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    accepted: bool
    retryable: bool = False
    reason: Optional[str] = None
    status: Optional[str] = None  # processed, duplicate, superseded, failed, pending
    entity_id: Optional[str] = Field(default=None, alias="entityId")


class SyncBatchResponse(BaseModel):
    """Response for a batch submission."""

    results: List[SyncItemResult]
    total: int
    successful: int
    failed: int
    server_timestamp: datetime


class SyncStatusResponse(BaseModel):
    """Ledger health for the current branch."""

    pending_count: int
    processed_count: int
    failed_count: int
    superseded_count: int
    last_processed_at: Optional[datetime] = None
    recent_errors: List[str]
    server_timestamp: datetime


class SyncLedgerEntryResponse(BaseModel):
    """Audit view of one ledger row."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    sync_id: str
    transaction_type: str
    entity_type: str
    entity_id: str
    operation: str
    data: Any
    user_id: Optional[str] = None
    timestamp: datetime
    sync_status: str
    attempts: int
    sequence: Optional[int] = None
    result_entity_id: Optional[str] = None
    received_at: datetime
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None
