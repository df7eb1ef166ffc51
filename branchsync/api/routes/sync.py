"""Sync routes: replay of transactions queued by offline terminals."""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request, status

from branchsync.core.clock import utcnow
from branchsync.core.config import settings
from branchsync.core.rate_limit import limiter
from branchsync.core.rbac import RequireManager
from branchsync.core.responses import paginated_response
from branchsync.db.session import BranchDbSession, BranchId
from branchsync.models.sync_ledger import LedgerSyncStatus
from branchsync.schemas.sync import (
    SyncBatchRequest,
    SyncBatchResponse,
    SyncItemResult,
    SyncLedgerEntryResponse,
    SyncStatusResponse,
    SyncTransactionIn,
)
from branchsync.services.sync_ledger_service import SyncLedgerService

router = APIRouter()


@router.post("/batch", response_model=SyncBatchResponse)
@limiter.limit("120/minute")
def sync_batch(
    request: Request,
    body: SyncBatchRequest,
    db: BranchDbSession,
    branch_id: BranchId,
):
    """
    Replay a batch of queued transactions, oldest first.

    Returns one result per item, in the same order. An item is only safe to
    drop from the terminal's queue when its result says ``accepted``.
    """
    if len(body.transactions) > settings.sync_max_batch_items:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Batch exceeds {settings.sync_max_batch_items} transactions",
        )

    service = SyncLedgerService(db, branch_id)
    results = service.process_batch(body.transactions)
    successful = sum(1 for r in results if r.accepted)

    return SyncBatchResponse(
        results=results,
        total=len(results),
        successful=successful,
        failed=len(results) - successful,
        server_timestamp=utcnow(),
    )


@router.post("/transaction", response_model=SyncItemResult)
@limiter.limit("120/minute")
def sync_transaction(
    request: Request,
    body: SyncTransactionIn,
    db: BranchDbSession,
    branch_id: BranchId,
):
    """Replay a single queued transaction."""
    return SyncLedgerService(db, branch_id).process_transaction(body)


@router.get("/status", response_model=SyncStatusResponse)
@limiter.limit("60/minute")
def sync_status(
    request: Request,
    db: BranchDbSession,
    branch_id: BranchId,
):
    """Ledger counts and recent errors for the caller's branch."""
    return SyncLedgerService(db, branch_id).get_status()


@router.get("/ledger")
@limiter.limit("60/minute")
def list_ledger(
    request: Request,
    db: BranchDbSession,
    branch_id: BranchId,
    current_user: RequireManager,
    sync_status: Optional[LedgerSyncStatus] = Query(None, alias="status"),
    entity_type: Optional[str] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
):
    """Audit trail of replayed transactions, newest first."""
    service = SyncLedgerService(db, branch_id)
    items, total = service.list_entries(
        status=sync_status.value if sync_status else None,
        entity_type=entity_type,
        skip=skip,
        limit=limit,
    )
    return paginated_response(
        [SyncLedgerEntryResponse.model_validate(e).model_dump(mode="json") for e in items],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.get("/ledger/{sync_id}", response_model=SyncLedgerEntryResponse)
@limiter.limit("60/minute")
def get_ledger_entry(
    request: Request,
    sync_id: str,
    db: BranchDbSession,
    branch_id: BranchId,
    current_user: RequireManager,
):
    entry = SyncLedgerService(db, branch_id).get_entry(sync_id)
    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sync entry not found")
    return entry
