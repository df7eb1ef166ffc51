"""Sync server services."""

from branchsync.services.conflict_resolver import ConflictResolver
from branchsync.services.domain_apply import DomainApplier, InventoryDomainApplier
from branchsync.services.sync_ledger_service import SyncLedgerService

__all__ = [
    "ConflictResolver",
    "DomainApplier",
    "InventoryDomainApplier",
    "SyncLedgerService",
]
