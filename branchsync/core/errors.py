"""Error taxonomy for the offline sync subsystem.

Client-side storage errors must always propagate to the caller: an
undetected failure here means a lost sale. Domain apply errors are split
into retryable and non-retryable so the ledger can answer the client with
the right ``retryable`` flag.
"""


class SyncError(Exception):
    """Base class for all sync subsystem errors."""


# ---------------------------------------------------------------------------
# Client: durable local queue
# ---------------------------------------------------------------------------


class QueueStorageError(SyncError):
    """The local queue store is unavailable or corrupted."""


class QueueItemNotFoundError(SyncError):
    """No queued transaction exists with the given id."""

    def __init__(self, item_id: str):
        super().__init__(f"Queued transaction not found: {item_id}")
        self.item_id = item_id


class InvalidTransitionError(SyncError):
    """A status change that the item state machine does not allow."""

    def __init__(self, item_id: str, current: str, target: str):
        super().__init__(
            f"Cannot move queued transaction {item_id} from '{current}' to '{target}'"
        )
        self.item_id = item_id
        self.current = current
        self.target = target


# ---------------------------------------------------------------------------
# Client: transport
# ---------------------------------------------------------------------------


class TransientTransportError(SyncError):
    """No response, or a response that cannot be trusted.

    The server may or may not have applied the batch; callers must treat
    every item in it as not yet acknowledged.
    """


# ---------------------------------------------------------------------------
# Server: domain apply
# ---------------------------------------------------------------------------


class ValidationError(SyncError):
    """Entity-level rejection. Never retried automatically."""


class TransientApplyError(SyncError):
    """Resource contention while applying. Safe to retry the same sync id."""
