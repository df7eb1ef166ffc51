"""Status machine for a queued transaction.

    pending -> syncing -> completed
                       -> pending   (retryable failure, after backoff)
                       -> failed    (terminal)
    failed  -> pending              (operator "retry failed" only)

``completed`` and ``failed`` are never left automatically.
"""

from enum import Enum
from typing import Dict, FrozenSet, Tuple


class QueueStatus(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS: Dict[QueueStatus, FrozenSet[QueueStatus]] = {
    QueueStatus.PENDING: frozenset({QueueStatus.SYNCING}),
    QueueStatus.SYNCING: frozenset({QueueStatus.COMPLETED, QueueStatus.PENDING, QueueStatus.FAILED}),
    QueueStatus.FAILED: frozenset(),
    QueueStatus.COMPLETED: frozenset(),
}

# Transitions only an operator may trigger
MANUAL_TRANSITIONS: Dict[QueueStatus, FrozenSet[QueueStatus]] = {
    QueueStatus.FAILED: frozenset({QueueStatus.PENDING}),
}

TERMINAL_STATUSES = frozenset({QueueStatus.COMPLETED, QueueStatus.FAILED})


def can_transition(current: QueueStatus, target: QueueStatus, manual: bool = False) -> bool:
    if target in ALLOWED_TRANSITIONS.get(current, frozenset()):
        return True
    return manual and target in MANUAL_TRANSITIONS.get(current, frozenset())


def allowed_sources(target: QueueStatus, manual: bool = False) -> Tuple[str, ...]:
    """Statuses an item may be in for a move to ``target``, as stored values."""
    return tuple(
        status.value for status in QueueStatus if can_transition(status, target, manual=manual)
    )
