"""
Durable Local Queue

Persists business mutations created on a terminal until the branch server
has acknowledged them. Every operation is one short storage transaction, and
every status change is a conditional ``UPDATE ... WHERE status IN (...)`` so
an enqueue racing the dispatcher can never be lost or overwritten.

Storage failures always raise ``QueueStorageError``. A queue that silently
drops a write loses a sale.
"""

import logging
import secrets
import string
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from branchsync.client.models import QueueBase, QueuedTransactionRecord
from branchsync.client.state import QueueStatus, allowed_sources
from branchsync.core.clock import ensure_utc, utcnow
from branchsync.core.errors import (
    InvalidTransitionError,
    QueueItemNotFoundError,
    QueueStorageError,
)
from branchsync.db.engine import create_store_engine
from branchsync.schemas.sync import TransactionType

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.digits + string.ascii_lowercase
MAX_ERROR_LOG_CHARS = 4000


def generate_transaction_id() -> str:
    """``<epoch-millis>-<9 base36 chars>``: sortable by creation, unique per terminal."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"{int(time.time() * 1000)}-{suffix}"


def _append_error(previous: Optional[str], error: str, at: datetime) -> str:
    line = f"[{at.isoformat()}] {error}"
    combined = f"{previous}\n{line}" if previous else line
    # Keep the newest attempts
    return combined[-MAX_ERROR_LOG_CHARS:]


class DurableLocalQueue:
    """SQLite-backed queue of transactions awaiting delivery."""

    def __init__(self, database_url: Optional[str] = None, engine: Optional[Engine] = None, echo: bool = False):
        if engine is None:
            if database_url is None:
                raise ValueError("database_url or engine is required")
            engine = create_store_engine(database_url, echo=echo)
        self.engine = engine
        self._session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    # ==================== LIFECYCLE ====================

    def init(self) -> int:
        """Create the schema and recover items a crashed process left in flight.

        Returns the number of recovered items.
        """
        try:
            QueueBase.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as e:
            raise QueueStorageError(f"Cannot open local queue store: {e}") from e
        return self.recover_in_flight()

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Local queue storage failure: {e}")
            raise QueueStorageError(f"Local queue storage failure: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ==================== WRITES ====================

    def enqueue(
        self,
        type: str,
        branch_id: str,
        user_id: str,
        payload: Dict[str, Any],
        timestamp: Optional[datetime] = None,
    ) -> str:
        """Persist a new pending transaction. Committed before the id is returned."""
        kind = TransactionType(type)
        if not isinstance(payload, dict):
            raise ValueError("payload must be a JSON object")

        now = utcnow()
        record = QueuedTransactionRecord(
            id=generate_transaction_id(),
            type=kind.value,
            branch_id=branch_id,
            user_id=user_id,
            timestamp=ensure_utc(timestamp) if timestamp is not None else now,
            payload=payload,
            status=QueueStatus.PENDING.value,
            retry_count=0,
            created_at=now,
        )
        with self._session() as session:
            session.add(record)
        logger.debug(f"Queued {record.type} {record.id} for branch '{branch_id}'")
        return record.id

    def _transition(
        self,
        session: Session,
        item_id: str,
        target: QueueStatus,
        manual: bool = False,
        error: Optional[str] = None,
        **values: Any,
    ) -> QueuedTransactionRecord:
        record = session.get(QueuedTransactionRecord, item_id)
        if record is None:
            raise QueueItemNotFoundError(item_id)
        sources = allowed_sources(target, manual=manual)
        if record.status not in sources:
            raise InvalidTransitionError(item_id, record.status, target.value)

        if error is not None:
            now = utcnow()
            values["last_error"] = _append_error(record.last_error, error, now)
            values["last_attempt_at"] = now

        result = session.execute(
            update(QueuedTransactionRecord)
            .where(
                QueuedTransactionRecord.id == item_id,
                QueuedTransactionRecord.status.in_(sources),
            )
            .values(status=target.value, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.refresh(record)
            raise InvalidTransitionError(item_id, record.status, target.value)

        session.refresh(record)
        return record

    def mark_syncing(self, item_id: str) -> QueuedTransactionRecord:
        with self._session() as session:
            return self._transition(session, item_id, QueueStatus.SYNCING)

    def mark_completed(self, item_id: str) -> QueuedTransactionRecord:
        with self._session() as session:
            return self._transition(
                session, item_id, QueueStatus.COMPLETED, completed_at=utcnow()
            )

    def mark_failed(self, item_id: str, error: str) -> QueuedTransactionRecord:
        """Terminal failure; only ``retry_failed`` brings the item back."""
        with self._session() as session:
            return self._transition(session, item_id, QueueStatus.FAILED, error=error)

    def revert_to_pending(self, item_id: str, error: str) -> QueuedTransactionRecord:
        """Retryable failure: back to pending for a later attempt."""
        with self._session() as session:
            return self._transition(session, item_id, QueueStatus.PENDING, error=error)

    def increment_retry(self, item_id: str) -> int:
        with self._session() as session:
            result = session.execute(
                update(QueuedTransactionRecord)
                .where(QueuedTransactionRecord.id == item_id)
                .values(retry_count=QueuedTransactionRecord.retry_count + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise QueueItemNotFoundError(item_id)
            return session.execute(
                select(QueuedTransactionRecord.retry_count).where(QueuedTransactionRecord.id == item_id)
            ).scalar_one()

    def purge_completed(self) -> int:
        with self._session() as session:
            result = session.execute(
                delete(QueuedTransactionRecord)
                .where(QueuedTransactionRecord.status == QueueStatus.COMPLETED.value)
                .execution_options(synchronize_session=False)
            )
            removed = result.rowcount
        if removed:
            logger.info(f"Purged {removed} completed transactions from local queue")
        return removed

    def retry_failed(self, ids: Optional[Iterable[str]] = None) -> int:
        """Operator action: move failed items back to pending with a fresh retry budget."""
        query = (
            update(QueuedTransactionRecord)
            .where(QueuedTransactionRecord.status == QueueStatus.FAILED.value)
            .values(status=QueueStatus.PENDING.value, retry_count=0)
            .execution_options(synchronize_session=False)
        )
        if ids is not None:
            query = query.where(QueuedTransactionRecord.id.in_(list(ids)))
        with self._session() as session:
            requeued = session.execute(query).rowcount
        if requeued:
            logger.info(f"Re-queued {requeued} failed transactions")
        return requeued

    def discard_failed(self, ids: Optional[Iterable[str]] = None) -> int:
        """Operator action: permanently drop failed items. Other statuses are never touched."""
        query = (
            delete(QueuedTransactionRecord)
            .where(QueuedTransactionRecord.status == QueueStatus.FAILED.value)
            .execution_options(synchronize_session=False)
        )
        if ids is not None:
            query = query.where(QueuedTransactionRecord.id.in_(list(ids)))
        with self._session() as session:
            removed = session.execute(query).rowcount
        if removed:
            logger.warning(f"Discarded {removed} failed transactions from local queue")
        return removed

    def recover_in_flight(self) -> int:
        """Items left ``syncing`` by a crashed process go back to pending.

        Their outcome is unknown; the server's idempotency makes resubmission safe.
        """
        with self._session() as session:
            recovered = session.execute(
                update(QueuedTransactionRecord)
                .where(QueuedTransactionRecord.status == QueueStatus.SYNCING.value)
                .values(status=QueueStatus.PENDING.value)
                .execution_options(synchronize_session=False)
            ).rowcount
        if recovered:
            logger.warning(f"Recovered {recovered} in-flight transactions after restart")
        return recovered

    # ==================== READS ====================

    def get(self, item_id: str) -> QueuedTransactionRecord:
        with self._session() as session:
            record = session.get(QueuedTransactionRecord, item_id)
            if record is None:
                raise QueueItemNotFoundError(item_id)
            return record

    def list_pending(self, branch_id: Optional[str] = None, limit: Optional[int] = None) -> List[QueuedTransactionRecord]:
        """Pending items, oldest first. Read-only."""
        query = (
            select(QueuedTransactionRecord)
            .where(QueuedTransactionRecord.status == QueueStatus.PENDING.value)
            .order_by(
                QueuedTransactionRecord.timestamp,
                QueuedTransactionRecord.created_at,
                QueuedTransactionRecord.id,
            )
        )
        if branch_id is not None:
            query = query.where(QueuedTransactionRecord.branch_id == branch_id)
        if limit is not None:
            query = query.limit(limit)
        with self._session() as session:
            return list(session.execute(query).scalars().all())

    def list_failed(self, branch_id: Optional[str] = None) -> List[QueuedTransactionRecord]:
        query = (
            select(QueuedTransactionRecord)
            .where(QueuedTransactionRecord.status == QueueStatus.FAILED.value)
            .order_by(QueuedTransactionRecord.timestamp, QueuedTransactionRecord.id)
        )
        if branch_id is not None:
            query = query.where(QueuedTransactionRecord.branch_id == branch_id)
        with self._session() as session:
            return list(session.execute(query).scalars().all())

    def counts(self, branch_id: Optional[str] = None) -> Dict[str, int]:
        """Item count per status; every status is present."""
        query = select(QueuedTransactionRecord.status, func.count()).group_by(QueuedTransactionRecord.status)
        if branch_id is not None:
            query = query.where(QueuedTransactionRecord.branch_id == branch_id)
        with self._session() as session:
            rows = dict(session.execute(query).all())
        return {status.value: rows.get(status.value, 0) for status in QueueStatus}
