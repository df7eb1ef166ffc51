"""Batch submission to the branch server.

The network is assumed unreliable: a batch may be applied by the server and
the response still lost. Anything short of a well-formed, complete response
raises ``TransientTransportError`` and the caller must treat every item in
the batch as unacknowledged.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence

import httpx
from pydantic import ValidationError as PydanticValidationError

from branchsync.client.models import QueuedTransactionRecord
from branchsync.core.clock import ensure_utc
from branchsync.core.errors import TransientTransportError
from branchsync.schemas.sync import SyncBatchResponse, SyncItemResult, SyncTransactionIn

logger = logging.getLogger(__name__)

BATCH_PATH = "/api/v1/sync/batch"


def to_wire(record: QueuedTransactionRecord) -> dict:
    """Serialize a queued transaction for the sync submission request."""
    return SyncTransactionIn(
        id=record.id,
        type=record.type,
        branch_id=record.branch_id,
        user_id=record.user_id,
        timestamp=ensure_utc(record.timestamp),
        payload=record.payload or {},
    ).model_dump(mode="json", by_alias=True)


class SyncTransport(ABC):
    """Carries a batch to the server and returns one result per item, in order."""

    @abstractmethod
    async def submit_batch(self, items: Sequence[QueuedTransactionRecord]) -> List[SyncItemResult]:
        """Raises TransientTransportError when the outcome is unknown."""

    @abstractmethod
    async def ping(self) -> bool:
        """True when the server is reachable."""

    async def aclose(self) -> None:
        pass


class HttpSyncTransport(SyncTransport):
    """httpx client for ``POST /api/v1/sync/batch``."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 10.0,
        health_path: str = "/health",
        batch_path: str = BATCH_PATH,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.batch_path = batch_path
        self.health_path = health_path
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
        )
        self._token = token

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def submit_batch(self, items: Sequence[QueuedTransactionRecord]) -> List[SyncItemResult]:
        body = {"transactions": [to_wire(item) for item in items]}
        try:
            resp = await self._client.post(self.batch_path, json=body, headers=self._headers())
        except httpx.TimeoutException as e:
            raise TransientTransportError(f"Sync request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise TransientTransportError(f"Sync request failed: {e}") from e

        if resp.status_code >= 400:
            raise TransientTransportError(
                f"Sync request rejected with HTTP {resp.status_code}: {resp.text[:200]}"
            )

        try:
            parsed = SyncBatchResponse.model_validate(resp.json())
        except (ValueError, PydanticValidationError) as e:
            raise TransientTransportError(f"Malformed sync response: {e}") from e

        sent_ids = [item.id for item in items]
        got_ids = [result.id for result in parsed.results]
        if got_ids != sent_ids:
            raise TransientTransportError(
                f"Sync response does not match the batch: sent {len(sent_ids)} items, "
                f"got {len(got_ids)} results"
            )
        return parsed.results

    async def ping(self) -> bool:
        try:
            resp = await self._client.get(self.health_path)
        except httpx.HTTPError as e:
            logger.debug(f"Health check failed: {e}")
            return False
        return resp.status_code < 500

    async def aclose(self) -> None:
        await self._client.aclose()
