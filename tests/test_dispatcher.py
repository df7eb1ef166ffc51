"""End-to-end tests for the dispatcher against an in-process branch ledger."""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from branchsync.client.dispatcher import SyncDispatcher
from branchsync.client.runtime import SyncClient
from branchsync.client.transport import SyncTransport, to_wire
from branchsync.core.config import Settings
from branchsync.core.errors import QueueItemNotFoundError, QueueStorageError, TransientTransportError
from branchsync.models.sale import Sale
from branchsync.schemas.sync import SyncTransactionIn
from branchsync.services.sync_ledger_service import SyncLedgerService

BRANCH_ID = "downtown"
T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class LedgerTransport(SyncTransport):
    """Delivers batches straight to a SyncLedgerService, with injectable network faults."""

    def __init__(self, db):
        self.service = SyncLedgerService(db, BRANCH_ID)
        self.reachable = True
        self.drop_acks = 0  # Apply on the server, then lose the response
        self.calls = []
        self.gate = None

    async def submit_batch(self, items):
        if self.gate is not None:
            await self.gate.wait()
        if not self.reachable:
            raise TransientTransportError("connection refused")
        self.calls.append([item.id for item in items])
        results = self.service.process_batch(
            [SyncTransactionIn.model_validate(to_wire(item)) for item in items]
        )
        if self.drop_acks:
            self.drop_acks -= 1
            raise TransientTransportError("connection dropped before response")
        return results

    async def ping(self):
        return self.reachable


@pytest.fixture
def transport(db_session):
    return LedgerTransport(db_session)


def _dispatcher(queue, transport, **kwargs):
    options = dict(batch_size=10, max_retries=3, retry_delays=(0,), interval_seconds=0)
    options.update(kwargs)
    return SyncDispatcher(queue, transport, BRANCH_ID, **options)


def _sale(queue, product_id, quantity=1, transaction_id="S1", at=None):
    return queue.enqueue(
        "sale", BRANCH_ID, "cashier-1",
        {"transactionId": transaction_id,
         "lineItems": [{"productId": product_id, "quantity": quantity, "unitPrice": "3.50"}]},
        timestamp=at,
    )


def _adjust(queue, product_id, change, at):
    return queue.enqueue(
        "inventory_adjust", BRANCH_ID, "cashier-1",
        {"productId": product_id, "quantityChange": change},
        timestamp=at,
    )


class TestScenarios:
    @pytest.mark.asyncio
    async def test_lost_ack_is_resubmitted_and_applied_once(self, local_queue, transport, db_session, test_product):
        dispatcher = _dispatcher(local_queue, transport)
        dispatcher.notify_connectivity(False)
        s1 = _sale(local_queue, test_product.id, quantity=2)

        assert (await dispatcher.run_cycle()).skipped_reason == "offline"

        dispatcher.notify_connectivity(True)
        transport.drop_acks = 1
        first = await dispatcher.run_cycle()
        assert first.retrying == 1
        item = local_queue.get(s1)
        assert item.status == "pending"
        assert item.retry_count == 1

        second = await dispatcher.run_cycle()
        assert second.completed == 1
        assert local_queue.get(s1).status == "completed"

        assert transport.calls == [[s1], [s1]]
        db_session.refresh(test_product)
        assert test_product.stock_level == Decimal("8")
        assert db_session.query(Sale).count() == 1

    @pytest.mark.asyncio
    async def test_adjustments_apply_in_queue_order(self, local_queue, transport, db_session, test_product):
        a = _adjust(local_queue, test_product.id, -2, T0)
        b = _adjust(local_queue, test_product.id, -3, T0 + timedelta(seconds=1))

        result = await _dispatcher(local_queue, transport).run_cycle()

        assert result.completed == 2
        assert transport.calls == [[a, b]]
        db_session.refresh(test_product)
        assert test_product.stock_level == Decimal("5")

    @pytest.mark.asyncio
    async def test_validation_failure_skips_retry_budget(self, local_queue, transport):
        bad = local_queue.enqueue("sale", BRANCH_ID, "cashier-1", {"lineItems": []})

        result = await _dispatcher(local_queue, transport).run_cycle()

        assert result.failed == 1
        item = local_queue.get(bad)
        assert item.status == "failed"
        assert item.retry_count == 0
        assert item.last_error


class TestOrdering:
    @pytest.mark.asyncio
    async def test_older_transaction_dispatched_first(self, local_queue, transport, test_product):
        later = _adjust(local_queue, test_product.id, 1, T0 + timedelta(minutes=5))
        earlier = _adjust(local_queue, test_product.id, 1, T0)

        await _dispatcher(local_queue, transport, batch_size=1).run_cycle()

        assert transport.calls == [[earlier], [later]]


class TestRetry:
    @pytest.mark.asyncio
    async def test_bounded_retry(self, local_queue, transport, test_product):
        item_id = _sale(local_queue, test_product.id)
        transport.reachable = False
        dispatcher = _dispatcher(local_queue, transport)

        for expected_retries in (1, 2):
            result = await dispatcher.run_cycle()
            assert result.retrying == 1
            item = local_queue.get(item_id)
            assert item.status == "pending"
            assert item.retry_count == expected_retries

        result = await dispatcher.run_cycle()
        assert result.failed == 1
        item = local_queue.get(item_id)
        assert item.status == "failed"
        assert item.retry_count == 3

        transport.reachable = True
        result = await dispatcher.run_cycle()
        assert result.attempted == 0
        assert local_queue.get(item_id).status == "failed"

    @pytest.mark.asyncio
    async def test_backoff_defers_automatic_cycles(self, local_queue, transport, test_product):
        item_id = _sale(local_queue, test_product.id)
        transport.reachable = False
        dispatcher = _dispatcher(local_queue, transport, retry_delays=(60,))

        await dispatcher.run_cycle()
        transport.reachable = True

        assert (await dispatcher.run_cycle()).skipped_reason == "backoff"
        assert local_queue.get(item_id).status == "pending"

        manual = await dispatcher.sync_now()
        assert manual.completed == 1
        await dispatcher.shutdown()

    def test_backoff_schedule(self, local_queue, transport):
        dispatcher = _dispatcher(local_queue, transport, retry_delays=(1, 5, 15))
        assert [dispatcher.backoff_delay(n) for n in (1, 2, 3, 4, 7)] == [1, 5, 15, 15, 15]

    @pytest.mark.asyncio
    async def test_server_retryable_result_keeps_item_pending(self, local_queue, transport, test_product, monkeypatch):
        item_id = _sale(local_queue, test_product.id)

        def busy(item):
            return transport.service._in_flight(item.id)

        monkeypatch.setattr(transport.service, "process_transaction", busy)
        result = await _dispatcher(local_queue, transport).run_cycle()

        assert result.retrying == 1
        item = local_queue.get(item_id)
        assert item.status == "pending"
        assert item.retry_count == 1
        assert "in progress" in item.last_error

    @pytest.mark.asyncio
    async def test_manual_sync_ignores_offline_flag(self, local_queue, transport, test_product):
        _sale(local_queue, test_product.id)
        dispatcher = _dispatcher(local_queue, transport)
        dispatcher.notify_connectivity(False)

        assert (await dispatcher.sync_now()).completed == 1


class TestLocalStorageErrors:
    @pytest.mark.asyncio
    async def test_unsettled_items_return_to_pending(self, local_queue, transport, test_product, monkeypatch):
        a = _adjust(local_queue, test_product.id, 1, T0)
        b = _adjust(local_queue, test_product.id, 1, T0 + timedelta(seconds=1))
        mark_completed = local_queue.mark_completed

        def disk_full_on_second(item_id):
            if item_id == b:
                raise QueueStorageError("database or disk is full")
            return mark_completed(item_id)

        monkeypatch.setattr(local_queue, "mark_completed", disk_full_on_second)

        with pytest.raises(QueueStorageError):
            await _dispatcher(local_queue, transport).run_cycle()

        assert local_queue.get(a).status == "completed"
        assert [item.id for item in local_queue.list_pending()] == [b]
        assert "storage error" in local_queue.get(b).last_error


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_cycles_coalesce(self, local_queue, transport, test_product):
        _sale(local_queue, test_product.id)
        transport.gate = asyncio.Event()
        dispatcher = _dispatcher(local_queue, transport)

        first = asyncio.create_task(dispatcher.run_cycle())
        await asyncio.sleep(0)
        assert dispatcher.is_syncing

        second = await dispatcher.run_cycle()
        assert second.skipped_reason == "in_flight"

        transport.gate.set()
        assert (await first).completed == 1
        assert len(transport.calls) == 1

    @pytest.mark.asyncio
    async def test_background_worker_drains_queue(self, local_queue, transport, test_product):
        dispatcher = _dispatcher(local_queue, transport)
        await dispatcher.start()
        try:
            item_id = _sale(local_queue, test_product.id)
            dispatcher.trigger("enqueue")
            for _ in range(100):
                if local_queue.get(item_id).status == "completed":
                    break
                await asyncio.sleep(0.01)
            assert local_queue.get(item_id).status == "completed"
            assert dispatcher.last_sync_at is not None
        finally:
            await dispatcher.shutdown()

    @pytest.mark.asyncio
    async def test_connectivity_restored_triggers_sync(self, local_queue, transport, test_product):
        dispatcher = _dispatcher(local_queue, transport)
        dispatcher.notify_connectivity(False)
        await dispatcher.start()
        try:
            item_id = _sale(local_queue, test_product.id)
            await asyncio.sleep(0.05)
            assert local_queue.get(item_id).status == "pending"

            dispatcher.notify_connectivity(True)
            for _ in range(100):
                if local_queue.get(item_id).status == "completed":
                    break
                await asyncio.sleep(0.01)
            assert local_queue.get(item_id).status == "completed"
        finally:
            await dispatcher.shutdown()


class TestSyncClient:
    @pytest.mark.asyncio
    async def test_client_lifecycle(self, local_queue, transport, test_product):
        settings = Settings(sync_retry_delays="0", sync_interval_seconds=0, sync_max_retries=3)
        client = SyncClient(BRANCH_ID, settings=settings, queue=local_queue, transport=transport)

        async with client:
            client.set_online(False)
            ok = client.queue_transaction(
                "sale",
                {"transactionId": "S9", "lineItems": [{"productId": test_product.id, "quantity": 1, "unitPrice": "1"}]},
                user_id="cashier-2",
            )
            bad = client.queue_transaction("sale", {"lineItems": []}, user_id="cashier-2")

            status = client.status()
            assert status.pending_count == 2
            assert status.is_online is False

            result = await client.sync_now()
            assert result.completed == 1
            assert result.failed == 1

            status = client.status()
            assert status.completed_count == 1
            assert status.failed_count == 1
            assert status.last_sync_at is not None
            assert any(bad in e for e in status.recent_errors)

            assert client.retry_failed() == 1
            assert local_queue.get(bad).retry_count == 0
            assert client.purge_completed() == 1
            assert local_queue.counts()["completed"] == 0
            with pytest.raises(QueueItemNotFoundError):
                local_queue.get(ok)

            # Still invalid after the retry, so the operator drops it
            assert (await client.sync_now()).failed == 1
            assert client.discard_failed() == 1
            assert client.status().failed_count == 0
            with pytest.raises(QueueItemNotFoundError):
                local_queue.get(bad)
