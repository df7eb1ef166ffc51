"""Tests for the sync HTTP API."""

from decimal import Decimal

from sqlalchemy import create_engine

from branchsync import main
from branchsync.core.config import settings
from branchsync.core.security import create_access_token
from branchsync.db.session import BranchDatabaseRegistry


def _txn(sync_id, product_id, quantity=1, type="sale", branch_id="downtown"):
    return {
        "id": sync_id,
        "type": type,
        "branchId": branch_id,
        "userId": "cashier-1",
        "timestamp": "2026-03-01T09:00:00Z",
        "payload": {
            "transactionId": f"T-{sync_id}",
            "lineItems": [{"productId": product_id, "quantity": quantity, "unitPrice": "3.50"}],
        },
    }


class TestBatchEndpoint:
    def test_batch_results_in_order(self, client, auth_headers, test_product, db_session):
        body = {"transactions": [
            _txn("1700000000000-aaaaaaaaa", test_product.id),
            _txn("1700000000001-bbbbbbbbb", test_product.id, type="refund"),
            _txn("1700000000002-ccccccccc", test_product.id, quantity=2),
        ]}
        response = client.post("/api/v1/sync/batch", json=body, headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert [r["id"] for r in data["results"]] == [t["id"] for t in body["transactions"]]
        assert [r["accepted"] for r in data["results"]] == [True, False, True]
        assert data["results"][1]["retryable"] is False
        assert data["results"][0]["entityId"] == "T-1700000000000-aaaaaaaaa"
        assert data["total"] == 3
        assert data["successful"] == 2
        assert data["failed"] == 1

        db_session.refresh(test_product)
        assert test_product.stock_level == Decimal("7")

    def test_resubmitted_batch_is_acknowledged_without_reapply(self, client, auth_headers, test_product, db_session):
        body = {"transactions": [_txn("1700000000000-aaaaaaaaa", test_product.id, quantity=3)]}
        client.post("/api/v1/sync/batch", json=body, headers=auth_headers)
        response = client.post("/api/v1/sync/batch", json=body, headers=auth_headers)

        result = response.json()["results"][0]
        assert result["accepted"] is True
        assert result["status"] == "duplicate"
        db_session.refresh(test_product)
        assert test_product.stock_level == Decimal("7")

    def test_requires_authentication(self, client):
        response = client.post("/api/v1/sync/batch", json={"transactions": []})
        assert response.status_code == 401

    def test_requires_branch_in_token(self, client):
        token = create_access_token(data={"sub": "cashier-1", "role": "cashier"})
        response = client.post(
            "/api/v1/sync/batch",
            json={"transactions": []},
            headers={"Authorization": f"Bearer {token}"},
        )
        assert response.status_code == 400

    def test_schema_errors_are_422(self, client, auth_headers):
        response = client.post(
            "/api/v1/sync/batch",
            json={"transactions": [{"id": "x", "type": "sale"}]},
            headers=auth_headers,
        )
        assert response.status_code == 422

    def test_oversized_batch_rejected(self, client, auth_headers, test_product, monkeypatch):
        monkeypatch.setattr(settings, "sync_max_batch_items", 2)
        body = {"transactions": [
            _txn(f"1700000000000-{i:09d}", test_product.id) for i in range(3)
        ]}
        response = client.post("/api/v1/sync/batch", json=body, headers=auth_headers)
        assert response.status_code == 413

    def test_item_for_another_branch_rejected(self, client, auth_headers, test_product):
        body = {"transactions": [_txn("1700000000000-aaaaaaaaa", test_product.id, branch_id="uptown")]}
        result = client.post("/api/v1/sync/batch", json=body, headers=auth_headers).json()["results"][0]
        assert result["accepted"] is False
        assert result["retryable"] is False


class TestSingleTransaction:
    def test_transaction_endpoint(self, client, auth_headers, test_product):
        response = client.post(
            "/api/v1/sync/transaction",
            json=_txn("1700000000000-aaaaaaaaa", test_product.id),
            headers=auth_headers,
        )
        assert response.status_code == 200
        assert response.json()["accepted"] is True


class TestStatusAndLedger:
    def test_status(self, client, auth_headers, test_product):
        client.post(
            "/api/v1/sync/batch",
            json={"transactions": [_txn("1700000000000-aaaaaaaaa", test_product.id)]},
            headers=auth_headers,
        )
        data = client.get("/api/v1/sync/status", headers=auth_headers).json()
        assert data["processed_count"] == 1
        assert data["failed_count"] == 0
        assert data["last_processed_at"] is not None

    def test_ledger_requires_manager(self, client, auth_headers):
        response = client.get("/api/v1/sync/ledger", headers=auth_headers)
        assert response.status_code == 403

    def test_ledger_listing_and_detail(self, client, auth_headers, manager_headers, test_product):
        client.post(
            "/api/v1/sync/batch",
            json={"transactions": [
                _txn("1700000000000-aaaaaaaaa", test_product.id),
                _txn("1700000000001-bbbbbbbbb", test_product.id, type="refund"),
            ]},
            headers=auth_headers,
        )

        listing = client.get("/api/v1/sync/ledger?status=failed", headers=manager_headers).json()
        assert listing["total"] == 1
        assert listing["items"][0]["sync_id"] == "1700000000001-bbbbbbbbb"
        assert listing["has_more"] is False

        detail = client.get("/api/v1/sync/ledger/1700000000000-aaaaaaaaa", headers=manager_headers)
        assert detail.status_code == 200
        assert detail.json()["sync_status"] == "processed"

        missing = client.get("/api/v1/sync/ledger/nope", headers=manager_headers)
        assert missing.status_code == 404


class TestOperationalEndpoints:
    def test_health(self, client):
        assert client.get("/health").json()["status"] == "healthy"

    def test_readiness_checks_open_branch_stores(self, client, tmp_path, monkeypatch):
        registry = BranchDatabaseRegistry(f"sqlite:///{tmp_path}/branch_{{branch_id}}.db")
        registry.session_factory("downtown")
        monkeypatch.setattr(main, "branch_databases", registry)

        data = client.get("/health/ready").json()

        assert data["status"] == "ready"
        assert data["checks"] == {"branch:downtown": "healthy"}

        registry._engines["uptown"] = create_engine(f"sqlite:///{tmp_path}/missing/dir/branch.db")
        data = client.get("/health/ready").json()
        registry.dispose()

        assert data["status"] == "degraded"
        assert data["checks"]["branch:uptown"] == "unhealthy"

    def test_metrics_include_sync_outcomes(self, client, auth_headers, manager_headers, test_product):
        client.post(
            "/api/v1/sync/batch",
            json={"transactions": [_txn("1700000000000-aaaaaaaaa", test_product.id)]},
            headers=auth_headers,
        )
        response = client.get("/metrics", headers=manager_headers)
        assert response.status_code == 200
        assert 'sync_transactions_total{outcome="processed"} 1' in response.text
