"""
Integration tests for the HTTP API.

Tests cover:
- Manual archive endpoint and its error mapping
- Read routes over the archive store
- Health endpoint
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from chainarchive_server.api import ArchiveServices, Settings, create_app
from chainarchive_server.archive import (
    ArchivePipeline,
    ArchiveStore,
    BackfillTrigger,
    RecordAssembler,
    StoreError,
)
from chainarchive_server.ledger import InMemoryLedger

CONTRACT = "0x" + "ab" * 20
CUSTOMER = "0x" + "44" * 20
MANUFACTURER = "0x" + "11" * 20


class FailingInsertStore(ArchiveStore):
    """Store whose writes always fail."""

    async def insert_if_absent(self, record):
        raise StoreError("disk full")


def build_client(ledger, store):
    asyncio.run(ledger.connect())
    asyncio.run(store.initialize())
    pipeline = ArchivePipeline(RecordAssembler(ledger, read_timeout=1.0), store)
    services = ArchiveServices(
        store=store,
        pipeline=pipeline,
        backfill=BackfillTrigger(ledger, pipeline, read_timeout=1.0),
    )
    settings = Settings(default_page_size=2, max_page_size=10)
    return TestClient(create_app(services, settings))


class TestArchiveApi:
    """Tests for the archive HTTP surface."""

    @pytest.fixture
    def ledger(self):
        ledger = InMemoryLedger(contract_address=CONTRACT)
        ledger.seed_product(1, category="Electronics")
        ledger.seed_product(2, category="Toys", customer="0x" + "55" * 20)
        ledger.seed_product(3, category="Toys")
        ledger.seed_product(4, state=5)
        return ledger

    @pytest.fixture
    def client(self, ledger, data_dir):
        return build_client(ledger, ArchiveStore(data_dir, wal_mode=False))

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["subscriber"] == {"state": "disabled"}
        assert body["pipeline"]["archived_count"] == 0

    def test_archive_product(self, client):
        """POST archives a delivered product."""
        response = client.post("/api/archive/1")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["already_archived"] is False
        assert body["message"] == "Product archived successfully"
        assert body["data"]["uid"] == 1
        assert body["data"]["completion_tx"] == "manual"
        assert body["data"]["archived_by"] == "backfill"

    def test_archive_twice(self, client):
        client.post("/api/archive/1")

        response = client.post("/api/archive/1")

        assert response.status_code == 200
        assert response.json()["already_archived"] is True
        assert response.json()["message"] == "Product already archived"

    def test_archive_not_terminal(self, client):
        """Undelivered products are a client error."""
        response = client.post("/api/archive/4")

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["code"] == "STATE_NOT_TERMINAL"
        assert "current state: 5" in detail["message"]
        assert client.get("/api/products/4").status_code == 404

    def test_archive_fetch_error(self, client):
        """Unreadable ledger data is a bad gateway."""
        response = client.post("/api/archive/999")

        assert response.status_code == 502
        assert response.json()["detail"]["code"] == "FETCH_ERROR"
        assert response.json()["detail"]["details"]["uid"] == 999

    def test_archive_persist_error(self, ledger, data_dir):
        client = build_client(ledger, FailingInsertStore(data_dir, wal_mode=False))

        response = client.post("/api/archive/1")

        assert response.status_code == 500
        assert response.json()["detail"]["code"] == "PERSIST_ERROR"

    def test_archive_oversized_uid(self, client):
        """A uint256 uid beyond SQLite's range maps to a persist failure."""
        response = client.post(f"/api/archive/{2**64}")

        assert response.status_code == 500
        assert response.json()["detail"]["code"] == "PERSIST_ERROR"
        assert response.json()["detail"]["details"]["uid"] == 2**64

    def test_get_product(self, client):
        client.post("/api/archive/2")

        response = client.get("/api/products/2")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["product_category"] == "Toys"
        assert [h["state_name"] for h in data["history"]][-1] == "ReceivedByCustomer"

    def test_get_missing_product(self, client):
        response = client.get("/api/products/77")

        assert response.status_code == 404

    def test_verification(self, client):
        client.post("/api/archive/1")

        response = client.get("/api/products/1/verification")

        assert response.status_code == 200
        body = response.json()
        assert body["contract_address"] == CONTRACT
        assert body["final_tx_hash"] == "manual"
        assert body["final_block"] == 0

    def test_list_products_paginated(self, client):
        for uid in (1, 2, 3):
            client.post(f"/api/archive/{uid}")

        response = client.get("/api/products", params={"page": 2})

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 3
        assert body["pages"] == 2
        assert body["page"] == 2
        assert body["count"] == 1

    def test_search_and_address_routes(self, client):
        for uid in (1, 2, 3):
            client.post(f"/api/archive/{uid}")

        toys = client.get("/api/search", params={"category": "Toys"}).json()
        assert sorted(p["uid"] for p in toys["data"]) == [2, 3]

        by_customer = client.get(f"/api/customer/{CUSTOMER}").json()
        assert sorted(p["uid"] for p in by_customer["data"]) == [1, 3]

        by_maker = client.get(f"/api/manufacturer/{MANUFACTURER}").json()
        assert by_maker["count"] == 3

    def test_stats(self, client):
        for uid in (1, 2, 3):
            client.post(f"/api/archive/{uid}")

        response = client.get("/api/stats")

        assert response.status_code == 200
        stats = response.json()["stats"]
        assert stats["total_completed"] == 3
        assert stats["last_7_days"] == 3
        assert stats["average_delivery_time"].endswith(" days")
        assert stats["category_breakdown"][0] == {"category": "Toys", "count": 2}

    def test_export(self, client):
        client.post("/api/archive/1")

        response = client.get("/api/export")

        assert response.status_code == 200
        assert "attachment" in response.headers["content-disposition"]
        body = response.json()
        assert body["total_records"] == 1
        assert body["data"][0]["uid"] == 1
