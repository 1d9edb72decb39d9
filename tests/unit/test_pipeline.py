"""
Unit tests for ArchivePipeline.

Tests cover:
- Provenance stamping
- Idempotency and the fast path
- Concurrent archival of one uid
- Error propagation without partial writes
"""

import asyncio
from datetime import datetime, timezone

import pytest

from chainarchive_server.archive.assembler import RecordAssembler
from chainarchive_server.archive.errors import FetchError, PersistError
from chainarchive_server.archive.pipeline import ArchivePipeline
from chainarchive_server.archive.records import ARCHIVED_BY_BACKFILL, ARCHIVED_BY_SUBSCRIBER
from chainarchive_server.archive.store import ArchiveStore, StoreError
from chainarchive_server.ledger import InMemoryLedger

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
CONTRACT = "0x" + "ab" * 20


class FailingInsertStore(ArchiveStore):
    """Store whose writes always fail."""

    async def insert_if_absent(self, record):
        raise StoreError("disk full")


class TestArchivePipeline:
    """Tests for ArchivePipeline."""

    @pytest.fixture
    def ledger(self):
        return InMemoryLedger(contract_address=CONTRACT)

    @pytest.fixture
    def store(self, data_dir):
        return ArchiveStore(data_dir, wal_mode=False)

    @pytest.fixture
    def pipeline(self, ledger, store):
        assembler = RecordAssembler(ledger, read_timeout=1.0, clock=lambda: NOW)
        return ArchivePipeline(assembler, store, clock=lambda: NOW)

    @pytest.mark.asyncio
    async def test_archive_stamps_provenance(self, ledger, store, pipeline):
        """Stored record carries completion provenance."""
        await ledger.connect()
        await store.initialize()
        ledger.seed_product(7)

        record = await pipeline.archive(7, "0xabc", 1234, CONTRACT)

        assert record.uid == 7
        assert record.completion_tx == "0xabc"
        assert record.completion_block == 1234
        assert record.source_contract == CONTRACT
        assert record.completed_at == NOW
        assert record.archived_at == NOW
        assert record.archived_by == ARCHIVED_BY_SUBSCRIBER
        assert await store.find_by_uid(7) == record

    @pytest.mark.asyncio
    async def test_archive_is_idempotent(self, ledger, store, pipeline):
        """A second call returns the first record untouched."""
        await ledger.connect()
        await store.initialize()
        ledger.seed_product(7)

        first = await pipeline.archive(7, "0xfirst", 1, CONTRACT)
        second = await pipeline.archive(7, "0xsecond", 2, CONTRACT, archived_by=ARCHIVED_BY_BACKFILL)

        assert second == first
        assert second.completion_tx == "0xfirst"
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_fast_path_skips_ledger(self, ledger, store, pipeline):
        """Already archived uids are answered without ledger reads."""
        await ledger.connect()
        await store.initialize()
        ledger.seed_product(7)
        await pipeline.archive(7, "0xabc", 1, CONTRACT)
        reads = ledger.total_reads()

        result = await pipeline.run(7, "0xabc", 1, CONTRACT)

        assert result.created is False
        assert ledger.total_reads() == reads
        assert pipeline.stats["skipped_count"] == 1

    @pytest.mark.asyncio
    async def test_concurrent_archive_single_record(self, ledger, store, pipeline):
        """Concurrent calls for one uid create exactly one record."""
        await ledger.connect()
        await store.initialize()
        ledger.seed_product(7, history_states=[0, 2, 5, 8])

        results = await asyncio.gather(
            *(pipeline.run(7, f"0x{i:02x}", i, CONTRACT) for i in range(6))
        )

        assert sum(1 for r in results if r.created) == 1
        winner = next(r.record for r in results if r.created)
        assert all(r.record == winner for r in results)
        assert await store.count() == 1
        assert pipeline.stats["archived_count"] == 1
        assert pipeline.stats["skipped_count"] == 5

    @pytest.mark.asyncio
    async def test_fetch_error_writes_nothing(self, ledger, store, pipeline):
        """A failed assembly leaves the store untouched."""
        await ledger.connect()
        await store.initialize()
        ledger.seed_product(7)
        ledger.fail_read(("history_length", 7))

        with pytest.raises(FetchError):
            await pipeline.archive(7, "0xabc", 1, CONTRACT)

        assert await store.count() == 0
        assert pipeline.stats["failed_count"] == 1

    @pytest.mark.asyncio
    async def test_store_failure_is_persist_error(self, ledger, data_dir):
        """Store faults other than the uid constraint surface as PersistError."""
        await ledger.connect()
        ledger.seed_product(7)
        store = FailingInsertStore(data_dir, wal_mode=False)
        await store.initialize()
        pipeline = ArchivePipeline(RecordAssembler(ledger), store, clock=lambda: NOW)

        with pytest.raises(PersistError) as exc_info:
            await pipeline.archive(7, "0xabc", 1, CONTRACT)

        assert exc_info.value.uid == 7
        assert isinstance(exc_info.value.cause, StoreError)
        assert pipeline.stats["failed_count"] == 1

    @pytest.mark.asyncio
    async def test_second_part_failure_persists_nothing(self, ledger, store, pipeline):
        """A failed second current-record read aborts before any write."""
        await ledger.connect()
        await store.initialize()
        ledger.seed_product(7)
        ledger.fail_read(("current", 7, 2))

        with pytest.raises(FetchError) as exc_info:
            await pipeline.archive(7, "0xabc", 1, CONTRACT)

        assert exc_info.value.uid == 7
        assert await store.count() == 0
        assert await store.find_by_uid(7) is None

    @pytest.mark.asyncio
    async def test_oversized_uid_is_persist_error(self, ledger, store, pipeline):
        """A uid the store cannot key is attributed as a PersistError."""
        await ledger.connect()
        await store.initialize()

        with pytest.raises(PersistError) as exc_info:
            await pipeline.archive(2**64, "0xabc", 1, CONTRACT)

        assert exc_info.value.uid == 2**64
        assert isinstance(exc_info.value.cause, StoreError)
        assert await store.count() == 0
