"""
Unit tests for EventSubscriber.

Tests cover:
- State transitions and the connected signal
- Sequential event processing
- Per-event failure isolation
- Transport failure handling
- Stop lifecycle
"""

import asyncio
import logging

import pytest

from chainarchive_server.archive.assembler import RecordAssembler
from chainarchive_server.archive.errors import SubscriptionError
from chainarchive_server.archive.pipeline import ArchivePipeline
from chainarchive_server.archive.records import ARCHIVED_BY_SUBSCRIBER
from chainarchive_server.archive.store import ArchiveStore
from chainarchive_server.archive.subscriber import EventSubscriber, SubscriberState
from chainarchive_server.ledger import InMemoryLedger

CONTRACT = "0x" + "ab" * 20


async def wait_until(predicate, timeout=2.0):
    """Poll until predicate() is true."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class TestEventSubscriber:
    """Tests for EventSubscriber."""

    @pytest.fixture
    def ledger(self):
        return InMemoryLedger(contract_address=CONTRACT)

    @pytest.fixture
    def store(self, data_dir):
        return ArchiveStore(data_dir, wal_mode=False)

    @pytest.fixture
    def statuses(self):
        return []

    @pytest.fixture
    def subscriber(self, ledger, store, statuses):
        pipeline = ArchivePipeline(RecordAssembler(ledger), store)
        return EventSubscriber(
            ledger,
            pipeline,
            on_status=lambda state, details: statuses.append((state, details)),
        )

    async def _start(self, ledger, store, subscriber):
        await ledger.connect()
        await store.initialize()
        task = asyncio.create_task(subscriber.start())
        await wait_until(lambda: subscriber.state == SubscriberState.CONNECTED)
        return task

    @pytest.mark.asyncio
    async def test_connected_signal(self, ledger, store, subscriber, statuses, caplog):
        """CONNECTED carries the subscription id and is logged."""
        caplog.set_level(logging.INFO)

        task = await self._start(ledger, store, subscriber)

        assert [s for s, _ in statuses] == [SubscriberState.SUBSCRIBING, SubscriberState.CONNECTED]
        subscription_id = statuses[-1][1]["subscription_id"]
        assert subscription_id.startswith("mem-")
        assert subscriber.subscription_id == subscription_id
        assert f"Event subscriber connected (ID: {subscription_id})" in caplog.text

        await subscriber.stop()
        await task

    @pytest.mark.asyncio
    async def test_events_archived(self, ledger, store, subscriber):
        """Each completion event archives its product."""
        task = await self._start(ledger, store, subscriber)
        ledger.seed_product(7)
        ledger.seed_product(8)

        ledger.emit_completion(7, 100, "0xaaa")
        ledger.emit_completion(8, 101, "0xbbb")
        await wait_until(lambda: subscriber.stats["processed_count"] == 2)

        record = await store.find_by_uid(7)
        assert record.completion_tx == "0xaaa"
        assert record.completion_block == 100
        assert record.source_contract == CONTRACT
        assert record.archived_by == ARCHIVED_BY_SUBSCRIBER
        assert (await store.find_by_uid(8)).completion_block == 101

        await subscriber.stop()
        await task

    @pytest.mark.asyncio
    async def test_failed_event_isolated(self, ledger, store, subscriber):
        """A failing event is counted and the next one still archives."""
        task = await self._start(ledger, store, subscriber)
        ledger.seed_product(7)

        ledger.emit_completion(404, 100, "0xbad")
        ledger.emit_completion(7, 101, "0xgood")
        await wait_until(lambda: subscriber.stats["processed_count"] == 1)

        assert subscriber.stats["error_count"] == 1
        assert "404" in subscriber.stats["last_error"]
        assert subscriber.state == SubscriberState.CONNECTED
        assert await store.find_by_uid(7) is not None

        await subscriber.stop()
        await task

    @pytest.mark.asyncio
    async def test_redelivered_event_is_noop(self, ledger, store, subscriber):
        """Duplicate events rely on pipeline idempotency."""
        task = await self._start(ledger, store, subscriber)
        ledger.seed_product(7)

        ledger.emit_completion(7, 100, "0xfirst")
        ledger.emit_completion(7, 100, "0xfirst")
        await wait_until(lambda: subscriber.stats["processed_count"] == 2)

        assert await store.count() == 1

        await subscriber.stop()
        await task

    @pytest.mark.asyncio
    async def test_transport_failure(self, ledger, store, subscriber, statuses):
        """A lost transport moves to DISCONNECTED and raises SubscriptionError."""
        task = await self._start(ledger, store, subscriber)
        subscription_id = subscriber.subscription_id

        ledger.break_subscriptions()

        with pytest.raises(SubscriptionError) as exc_info:
            await task

        assert exc_info.value.subscription_id == subscription_id
        assert exc_info.value.code == "SUBSCRIPTION_ERROR"
        assert subscriber.state == SubscriberState.DISCONNECTED
        assert statuses[-1][0] == SubscriberState.DISCONNECTED
        assert "error" in statuses[-1][1]

    @pytest.mark.asyncio
    async def test_subscribe_failure(self, store, subscriber):
        """Subscribing on a disconnected ledger raises SubscriptionError."""
        await store.initialize()

        with pytest.raises(SubscriptionError):
            await subscriber.start()

        assert subscriber.state == SubscriberState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_stop(self, ledger, store, subscriber):
        """stop() ends the loop and closes the subscription."""
        task = await self._start(ledger, store, subscriber)

        await subscriber.stop()
        await asyncio.wait_for(task, timeout=2.0)

        assert subscriber.state == SubscriberState.DISCONNECTED
        assert subscriber.subscription_id is None
        assert ledger.subscription_count == 0
