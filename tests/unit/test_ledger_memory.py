"""
Unit tests for the in-memory ledger.

Tests cover:
- Connection lifecycle
- Raw reads in contract output order
- Completion subscriptions
- Testing helpers (fault and delay injection)
"""

import asyncio

import pytest

from chainarchive_server.config import LedgerBackend, LedgerConfig, ServerConfig
from chainarchive_server.ledger import (
    CompletionEvent,
    InMemoryLedger,
    LedgerClient,
    LedgerConnectionError,
    LedgerError,
    create_ledger_client,
)


class TestInMemoryLedger:
    """Tests for InMemoryLedger."""

    @pytest.fixture
    def ledger(self):
        """Create a fresh ledger."""
        return InMemoryLedger()

    def test_satisfies_protocol(self, ledger):
        assert isinstance(ledger, LedgerClient)

    @pytest.mark.asyncio
    async def test_connect_disconnect(self, ledger):
        """Test connection lifecycle."""
        assert not ledger.is_connected

        await ledger.connect()
        assert ledger.is_connected

        await ledger.close()
        assert not ledger.is_connected

    @pytest.mark.asyncio
    async def test_read_requires_connection(self, ledger):
        ledger.seed_product(1)

        with pytest.raises(LedgerConnectionError):
            await ledger.read_current_state(1)

    @pytest.mark.asyncio
    async def test_seeded_reads(self, ledger):
        """seed_product lays parts out in contract order."""
        await ledger.connect()
        ledger.seed_product(3, state=8, history_states=[0, 8])

        part1 = await ledger.read_current_part(3, 1)
        part2 = await ledger.read_history_part(3, 1, 2)

        assert part1[0] == 3
        assert part1[4] == "Acme Corp"
        assert part2[5] == 8
        assert await ledger.read_history_length(3) == 2
        assert await ledger.read_current_state(3) == 8

    @pytest.mark.asyncio
    async def test_unknown_product(self, ledger):
        await ledger.connect()

        with pytest.raises(LedgerError):
            await ledger.read_current_part(99, 1)

    @pytest.mark.asyncio
    async def test_history_index_out_of_range(self, ledger):
        await ledger.connect()
        ledger.seed_product(3, history_states=[0])

        with pytest.raises(LedgerError):
            await ledger.read_history_part(3, 5, 1)

    @pytest.mark.asyncio
    async def test_set_state(self, ledger):
        await ledger.connect()
        ledger.seed_product(3, state=5)

        ledger.set_state(3, 8)

        assert await ledger.read_current_state(3) == 8

    @pytest.mark.asyncio
    async def test_fail_read_and_clear(self, ledger):
        """Injected failures hit only their key."""
        await ledger.connect()
        ledger.seed_product(3)
        ledger.fail_read(("current", 3, 2))

        await ledger.read_current_part(3, 1)
        with pytest.raises(LedgerError):
            await ledger.read_current_part(3, 2)

        ledger.clear_faults()
        await ledger.read_current_part(3, 2)
        assert ledger.read_counts[("current", 3, 2)] == 2

    @pytest.mark.asyncio
    async def test_delay_read(self, ledger):
        await ledger.connect()
        ledger.seed_product(3)
        ledger.delay_read(("state", 3), 1.0)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(ledger.read_current_state(3), timeout=0.05)

    @pytest.mark.asyncio
    async def test_subscription_delivers_events(self, ledger):
        """Emitted completions arrive in order."""
        await ledger.connect()
        subscription = await ledger.subscribe_completions()
        received = []

        async def consume():
            async for event in subscription:
                received.append(event)

        task = asyncio.create_task(consume())
        ledger.emit_completion(1, 10, "0x01")
        ledger.emit_completion(2, 11, "0x02")
        await subscription.close()
        await asyncio.wait_for(task, timeout=1.0)

        assert received == [
            CompletionEvent(uid=1, block_number=10, transaction_hash="0x01"),
            CompletionEvent(uid=2, block_number=11, transaction_hash="0x02"),
        ]
        assert ledger.subscription_count == 0

    @pytest.mark.asyncio
    async def test_break_subscriptions(self, ledger):
        await ledger.connect()
        subscription = await ledger.subscribe_completions()
        ledger.break_subscriptions()

        with pytest.raises(LedgerConnectionError):
            async for _ in subscription:
                pass


class TestCreateLedgerClient:
    """Tests for create_ledger_client()."""

    def test_memory_backend(self):
        config = ServerConfig(
            ledger_backend=LedgerBackend.MEMORY,
            ledger=LedgerConfig(contract_address="0x" + "cd" * 20),
        )

        client = create_ledger_client(config)

        assert isinstance(client, InMemoryLedger)
        assert client.contract_address == "0x" + "cd" * 20

    def test_memory_backend_default_address(self):
        client = create_ledger_client(ServerConfig(ledger_backend=LedgerBackend.MEMORY))
        assert client.contract_address.startswith("0x")
