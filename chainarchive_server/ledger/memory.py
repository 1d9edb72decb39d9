"""
In-memory ledger implementation for testing.

This module provides a ledger backend that emulates the supply chain
contract's read surface and completion events for:
- Unit tests
- Integration tests
- Local development without a ledger node

Invariants:
    - Raw reads are returned in the contract's output order
    - Completion events are delivered to every open subscription in order
    - Injected failures and delays apply to one read key each

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with LedgerClient protocol
    - Keep seed_product() output order identical to the contract's
"""

from __future__ import annotations

import asyncio
import itertools
import uuid
from collections import Counter
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
import logging

from .base import (
    CompletionEvent,
    LedgerConnectionError,
    LedgerError,
)

logger = logging.getLogger(__name__)

ReadKey = Tuple[Any, ...]

_STOP = object()


@dataclass
class InMemoryProduct:
    """Stored contract view of one product."""
    current: Dict[int, Tuple[Any, ...]]
    history: List[Dict[int, Tuple[Any, ...]]] = field(default_factory=list)
    state: int = 0


class InMemorySubscription:
    """Subscription fed by InMemoryLedger.emit_completion()."""

    def __init__(self, ledger: InMemoryLedger) -> None:
        self.subscription_id = f"mem-{uuid.uuid4().hex[:12]}"
        self._ledger = ledger
        self._queue: asyncio.Queue[Any] = asyncio.Queue()

    def _push(self, item: Any) -> None:
        self._queue.put_nowait(item)

    async def close(self) -> None:
        self._ledger._subscriptions.discard(self)
        self._push(_STOP)

    async def __aiter__(self) -> AsyncIterator[CompletionEvent]:
        while True:
            item = await self._queue.get()
            if item is _STOP:
                return
            if isinstance(item, BaseException):
                self._ledger._subscriptions.discard(self)
                raise item
            yield item


class InMemoryLedger:
    """In-memory implementation of LedgerClient for testing.

    Example:
        >>> ledger = InMemoryLedger()
        >>> await ledger.connect()
        >>> ledger.seed_product(7, state=8, history_states=[0, 2, 8])
        >>> await ledger.read_current_state(7)
        8
    """

    def __init__(self, contract_address: str = "0x" + "ab" * 20) -> None:
        self._contract_address = contract_address
        self._products: Dict[int, InMemoryProduct] = {}
        self._failures: Dict[ReadKey, BaseException] = {}
        self._delays: Dict[ReadKey, float] = {}
        self._subscriptions: set[InMemorySubscription] = set()
        self._connected = False
        self.read_counts: Counter[ReadKey] = Counter()

    @property
    def contract_address(self) -> str:
        return self._contract_address

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryLedger connected")

    async def close(self) -> None:
        self._connected = False
        for subscription in list(self._subscriptions):
            await subscription.close()
        logger.debug("InMemoryLedger closed")

    async def _read(self, key: ReadKey, uid: int) -> InMemoryProduct:
        if not self._connected:
            raise LedgerConnectionError("Not connected")
        self.read_counts[key] += 1

        delay = self._delays.get(key)
        if delay:
            await asyncio.sleep(delay)

        failure = self._failures.get(key)
        if failure is not None:
            raise failure

        product = self._products.get(uid)
        if product is None:
            raise LedgerError(f"Product {uid} does not exist")
        return product

    async def read_current_part(self, uid: int, part: int) -> Sequence[Any]:
        product = await self._read(("current", uid, part), uid)
        return product.current[part]

    async def read_history_length(self, uid: int) -> int:
        product = await self._read(("history_length", uid), uid)
        return len(product.history)

    async def read_history_part(self, uid: int, index: int, part: int) -> Sequence[Any]:
        product = await self._read(("history", uid, index, part), uid)
        try:
            return product.history[index][part]
        except IndexError:
            raise LedgerError(f"History index {index} out of range for product {uid}")

    async def read_current_state(self, uid: int) -> int:
        product = await self._read(("state", uid), uid)
        return product.state

    async def subscribe_completions(self) -> InMemorySubscription:
        if not self._connected:
            raise LedgerConnectionError("Not connected")
        subscription = InMemorySubscription(self)
        self._subscriptions.add(subscription)
        return subscription

    # Testing helpers

    def put_product(
        self,
        uid: int,
        current: Dict[int, Sequence[Any]],
        history: Optional[List[Dict[int, Sequence[Any]]]] = None,
        state: int = 0,
    ) -> None:
        """Store raw part tuples for a product (testing helper)."""
        self._products[uid] = InMemoryProduct(
            current={part: tuple(values) for part, values in current.items()},
            history=[
                {part: tuple(values) for part, values in entry.items()}
                for entry in (history or [])
            ],
            state=state,
        )

    def seed_product(
        self,
        uid: int,
        state: int = 8,
        history_states: Optional[Sequence[int]] = None,
        manufactured_at: int = 1_700_000_000,
        name: str = "Widget",
        category: str = "Electronics",
        price: int = 100,
        manufacturer: str = "0x" + "11" * 20,
        third_party: str = "0x" + "22" * 20,
        delivery_hub: str = "0x" + "33" * 20,
        customer: str = "0x" + "44" * 20,
    ) -> None:
        """Store a product laid out the way the contract returns it (testing helper)."""
        if history_states is None:
            history_states = list(range(state + 1))

        def parts(timestamp: int, entry_state: int, tx: str) -> Dict[int, Tuple[Any, ...]]:
            return {
                1: (uid, uid * 10, manufacturer, manufacturer, "Acme Corp",
                    "Factory floor 3", "77.59", "12.97"),
                2: (timestamp, name, 5000 + uid, price, category, entry_state,
                    third_party, "72.87"),
                3: ("19.07", delivery_hub, "78.48", "17.38", customer, tx),
            }

        ticks = itertools.count()
        history = [
            parts(manufactured_at + 3600 * next(ticks), s, f"0x{uid:04x}{i:060x}")
            for i, s in enumerate(history_states)
        ]
        current = parts(manufactured_at, state, "")
        self.put_product(uid, current, history, state)

    def set_state(self, uid: int, state: int) -> None:
        self._products[uid].state = state

    def fail_read(self, key: ReadKey, error: Optional[BaseException] = None) -> None:
        """Make one read key raise (testing helper).

        Keys: ("current", uid, part), ("history_length", uid),
        ("history", uid, index, part), ("state", uid).
        """
        self._failures[key] = error or LedgerError(f"Injected failure for {key}")

    def delay_read(self, key: ReadKey, seconds: float) -> None:
        """Delay one read key (testing helper)."""
        self._delays[key] = seconds

    def clear_faults(self) -> None:
        self._failures.clear()
        self._delays.clear()

    def emit_completion(self, uid: int, block_number: int, transaction_hash: str) -> None:
        """Deliver a completion event to every open subscription (testing helper)."""
        event = CompletionEvent(uid=uid, block_number=block_number, transaction_hash=transaction_hash)
        for subscription in list(self._subscriptions):
            subscription._push(event)

    def break_subscriptions(self, error: Optional[BaseException] = None) -> None:
        """Fail every open subscription with a transport error (testing helper)."""
        error = error or LedgerConnectionError("Subscription transport lost")
        for subscription in list(self._subscriptions):
            subscription._push(error)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def total_reads(self) -> int:
        return sum(self.read_counts.values())
