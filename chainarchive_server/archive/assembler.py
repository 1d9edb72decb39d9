"""
Record assembler for Chain Archive.

The RecordAssembler rebuilds one completed product and its full
transition history from the ledger's paginated reads:

1. Reads current parts 1, 2 and 3
2. Reads the history length
3. Reads parts 1-3 of every history entry (bounded fan-out)
4. Maps every tuple through archive.layout and builds an ArchivedRecord

Invariants:
    - No partial record is ever returned; any failed read aborts assembly
    - History order is ledger index order, regardless of read completion order
    - elapsed_days is floor((now - manufactured_at) / 1 day), never negative
    - Every read is bounded by read_timeout
    - Assembly has no side effects

How to change safely:
    - Field positions belong in archive.layout, not here
    - Keep history_concurrency bounded; nodes rate-limit eth_call bursts
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timezone
from typing import Any, TypeVar

from ..ledger.base import LedgerClient
from .errors import FetchError
from .layout import (
    CURRENT_LAYOUT,
    HISTORY_LAYOUT,
    PARTS,
    LayoutError,
    as_int,
    extract,
    nested,
)
from .records import (
    ArchivedRecord,
    Custodian,
    Manufacturer,
    Recipient,
    SupplyChainState,
    TransitionEvent,
    is_empty_address,
    to_datetime,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

SECONDS_PER_DAY = 24 * 60 * 60

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def elapsed_whole_days(start: datetime, now: datetime) -> int:
    """Whole days between two instants, floored and clamped at zero."""
    seconds = (now - start).total_seconds()
    return max(0, int(seconds // SECONDS_PER_DAY))


def _custodian(values: dict[str, Any]) -> Custodian | None:
    if is_empty_address(values.get("address")):
        return None
    return Custodian(
        address=values["address"],
        longitude=values["longitude"],
        latitude=values["latitude"],
    )


class RecordAssembler:
    """Reconstructs ArchivedRecords from ledger reads.

    Attributes:
        ledger: Ledger client to read from
        read_timeout: Seconds allowed per individual read
        history_concurrency: Maximum history entries read at once

    Example:
        >>> assembler = RecordAssembler(ledger, read_timeout=10.0)
        >>> record = await assembler.assemble(42)
        >>> record.history[-1].state_name
        'ReceivedByCustomer'
    """

    def __init__(
        self,
        ledger: LedgerClient,
        read_timeout: float = 10.0,
        history_concurrency: int = 4,
        clock: Clock = utc_now,
    ) -> None:
        if history_concurrency < 1:
            raise ValueError("history_concurrency must be at least 1")
        self.ledger = ledger
        self.read_timeout = read_timeout
        self.history_concurrency = history_concurrency
        self.clock = clock

    async def assemble(self, uid: int) -> ArchivedRecord:
        """Read and normalize one complete product.

        Args:
            uid: Product identifier

        Returns:
            ArchivedRecord without provenance fields

        Raises:
            FetchError: If any read fails, times out or is malformed
        """
        try:
            current = await self._read_parts(
                lambda part: self.ledger.read_current_part(uid, part)
            )
            history_length = as_int(await self._bounded(self.ledger.read_history_length(uid)))
            if history_length < 0:
                raise LayoutError(f"negative history length {history_length}")

            history = await self._read_history(uid, history_length)
            record = self._build(uid, current, history, self.clock())

        except Exception as e:
            logger.error(
                f"Error fetching product {uid}: {e}",
                extra={"uid": uid},
            )
            raise FetchError(uid, e) from e

        logger.debug(
            "Assembled product",
            extra={"uid": uid, "history_length": len(record.history)},
        )
        return record

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=self.read_timeout)

    async def _read_parts(
        self,
        read: Callable[[int], Awaitable[Sequence[Any]]],
    ) -> dict[int, Sequence[Any]]:
        parts: dict[int, Sequence[Any]] = {}
        for part in PARTS:
            parts[part] = await self._bounded(read(part))
        return parts

    async def _read_history(self, uid: int, length: int) -> list[TransitionEvent]:
        """Read every history entry, preserving ledger index order."""
        semaphore = asyncio.Semaphore(self.history_concurrency)
        completed: list[tuple[int, TransitionEvent]] = []

        async def read_entry(index: int) -> None:
            async with semaphore:
                parts = await self._read_parts(
                    lambda part: self.ledger.read_history_part(uid, index, part)
                )
            completed.append((index, self._transition(parts)))

        tasks = [asyncio.create_task(read_entry(i)) for i in range(length)]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        completed.sort(key=lambda item: item[0])
        return [event for _, event in completed]

    def _transition(self, parts: dict[int, Sequence[Any]]) -> TransitionEvent:
        values = extract(HISTORY_LAYOUT, parts)
        try:
            state = SupplyChainState(values["state"])
        except ValueError:
            raise LayoutError(f"unknown state code {values['state']}")
        return TransitionEvent(
            state=int(state),
            state_name=state.display_name,
            timestamp=to_datetime(values["timestamp"]),
            block_reference=None,
            transaction_reference=values["transaction_reference"],
        )

    def _build(
        self,
        uid: int,
        current: dict[int, Sequence[Any]],
        history: list[TransitionEvent],
        now: datetime,
    ) -> ArchivedRecord:
        values = extract(CURRENT_LAYOUT, current)
        # Unknown uids read back as zeroed structs
        if values["uid"] != uid:
            raise LayoutError(f"ledger returned uid {values['uid']} for product {uid}")
        maker = nested(values, "manufacturer")
        manufactured_at = to_datetime(maker["manufactured_at"])

        return ArchivedRecord(
            uid=values["uid"],
            sku=values["sku"],
            product_code=values["product_code"],
            product_name=values["product_name"],
            product_price=values["product_price"],
            product_category=values["product_category"],
            manufacturer=Manufacturer(
                address=maker["address"],
                name=maker["name"],
                details=maker["details"],
                longitude=maker["longitude"],
                latitude=maker["latitude"],
                manufactured_at=manufactured_at,
            ),
            third_party=_custodian(nested(values, "third_party")),
            delivery_hub=_custodian(nested(values, "delivery_hub")),
            customer=Recipient(address=values["customer.address"]),
            history=tuple(history),
            elapsed_days=elapsed_whole_days(manufactured_at, now),
        )
