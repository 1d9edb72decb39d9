"""
Base protocol and types for the ledger collaborator.

The ledger is the read-only source of truth for product state. The
archival core only needs paginated fixed-shape reads and a stream of
completion events; this module defines that surface so backends can be
swapped (web3 in production, in-memory for tests).

Invariants:
    - Reads are side-effect free and may be issued concurrently
    - Read results are raw tuples; mapping happens in archive.layout only
    - Subscriptions yield completion events in arrival order
    - Transport failures surface as LedgerError subclasses

How to change safely:
    - Protocol changes require updating all implementations
    - Keep raw tuples raw; never map fields inside a backend
"""

from __future__ import annotations

from abc import abstractmethod
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable
import logging

if TYPE_CHECKING:
    from ..config import ServerConfig

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base exception for ledger operations."""
    pass


class LedgerConnectionError(LedgerError):
    """Connection to the ledger node failed or was lost."""
    pass


class LedgerTimeoutError(LedgerError):
    """Ledger operation timed out."""
    pass


@dataclass(frozen=True)
class CompletionEvent:
    """A product reached its terminal state on the ledger.

    Attributes:
        uid: Product identifier
        block_number: Block that included the completing transaction
        transaction_hash: Hash of the completing transaction
    """
    uid: int
    block_number: int
    transaction_hash: str

    def __str__(self) -> str:
        return f"CompletionEvent(uid={self.uid}, block={self.block_number})"


class LedgerSubscription(Protocol):
    """A live completion-event subscription.

    Iterating yields CompletionEvent objects until the subscription is
    closed. A transport failure is raised from the iterator as LedgerError.
    """

    subscription_id: str

    def __aiter__(self) -> AsyncIterator[CompletionEvent]:
        ...

    async def close(self) -> None:
        ...


@runtime_checkable
class LedgerClient(Protocol):
    """Protocol for ledger backends.

    Example:
        >>> ledger = create_ledger_client(config)
        >>> await ledger.connect()
        >>> part1 = await ledger.read_current_part(42, 1)
        >>> subscription = await ledger.subscribe_completions()
        >>> async for event in subscription:
        ...     print(event.uid)
    """

    @property
    @abstractmethod
    def contract_address(self) -> str:
        """Address of the contract this client reads from."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the ledger node.

        Raises:
            LedgerConnectionError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    async def read_current_part(self, uid: int, part: int) -> Sequence[Any]:
        """Read part 1, 2 or 3 of a product's current record."""
        ...

    @abstractmethod
    async def read_history_length(self, uid: int) -> int:
        """Number of transitions recorded for a product."""
        ...

    @abstractmethod
    async def read_history_part(self, uid: int, index: int, part: int) -> Sequence[Any]:
        """Read part 1, 2 or 3 of the history record at ``index``."""
        ...

    @abstractmethod
    async def read_current_state(self, uid: int) -> int:
        """Current state code of a product."""
        ...

    @abstractmethod
    async def subscribe_completions(self) -> LedgerSubscription:
        """Open a subscription to completion events.

        Raises:
            LedgerConnectionError: If the subscription cannot be established
        """
        ...


def create_ledger_client(config: "ServerConfig") -> LedgerClient:
    """Factory function to create a ledger client from configuration.

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import LedgerBackend
    from .memory import InMemoryLedger

    if config.ledger_backend == LedgerBackend.WEB3:
        from .ethereum import Web3LedgerClient

        return Web3LedgerClient(config.ledger)
    elif config.ledger_backend == LedgerBackend.MEMORY:
        if config.ledger.contract_address:
            return InMemoryLedger(contract_address=config.ledger.contract_address)
        return InMemoryLedger()
    else:
        raise ValueError(f"Unsupported ledger backend: {config.ledger_backend}")
