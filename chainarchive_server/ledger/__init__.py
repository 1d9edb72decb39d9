"""
Ledger collaborator for Chain Archive.

This module provides a pluggable ledger backend interface supporting:
- Ethereum-compatible nodes through web3.py (production)
- In-memory contract emulation (for testing)

The ledger is read-only from the archiver's point of view. Reads return
raw fixed-shape tuples; archive.layout maps them to named fields.

Invariants:
    - Backends never interpret tuple positions
    - Completion events carry uid, block number and transaction hash
    - Transport failures surface as LedgerError subclasses
"""

from .base import (
    CompletionEvent,
    LedgerClient,
    LedgerConnectionError,
    LedgerError,
    LedgerSubscription,
    LedgerTimeoutError,
    create_ledger_client,
)
from .memory import InMemoryLedger

__all__ = [
    # Protocol and types
    "LedgerClient",
    "LedgerSubscription",
    "CompletionEvent",
    "LedgerError",
    "LedgerConnectionError",
    "LedgerTimeoutError",
    # Factory
    "create_ledger_client",
    # Implementations
    "InMemoryLedger",
]
