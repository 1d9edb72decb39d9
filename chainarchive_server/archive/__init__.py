"""
Archive module for Chain Archive.

This module handles archiving completed supply chain products:
- Rebuilding a product and its history from paginated ledger reads
- Persisting it exactly once, keyed by uid
- Triggering archival from live completion events or manual backfill

Invariants:
    - ArchiveStore.insert_if_absent is the only write path
    - A completed product is archived at most once, whatever triggered it
    - Archived records are immutable once written
"""

from .assembler import RecordAssembler
from .backfill import BackfillResult, BackfillTrigger
from .errors import (
    ArchiveError,
    FetchError,
    PersistError,
    StateNotTerminal,
    SubscriptionError,
)
from .pipeline import ArchivePipeline
from .records import (
    TERMINAL_STATE,
    ArchivedRecord,
    Custodian,
    Manufacturer,
    Recipient,
    SupplyChainState,
    TransitionEvent,
)
from .store import ArchiveStore, InsertResult, StoreError
from .subscriber import EventSubscriber, SubscriberState

__all__ = [
    "ArchivedRecord",
    "TransitionEvent",
    "Manufacturer",
    "Custodian",
    "Recipient",
    "SupplyChainState",
    "TERMINAL_STATE",
    "RecordAssembler",
    "ArchiveStore",
    "InsertResult",
    "StoreError",
    "ArchivePipeline",
    "EventSubscriber",
    "SubscriberState",
    "BackfillTrigger",
    "BackfillResult",
    "ArchiveError",
    "FetchError",
    "PersistError",
    "StateNotTerminal",
    "SubscriptionError",
]
