"""
Chain Archive Server - Off-ledger archive of completed supply chain journeys.

This package archives products that reached the customer on a supply chain
smart contract into a queryable SQLite store, so consumers can browse
completed journeys without re-reading the ledger:
- Live completion events trigger archival as they happen
- Manual backfill archives products whose event was missed
- Every product is archived exactly once, whichever path gets there first

Architecture:
    ┌──────────────────┐                    ┌──────────────────┐
    │  Ledger (web3)   │                    │   HTTP client    │
    │ ReceivedByCustomer│                   │ POST /api/archive│
    └────────┬─────────┘                    └────────┬─────────┘
             │                                       │
             ▼                                       ▼
    ┌──────────────────┐                    ┌──────────────────┐
    │ EventSubscriber  │                    │ BackfillTrigger  │
    └────────┬─────────┘                    └────────┬─────────┘
             │                                       │
             └──────────────────┬────────────────────┘
                                ▼
                       ┌──────────────────┐      ┌──────────────────┐
                       │ ArchivePipeline  │─────▶│ RecordAssembler  │
                       └────────┬─────────┘      │ (ledger reads)   │
                                │                └──────────────────┘
                                ▼
                       ┌──────────────────┐
                       │  ArchiveStore    │
                       │ (SQLite, uid PK) │
                       └──────────────────┘

Invariants:
    - The ledger is the source of truth; the archive is a derived copy
    - ArchivePipeline is the single writer into ArchiveStore
    - The store's uid primary key decides every archival race
    - Archived records are never overwritten

How to change safely:
    - Contract field positions change only in archive/layout.py
    - New record fields need defaults so stored documents keep decoding
    - Re-run the concurrency tests after touching the pipeline or store
"""

from ._version import __version__

__all__ = ["__version__"]
