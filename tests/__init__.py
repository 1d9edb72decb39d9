"""
Chain Archive Test Suite.

This package contains:
- unit/: Unit tests (no external dependencies, in-memory ledger)
- integration/: Integration tests (SQLite store, HTTP API, full archival flow)
"""
