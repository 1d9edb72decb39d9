"""
Manual backfill for products whose completion event was missed.

Invariants:
    - Current on-ledger state must equal the terminal state, otherwise
      StateNotTerminal is raised and nothing is written
    - Already archived products are a successful outcome, so retries are safe
    - All writes go through ArchivePipeline
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from ..ledger.base import LedgerClient
from .errors import FetchError, PersistError, StateNotTerminal
from .layout import as_int
from .pipeline import ArchivePipeline
from .records import ARCHIVED_BY_BACKFILL, TERMINAL_STATE, ArchivedRecord
from .store import StoreError

logger = logging.getLogger(__name__)

MANUAL_TX_MARKER = "manual"


@dataclass(frozen=True)
class BackfillResult:
    """Outcome of a backfill request.

    Attributes:
        record: The archived record
        already_archived: True if the record existed before this request
    """

    record: ArchivedRecord
    already_archived: bool

    @property
    def message(self) -> str:
        if self.already_archived:
            return "Product already archived"
        return "Product archived successfully"


class BackfillTrigger:
    """On-demand archival entry point for request handlers."""

    def __init__(
        self,
        ledger: LedgerClient,
        pipeline: ArchivePipeline,
        read_timeout: float = 10.0,
    ) -> None:
        self.ledger = ledger
        self.pipeline = pipeline
        self.read_timeout = read_timeout

    async def backfill(self, uid: int) -> BackfillResult:
        """Archive ``uid`` if it has reached the terminal state.

        Raises:
            StateNotTerminal: If the product is not yet delivered
            FetchError: If the ledger cannot be read
            PersistError: If the store fails
        """
        try:
            existing = await self.pipeline.store.find_by_uid(uid)
        except StoreError as e:
            raise PersistError(uid, e) from e
        if existing is not None:
            return BackfillResult(record=existing, already_archived=True)

        try:
            state = as_int(
                await asyncio.wait_for(self.ledger.read_current_state(uid), timeout=self.read_timeout)
            )
        except Exception as e:
            raise FetchError(uid, e) from e

        if state != TERMINAL_STATE:
            logger.info(
                f"Backfill rejected, product {uid} is in state {state}",
                extra={"uid": uid, "state": state},
            )
            raise StateNotTerminal(uid, state)

        result = await self.pipeline.run(
            uid,
            MANUAL_TX_MARKER,
            0,
            self.ledger.contract_address,
            archived_by=ARCHIVED_BY_BACKFILL,
        )
        return BackfillResult(record=result.record, already_archived=not result.created)
