"""
Archive pipeline for Chain Archive.

The ArchivePipeline is the single writer path into the ArchiveStore.
Both the live event subscriber and manual backfill feed it:

1. Fast path: return the stored record if the uid is already archived
2. Assemble the product from the ledger
3. Stamp completion provenance (transaction, block, contract, time)
4. insert_if_absent; a lost race returns the winning record

Invariants:
    - At most one record is ever created per uid
    - The fast-path check is an optimization; the store's uid constraint decides
    - Persistence is the last step, so a failed or cancelled call leaves nothing behind
    - Errors are always attributable to a uid

How to change safely:
    - Never add a write path that bypasses insert_if_absent
    - Test concurrent archive() calls after changing step order
"""

from __future__ import annotations

import logging
from typing import Any

from .assembler import Clock, RecordAssembler, utc_now
from .errors import PersistError
from .records import ARCHIVED_BY_SUBSCRIBER, ArchivedRecord
from .store import ArchiveStore, InsertResult, StoreError

logger = logging.getLogger(__name__)


class ArchivePipeline:
    """Check, assemble, stamp and persist completed products.

    Attributes:
        assembler: Record assembler bound to the ledger
        store: Archive store

    Example:
        >>> pipeline = ArchivePipeline(assembler, store)
        >>> record = await pipeline.archive(42, "0xabc...", 1234, "0xContract")
    """

    def __init__(
        self,
        assembler: RecordAssembler,
        store: ArchiveStore,
        clock: Clock = utc_now,
    ) -> None:
        self.assembler = assembler
        self.store = store
        self.clock = clock

        self._archived_count = 0
        self._skipped_count = 0
        self._failed_count = 0

    async def archive(
        self,
        uid: int,
        completion_tx: str,
        completion_block: int,
        source_contract: str,
        archived_by: str = ARCHIVED_BY_SUBSCRIBER,
    ) -> ArchivedRecord:
        """Archive a completed product exactly once.

        Returns:
            The stored record (pre-existing one if already archived)

        Raises:
            FetchError: If the ledger reads fail
            PersistError: If the store fails for reasons other than the uid constraint
        """
        result = await self.run(uid, completion_tx, completion_block, source_contract, archived_by)
        return result.record

    async def run(
        self,
        uid: int,
        completion_tx: str,
        completion_block: int,
        source_contract: str,
        archived_by: str = ARCHIVED_BY_SUBSCRIBER,
    ) -> InsertResult:
        """Like archive(), but reports whether this call created the record."""
        existing = await self._find(uid)
        if existing is not None:
            self._skipped_count += 1
            logger.info(f"Product {uid} already archived. Skipping.", extra={"uid": uid})
            return InsertResult(created=False, record=existing)

        logger.info(f"Fetching product {uid} data from ledger", extra={"uid": uid})
        try:
            assembled = await self.assembler.assemble(uid)
        except Exception:
            self._failed_count += 1
            raise

        record = assembled.with_provenance(
            completion_tx=completion_tx,
            completion_block=completion_block,
            source_contract=source_contract,
            completed_at=self.clock(),
            archived_by=archived_by,
        )

        try:
            result = await self.store.insert_if_absent(record)
        except StoreError as e:
            self._failed_count += 1
            logger.error(f"Error archiving product {uid}: {e}", extra={"uid": uid})
            raise PersistError(uid, e) from e

        if result.created:
            self._archived_count += 1
            stored = result.record
            logger.info(
                f"Product {uid} successfully archived",
                extra={
                    "uid": uid,
                    "product_name": stored.product_name,
                    "category": stored.product_category,
                    "manufacturer": stored.manufacturer.name,
                    "elapsed_days": stored.elapsed_days,
                    "history_states": len(stored.history),
                    "archived_by": stored.archived_by,
                },
            )
        else:
            self._skipped_count += 1
            logger.info(
                f"Product {uid} was archived concurrently, keeping the first record",
                extra={"uid": uid},
            )
        return result

    async def _find(self, uid: int) -> ArchivedRecord | None:
        try:
            return await self.store.find_by_uid(uid)
        except StoreError as e:
            self._failed_count += 1
            raise PersistError(uid, e) from e

    @property
    def stats(self) -> dict[str, Any]:
        """Get pipeline statistics."""
        return {
            "archived_count": self._archived_count,
            "skipped_count": self._skipped_count,
            "failed_count": self._failed_count,
        }
