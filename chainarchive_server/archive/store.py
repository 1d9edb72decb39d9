"""
Archive SQLite store for Chain Archive.

This module manages the durable collection of archived records. It is the
sole authority on whether a product has already been archived:
insert_if_absent() relies on the uid primary key, so concurrent writers
racing on the same uid resolve to exactly one winner.

Invariants:
    - One row per uid, enforced by PRIMARY KEY
    - insert_if_absent never overwrites; losers re-read the winning row
    - Rows are immutable after insert except created_at/updated_at metadata
    - Every operation runs off the event loop and is bounded by a timeout
    - A write whose caller gave up before the commit point is rolled back

How to change safely:
    - Schema changes need a new SCHEMA_VERSION and additive columns only
    - Keep filter columns in sync with the document (they are denormalized)
    - Test concurrent inserts after touching insert_if_absent

Table schema:
    archived_records:
        - uid INTEGER PRIMARY KEY
        - document_json TEXT (ArchivedRecord.to_dict())
        - product_category TEXT
        - manufacturer_address TEXT
        - customer_address TEXT
        - elapsed_days INTEGER
        - completed_at INTEGER (Unix ms)
        - created_at INTEGER (Unix ms)
        - updated_at INTEGER (Unix ms)
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, TypeVar

from .records import ArchivedRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")

UID_CONSTRAINT = "archived_records.uid"


class StoreError(Exception):
    """Archive store operation failed."""

    pass


class StoreTimeoutError(StoreError):
    """Archive store operation timed out."""

    pass


@dataclass(frozen=True)
class InsertResult:
    """Outcome of insert_if_absent.

    Attributes:
        created: True only for the caller whose insert won
        record: The stored record (the winner's, when created is False)
    """

    created: bool
    record: ArchivedRecord


def _to_ms(value: datetime) -> int:
    # Naive datetimes are UTC, never server-local time
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def _from_ms(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


class _Attempt:
    """Hand-off between an awaiting caller and its worker thread.

    The caller may abandon the attempt until the worker reaches its commit
    point; after that the commit is allowed to finish.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._abandoned = False
        self._committing = False
        self._conn: sqlite3.Connection | None = None

    def attach(self, conn: sqlite3.Connection) -> bool:
        with self._lock:
            if self._abandoned:
                return False
            self._conn = conn
            return True

    def detach(self) -> None:
        with self._lock:
            self._conn = None

    def begin_commit(self) -> bool:
        with self._lock:
            if self._abandoned:
                return False
            self._committing = True
            return True

    def abandon(self) -> bool:
        """Abandon the attempt and interrupt any running statement.

        Returns:
            False if the worker had already started committing
        """
        with self._lock:
            if self._committing:
                return False
            self._abandoned = True
            if self._conn is not None:
                self._conn.interrupt()
            return True


def _consume_result(future: asyncio.Future) -> None:
    # Abandoned workers finish with nobody awaiting them
    if not future.cancelled():
        future.exception()


class ArchiveStore:
    """SQLite store for archived records.

    Thread safety:
        Each operation opens its own connection in a worker thread.
        SQLite serializes writers; the primary key arbitrates races.

    Example:
        >>> store = ArchiveStore("/var/lib/chainarchive")
        >>> await store.initialize()
        >>> result = await store.insert_if_absent(record)
        >>> result.created
        True
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        db_name: str = "archive.db",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        timeout_seconds: float = 10.0,
    ) -> None:
        """Initialize the archive store.

        Args:
            data_dir: Directory for the SQLite database file
            db_name: Database file name
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            timeout_seconds: Upper bound for any single store operation
        """
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / db_name
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.timeout_seconds = timeout_seconds

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit; writes open their own transaction
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        finally:
            conn.close()

    async def _run(
        self,
        operation: str,
        fn: Callable[[sqlite3.Connection], T],
        write: bool = False,
    ) -> T:
        """Run a blocking operation in a worker thread with a timeout.

        Writes run in one transaction that commits only if the caller is
        still waiting. A caller that times out or is cancelled before the
        commit point gets no side effects; once the commit has started the
        caller waits for it and reports what actually happened.
        """
        attempt = _Attempt()

        def work() -> T:
            with self._get_connection() as conn:
                if not attempt.attach(conn):
                    raise StoreTimeoutError(f"{operation} abandoned before it started")
                try:
                    if not write:
                        return fn(conn)
                    conn.execute("BEGIN IMMEDIATE")
                    try:
                        result = fn(conn)
                        if not attempt.begin_commit():
                            raise StoreTimeoutError(f"{operation} abandoned before commit")
                        conn.execute("COMMIT")
                        return result
                    except BaseException:
                        if conn.in_transaction:
                            conn.execute("ROLLBACK")
                        raise
                finally:
                    attempt.detach()

        future = asyncio.get_running_loop().run_in_executor(None, work)
        future.add_done_callback(_consume_result)

        try:
            try:
                return await asyncio.wait_for(asyncio.shield(future), timeout=self.timeout_seconds)
            except asyncio.TimeoutError as e:
                if attempt.abandon():
                    raise StoreTimeoutError(
                        f"{operation} timed out after {self.timeout_seconds}s"
                    ) from e
                logger.warning(
                    f"{operation} passed its timeout while committing, waiting for the outcome",
                    extra={"operation": operation},
                )
                return await future
            except asyncio.CancelledError:
                attempt.abandon()
                raise
        except sqlite3.Error as e:
            raise StoreError(f"{operation} failed: {e}") from e
        except OverflowError as e:
            # uint256 uids beyond SQLite's signed 64-bit INTEGER
            raise StoreError(f"{operation} failed: {e}") from e
        except (KeyError, ValueError) as e:
            raise StoreError(f"{operation} read a corrupt document: {e}") from e

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS archived_records (
                uid INTEGER PRIMARY KEY,
                document_json TEXT NOT NULL,
                product_category TEXT NOT NULL,
                manufacturer_address TEXT NOT NULL,
                customer_address TEXT NOT NULL,
                elapsed_days INTEGER NOT NULL,
                completed_at INTEGER NOT NULL,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_records_completed
                ON archived_records(completed_at DESC);
            CREATE INDEX IF NOT EXISTS idx_records_manufacturer
                ON archived_records(manufacturer_address);
            CREATE INDEX IF NOT EXISTS idx_records_customer
                ON archived_records(customer_address);
            CREATE INDEX IF NOT EXISTS idx_records_category
                ON archived_records(product_category);

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        await self._run("initialize", self._create_schema)
        logger.info(f"Initialized archive store: {self.db_path}")

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> ArchivedRecord:
        record = ArchivedRecord.from_dict(json.loads(row["document_json"]))
        return replace(
            record,
            created_at=_from_ms(row["created_at"]),
            updated_at=_from_ms(row["updated_at"]),
        )

    @staticmethod
    def _select_uid(conn: sqlite3.Connection, uid: int) -> ArchivedRecord | None:
        row = conn.execute(
            "SELECT * FROM archived_records WHERE uid = ?",
            (uid,),
        ).fetchone()
        return ArchiveStore._row_to_record(row) if row else None

    async def find_by_uid(self, uid: int) -> ArchivedRecord | None:
        """Get an archived record by uid.

        Returns:
            ArchivedRecord or None if not archived
        """
        return await self._run("find_by_uid", lambda conn: self._select_uid(conn, uid))

    async def insert_if_absent(self, record: ArchivedRecord) -> InsertResult:
        """Atomically create a record unless its uid is already archived.

        At most one concurrent caller per uid observes created=True; every
        other caller gets created=False and the record that won.

        Raises:
            StoreError: For failures other than the uid constraint
        """
        if record.completed_at is None:
            raise StoreError(f"Record {record.uid} has no completed_at")

        document = record.to_dict()
        document.pop("created_at", None)
        document.pop("updated_at", None)

        def insert(conn: sqlite3.Connection) -> InsertResult:
            now = int(time.time() * 1000)
            try:
                conn.execute(
                    """
                    INSERT INTO archived_records (
                        uid, document_json, product_category, manufacturer_address,
                        customer_address, elapsed_days, completed_at, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.uid,
                        json.dumps(document),
                        record.product_category,
                        record.manufacturer.address,
                        record.customer.address,
                        record.elapsed_days,
                        _to_ms(record.completed_at),
                        now,
                        now,
                    ),
                )
            except sqlite3.IntegrityError as e:
                if UID_CONSTRAINT not in str(e):
                    raise
                winner = self._select_uid(conn, record.uid)
                if winner is None:
                    raise StoreError(f"uid {record.uid} conflicted but no row was found") from e
                return InsertResult(created=False, record=winner)

            return InsertResult(created=True, record=self._select_uid(conn, record.uid))

        result = await self._run("insert_if_absent", insert, write=True)

        logger.debug(
            "Inserted archived record" if result.created else "Record already archived",
            extra={"uid": record.uid, "created": result.created},
        )
        return result

    # Read side

    async def count(self) -> int:
        return await self._run(
            "count",
            lambda conn: conn.execute("SELECT COUNT(*) FROM archived_records").fetchone()[0],
        )

    async def list_records(self, limit: int = 100, offset: int = 0) -> list[ArchivedRecord]:
        """List records, most recently completed first."""

        def query(conn: sqlite3.Connection) -> list[ArchivedRecord]:
            rows = conn.execute(
                """
                SELECT * FROM archived_records
                ORDER BY completed_at DESC, uid DESC
                LIMIT ? OFFSET ?
                """,
                (limit, offset),
            ).fetchall()
            return [self._row_to_record(row) for row in rows]

        return await self._run("list_records", query)

    async def search(
        self,
        manufacturer: str | None = None,
        customer: str | None = None,
        category: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[ArchivedRecord]:
        """Filter records; every given filter must match.

        Args:
            manufacturer: Manufacturer address
            customer: Customer address
            category: Product category
            start: Earliest completion time (inclusive); naive values are UTC
            end: Latest completion time (inclusive)
        """
        clauses: list[str] = []
        params: list[Any] = []

        if manufacturer:
            clauses.append("manufacturer_address = ?")
            params.append(manufacturer)
        if customer:
            clauses.append("customer_address = ?")
            params.append(customer)
        if category:
            clauses.append("product_category = ?")
            params.append(category)
        if start is not None:
            clauses.append("completed_at >= ?")
            params.append(_to_ms(start))
        if end is not None:
            clauses.append("completed_at <= ?")
            params.append(_to_ms(end))

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        def query(conn: sqlite3.Connection) -> list[ArchivedRecord]:
            rows = conn.execute(
                f"SELECT * FROM archived_records {where} ORDER BY completed_at DESC, uid DESC",
                params,
            ).fetchall()
            return [self._row_to_record(row) for row in rows]

        return await self._run("search", query)

    async def export(self) -> list[ArchivedRecord]:
        """All records in uid order (backup)."""

        def query(conn: sqlite3.Connection) -> list[ArchivedRecord]:
            rows = conn.execute("SELECT * FROM archived_records ORDER BY uid").fetchall()
            return [self._row_to_record(row) for row in rows]

        return await self._run("export", query)

    async def statistics(self, now: datetime | None = None) -> dict[str, Any]:
        """Dashboard statistics over completed records."""
        now = now or datetime.now(timezone.utc)
        last_7 = _to_ms(now - timedelta(days=7))
        last_30 = _to_ms(now - timedelta(days=30))

        def query(conn: sqlite3.Connection) -> dict[str, Any]:
            totals = conn.execute(
                """
                SELECT COUNT(*) AS total,
                       SUM(CASE WHEN completed_at >= ? THEN 1 ELSE 0 END) AS last_30,
                       SUM(CASE WHEN completed_at >= ? THEN 1 ELSE 0 END) AS last_7,
                       MIN(completed_at) AS oldest,
                       MAX(completed_at) AS newest,
                       AVG(elapsed_days) AS avg_days
                FROM archived_records
                """,
                (last_30, last_7),
            ).fetchone()
            categories = conn.execute(
                """
                SELECT product_category, COUNT(*) AS count
                FROM archived_records
                GROUP BY product_category
                ORDER BY count DESC, product_category
                """
            ).fetchall()

            oldest = _from_ms(totals["oldest"])
            newest = _from_ms(totals["newest"])
            return {
                "total_completed": totals["total"],
                "last_30_days": totals["last_30"] or 0,
                "last_7_days": totals["last_7"] or 0,
                "oldest_record": oldest.isoformat() if oldest else None,
                "newest_record": newest.isoformat() if newest else None,
                "average_delivery_days": round(totals["avg_days"] or 0),
                "category_breakdown": [
                    {"category": row["product_category"], "count": row["count"]}
                    for row in categories
                ],
            }

        return await self._run("statistics", query)
