"""
Error types for the archival pipeline.

- ArchiveError: Base exception
- FetchError: A ledger read failed or returned malformed data
- PersistError: The store failed for a reason other than the uid constraint
- StateNotTerminal: Backfill requested before the product reached the customer
- SubscriptionError: The completion-event transport went down

Invariants:
    - Every error that concerns a product carries its uid in details
    - Errors keep the underlying cause chained (raise ... from e)
    - "Already archived" is an outcome, never an exception
"""

from __future__ import annotations

from typing import Any


class ArchiveError(Exception):
    """Base exception for archival errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "ARCHIVE_ERROR"
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serializable form for API error bodies."""
        return {"code": self.code, "message": self.message, "details": self.details}


class FetchError(ArchiveError):
    """Reconstructing a product from the ledger failed.

    Raised when:
    - Any individual read fails or times out
    - A read returns a tuple that doesn't match the position table
    - A state code falls outside the known enumeration
    """

    def __init__(self, uid: int, cause: BaseException | str) -> None:
        super().__init__(
            f"Failed to fetch product {uid} from ledger: {cause}",
            code="FETCH_ERROR",
            details={"uid": uid, "cause": str(cause)},
        )
        self.uid = uid
        self.cause = cause


class PersistError(ArchiveError):
    """Writing to or reading from the archive store failed."""

    def __init__(self, uid: int, cause: BaseException | str) -> None:
        super().__init__(
            f"Failed to persist product {uid}: {cause}",
            code="PERSIST_ERROR",
            details={"uid": uid, "cause": str(cause)},
        )
        self.uid = uid
        self.cause = cause


class StateNotTerminal(ArchiveError):
    """Backfill was requested for a product that is not yet delivered."""

    def __init__(self, uid: int, current_state: int) -> None:
        super().__init__(
            f"Product {uid} not yet completed on ledger (current state: {current_state})",
            code="STATE_NOT_TERMINAL",
            details={"uid": uid, "current_state": current_state},
        )
        self.uid = uid
        self.current_state = current_state


class SubscriptionError(ArchiveError):
    """The live completion subscription was lost."""

    def __init__(self, message: str, subscription_id: str | None = None) -> None:
        super().__init__(
            message,
            code="SUBSCRIPTION_ERROR",
            details={"subscription_id": subscription_id},
        )
        self.subscription_id = subscription_id
