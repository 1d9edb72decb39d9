"""
Archived record types for Chain Archive.

An ArchivedRecord is the unit of archival: one product that reached the
customer, its role-scoped parties, its full transition history and the
provenance of the completion that triggered archival.

Invariants:
    - uid is globally unique and immutable once set
    - history is ordered by ledger index and never reordered
    - elapsed_days is computed once at assembly time and never recomputed
    - Records are frozen; only the store adds its own created/updated metadata

How to change safely:
    - New fields must have defaults so stored documents keep decoding
    - Never rename keys emitted by to_dict(); stored documents depend on them
    - Keep SupplyChainState in sync with the contract's State enum
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

ARCHIVED_BY_SUBSCRIBER = "event-subscriber"
ARCHIVED_BY_BACKFILL = "backfill"


class SupplyChainState(IntEnum):
    """Product states as emitted by the supply chain contract."""

    MANUFACTURED = 0
    PURCHASED_BY_THIRD_PARTY = 1
    SHIPPED_BY_MANUFACTURER = 2
    RECEIVED_BY_THIRD_PARTY = 3
    PURCHASED_BY_CUSTOMER = 4
    SHIPPED_BY_THIRD_PARTY = 5
    RECEIVED_BY_DELIVERY_HUB = 6
    SHIPPED_BY_DELIVERY_HUB = 7
    RECEIVED_BY_CUSTOMER = 8

    @property
    def display_name(self) -> str:
        """Contract-style name, e.g. ``ReceivedByCustomer``."""
        return "".join(word.capitalize() for word in self.name.split("_"))


TERMINAL_STATE = SupplyChainState.RECEIVED_BY_CUSTOMER


def to_datetime(seconds: int) -> datetime:
    """Convert a ledger timestamp (Unix seconds) to an aware UTC datetime."""
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def is_empty_address(address: str | None) -> bool:
    """Whether an address slot was never filled on the ledger."""
    return not address or address.lower() == ZERO_ADDRESS


@dataclass(frozen=True)
class Manufacturer:
    """Originator of the product.

    Attributes:
        address: Manufacturer account address
        name: Manufacturer display name
        details: Free-text details
        longitude: Longitude as recorded on the ledger
        latitude: Latitude as recorded on the ledger
        manufactured_at: Origination timestamp
    """

    address: str
    name: str
    details: str
    longitude: str
    latitude: str
    manufactured_at: datetime


@dataclass(frozen=True)
class Custodian:
    """Intermediate or terminal custodian (third party, delivery hub)."""

    address: str
    longitude: str
    latitude: str


@dataclass(frozen=True)
class Recipient:
    """Final recipient of the product."""

    address: str


@dataclass(frozen=True)
class TransitionEvent:
    """One recorded state change of a product.

    Attributes:
        state: State code (0-8)
        state_name: Human-readable state name
        timestamp: When the transition happened
        block_reference: Block number, when the ledger read provides one
        transaction_reference: Transaction hash of the transition
    """

    state: int
    state_name: str
    timestamp: datetime
    block_reference: int | None
    transaction_reference: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "state_name": self.state_name,
            "timestamp": _iso(self.timestamp),
            "block_reference": self.block_reference,
            "transaction_reference": self.transaction_reference,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransitionEvent:
        return cls(
            state=data["state"],
            state_name=data["state_name"],
            timestamp=_parse_iso(data["timestamp"]),
            block_reference=data.get("block_reference"),
            transaction_reference=data["transaction_reference"],
        )


@dataclass(frozen=True)
class ArchivedRecord:
    """A completed supply chain journey, reconstructed from the ledger.

    Provenance fields are empty on a freshly assembled record and are
    stamped by the pipeline right before persistence.
    """

    uid: int
    sku: int
    product_code: int
    product_name: str
    product_price: int
    product_category: str
    manufacturer: Manufacturer
    customer: Recipient
    third_party: Custodian | None = None
    delivery_hub: Custodian | None = None
    history: tuple[TransitionEvent, ...] = ()
    elapsed_days: int = 0

    source_contract: str = ""
    completion_tx: str = ""
    completion_block: int = 0
    completed_at: datetime | None = None
    archived_at: datetime | None = None
    archived_by: str = ARCHIVED_BY_SUBSCRIBER

    # Store-level metadata, never part of the record's identity
    created_at: datetime | None = field(default=None, compare=False)
    updated_at: datetime | None = field(default=None, compare=False)

    def with_provenance(
        self,
        completion_tx: str,
        completion_block: int,
        source_contract: str,
        completed_at: datetime,
        archived_by: str = ARCHIVED_BY_SUBSCRIBER,
    ) -> ArchivedRecord:
        """Return a copy stamped with completion provenance."""
        return replace(
            self,
            completion_tx=completion_tx,
            completion_block=completion_block,
            source_contract=source_contract,
            completed_at=completed_at,
            archived_at=completed_at,
            archived_by=archived_by,
        )

    @property
    def elapsed_label(self) -> str:
        return f"{self.elapsed_days} days"

    def summary(self) -> dict[str, Any]:
        """Short completion summary for listings."""
        return {
            "uid": self.uid,
            "product_name": self.product_name,
            "manufacturer": self.manufacturer.name,
            "customer": self.customer.address,
            "completed_at": _iso(self.completed_at),
            "total_time": self.elapsed_label,
            "state_changes": len(self.history),
        }

    def verification_info(self) -> dict[str, Any]:
        """References needed to verify this record against the ledger."""
        return {
            "contract_address": self.source_contract,
            "uid": self.uid,
            "final_tx_hash": self.completion_tx,
            "final_block": self.completion_block,
        }

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe document form."""

        def custodian(c: Custodian | None) -> dict[str, str] | None:
            if c is None:
                return None
            return {"address": c.address, "longitude": c.longitude, "latitude": c.latitude}

        return {
            "uid": self.uid,
            "sku": self.sku,
            "product_code": self.product_code,
            "product_name": self.product_name,
            "product_price": self.product_price,
            "product_category": self.product_category,
            "manufacturer": {
                "address": self.manufacturer.address,
                "name": self.manufacturer.name,
                "details": self.manufacturer.details,
                "longitude": self.manufacturer.longitude,
                "latitude": self.manufacturer.latitude,
                "manufactured_at": _iso(self.manufacturer.manufactured_at),
            },
            "third_party": custodian(self.third_party),
            "delivery_hub": custodian(self.delivery_hub),
            "customer": {"address": self.customer.address},
            "history": [event.to_dict() for event in self.history],
            "elapsed_days": self.elapsed_days,
            "source_contract": self.source_contract,
            "completion_tx": self.completion_tx,
            "completion_block": self.completion_block,
            "completed_at": _iso(self.completed_at),
            "archived_at": _iso(self.archived_at),
            "archived_by": self.archived_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArchivedRecord:
        """Rebuild a record from its document form."""

        def custodian(d: dict[str, str] | None) -> Custodian | None:
            if not d:
                return None
            return Custodian(address=d["address"], longitude=d["longitude"], latitude=d["latitude"])

        m = data["manufacturer"]
        return cls(
            uid=data["uid"],
            sku=data.get("sku", 0),
            product_code=data["product_code"],
            product_name=data["product_name"],
            product_price=data["product_price"],
            product_category=data["product_category"],
            manufacturer=Manufacturer(
                address=m["address"],
                name=m["name"],
                details=m.get("details", ""),
                longitude=m.get("longitude", ""),
                latitude=m.get("latitude", ""),
                manufactured_at=_parse_iso(m["manufactured_at"]),
            ),
            third_party=custodian(data.get("third_party")),
            delivery_hub=custodian(data.get("delivery_hub")),
            customer=Recipient(address=data["customer"]["address"]),
            history=tuple(TransitionEvent.from_dict(h) for h in data.get("history", [])),
            elapsed_days=data.get("elapsed_days", 0),
            source_contract=data.get("source_contract", ""),
            completion_tx=data.get("completion_tx", ""),
            completion_block=data.get("completion_block", 0),
            completed_at=_parse_iso(data.get("completed_at")),
            archived_at=_parse_iso(data.get("archived_at")),
            archived_by=data.get("archived_by", ARCHIVED_BY_SUBSCRIBER),
            created_at=_parse_iso(data.get("created_at")),
            updated_at=_parse_iso(data.get("updated_at")),
        )
