"""
Position table for the ledger's fixed-shape reads.

The contract exposes a product through three paginated reads per view
("current" and "history"), each returning a fixed-order tuple of scalars.
This module is the single place that knows which tuple position holds
which field. Nothing else in the codebase indexes into a raw read.

Invariants:
    - Every named field maps to exactly one (part, index) slot
    - Extraction fails loudly on short tuples or unconvertible values
    - Both views use parts numbered 1..3

How to change safely:
    - A contract upgrade that reorders outputs only touches these tables
    - Add a test row in tests/unit/test_layout.py for every new slot
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

PARTS = (1, 2, 3)


class LayoutError(ValueError):
    """A raw read did not match the position table."""

    pass


def as_int(value: Any) -> int:
    """Convert a ledger scalar to int (web3 may hand back ints or numeric strings)."""
    if isinstance(value, bool):
        raise ValueError(f"expected integer, got bool {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        return int(text, 16) if text.lower().startswith("0x") else int(text)
    raise ValueError(f"expected integer, got {type(value).__name__} {value!r}")


def as_str(value: Any) -> str:
    """Convert a ledger scalar to str (hex-encode raw bytes)."""
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value)


@dataclass(frozen=True)
class Slot:
    """One field's position in a paginated read.

    Attributes:
        field: Dotted field name in the assembled record
        part: Which read (1, 2 or 3)
        index: Position within that read's tuple
        convert: Scalar converter
    """

    field: str
    part: int
    index: int
    convert: Callable[[Any], Any]


CURRENT_LAYOUT: tuple[Slot, ...] = (
    Slot("uid", 1, 0, as_int),
    Slot("sku", 1, 1, as_int),
    Slot("manufacturer.address", 1, 3, as_str),
    Slot("manufacturer.name", 1, 4, as_str),
    Slot("manufacturer.details", 1, 5, as_str),
    Slot("manufacturer.longitude", 1, 6, as_str),
    Slot("manufacturer.latitude", 1, 7, as_str),
    Slot("manufacturer.manufactured_at", 2, 0, as_int),
    Slot("product_name", 2, 1, as_str),
    Slot("product_code", 2, 2, as_int),
    Slot("product_price", 2, 3, as_int),
    Slot("product_category", 2, 4, as_str),
    Slot("third_party.address", 2, 6, as_str),
    Slot("third_party.longitude", 2, 7, as_str),
    Slot("third_party.latitude", 3, 0, as_str),
    Slot("delivery_hub.address", 3, 1, as_str),
    Slot("delivery_hub.longitude", 3, 2, as_str),
    Slot("delivery_hub.latitude", 3, 3, as_str),
    Slot("customer.address", 3, 4, as_str),
)

HISTORY_LAYOUT: tuple[Slot, ...] = (
    Slot("timestamp", 2, 0, as_int),
    Slot("state", 2, 5, as_int),
    Slot("transaction_reference", 3, 5, as_str),
)


def slot_for(layout: Sequence[Slot], field: str) -> Slot:
    """Look up the slot of a field."""
    for slot in layout:
        if slot.field == field:
            return slot
    raise KeyError(field)


def extract(layout: Sequence[Slot], parts: Mapping[int, Sequence[Any]]) -> dict[str, Any]:
    """Map raw part tuples to a flat ``{field: value}`` dict.

    Args:
        layout: Position table to apply
        parts: Raw tuples keyed by part number

    Returns:
        Converted values keyed by dotted field name

    Raises:
        LayoutError: If a part is missing, too short, or a value won't convert
    """
    values: dict[str, Any] = {}
    for slot in layout:
        raw = parts.get(slot.part)
        if raw is None:
            raise LayoutError(f"part {slot.part} missing for field '{slot.field}'")
        if slot.index >= len(raw):
            raise LayoutError(
                f"part {slot.part} has {len(raw)} values, "
                f"field '{slot.field}' expects index {slot.index}"
            )
        try:
            values[slot.field] = slot.convert(raw[slot.index])
        except (TypeError, ValueError) as e:
            raise LayoutError(f"field '{slot.field}' is malformed: {e}") from e
    return values


def nested(values: Mapping[str, Any], prefix: str) -> dict[str, Any]:
    """Collect ``prefix.*`` entries of a flat extraction into a dict."""
    head = prefix + "."
    return {key[len(head):]: value for key, value in values.items() if key.startswith(head)}
