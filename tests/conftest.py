"""
Shared test fixtures for Chain Archive.
"""

import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from chainarchive_server.archive.records import (
    ArchivedRecord,
    Custodian,
    Manufacturer,
    Recipient,
    TransitionEvent,
)

COMPLETED_AT = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def build_record(
    uid: int,
    category: str = "Electronics",
    manufacturer: str = "0x" + "11" * 20,
    customer: str = "0x" + "44" * 20,
    elapsed_days: int = 12,
    completed_at: datetime | None = COMPLETED_AT,
    completion_tx: str = "0xfeed",
) -> ArchivedRecord:
    """A fully stamped record, as the pipeline would persist it."""
    made = (completed_at or COMPLETED_AT) - timedelta(days=elapsed_days)
    return ArchivedRecord(
        uid=uid,
        sku=uid * 10,
        product_code=5000 + uid,
        product_name=f"Product {uid}",
        product_price=100,
        product_category=category,
        manufacturer=Manufacturer(
            address=manufacturer,
            name="Acme Corp",
            details="Factory floor 3",
            longitude="77.59",
            latitude="12.97",
            manufactured_at=made,
        ),
        third_party=Custodian(address="0x" + "22" * 20, longitude="72.87", latitude="19.07"),
        delivery_hub=None,
        customer=Recipient(address=customer),
        history=(
            TransitionEvent(0, "Manufactured", made, None, "0x01"),
            TransitionEvent(8, "ReceivedByCustomer", made + timedelta(days=1), None, "0x02"),
        ),
        elapsed_days=elapsed_days,
        source_contract="0x" + "ab" * 20,
        completion_tx=completion_tx,
        completion_block=1234,
        completed_at=completed_at,
        archived_at=completed_at,
    )


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def make_record():
    """Factory for stamped ArchivedRecords."""
    return build_record
