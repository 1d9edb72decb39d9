"""
Unit tests for archived record types.

Tests cover:
- State enumeration names
- Document round trip through to_dict()/from_dict()
- Listing and verification projections
"""

from datetime import datetime, timezone

from chainarchive_server.archive.records import (
    TERMINAL_STATE,
    ZERO_ADDRESS,
    ArchivedRecord,
    SupplyChainState,
    is_empty_address,
)


class TestSupplyChainState:
    def test_terminal_state(self):
        assert TERMINAL_STATE == 8
        assert TERMINAL_STATE.display_name == "ReceivedByCustomer"

    def test_display_names(self):
        assert SupplyChainState(1).display_name == "PurchasedByThirdParty"
        assert SupplyChainState(6).display_name == "ReceivedByDeliveryHub"


class TestArchivedRecord:
    """Tests for ArchivedRecord."""

    def test_document_round_trip(self, make_record):
        """Stored documents decode to an equal record."""
        record = make_record(9)

        assert ArchivedRecord.from_dict(record.to_dict()) == record

    def test_optional_custodians_serialize_as_null(self, make_record):
        document = make_record(9).to_dict()

        assert document["delivery_hub"] is None
        assert document["third_party"]["address"] == "0x" + "22" * 20

    def test_summary(self, make_record):
        summary = make_record(9, elapsed_days=15).summary()

        assert summary["uid"] == 9
        assert summary["total_time"] == "15 days"
        assert summary["state_changes"] == 2
        assert summary["manufacturer"] == "Acme Corp"

    def test_verification_info(self, make_record):
        info = make_record(9, completion_tx="0xdone").verification_info()

        assert info == {
            "contract_address": "0x" + "ab" * 20,
            "uid": 9,
            "final_tx_hash": "0xdone",
            "final_block": 1234,
        }

    def test_with_provenance(self, make_record):
        stamped_at = datetime(2025, 1, 1, tzinfo=timezone.utc)

        record = make_record(9).with_provenance("0xnew", 77, "0xc", stamped_at, "backfill")

        assert record.completion_tx == "0xnew"
        assert record.completion_block == 77
        assert record.completed_at == stamped_at
        assert record.archived_at == stamped_at
        assert record.archived_by == "backfill"


def test_is_empty_address():
    assert is_empty_address("")
    assert is_empty_address(None)
    assert is_empty_address(ZERO_ADDRESS)
    assert not is_empty_address("0x" + "11" * 20)
