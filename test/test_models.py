#!/usr/bin/env python3
"""Tests for the data models."""

import json

import pytest

from stablecoin_stream.errors import MalformedEntryError
from stablecoin_stream.models import (
    BroadcastResult,
    PublishReport,
    Token,
    TransferMessage,
    format_amount,
)


class TestFormatAmount:
    """Tests for format_amount."""

    @pytest.mark.parametrize(
        "raw, decimals, expected",
        [
            (1_500_000, 6, "1.500000"),
            (1, 6, "0.000001"),
            (0, 6, "0.000000"),
            (10**18, 18, "1.000000000000000000"),
            (123, 0, "123"),
            (2**256 - 1, 18, f"{(2**256 - 1) // 10**18}.{(2**256 - 1) % 10**18:018d}"),
        ],
    )
    def test_known_values(self, raw, decimals, expected):
        """Test formatting of representative amounts."""
        assert format_amount(raw, decimals) == expected

    def test_parses_back_to_raw_amount(self):
        """Test that the formatted string loses no precision."""
        for raw in (0, 1, 999_999, 1_000_000, 123_456_789_012, 2**200 + 7):
            for decimals in (0, 1, 6, 18, 30):
                text = format_amount(raw, decimals)
                whole, _, fraction = text.partition(".")
                assert len(fraction) == decimals
                assert int(whole + fraction) == raw

    def test_negative_amount_rejected(self):
        with pytest.raises(ValueError, match="non-negative"):
            format_amount(-1, 6)

    def test_decimals_out_of_range(self):
        with pytest.raises(ValueError, match="between 0 and 255"):
            format_amount(1, 256)


class TestToken:
    """Tests for Token."""

    def test_missing_symbol(self):
        with pytest.raises(ValueError, match="symbol is required"):
            Token(symbol="", address="0x" + "00" * 20, decimals=6)

    def test_invalid_decimals(self):
        with pytest.raises(ValueError, match="Invalid decimals"):
            Token(symbol="BAD", address="0x" + "00" * 20, decimals=300)


class TestDecodedTransfer:
    """Tests for DecodedTransfer serialisation."""

    def test_wire_message(self, transfer):
        """Test the message pushed to WebSocket clients."""
        message = json.loads(transfer.to_json())

        assert message == {
            "stablecoin": "USDC",
            "amount": "1.500000",
            "from": transfer.from_address,
            "to": transfer.to_address,
            "block_number": 1000,
            "tx_hash": transfer.tx_hash,
        }

    def test_wire_message_with_timestamp(self, transfer):
        message = transfer.with_timestamp(1_700_000_000).to_message()
        assert message["timestamp"] == 1_700_000_000

    def test_stream_fields(self, transfer):
        """Test that stream fields are flat strings."""
        fields = transfer.with_timestamp(1_700_000_000).to_stream_fields()

        assert fields["block"] == "1000"
        assert fields["timestamp"] == "1700000000"
        assert fields["amount"] == "1.500000"
        assert all(isinstance(value, str) for value in fields.values())

    def test_stream_fields_omit_unknown_timestamp(self, transfer):
        assert "timestamp" not in transfer.to_stream_fields()


class TestTransferMessage:
    """Tests for decoding stream entries."""

    def test_from_stream_fields(self, transfer):
        """Test decoding an entry written by the stream sink."""
        fields = {
            key.encode(): value.encode()
            for key, value in transfer.with_timestamp(42).to_stream_fields().items()
        }

        message = TransferMessage.from_stream_entry("1-0", fields)

        assert message.entry_id == "1-0"
        assert message.block_number == 1000
        assert message.timestamp == 42
        assert message.to_message() == transfer.with_timestamp(42).to_message()

    def test_legacy_block_number_key(self, transfer):
        fields = transfer.to_stream_fields()
        fields["block_number"] = fields.pop("block")

        message = TransferMessage.from_stream_entry("2-0", fields)

        assert message.block_number == 1000

    def test_missing_fields(self):
        with pytest.raises(MalformedEntryError, match="missing fields"):
            TransferMessage.from_stream_entry("3-0", {"stablecoin": "USDC"})

    def test_invalid_block_number(self, transfer):
        fields = transfer.to_stream_fields()
        fields["block"] = "not-a-number"

        with pytest.raises(MalformedEntryError, match="invalid block number"):
            TransferMessage.from_stream_entry("4-0", fields)

    def test_format_for_display(self, transfer):
        message = TransferMessage.from_stream_entry("5-0", transfer.to_stream_fields())
        assert message.format_for_display().startswith("1.500000 USDC from 0x11111111...")


class TestResults:
    """Tests for the publish and broadcast result types."""

    def test_publish_report(self):
        report = PublishReport({"log": True, "redis_stream": False})

        assert report.succeeded == ["log"]
        assert report.failed == ["redis_stream"]
        assert not report.all_successful

    def test_broadcast_result(self):
        result = BroadcastResult(successful=3, failed=["a", "b"])

        assert result.success_rate == pytest.approx(0.6)
        assert not result.all_successful
        assert BroadcastResult().success_rate == 0.0
