#!/usr/bin/env python3
"""Unit tests for the EventDecoder module."""

import pytest
from hexbytes import HexBytes
from web3 import Web3
from web3.datastructures import AttributeDict

from stablecoin_stream.event_decoder import TRANSFER_EVENT_TOPIC, EventDecoder

from conftest import DAI_ADDRESS, RECIPIENT, SENDER, TX_HASH, USDC_ADDRESS, make_transfer_log


@pytest.fixture
def decoder(registry):
    """Create an EventDecoder over the default stablecoins."""
    return EventDecoder(registry)


class TestEventDecoder:
    """Test suite for EventDecoder functionality."""

    def test_transfer_topic(self):
        """Test the Transfer signature hash."""
        assert TRANSFER_EVENT_TOPIC.hex() == (
            "ddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
        )

    def test_decode_valid_transfer(self, decoder):
        """Test decoding a well-formed USDC Transfer."""
        transfer = decoder.decode(make_transfer_log(amount=1_500_000, log_index=7))

        assert transfer is not None
        assert transfer.token.symbol == "USDC"
        assert transfer.from_address == SENDER
        assert transfer.to_address == RECIPIENT
        assert transfer.raw_amount == 1_500_000
        assert transfer.amount == "1.500000"
        assert transfer.block_number == 1000
        assert transfer.tx_hash == TX_HASH
        assert transfer.log_index == 7

    def test_decode_attribute_dict_log(self, decoder):
        """Test decoding a web3 AttributeDict log with HexBytes fields."""
        raw = make_transfer_log(address=DAI_ADDRESS, amount=10**18)
        log = AttributeDict({
            **raw,
            "topics": [HexBytes(topic) for topic in raw["topics"]],
            "data": HexBytes(raw["data"]),
            "transactionHash": HexBytes(raw["transactionHash"]),
        })

        transfer = decoder.decode(log)

        assert transfer is not None
        assert transfer.token.symbol == "DAI"
        assert transfer.amount == "1.000000000000000000"

    def test_decode_hex_string_fields(self, decoder):
        """Test decoding a log whose fields are hex strings."""
        raw = make_transfer_log()
        log = {
            **raw,
            "address": USDC_ADDRESS.lower(),
            "topics": ["0x" + topic.hex() for topic in raw["topics"]],
            "data": "0x" + raw["data"].hex(),
            "blockNumber": hex(raw["blockNumber"]),
            "transactionHash": TX_HASH,
        }

        transfer = decoder.decode(log)

        assert transfer is not None
        assert transfer.block_number == 1000

    def test_unregistered_contract(self, decoder):
        log = make_transfer_log(address=Web3.to_checksum_address("0x" + "33" * 20))
        assert decoder.decode(log) is None

    def test_too_few_topics(self, decoder):
        log = make_transfer_log()
        log["topics"] = log["topics"][:2]
        assert decoder.decode(log) is None

    def test_wrong_topic_length(self, decoder):
        log = make_transfer_log()
        log["topics"][1] = b"\x11" * 20
        assert decoder.decode(log) is None

    def test_other_event_signature(self, decoder):
        log = make_transfer_log()
        log["topics"][0] = bytes(Web3.keccak(text="Approval(address,address,uint256)"))
        assert decoder.decode(log) is None

    def test_short_data(self, decoder):
        log = make_transfer_log()
        log["data"] = b"\x01" * 31
        assert decoder.decode(log) is None

    def test_missing_block_number(self, decoder):
        log = make_transfer_log()
        del log["blockNumber"]
        assert decoder.decode(log) is None

    def test_decode_all_filters_noise(self, decoder):
        """Test that decode_all keeps only decodable transfers."""
        noise = make_transfer_log()
        noise["topics"] = noise["topics"][:1]
        logs = [make_transfer_log(log_index=0), noise, make_transfer_log(log_index=2)]

        transfers = decoder.decode_all(logs)

        assert [transfer.log_index for transfer in transfers] == [0, 2]
