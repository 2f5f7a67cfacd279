"""Shared fixtures for the stablecoin stream tests."""

import pytest
from web3 import Web3

from stablecoin_stream.event_decoder import TRANSFER_EVENT_TOPIC
from stablecoin_stream.metrics import PipelineCounters
from stablecoin_stream.models import DecodedTransfer, Token
from stablecoin_stream.token_registry import TokenRegistry

USDC_ADDRESS = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
DAI_ADDRESS = "0x50c5725949A6F0c72E6C4a641F24049A917DB0Cb"
SENDER = Web3.to_checksum_address("0x" + "11" * 20)
RECIPIENT = Web3.to_checksum_address("0x" + "22" * 20)
TX_HASH = "0x" + "ab" * 32


def address_topic(address: str) -> bytes:
    """Left-pad a 20-byte address into a 32-byte topic."""
    return b"\x00" * 12 + bytes.fromhex(address[2:])


def make_transfer_log(
    address: str = USDC_ADDRESS,
    sender: str = SENDER,
    recipient: str = RECIPIENT,
    amount: int = 1_500_000,
    block_number: int = 1000,
    tx_hash: str = TX_HASH,
    log_index: int = 0,
) -> dict:
    """Build a log shaped like an ``eth_getLogs`` receipt."""
    return {
        "address": address,
        "topics": [TRANSFER_EVENT_TOPIC, address_topic(sender), address_topic(recipient)],
        "data": amount.to_bytes(32, "big"),
        "blockNumber": block_number,
        "transactionHash": bytes.fromhex(tx_hash[2:]),
        "logIndex": log_index,
    }


@pytest.fixture
def usdc():
    return Token(symbol="USDC", address=USDC_ADDRESS, decimals=6)


@pytest.fixture
def registry():
    return TokenRegistry.default()


@pytest.fixture
def counters():
    return PipelineCounters()


@pytest.fixture
def transfer(usdc):
    return DecodedTransfer(
        token=usdc,
        from_address=SENDER,
        to_address=RECIPIENT,
        raw_amount=1_500_000,
        block_number=1000,
        tx_hash=TX_HASH,
    )
