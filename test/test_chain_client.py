#!/usr/bin/env python3
"""Tests for the JSON-RPC chain client."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from web3.exceptions import BadResponseFormat

from stablecoin_stream.chain_client import ChainClient, is_malformed_block_data_error
from stablecoin_stream.errors import BlockProcessingError, MalformedBlockDataError, RpcError
from stablecoin_stream.event_decoder import TRANSFER_EVENT_TOPIC

from conftest import USDC_ADDRESS


class FakeEth:
    """Minimal stand-in for ``AsyncWeb3.eth``."""

    def __init__(self, latest_block=1000):
        self.latest_block = latest_block
        self.get_logs = AsyncMock(return_value=[])
        self.get_block = AsyncMock(return_value={"timestamp": 1_700_000_000})

    @property
    def block_number(self):
        async def fetch():
            if isinstance(self.latest_block, Exception):
                raise self.latest_block
            return self.latest_block
        return fetch()


@pytest.fixture
def eth():
    return FakeEth()


@pytest.fixture
def client(eth):
    w3 = MagicMock()
    w3.eth = eth
    return ChainClient("https://rpc.test", timeout=5, w3=w3)


class TestMalformedBlockDetection:
    """Tests for the malformed block data signature."""

    @pytest.mark.parametrize(
        "error",
        [
            BadResponseFormat("bad block"),
            ValueError("data did not match any variant of untagged enum BlockTransactions"),
            RuntimeError("deserialization error: invalid type"),
        ],
    )
    def test_matches(self, error):
        assert is_malformed_block_data_error(error)

    def test_other_errors(self):
        assert not is_malformed_block_data_error(TimeoutError("read timed out"))


class TestChainClient:
    """Tests for ChainClient."""

    @pytest.mark.asyncio
    async def test_latest_block(self, client):
        assert await client.get_latest_block() == 1000

    @pytest.mark.asyncio
    async def test_latest_block_failure(self, client, eth):
        eth.latest_block = ConnectionError("refused")

        with pytest.raises(RpcError, match="eth_blockNumber"):
            await client.get_latest_block()

    @pytest.mark.asyncio
    async def test_block_logs_filter(self, client, eth):
        """Test the eth_getLogs filter for a single block."""
        await client.get_block_logs(1234, [USDC_ADDRESS], TRANSFER_EVENT_TOPIC)

        eth.get_logs.assert_awaited_once_with({
            'fromBlock': 1234,
            'toBlock': 1234,
            'address': [USDC_ADDRESS],
            'topics': ['0x' + TRANSFER_EVENT_TOPIC.hex()],
        })

    @pytest.mark.asyncio
    async def test_block_logs_malformed(self, client, eth):
        eth.get_logs.side_effect = BadResponseFormat("could not decode block")

        with pytest.raises(MalformedBlockDataError):
            await client.get_block_logs(1234, [USDC_ADDRESS], TRANSFER_EVENT_TOPIC)

    @pytest.mark.asyncio
    async def test_block_logs_failure(self, client, eth):
        eth.get_logs.side_effect = ConnectionError("reset")

        with pytest.raises(BlockProcessingError, match="Failed to fetch logs") as exc_info:
            await client.get_block_logs(1234, [USDC_ADDRESS], TRANSFER_EVENT_TOPIC)
        assert not isinstance(exc_info.value, MalformedBlockDataError)
        assert exc_info.value.block_number == 1234

    @pytest.mark.asyncio
    async def test_block_timestamp(self, client):
        assert await client.get_block_timestamp(1234) == 1_700_000_000

    @pytest.mark.asyncio
    async def test_block_timestamp_best_effort(self, client, eth):
        eth.get_block.side_effect = ConnectionError("reset")

        assert await client.get_block_timestamp(1234) is None
