"""
Async JSON-RPC access to the monitored chain.

Wraps ``AsyncWeb3`` with the handful of calls the poller needs and maps
provider failures onto the pipeline's exception types.
"""

import logging
from typing import Any

from web3 import AsyncWeb3
from web3.exceptions import BadResponseFormat
from web3.providers import AsyncHTTPProvider

from .errors import BlockProcessingError, MalformedBlockDataError, RpcError

# Substrings seen in errors from providers that return unparseable blocks
MALFORMED_BLOCK_MARKERS = ("deserialization", "BlockTransactions")


def is_malformed_block_data_error(error: BaseException) -> bool:
    """Check whether an RPC error is the known malformed-block-data quirk."""
    if isinstance(error, BadResponseFormat):
        return True
    message = str(error)
    return any(marker in message for marker in MALFORMED_BLOCK_MARKERS)


class ChainClient:
    """
    Thin async client for the chain tail poller.
    """

    def __init__(self, rpc_url: str, timeout: int = 30, w3: AsyncWeb3 | None = None) -> None:
        """
        Initialize the chain client.

        Args:
            rpc_url: HTTP(S) JSON-RPC endpoint
            timeout: Per-request timeout in seconds
            w3: Pre-built AsyncWeb3 instance (used by tests)
        """
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={'timeout': timeout}))

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def get_latest_block(self) -> int:
        """Return the endpoint's latest block number."""
        try:
            return int(await self.w3.eth.block_number)
        except Exception as e:
            raise RpcError("eth_blockNumber", str(e)) from e

    async def get_block_logs(
        self,
        block_number: int,
        addresses: list[str],
        topic: bytes,
    ) -> list[Any]:
        """
        Fetch logs of one block filtered by contract addresses and topic0.

        Raises:
            MalformedBlockDataError: The provider returned unparseable data
            BlockProcessingError: Any other failure
        """
        self.logger.debug(f"Fetching logs for block {block_number}")
        filter_params = {
            'fromBlock': block_number,
            'toBlock': block_number,
            'address': addresses,
            'topics': ['0x' + topic.hex()],
        }
        try:
            logs = await self.w3.eth.get_logs(filter_params)
        except Exception as e:
            if is_malformed_block_data_error(e):
                raise MalformedBlockDataError(block_number, str(e)) from e
            raise BlockProcessingError(block_number, f"Failed to fetch logs: {e}") from e

        self.logger.debug(f"Found {len(logs)} logs in block {block_number}")
        return list(logs)

    async def get_block_timestamp(self, block_number: int) -> int | None:
        """
        Return the block's timestamp, or None when it cannot be fetched.
        """
        try:
            block = await self.w3.eth.get_block(block_number)
        except Exception as e:
            self.logger.warning(f"Failed to fetch block {block_number}: {e}")
            return None

        if block is None:
            self.logger.warning(f"Block {block_number} not found")
            return None

        timestamp = block.get('timestamp')
        return int(timestamp) if timestamp is not None else None
