"""
Chain tail poller.

Tracks the last processed block, catches up over bounded block ranges and
hands every decoded Transfer to the publisher.
"""

import asyncio
import logging
from collections import OrderedDict
from enum import Enum
from itertools import islice
from typing import TYPE_CHECKING, Any

from .chain_client import ChainClient
from .errors import BlockProcessingError, MalformedBlockDataError
from .event_decoder import EventDecoder
from .metrics import PipelineCounters
from .utils.backoff import ExponentialBackoff, SleepFunc, retry_async

if TYPE_CHECKING:
    from .publishers import MultiSinkPublisher


class PollerState(Enum):
    """Lifecycle state of the poller."""
    IDLE = "idle"
    CATCHING_UP = "catching_up"


class ChainTailPoller:
    """
    Polls the chain head and processes new blocks in bounded batches.

    The cursor only moves forward: after a range ``[start, end]`` has been
    walked it is set to ``end`` whatever happened to individual blocks.
    Blocks whose log fetch failed are remembered and retried on later ticks
    up to ``max_block_retries`` times.
    """

    MAX_FAILED_BLOCKS: int = 1_000

    def __init__(
        self,
        chain_client: ChainClient,
        decoder: EventDecoder,
        publisher: "MultiSinkPublisher",
        counters: PipelineCounters,
        blocks_per_batch: int = 10,
        start_block: int | None = None,
        fetch_timestamps: bool = True,
        max_block_retries: int = 3,
        rpc_attempts: int = 3,
        backoff: ExponentialBackoff | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        """
        Initialize the poller.

        Args:
            chain_client: RPC access to the chain
            decoder: Transfer log decoder
            publisher: Destination of decoded transfers
            counters: Shared pipeline counters
            blocks_per_batch: Maximum number of blocks handled per tick
            start_block: First block to process; the chain head when None
            fetch_timestamps: Look up timestamps for blocks with transfers
            max_block_retries: Retries for blocks whose log fetch failed
            rpc_attempts: Tries for the latest-block query per tick
            backoff: Delay calculator between latest-block tries
            sleep: Awaitable sleep used between tries
        """
        if blocks_per_batch <= 0:
            raise ValueError(f"blocks_per_batch must be positive, got {blocks_per_batch}")

        self.chain_client = chain_client
        self.decoder = decoder
        self.publisher = publisher
        self.counters = counters
        self.blocks_per_batch = blocks_per_batch
        self.start_block = start_block
        self.fetch_timestamps = fetch_timestamps
        self.max_block_retries = max_block_retries
        self.rpc_attempts = rpc_attempts
        self.backoff = backoff or ExponentialBackoff()
        self._sleep = sleep

        # Cursor state
        self.last_processed_block: int | None = None
        self.state = PollerState.IDLE

        # Block number -> retry attempts made so far
        self.failed_blocks: OrderedDict[int, int] = OrderedDict()

        self.is_running = False
        self._tick_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def compute_range(self, latest_block: int) -> tuple[int, int] | None:
        """
        Compute the next catch-up range for the given chain head.

        Returns:
            Inclusive ``(start, end)`` tuple, or None when up to date
        """
        if self.last_processed_block is None or latest_block <= self.last_processed_block:
            return None
        start = self.last_processed_block + 1
        end = min(latest_block, self.last_processed_block + self.blocks_per_batch)
        return start, end

    async def tick(self) -> tuple[int, int] | None:
        """
        Run one polling iteration.

        Returns:
            The block range processed, or None if nothing was processed
        """
        async with self._tick_lock:
            try:
                latest_block = await retry_async(
                    self.chain_client.get_latest_block,
                    attempts=self.rpc_attempts,
                    backoff=self.backoff,
                    sleep=self._sleep,
                    description="Fetching latest block",
                )
            except Exception as e:
                self.logger.error(f"Could not fetch latest block: {e}")
                self.counters.record_error()
                return None

            if self.last_processed_block is None:
                if self.start_block is not None:
                    self.last_processed_block = self.start_block - 1
                    self.logger.info(f"Starting from configured block {self.start_block}")
                else:
                    self.last_processed_block = latest_block
                    self.logger.info(f"Starting from chain head at block {latest_block}")

            if self.failed_blocks:
                await self._retry_failed_blocks()

            block_range = self.compute_range(latest_block)
            if block_range is None:
                self.logger.debug("No new blocks to process")
                return None

            start, end = block_range
            self.state = PollerState.CATCHING_UP
            try:
                self.logger.info(f"Processing blocks {start} to {end} (head: {latest_block})")
                for block_number in range(start, end + 1):
                    await self._process_or_remember(block_number)
                # Advance even if individual blocks failed
                self.last_processed_block = end
            finally:
                self.state = PollerState.IDLE

            return block_range

    async def _process_or_remember(self, block_number: int) -> None:
        try:
            await self.process_block(block_number)
        except BlockProcessingError as e:
            self.logger.warning(f"Failed to process block {block_number}: {e}")
            self.counters.record_error()
            self._remember_failed(block_number)

    def _remember_failed(self, block_number: int) -> None:
        if self.max_block_retries <= 0:
            self.logger.error(f"Block {block_number} skipped permanently (retries disabled)")
            return
        if block_number not in self.failed_blocks:
            self.failed_blocks[block_number] = 0
        while len(self.failed_blocks) > self.MAX_FAILED_BLOCKS:
            dropped, _ = self.failed_blocks.popitem(last=False)
            self.logger.error(f"Failed block set full, giving up on block {dropped}")

    async def _retry_failed_blocks(self) -> None:
        """
        Retry blocks whose log fetch failed on earlier ticks.

        At most ``blocks_per_batch`` blocks are retried per tick. A block that
        fails again moves to the back of the queue.
        """
        for block_number in list(islice(self.failed_blocks, self.blocks_per_batch)):
            attempts = self.failed_blocks[block_number] + 1
            self.counters.record_block_retry()
            try:
                await self.process_block(block_number)
            except BlockProcessingError as e:
                if attempts >= self.max_block_retries:
                    del self.failed_blocks[block_number]
                    self.counters.record_error()
                    self.logger.error(
                        f"Giving up on block {block_number} after {attempts} retries: {e}"
                    )
                else:
                    self.failed_blocks[block_number] = attempts
                    self.failed_blocks.move_to_end(block_number)
                    self.logger.warning(
                        f"Retry {attempts}/{self.max_block_retries} for block {block_number} failed: {e}"
                    )
            else:
                del self.failed_blocks[block_number]
                self.logger.info(f"Recovered block {block_number} on retry {attempts}")

    async def process_block(self, block_number: int) -> int:
        """
        Fetch, decode and publish the transfers of a single block.

        Returns:
            Number of transfers published

        Raises:
            BlockProcessingError: If the logs could not be fetched
        """
        try:
            logs = await self.chain_client.get_block_logs(
                block_number,
                self.decoder.registry.all_addresses(),
                self.decoder.transfer_topic,
            )
        except MalformedBlockDataError as e:
            self.logger.warning(
                f"RPC provider returned invalid block data for block {block_number}; "
                f"treating it as empty ({e})"
            )
            logs = []

        self.counters.record_block(block_number)

        transfers = self.decoder.decode_all(logs)
        if not transfers:
            self.logger.debug(f"No relevant transfers in block {block_number}")
            return 0

        timestamp = None
        if self.fetch_timestamps:
            timestamp = await self.chain_client.get_block_timestamp(block_number)

        for transfer in transfers:
            if timestamp is not None:
                transfer = transfer.with_timestamp(timestamp)
            await self.publisher.publish_all(transfer)

        self.counters.record_transfers(len(transfers))
        self.logger.info(f"Processed block {block_number} with {len(transfers)} transfers")
        return len(transfers)

    async def start_polling(self, interval: float) -> None:
        """
        Tick every ``interval`` seconds until ``stop()`` is called.

        A tick always runs to completion before the next wait starts, so
        ticks never overlap.
        """
        if self.is_running:
            self.logger.warning("Polling already running")
            return

        self.is_running = True
        self._stop_event.clear()
        self.logger.info(f"Starting chain tail polling every {interval} seconds")

        while self.is_running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                self.logger.info("Polling cancelled")
                raise
            except Exception as e:
                # Keep polling despite unexpected errors
                self.logger.error(f"Error in polling loop: {e}", exc_info=True)
                self.counters.record_error()

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

        self.logger.info("Chain tail polling stopped")

    async def stop(self) -> None:
        """Stop the polling loop after the in-flight tick."""
        self.logger.info("Stopping chain tail polling")
        self.is_running = False
        self._stop_event.set()

    def get_status(self) -> dict[str, Any]:
        """
        Get current status of the poller.

        Returns:
            Dictionary with status information
        """
        return {
            "is_running": self.is_running,
            "state": self.state.value,
            "last_processed_block": self.last_processed_block,
            "pending_retries": len(self.failed_blocks),
            "blocks_per_batch": self.blocks_per_batch,
        }
