"""
Stablecoin stream service.

This module contains the service that wires the pipeline stages together
for the selected run mode and manages their lifecycle:

* ``monitor``: chain tail poller feeding the log sink, the Redis stream
  sink (when ``REDIS_URL`` is set) and, optionally, an embedded WebSocket
  fanout.
* ``gateway``: durable stream consumer feeding the WebSocket fanout.
"""

import asyncio
import logging
from typing import Any

import redis.asyncio as redis

from .chain_client import ChainClient
from .config import ServiceConfig
from .event_decoder import EventDecoder
from .fanout import ConnectionFanout
from .metrics import PipelineCounters
from .poller import ChainTailPoller
from .publishers import MultiSinkPublisher
from .server import FanoutServer
from .stream_consumer import DurableStreamConsumer
from .token_registry import TokenRegistry
from .utils.backoff import ExponentialBackoff

logger = logging.getLogger(__name__)


class StreamService:
    """
    Orchestrates the pipeline stages for one run mode.

    Construction only builds the in-process components; network clients
    that need awaiting (Redis) are connected in ``run()``.
    """

    STATUS_LOG_INTERVAL = 30  # seconds
    SHUTDOWN_GRACE_PERIOD = 10.0  # seconds

    def __init__(self, config: ServiceConfig, redis_client: Any | None = None):
        """
        Initialize the service.

        Args:
            config: Service configuration
            redis_client: Pre-built ``redis.asyncio.Redis`` (used by tests)
        """
        self.config = config
        self.running = False
        self.fatal_error: BaseException | None = None

        self.counters = PipelineCounters()
        self.backoff = ExponentialBackoff(
            initial_delay=config.retry.initial_backoff,
            max_delay=config.retry.max_backoff,
        )

        self.redis_client = redis_client
        self.fanout: ConnectionFanout | None = None
        self.server: FanoutServer | None = None
        self.poller: ChainTailPoller | None = None
        self.publisher: MultiSinkPublisher | None = None
        self.consumer: DurableStreamConsumer | None = None

        if config.mode == 'gateway' or config.fanout.enable_local_broadcast:
            self.fanout = ConnectionFanout(self.counters)
            self.server = FanoutServer(self.fanout, config.fanout)

        # Async coordination
        self.shutdown_event = asyncio.Event()

    @classmethod
    def from_env(cls, mode: str = "monitor") -> "StreamService":
        """
        Create a StreamService instance from environment variables.

        Raises:
            ValueError: If required environment variables are missing
        """
        config = ServiceConfig.from_env(mode=mode)
        config.log_config()
        return cls(config)

    async def _connect_redis(self) -> None:
        if self.redis_client is None:
            self.redis_client = redis.Redis.from_url(self.config.stream.redis_url)
        await self.redis_client.ping()
        logger.info(f"Redis connected: {self.config.stream.masked_url()}")

    async def init_components(self) -> None:
        """Build the mode-specific stages."""
        if self.config.stream.enabled:
            await self._connect_redis()

        if self.config.mode == 'monitor':
            self._init_monitor()
        else:
            self._init_gateway()

    def _init_monitor(self) -> None:
        chain = self.config.chain
        chain_client = ChainClient(chain.rpc_url, timeout=chain.rpc_timeout)
        decoder = EventDecoder(TokenRegistry(chain.tokens))

        self.publisher = MultiSinkPublisher.from_config(
            self.config,
            self.counters,
            redis_client=self.redis_client,
            fanout=self.fanout,
        )
        self.poller = ChainTailPoller(
            chain_client=chain_client,
            decoder=decoder,
            publisher=self.publisher,
            counters=self.counters,
            blocks_per_batch=chain.blocks_per_batch,
            start_block=chain.start_block,
            fetch_timestamps=chain.fetch_timestamps,
            max_block_retries=chain.max_block_retries,
            rpc_attempts=self.config.retry.max_attempts,
            backoff=self.backoff,
        )
        logger.info(f"Monitor sinks: {', '.join(self.publisher.sink_names)}")

    def _init_gateway(self) -> None:
        if self.fanout is None or self.redis_client is None:
            raise RuntimeError("Gateway mode needs a fanout and a Redis client")

        stream = self.config.stream
        self.consumer = DurableStreamConsumer(
            redis_client=self.redis_client,
            fanout=self.fanout,
            counters=self.counters,
            stream_key=stream.stream_key,
            consumer_group=stream.consumer_group,
            consumer_name=stream.consumer_name,
            batch_size=stream.batch_size,
            block_timeout_ms=stream.block_timeout_ms,
            backoff=self.backoff,
            max_consecutive_errors=self.config.retry.max_consecutive_errors,
        )

    def get_metrics(self) -> dict[str, Any]:
        """Counter snapshot plus the number of connected clients."""
        metrics: dict[str, Any] = self.counters.snapshot()
        metrics["connected_clients"] = self.fanout.client_count if self.fanout else 0
        return metrics

    def get_status(self) -> dict[str, Any]:
        status: dict[str, Any] = {"mode": self.config.mode, "running": self.running}
        if self.poller:
            status["poller"] = self.poller.get_status()
        if self.consumer:
            status["consumer"] = self.consumer.get_status()
        if self.server:
            status["server"] = self.server.get_status()
        return status

    async def _periodic_status_logger(self) -> None:
        """Log metrics periodically while running."""
        while self.running:
            await asyncio.sleep(self.STATUS_LOG_INTERVAL)
            self.counters.log_metrics()
            if self.fanout:
                logger.info(f"Status: {self.fanout.client_count} clients connected")

    async def _check_task_health(self, tasks: dict[str, asyncio.Task]) -> bool:
        """Check if any critical task has ended."""
        for name, task in tasks.items():
            if task.done() and name != "status":
                try:
                    await task
                except Exception as e:
                    logger.error(f"{name} task failed: {e}", exc_info=True)
                    self.fatal_error = e
                else:
                    logger.warning(f"{name} task exited")
                return False
        return True

    async def _cleanup_tasks(self, tasks: dict[str, asyncio.Task]) -> None:
        """Stop the stages, then cancel whatever is still running."""
        if self.poller:
            await self.poller.stop()
        if self.consumer:
            await self.consumer.stop()
        if self.server:
            await self.server.stop()

        # Let in-flight ticks and batches finish
        stopping = [task for name, task in tasks.items() if name != "status" and not task.done()]
        if stopping:
            _, still_running = await asyncio.wait(stopping, timeout=self.SHUTDOWN_GRACE_PERIOD)
            if still_running:
                logger.warning(f"{len(still_running)} tasks did not stop in time, cancelling")

        for name, task in tasks.items():
            if not task.done():
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass  # Expected when cancelling
            except Exception as e:
                logger.error(f"{name} task ended with error during shutdown: {e}")

        if self.redis_client is not None:
            await self.redis_client.aclose()

    def _start_tasks(self) -> dict[str, asyncio.Task]:
        tasks: dict[str, asyncio.Task] = {}
        if self.server:
            tasks["server"] = asyncio.create_task(self.server.run())
        if self.poller:
            tasks["poller"] = asyncio.create_task(
                self.poller.start_polling(self.config.chain.poll_interval)
            )
        if self.consumer:
            tasks["consumer"] = asyncio.create_task(self.consumer.run())
        tasks["status"] = asyncio.create_task(self._periodic_status_logger())
        return tasks

    async def run(self) -> None:
        """
        Main loop of the service.

        Raises:
            Exception: The error of a stage that failed, after cleanup
        """
        self.running = True
        logger.info(f"Stablecoin stream starting in {self.config.mode} mode...")

        tasks: dict[str, asyncio.Task] = {}
        try:
            await self.init_components()
            tasks = self._start_tasks()

            logger.info("Pipeline started")

            # Wait until shutdown or task failure
            while self.running:
                try:
                    await asyncio.wait_for(self.shutdown_event.wait(), timeout=1.0)
                    break  # Shutdown requested
                except asyncio.TimeoutError:
                    pass

                if not await self._check_task_health(tasks):
                    logger.error("Critical task ended, shutting down")
                    break

        except Exception as e:
            logger.error(f"Error in main loop: {e}", exc_info=True)
            raise
        finally:
            self.running = False
            await self._cleanup_tasks(tasks)
            self.counters.log_metrics()
            logger.info("Stablecoin stream stopped")

        if self.fatal_error is not None:
            raise self.fatal_error

    def stop(self) -> None:
        """Request shutdown; in-flight ticks and batches finish first."""
        self.running = False
        self.shutdown_event.set()
