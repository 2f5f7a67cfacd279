"""
Durable stream consumer.

Reads transfers from a Redis stream through a consumer group, pushes each
one to the connection fanout and acknowledges it only after the push
returned. Entries that were read but never acknowledged (for example
because the process crashed) stay pending and are drained again by the
same consumer name on its next start.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .errors import MalformedEntryError, StreamReadError
from .fanout import ConnectionFanout
from .metrics import PipelineCounters
from .models import TransferMessage
from .utils.backoff import ExponentialBackoff, SleepFunc, retry_async

StreamEntry = tuple[str, dict[Any, Any]]

TRANSIENT_ERRORS = (RedisConnectionError, RedisTimeoutError)


def _as_str(value: Any) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)


class DurableStreamConsumer:
    """
    Consumer-group reader feeding the connection fanout.
    """

    def __init__(
        self,
        redis_client: Any,
        fanout: ConnectionFanout,
        counters: PipelineCounters,
        stream_key: str,
        consumer_group: str,
        consumer_name: str,
        batch_size: int = 10,
        block_timeout_ms: int = 1000,
        backoff: ExponentialBackoff | None = None,
        max_consecutive_errors: int = 5,
        idle_warning_secs: float = 60.0,
        stats_interval_secs: float = 60.0,
        sleep: SleepFunc = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the consumer.

        Args:
            redis_client: ``redis.asyncio.Redis`` instance
            fanout: Connection fanout receiving every transfer
            counters: Shared pipeline counters
            stream_key: Key of the stream to read
            consumer_group: Consumer group name
            consumer_name: This member's name; keep it stable across restarts
            batch_size: Maximum entries per read
            block_timeout_ms: How long a read blocks on an idle stream
            backoff: Delay calculator for transient read errors
            max_consecutive_errors: Failed reads in a row before giving up
            idle_warning_secs: Quiet period after which a warning is logged
            stats_interval_secs: Seconds between statistics log lines
            sleep: Awaitable sleep used for backoff
            clock: Monotonic clock
        """
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        if max_consecutive_errors <= 0:
            raise ValueError(f"max_consecutive_errors must be positive, got {max_consecutive_errors}")

        self.redis = redis_client
        self.fanout = fanout
        self.counters = counters
        self.stream_key = stream_key
        self.consumer_group = consumer_group
        self.consumer_name = consumer_name
        self.batch_size = batch_size
        self.block_timeout_ms = block_timeout_ms
        self.backoff = backoff or ExponentialBackoff()
        self.max_consecutive_errors = max_consecutive_errors
        self.idle_warning_secs = idle_warning_secs
        self.stats_interval_secs = stats_interval_secs
        self._sleep = sleep
        self._clock = clock

        self.is_running = False
        self.consecutive_errors = 0
        self.messages_processed = 0
        self.messages_failed = 0
        self._last_message_at = clock()
        self._last_stats_at = clock()
        self._idle_warned = False

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def ensure_group(self) -> None:
        """Create the consumer group (and the stream) if missing."""
        try:
            await self.redis.xgroup_create(
                self.stream_key, self.consumer_group, id="$", mkstream=True
            )
        except ResponseError as e:
            if "BUSYGROUP" in str(e):
                self.logger.debug(f"Consumer group '{self.consumer_group}' already exists")
                return
            raise
        self.logger.info(
            f"Created consumer group '{self.consumer_group}' for stream '{self.stream_key}'"
        )

    async def read_batch(self, last_id: str = ">") -> list[StreamEntry]:
        """
        Read up to ``batch_size`` entries.

        Args:
            last_id: ``">"`` for new entries, or an id to page through this
                consumer's own pending entries

        Returns:
            Entries as ``(entry_id, fields)``; empty on block timeout or
            when the group had to be recreated
        """
        try:
            response = await self.redis.xreadgroup(
                self.consumer_group,
                self.consumer_name,
                {self.stream_key: last_id},
                count=self.batch_size,
                block=self.block_timeout_ms if last_id == ">" else None,
            )
        except ResponseError as e:
            if "NOGROUP" in str(e):
                self.logger.warning(
                    f"Consumer group '{self.consumer_group}' is missing, recreating it"
                )
                await self.ensure_group()
                return []
            raise
        return self._parse_response(response)

    def _parse_response(self, response: Any) -> list[StreamEntry]:
        if not response:
            return []

        # RESP2 returns [[key, entries]], RESP3 returns {key: [entries]}
        if isinstance(response, dict):
            streams = response.items()
        else:
            streams = response

        entries: list[StreamEntry] = []
        for _key, stream_entries in streams:
            # Trimmed pending entries come back with no fields
            for entry_id, fields in stream_entries:
                entries.append((_as_str(entry_id), fields or {}))
        return entries

    async def acknowledge(self, entry_id: str) -> None:
        count = await self.redis.xack(self.stream_key, self.consumer_group, entry_id)
        if count:
            self.counters.record_ack()
            self.logger.debug(f"Acknowledged entry {entry_id}")
        else:
            self.logger.warning(f"Entry {entry_id} was not pending")

    async def _try_acknowledge(self, entry_id: str) -> bool:
        try:
            await self.acknowledge(entry_id)
        except TRANSIENT_ERRORS as e:
            self.logger.error(f"Failed to acknowledge entry {entry_id}, leaving it pending: {e}")
            self.counters.record_error()
            return False
        return True

    async def process_batch(self, entries: list[StreamEntry]) -> int:
        """
        Deliver a batch and acknowledge each delivered entry.

        Malformed entries are acknowledged without delivery so they are not
        redelivered forever. An entry whose delivery raised, or whose
        acknowledgement hit a connection error, is left pending.

        Returns:
            Number of entries acknowledged
        """
        acknowledged = 0
        for entry_id, fields in entries:
            try:
                message = TransferMessage.from_stream_entry(entry_id, fields)
            except MalformedEntryError as e:
                self.logger.error(f"Skipping malformed entry: {e}")
                self.counters.record_malformed_entry()
                if await self._try_acknowledge(entry_id):
                    acknowledged += 1
                continue

            try:
                await self.fanout.broadcast(message.to_json())
            except Exception as e:
                self.logger.error(f"Failed to deliver entry {entry_id}: {e}")
                self.counters.record_error()
                self.messages_failed += 1
                continue

            self.messages_processed += 1
            if await self._try_acknowledge(entry_id):
                acknowledged += 1
            self.logger.info(f"Delivered {message.format_for_display()}")

        if entries:
            self._last_message_at = self._clock()
            self._idle_warned = False
        return acknowledged

    async def recover_pending(self) -> int:
        """
        Redeliver entries this consumer read but never acknowledged.

        Returns:
            Number of pending entries found
        """
        recovered = 0
        last_id = "0"
        while True:
            entries = await self.read_batch(last_id)
            if not entries:
                break
            recovered += len(entries)
            await self.process_batch(entries)
            last_id = entries[-1][0]

        if recovered:
            self.logger.info(f"Recovered {recovered} pending entries")
        return recovered

    async def run(self) -> None:
        """
        Consume until ``stop()`` is called.

        Raises:
            StreamReadError: After ``max_consecutive_errors`` failed reads,
                or on a non-transient Redis error
        """
        self.is_running = True
        self.logger.info(
            f"Starting stream consumer {self.consumer_group}/{self.consumer_name} "
            f"on '{self.stream_key}'"
        )

        async def prepare() -> None:
            await self.ensure_group()
            await self.recover_pending()

        try:
            await retry_async(
                prepare,
                attempts=self.max_consecutive_errors,
                backoff=self.backoff,
                retry_on=TRANSIENT_ERRORS,
                sleep=self._sleep,
                description="Consumer group preparation",
            )
        except TRANSIENT_ERRORS as e:
            raise StreamReadError(f"Could not prepare consumer group: {e}") from e

        while self.is_running:
            try:
                entries = await self.read_batch()
            except TRANSIENT_ERRORS as e:
                self.consecutive_errors += 1
                self.counters.record_error()
                if self.consecutive_errors >= self.max_consecutive_errors:
                    self.logger.error(
                        f"Stream read failed {self.consecutive_errors} times in a row, giving up"
                    )
                    raise StreamReadError(f"Too many consecutive read errors: {e}") from e
                delay = self.backoff.delay(self.consecutive_errors - 1)
                self.logger.warning(
                    f"Stream read error ({self.consecutive_errors}/{self.max_consecutive_errors}): "
                    f"{e}. Retrying in {delay:.1f}s"
                )
                await self._sleep(delay)
                continue
            except ResponseError as e:
                raise StreamReadError(f"Stream read failed: {e}") from e

            self.consecutive_errors = 0
            if entries:
                await self.process_batch(entries)
            else:
                self._check_idle()
            self._maybe_log_stats()

        self.logger.info("Stream consumer stopped")

    def _check_idle(self) -> None:
        idle_for = self._clock() - self._last_message_at
        if idle_for >= self.idle_warning_secs and not self._idle_warned:
            self.logger.warning(
                f"No entries received on '{self.stream_key}' for {idle_for:.0f} seconds"
            )
            self._idle_warned = True

    def _maybe_log_stats(self) -> None:
        now = self._clock()
        if now - self._last_stats_at < self.stats_interval_secs:
            return
        self._last_stats_at = now
        self.logger.info(
            f"Consumer stats: processed={self.messages_processed}, "
            f"failed={self.messages_failed}, clients={self.fanout.client_count}"
        )

    async def stop(self) -> None:
        """Stop after the in-flight read and batch."""
        self.logger.info("Stopping stream consumer")
        self.is_running = False

    def get_status(self) -> dict[str, Any]:
        return {
            "is_running": self.is_running,
            "consumer": f"{self.consumer_group}/{self.consumer_name}",
            "messages_processed": self.messages_processed,
            "messages_failed": self.messages_failed,
            "consecutive_errors": self.consecutive_errors,
        }
