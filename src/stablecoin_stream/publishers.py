"""
Transfer sinks.

The poller hands every decoded transfer to a ``MultiSinkPublisher``, which
forwards it to all configured sinks concurrently. A failing sink is logged
and reported but never stops the others.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Protocol

from redis.exceptions import RedisError

from .errors import StreamPublishError
from .metrics import PipelineCounters
from .models import DecodedTransfer, PublishReport

if TYPE_CHECKING:
    from .config import ServiceConfig
    from .fanout import ConnectionFanout

logger = logging.getLogger(__name__)


class Publisher(Protocol):
    """A destination for decoded transfers."""

    name: str

    async def publish(self, transfer: DecodedTransfer) -> None:
        ...


class LogSink:
    """Writes every transfer to the log."""

    name = "log"

    def __init__(self, network: str = "base") -> None:
        self.network = network
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def publish(self, transfer: DecodedTransfer) -> None:
        self.logger.info(
            f"[{self.network}] {transfer.amount} {transfer.token.symbol} "
            f"from {transfer.from_address} to {transfer.to_address} "
            f"(block {transfer.block_number}, tx {transfer.tx_hash})"
        )


class RedisStreamSink:
    """
    Appends transfers to a Redis stream.

    Every append trims the stream to roughly ``max_len`` entries
    (``MAXLEN ~``), so retention is approximate by design of the command.
    """

    name = "redis_stream"

    def __init__(
        self,
        redis_client: Any,
        stream_key: str,
        max_len: int,
        counters: PipelineCounters | None = None,
    ) -> None:
        """
        Initialize the stream sink.

        Args:
            redis_client: ``redis.asyncio.Redis`` instance
            stream_key: Key of the stream to append to
            max_len: Approximate retention cap
            counters: Shared pipeline counters
        """
        if max_len <= 0:
            raise ValueError(f"max_len must be positive, got {max_len}")
        self.redis = redis_client
        self.stream_key = stream_key
        self.max_len = max_len
        self.counters = counters
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def publish(self, transfer: DecodedTransfer) -> None:
        """
        Append one entry.

        Raises:
            StreamPublishError: If the append failed
        """
        try:
            entry_id = await self.redis.xadd(
                self.stream_key,
                transfer.to_stream_fields(),
                maxlen=self.max_len,
                approximate=True,
            )
        except (RedisError, OSError) as e:
            raise StreamPublishError(f"Failed to append to stream {self.stream_key}: {e}") from e

        if self.counters is not None:
            self.counters.record_durable_publish()
        self.logger.debug(f"Appended transfer {transfer.tx_hash} as entry {entry_id!r}")


class LocalBroadcastSink:
    """Pushes transfers straight to an in-process connection fanout."""

    name = "local_broadcast"

    def __init__(self, fanout: "ConnectionFanout") -> None:
        self.fanout = fanout
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def publish(self, transfer: DecodedTransfer) -> None:
        result = await self.fanout.broadcast(transfer.to_json())
        if result.failed:
            self.logger.debug(f"Broadcast of {transfer.tx_hash} dropped {len(result.failed)} clients")


class MultiSinkPublisher:
    """
    Forwards each transfer to every configured sink concurrently.
    """

    def __init__(self, sinks: list[Publisher]) -> None:
        self.sinks = list(sinks)
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @classmethod
    def from_config(
        cls,
        config: "ServiceConfig",
        counters: PipelineCounters,
        redis_client: Any | None = None,
        fanout: "ConnectionFanout | None" = None,
    ) -> "MultiSinkPublisher":
        """
        Assemble the monitor-mode sinks.

        The log sink is always present. The stream sink is added when a
        Redis client is given and the local broadcast sink when a fanout is.
        """
        sinks: list[Publisher] = [LogSink(config.chain.network)]
        if redis_client is not None:
            sinks.append(
                RedisStreamSink(
                    redis_client,
                    config.stream.stream_key,
                    config.stream.max_stream_length,
                    counters,
                )
            )
        if fanout is not None:
            sinks.append(LocalBroadcastSink(fanout))
        return cls(sinks)

    @property
    def sink_names(self) -> list[str]:
        return [sink.name for sink in self.sinks]

    async def publish_all(self, transfer: DecodedTransfer) -> PublishReport:
        """
        Publish to all sinks.

        Sink failures are logged with the sink's name and reflected in the
        returned report; this method never raises because of one.
        """
        report = PublishReport()
        if not self.sinks:
            return report

        outcomes = await asyncio.gather(
            *(sink.publish(transfer) for sink in self.sinks),
            return_exceptions=True,
        )

        for sink, outcome in zip(self.sinks, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                self.logger.error(f"Sink {sink.name} failed for {transfer.tx_hash}: {outcome}")
                report.results[sink.name] = False
            else:
                report.results[sink.name] = True

        return report
