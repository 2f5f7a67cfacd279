#!/usr/bin/env python3
"""Configuration management for the stablecoin stream service.

This module provides type-safe configuration dataclasses with validation.
Configuration is loaded from environment variables with sensible defaults
where appropriate; invalid values raise ``ValueError`` before any part of
the pipeline starts.
"""

import logging
import os
import socket
from dataclasses import dataclass, field
from typing import ClassVar
from urllib.parse import urlparse

from web3 import Web3

from .models import Token
from .token_registry import DEFAULT_STABLECOINS

# Get logger for this module
logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, str(default))
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def parse_token_list(raw: str) -> tuple[Token, ...]:
    """Parse ``SYMBOL:ADDRESS:DECIMALS`` entries separated by commas.

    Raises:
        ValueError: If an entry is malformed
    """
    tokens = []
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        parts = entry.split(":")
        if len(parts) != 3:
            raise ValueError(
                f"Invalid token entry {entry!r}. Expected SYMBOL:ADDRESS:DECIMALS"
            )
        symbol, address, decimals_raw = (part.strip() for part in parts)
        try:
            decimals = int(decimals_raw)
        except ValueError:
            raise ValueError(f"Invalid decimals in token entry {entry!r}") from None
        tokens.append(Token(symbol=symbol, address=address, decimals=decimals))
    if not tokens:
        raise ValueError("STABLECOINS must list at least one token")
    return tuple(tokens)


@dataclass(frozen=True, slots=True)
class ChainConfig:
    """Configuration for the monitored chain.

    Attributes:
        rpc_url: HTTP(S) JSON-RPC endpoint
        rpc_timeout: Request timeout in seconds
        network: Network label used in logs
        poll_interval: Seconds between poller ticks
        blocks_per_batch: Upper bound on blocks handled per tick
        start_block: First block to process; the chain head when unset
        fetch_timestamps: Whether to look up block timestamps
        max_block_retries: Retries for blocks whose log fetch failed
        tokens: Monitored stablecoins
    """

    rpc_url: str
    rpc_timeout: int = 30
    network: str = "base"
    poll_interval: float = 2.0
    blocks_per_batch: int = 10
    start_block: int | None = None
    fetch_timestamps: bool = True
    max_block_retries: int = 3
    tokens: tuple[Token, ...] = field(
        default_factory=lambda: tuple(Token(s, a, d) for s, a, d in DEFAULT_STABLECOINS)
    )

    def __post_init__(self) -> None:
        """Validate chain configuration."""
        if not self.rpc_url:
            raise ValueError("RPC URL is required (RPC_URL)")

        parsed = urlparse(self.rpc_url)
        if parsed.scheme not in ('http', 'https'):
            raise ValueError(
                f"Invalid RPC URL scheme: {parsed.scheme}. Expected http or https"
            )

        if self.rpc_timeout <= 0:
            raise ValueError(f"RPC timeout must be positive, got {self.rpc_timeout}")
        if self.rpc_timeout > 120:
            raise ValueError(f"RPC timeout too long (max 120s), got {self.rpc_timeout}")

        if self.poll_interval <= 0:
            raise ValueError(f"Poll interval must be positive, got {self.poll_interval}")
        if self.poll_interval > 300:
            raise ValueError(f"Poll interval too long (max 300s), got {self.poll_interval}")

        if self.blocks_per_batch <= 0:
            raise ValueError(f"Blocks per batch must be positive, got {self.blocks_per_batch}")
        if self.blocks_per_batch > 1000:
            raise ValueError(f"Blocks per batch too high (max 1000), got {self.blocks_per_batch}")

        if self.start_block is not None and self.start_block < 0:
            raise ValueError(f"Start block must be non-negative, got {self.start_block}")

        if self.max_block_retries < 0:
            raise ValueError(f"Max block retries must be non-negative, got {self.max_block_retries}")
        if self.max_block_retries > 10:
            raise ValueError(f"Max block retries too high (max 10), got {self.max_block_retries}")

        if not self.tokens:
            raise ValueError("At least one stablecoin must be configured")
        for token in self.tokens:
            if not Web3.is_address(token.address):
                raise ValueError(f"Invalid address for {token.symbol}: {token.address}")


@dataclass(frozen=True, slots=True)
class StreamConfig:
    """Configuration for the Redis durable stream.

    Attributes:
        redis_url: Redis connection URL; the stream is disabled when unset
        stream_key: Key of the stream
        max_stream_length: Approximate retention cap applied on every append
        consumer_group: Consumer group read by the gateway
        consumer_name: Stable member name inside the group
        batch_size: Maximum entries per read
        block_timeout_ms: How long a read blocks when the stream is idle
    """

    redis_url: str | None = None
    stream_key: str = "stablecoin:transactions"
    max_stream_length: int = 10_000
    consumer_group: str = "websocket-publisher"
    consumer_name: str = field(default_factory=lambda: f"consumer-{socket.gethostname()}")
    batch_size: int = 10
    block_timeout_ms: int = 1000

    def __post_init__(self) -> None:
        """Validate stream configuration."""
        if self.redis_url is not None:
            parsed = urlparse(self.redis_url)
            if parsed.scheme not in ('redis', 'rediss', 'unix'):
                raise ValueError(
                    f"Invalid Redis URL scheme: {parsed.scheme}. Expected redis, rediss or unix"
                )
        if not self.stream_key:
            raise ValueError("Stream key is required (REDIS_STREAM_KEY)")
        if self.max_stream_length <= 0:
            raise ValueError(f"Max stream length must be positive, got {self.max_stream_length}")
        if not self.consumer_group:
            raise ValueError("Consumer group is required (CONSUMER_GROUP)")
        if not self.consumer_name:
            raise ValueError("Consumer name is required (CONSUMER_NAME)")
        if self.batch_size <= 0:
            raise ValueError(f"Batch size must be greater than 0, got {self.batch_size}")
        if self.block_timeout_ms <= 0:
            raise ValueError(f"Block timeout must be greater than 0, got {self.block_timeout_ms}")

    @property
    def enabled(self) -> bool:
        return self.redis_url is not None

    def masked_url(self) -> str:
        """Redis URL with any password hidden."""
        if not self.redis_url:
            return "[NOT SET]"
        parsed = urlparse(self.redis_url)
        if parsed.password:
            netloc = parsed.netloc.replace(parsed.password, "****")
            return parsed._replace(netloc=netloc).geturl()
        return self.redis_url


@dataclass(frozen=True, slots=True)
class FanoutConfig:
    """Configuration for the WebSocket fanout server.

    Attributes:
        host: Listen address
        port: Listen port
        send_queue_capacity: Bound of each client's outbound queue
        client_timeout: Seconds of inactivity before a client is evicted
        ping_interval: Seconds between liveness sweeps
        enable_local_broadcast: Run an in-process fanout in monitor mode
    """

    host: str = "0.0.0.0"
    port: int = 8080
    send_queue_capacity: int = 100
    client_timeout: float = 300.0
    ping_interval: float = 30.0
    enable_local_broadcast: bool = True

    def __post_init__(self) -> None:
        """Validate fanout configuration."""
        if not 0 < self.port < 65536:
            raise ValueError(f"WebSocket port must be valid, got {self.port}")
        if self.send_queue_capacity <= 0:
            raise ValueError(
                f"Send queue capacity must be positive, got {self.send_queue_capacity}"
            )
        if self.client_timeout <= 0:
            raise ValueError(f"Client timeout must be positive, got {self.client_timeout}")
        if self.ping_interval <= 0:
            raise ValueError(f"Ping interval must be positive, got {self.ping_interval}")
        if self.ping_interval >= self.client_timeout:
            logger.warning(
                f"Ping interval ({self.ping_interval}s) is not shorter than the "
                f"client timeout ({self.client_timeout}s)"
            )


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Configuration for transient error handling."""
    max_attempts: int = 3  # tries per transient operation
    initial_backoff: float = 1.0  # seconds
    max_backoff: float = 30.0  # seconds
    max_consecutive_errors: int = 5  # stream reads before giving up

    def __post_init__(self) -> None:
        """Validate retry configuration."""
        if self.max_attempts <= 0:
            raise ValueError(f"Max retry attempts must be greater than 0, got {self.max_attempts}")
        if self.max_attempts > 10:
            raise ValueError(f"Retry count too high (max 10), got {self.max_attempts}")
        if self.initial_backoff < 0:
            raise ValueError(f"Initial backoff must be non-negative, got {self.initial_backoff}")
        if self.max_backoff < self.initial_backoff:
            raise ValueError(
                f"Max backoff ({self.max_backoff}s) must not be below "
                f"initial backoff ({self.initial_backoff}s)"
            )
        if self.max_consecutive_errors <= 0:
            raise ValueError(
                f"Max consecutive errors must be positive, got {self.max_consecutive_errors}"
            )


@dataclass(frozen=True, slots=True)
class ServiceConfig:
    """Main configuration for the service.

    Attributes:
        mode: ``monitor`` (chain poller and sinks) or ``gateway``
            (stream consumer and WebSocket fanout)
        chain: Chain polling configuration
        stream: Redis stream configuration
        fanout: WebSocket fanout configuration
        retry: Transient error handling
    """

    mode: str
    chain: ChainConfig
    stream: StreamConfig
    fanout: FanoutConfig
    retry: RetryConfig = field(default_factory=RetryConfig)

    SUPPORTED_MODES: ClassVar[set[str]] = {'monitor', 'gateway'}

    def __post_init__(self) -> None:
        """Validate cross-section constraints."""
        if self.mode not in self.SUPPORTED_MODES:
            raise ValueError(
                f"Unsupported mode: {self.mode}. "
                f"Supported modes: {', '.join(sorted(self.SUPPORTED_MODES))}"
            )
        if self.mode == 'gateway' and not self.stream.enabled:
            raise ValueError("Gateway mode requires REDIS_URL")

    @classmethod
    def from_env(cls, mode: str = "monitor") -> "ServiceConfig":
        """Load configuration from environment variables.

        Args:
            mode: Run mode selected on the command line

        Returns:
            ServiceConfig instance with loaded values

        Raises:
            ValueError: If environment variables are missing or invalid
        """
        start_block_raw = os.environ.get("START_BLOCK")
        try:
            start_block = int(start_block_raw) if start_block_raw else None
        except ValueError:
            raise ValueError(f"START_BLOCK must be an integer, got {start_block_raw!r}") from None

        tokens_raw = os.environ.get("STABLECOINS")

        chain_config = ChainConfig(
            rpc_url=os.environ.get("RPC_URL", "https://mainnet.base.org"),
            rpc_timeout=_env_int("RPC_TIMEOUT_SECS", 30),
            network=os.environ.get("NETWORK", "base"),
            poll_interval=_env_float("POLL_INTERVAL_SECS", 2.0),
            blocks_per_batch=_env_int("BLOCKS_PER_BATCH", 10),
            start_block=start_block,
            fetch_timestamps=_env_bool("FETCH_TIMESTAMPS", True),
            max_block_retries=_env_int("MAX_BLOCK_RETRIES", 3),
            **({"tokens": parse_token_list(tokens_raw)} if tokens_raw else {}),
        )

        consumer_name = os.environ.get("CONSUMER_NAME")
        stream_config = StreamConfig(
            redis_url=os.environ.get("REDIS_URL") or None,
            stream_key=os.environ.get("REDIS_STREAM_KEY", "stablecoin:transactions"),
            max_stream_length=_env_int("REDIS_MAX_STREAM_LENGTH", 10_000),
            consumer_group=os.environ.get("CONSUMER_GROUP", "websocket-publisher"),
            batch_size=_env_int("BATCH_SIZE", 10),
            block_timeout_ms=_env_int("BLOCK_TIMEOUT_MS", 1000),
            **({"consumer_name": consumer_name} if consumer_name else {}),
        )

        fanout_config = FanoutConfig(
            host=os.environ.get("WS_HOST", "0.0.0.0"),
            port=_env_int("WS_PORT", 8080),
            send_queue_capacity=_env_int("SEND_QUEUE_CAPACITY", 100),
            client_timeout=_env_float("CLIENT_TIMEOUT_SECS", 300.0),
            ping_interval=_env_float("PING_INTERVAL_SECS", 30.0),
            enable_local_broadcast=_env_bool("ENABLE_LOCAL_BROADCAST", True),
        )

        retry_config = RetryConfig(
            max_attempts=_env_int("MAX_RETRY_ATTEMPTS", 3),
            initial_backoff=_env_float("INITIAL_BACKOFF_SECS", 1.0),
            max_backoff=_env_float("MAX_BACKOFF_SECS", 30.0),
            max_consecutive_errors=_env_int("MAX_CONSECUTIVE_ERRORS", 5),
        )

        return cls(
            mode=mode,
            chain=chain_config,
            stream=stream_config,
            fanout=fanout_config,
            retry=retry_config,
        )

    def log_config(self) -> None:
        """Log the configuration in a readable format for debugging."""
        logger.info("=" * 60)
        logger.info("Stablecoin Stream Configuration")
        logger.info("=" * 60)
        logger.info(f"Mode: {self.mode.upper()}")

        if self.mode == 'monitor':
            logger.info("Chain:")
            logger.info(f"  Network: {self.chain.network}")
            logger.info(f"  RPC URL: {self.chain.rpc_url}")
            logger.info(f"  RPC Timeout: {self.chain.rpc_timeout} seconds")
            logger.info(f"  Poll Interval: {self.chain.poll_interval} seconds")
            logger.info(f"  Blocks Per Batch: {self.chain.blocks_per_batch}")
            logger.info(f"  Start Block: {self.chain.start_block if self.chain.start_block is not None else 'chain head'}")
            logger.info(f"  Tokens: {', '.join(token.symbol for token in self.chain.tokens)}")

        logger.info("Stream:")
        logger.info(f"  Redis: {self.stream.masked_url()}")
        logger.info(f"  Stream Key: {self.stream.stream_key}")
        if self.mode == 'monitor':
            logger.info(f"  Max Length: ~{self.stream.max_stream_length}")
        else:
            logger.info(f"  Consumer: {self.stream.consumer_group}/{self.stream.consumer_name}")
            logger.info(f"  Batch Size: {self.stream.batch_size}")
            logger.info(f"  Block Timeout: {self.stream.block_timeout_ms} ms")

        logger.info("Fanout:")
        if self.mode == 'monitor' and not self.fanout.enable_local_broadcast:
            logger.info("  Local broadcast: DISABLED")
        else:
            logger.info(f"  Listen: ws://{self.fanout.host}:{self.fanout.port}")
            logger.info(f"  Send Queue Capacity: {self.fanout.send_queue_capacity}")
            logger.info(f"  Client Timeout: {self.fanout.client_timeout} seconds")
            logger.info(f"  Ping Interval: {self.fanout.ping_interval} seconds")

        logger.info("Retry:")
        logger.info(f"  Attempts: {self.retry.max_attempts}")
        logger.info(f"  Backoff: {self.retry.initial_backoff}s - {self.retry.max_backoff}s")
        logger.info("=" * 60)
