#!/usr/bin/env python3
"""Data models for the stablecoin stream pipeline.

This module provides immutable data classes for tokens, decoded transfers
and the messages that travel through the durable stream and out to
WebSocket clients.
"""

import json
from dataclasses import dataclass, field, replace
from typing import Any, ClassVar

from .errors import MalformedEntryError


def format_amount(raw_amount: int, decimals: int) -> str:
    """Format a raw token amount as an exact decimal string.

    The whole part is ``raw_amount // 10**decimals`` and the fraction is
    the remainder zero-padded to ``decimals`` digits, so no precision is
    lost (``1_500_000`` with 6 decimals gives ``"1.500000"``).

    Args:
        raw_amount: Unsigned integer amount in the token's base units
        decimals: Number of decimals declared by the token (0-255)

    Returns:
        Decimal string representation of the amount
    """
    if raw_amount < 0:
        raise ValueError(f"Raw amount must be non-negative, got {raw_amount}")
    if not 0 <= decimals <= 255:
        raise ValueError(f"Decimals must be between 0 and 255, got {decimals}")

    if decimals == 0:
        return str(raw_amount)

    whole, fraction = divmod(raw_amount, 10 ** decimals)
    return f"{whole}.{fraction:0{decimals}d}"


@dataclass(frozen=True, slots=True)
class Token:
    """A monitored ERC-20 token.

    Attributes:
        symbol: Ticker symbol (e.g. USDC)
        address: Checksummed contract address
        decimals: Token decimals (0-255)
    """

    symbol: str
    address: str
    decimals: int

    def __post_init__(self) -> None:
        if not self.symbol:
            raise ValueError("Token symbol is required")
        if not 0 <= self.decimals <= 255:
            raise ValueError(
                f"Invalid decimals for {self.symbol}: {self.decimals} (expected 0-255)"
            )


@dataclass(frozen=True, slots=True)
class DecodedTransfer:
    """A Transfer event decoded from a single log.

    Attributes:
        token: Token that emitted the event
        from_address: Checksummed sender address
        to_address: Checksummed recipient address
        raw_amount: Transferred amount in base units
        block_number: Block containing the log
        tx_hash: 0x-prefixed transaction hash
        timestamp: Block timestamp, when it could be fetched
        log_index: Position of the log within the block, if known
    """

    token: Token
    from_address: str
    to_address: str
    raw_amount: int
    block_number: int
    tx_hash: str
    timestamp: int | None = None
    log_index: int | None = None

    def __str__(self) -> str:
        return (
            f"DecodedTransfer({self.amount} {self.token.symbol}, "
            f"from={self.from_address[:10]}..., to={self.to_address[:10]}..., "
            f"block={self.block_number})"
        )

    @property
    def amount(self) -> str:
        """Human readable amount."""
        return format_amount(self.raw_amount, self.token.decimals)

    def with_timestamp(self, timestamp: int | None) -> "DecodedTransfer":
        return replace(self, timestamp=timestamp)

    def to_message(self) -> dict[str, Any]:
        """Build the live wire message sent to WebSocket clients."""
        message: dict[str, Any] = {
            "stablecoin": self.token.symbol,
            "amount": self.amount,
            "from": self.from_address,
            "to": self.to_address,
            "block_number": self.block_number,
            "tx_hash": self.tx_hash,
        }
        if self.timestamp is not None:
            message["timestamp"] = self.timestamp
        return message

    def to_json(self) -> str:
        return json.dumps(self.to_message())

    def to_stream_fields(self) -> dict[str, str]:
        """Build the field mapping appended to the durable stream."""
        fields = {
            "stablecoin": self.token.symbol,
            "amount": self.amount,
            "from": self.from_address,
            "to": self.to_address,
            "block": str(self.block_number),
            "tx_hash": self.tx_hash,
        }
        if self.timestamp is not None:
            fields["timestamp"] = str(self.timestamp)
        return fields


@dataclass(frozen=True, slots=True)
class TransferMessage:
    """A transfer read back from the durable stream.

    Attributes:
        entry_id: Stream entry id assigned by Redis
        stablecoin: Token symbol
        amount: Formatted amount string
        from_address: Sender address
        to_address: Recipient address
        block_number: Block number of the transfer
        tx_hash: Transaction hash
        timestamp: Block timestamp if it was recorded
    """

    entry_id: str
    stablecoin: str
    amount: str
    from_address: str
    to_address: str
    block_number: int
    tx_hash: str
    timestamp: int | None = None

    REQUIRED_FIELDS: ClassVar[tuple[str, ...]] = ("stablecoin", "amount", "from", "to", "tx_hash")

    @classmethod
    def from_stream_entry(cls, entry_id: str, fields: dict[Any, Any]) -> "TransferMessage":
        """Decode a raw stream entry.

        Keys and values may be ``bytes`` or ``str`` depending on how the
        Redis client was created. The block number is read from ``block``
        and falls back to the older ``block_number`` key.

        Raises:
            MalformedEntryError: If a required field is missing or invalid
        """
        decoded: dict[str, str] = {}
        try:
            for key, value in fields.items():
                key = key.decode() if isinstance(key, bytes) else str(key)
                value = value.decode() if isinstance(value, bytes) else str(value)
                decoded[key] = value
        except UnicodeDecodeError as e:
            raise MalformedEntryError(entry_id, f"invalid UTF-8: {e}") from None

        missing = [name for name in cls.REQUIRED_FIELDS if not decoded.get(name)]
        block_raw = decoded.get("block") or decoded.get("block_number")
        if block_raw is None:
            missing.append("block")
        if missing:
            raise MalformedEntryError(entry_id, f"missing fields {', '.join(missing)}")

        try:
            block_number = int(block_raw)
        except ValueError:
            raise MalformedEntryError(entry_id, f"invalid block number {block_raw!r}") from None
        if block_number < 0:
            raise MalformedEntryError(entry_id, f"negative block number {block_number}")

        timestamp: int | None = None
        if timestamp_raw := decoded.get("timestamp"):
            try:
                timestamp = int(timestamp_raw)
            except ValueError:
                raise MalformedEntryError(entry_id, f"invalid timestamp {timestamp_raw!r}") from None

        return cls(
            entry_id=entry_id,
            stablecoin=decoded["stablecoin"],
            amount=decoded["amount"],
            from_address=decoded["from"],
            to_address=decoded["to"],
            block_number=block_number,
            tx_hash=decoded["tx_hash"],
            timestamp=timestamp,
        )

    def to_message(self) -> dict[str, Any]:
        message: dict[str, Any] = {
            "stablecoin": self.stablecoin,
            "amount": self.amount,
            "from": self.from_address,
            "to": self.to_address,
            "block_number": self.block_number,
            "tx_hash": self.tx_hash,
        }
        if self.timestamp is not None:
            message["timestamp"] = self.timestamp
        return message

    def to_json(self) -> str:
        return json.dumps(self.to_message())

    def format_for_display(self, address_length: int = 10) -> str:
        return (
            f"{self.amount} {self.stablecoin} from {self.from_address[:address_length]}... "
            f"to {self.to_address[:address_length]}... (block: {self.block_number})"
        )


@dataclass
class PublishReport:
    """Outcome of publishing one transfer to every sink."""

    results: dict[str, bool] = field(default_factory=dict)

    @property
    def succeeded(self) -> list[str]:
        return [name for name, ok in self.results.items() if ok]

    @property
    def failed(self) -> list[str]:
        return [name for name, ok in self.results.items() if not ok]

    @property
    def all_successful(self) -> bool:
        return not self.failed


@dataclass
class BroadcastResult:
    """Outcome of a broadcast or ping round over all clients."""

    successful: int = 0
    failed: list[str] = field(default_factory=list)

    @property
    def all_successful(self) -> bool:
        return not self.failed

    @property
    def success_rate(self) -> float:
        total = self.successful + len(self.failed)
        if total == 0:
            return 0.0
        return self.successful / total
