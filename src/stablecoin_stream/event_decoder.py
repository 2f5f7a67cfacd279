#!/usr/bin/env python3
"""Decoding of ERC-20 Transfer logs.

Logs reach the decoder either as web3 ``AttributeDict`` objects (topics and
data as ``HexBytes``) or as plain dicts with hex strings. Anything that is
not a well-formed Transfer from a registered token decodes to ``None``;
non-matching logs are a normal, frequent case and never raise.
"""

import logging
from typing import Any

from web3 import Web3

from .models import DecodedTransfer
from .token_registry import TokenRegistry

logger = logging.getLogger(__name__)

TRANSFER_EVENT_SIGNATURE = "Transfer(address,address,uint256)"
TRANSFER_EVENT_TOPIC: bytes = bytes(Web3.keccak(text=TRANSFER_EVENT_SIGNATURE))


def _to_bytes(value: Any) -> bytes | None:
    """Normalise a topic or data value (bytes or hex string) to bytes."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        hex_str = value[2:] if value.startswith(("0x", "0X")) else value
        if len(hex_str) % 2:
            return None
        try:
            return bytes.fromhex(hex_str)
        except ValueError:
            return None
    return None


def _get_field(log: Any, name: str, default: Any = None) -> Any:
    if hasattr(log, "get") and callable(log.get):
        return log.get(name, default)
    return getattr(log, name, default)


def _to_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 16) if value.startswith(("0x", "0X")) else int(value)
        except ValueError:
            return None
    return None


class EventDecoder:
    """Turns raw logs into ``DecodedTransfer`` objects.

    The decoder only reads the token registry and has no other state.
    """

    def __init__(self, registry: TokenRegistry) -> None:
        self.registry = registry
        self.transfer_topic = TRANSFER_EVENT_TOPIC

    def decode(self, log: Any) -> DecodedTransfer | None:
        """Decode one log.

        Args:
            log: Log receipt from ``eth_getLogs``

        Returns:
            DecodedTransfer, or None if the log is not a Transfer from a
            monitored token
        """
        token = self.registry.get(_get_field(log, "address"))
        if token is None:
            logger.debug(f"Log from unmonitored contract: {_get_field(log, 'address')}")
            return None

        topics = _get_field(log, "topics") or []
        try:
            topics = [_to_bytes(topic) for topic in topics]
        except TypeError:
            return None
        if len(topics) < 3 or any(topic is None or len(topic) != 32 for topic in topics[:3]):
            return None
        if topics[0] != self.transfer_topic:
            return None

        data = _to_bytes(_get_field(log, "data", b""))
        if data is None or len(data) < 32:
            return None

        block_number = _to_int(_get_field(log, "blockNumber"))
        tx_hash = _to_bytes(_get_field(log, "transactionHash"))
        if block_number is None or block_number < 0 or not tx_hash:
            return None

        return DecodedTransfer(
            token=token,
            from_address=Web3.to_checksum_address(topics[1][12:]),
            to_address=Web3.to_checksum_address(topics[2][12:]),
            raw_amount=int.from_bytes(data[:32], byteorder="big"),
            block_number=block_number,
            tx_hash="0x" + tx_hash.hex(),
            log_index=_to_int(_get_field(log, "logIndex")),
        )

    def decode_all(self, logs: list[Any]) -> list[DecodedTransfer]:
        transfers = []
        for log in logs:
            if (transfer := self.decode(log)) is not None:
                transfers.append(transfer)
        return transfers
