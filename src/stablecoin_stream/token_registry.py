"""Registry of monitored stablecoin contracts."""

import logging
from collections.abc import Iterable, Iterator
from types import MappingProxyType

from web3 import Web3

from .models import Token

logger = logging.getLogger(__name__)

# Stablecoins on Base mainnet
DEFAULT_STABLECOINS: tuple[tuple[str, str, int], ...] = (
    ("USDC", "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913", 6),
    ("USDT", "0xfde4C96c8593536E31F229EA8f37b2ADa2699bb2", 6),
    ("DAI", "0x50c5725949A6F0c72E6C4a641F24049A917DB0Cb", 18),
)


class TokenRegistry:
    """Immutable mapping from contract address to token metadata.

    Addresses are normalised to their checksum form, so lookups accept
    any casing.
    """

    def __init__(self, tokens: Iterable[Token]) -> None:
        registry: dict[str, Token] = {}
        for token in tokens:
            if not Web3.is_address(token.address):
                raise ValueError(f"Invalid address for {token.symbol}: {token.address}")
            address = Web3.to_checksum_address(token.address)
            if address in registry:
                logger.warning(
                    f"Duplicate token address {address}: "
                    f"{registry[address].symbol} replaced by {token.symbol}"
                )
            registry[address] = Token(symbol=token.symbol, address=address, decimals=token.decimals)

        if not registry:
            raise ValueError("At least one token must be configured")

        self._tokens = MappingProxyType(registry)

    @classmethod
    def default(cls) -> "TokenRegistry":
        return cls(Token(symbol, address, decimals) for symbol, address, decimals in DEFAULT_STABLECOINS)

    def get(self, address: str) -> Token | None:
        """Look up a token by contract address (any casing)."""
        if not isinstance(address, str) or not Web3.is_address(address):
            return None
        return self._tokens.get(Web3.to_checksum_address(address))

    def contains(self, address: str) -> bool:
        return self.get(address) is not None

    def all_addresses(self) -> list[str]:
        return list(self._tokens.keys())

    def __len__(self) -> int:
        return len(self._tokens)

    def __iter__(self) -> Iterator[Token]:
        return iter(self._tokens.values())
