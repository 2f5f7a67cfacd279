#!/usr/bin/env python3
"""Tests for the token registry."""

import pytest

from stablecoin_stream.models import Token
from stablecoin_stream.token_registry import TokenRegistry

from conftest import USDC_ADDRESS


class TestTokenRegistry:
    """Tests for TokenRegistry."""

    def test_default_tokens(self, registry):
        """Test the default Base stablecoins."""
        assert len(registry) == 3
        assert sorted(token.symbol for token in registry) == ["DAI", "USDC", "USDT"]

    def test_lookup_any_casing(self, registry):
        """Test that lookups accept lowercase addresses."""
        token = registry.get(USDC_ADDRESS.lower())

        assert token is not None
        assert token.symbol == "USDC"
        assert token.decimals == 6
        assert token.address == USDC_ADDRESS

    def test_unknown_and_invalid_addresses(self, registry):
        assert registry.get("0x" + "44" * 20) is None
        assert registry.get("not-an-address") is None
        assert registry.get(None) is None
        assert not registry.contains("0x" + "44" * 20)

    def test_addresses_are_checksummed(self):
        registry = TokenRegistry([Token("USDC", USDC_ADDRESS.lower(), 6)])
        assert registry.all_addresses() == [USDC_ADDRESS]

    def test_empty_registry_rejected(self):
        with pytest.raises(ValueError, match="At least one token"):
            TokenRegistry([])

    def test_invalid_address_rejected(self):
        with pytest.raises(ValueError, match="Invalid address"):
            TokenRegistry([Token("BAD", "0x1234", 6)])
