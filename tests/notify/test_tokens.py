"""Tests for token metadata resolution."""

from unittest.mock import AsyncMock

import pytest

from eth_abi import encode

from wallet_watcher.errors import RpcFatalError
from wallet_watcher.notify.tokens import (
    DECIMALS_SELECTOR,
    SYMBOL_SELECTOR,
    TokenInfo,
    TokenInfoResolver,
    decode_decimals,
    decode_symbol,
)
from tests.factories import TOKEN


MKR = "0x9f8f72aa9304c8b593d555f12ef6589cc3a579a2"


def hex_result(types: list[str], values: list[object]) -> str:
    return "0x" + encode(types, values).hex()


def fake_rpc(symbol: str, decimals: str) -> AsyncMock:
    rpc = AsyncMock()

    async def eth_call(client: object, to: str, data: str) -> str:
        return {SYMBOL_SELECTOR: symbol, DECIMALS_SELECTOR: decimals}[data]

    rpc.eth_call.side_effect = eth_call
    return rpc


class TestDecoding:
    """Tests for decode_symbol and decode_decimals."""

    def test_string_symbol(self) -> None:
        assert decode_symbol(hex_result(["string"], ["USDC"])) == "USDC"

    def test_bytes32_symbol(self) -> None:
        """Test old tokens returning bytes32 symbols are decoded."""
        raw = hex_result(["bytes32"], [b"MKR".ljust(32, b"\0")])

        assert decode_symbol(raw) == "MKR"

    def test_empty_symbol(self) -> None:
        with pytest.raises(ValueError, match="Empty"):
            decode_symbol("0x")

    def test_decimals(self) -> None:
        assert decode_decimals(hex_result(["uint8"], [6])) == 6

    def test_bad_decimals(self) -> None:
        with pytest.raises(ValueError, match="Bad decimals"):
            decode_decimals("0x")


class TestTokenInfoResolver:
    """Tests for TokenInfoResolver.resolve."""

    @pytest.mark.asyncio
    async def test_resolves_and_caches(self) -> None:
        rpc = fake_rpc(hex_result(["string"], ["TKN"]), hex_result(["uint8"], [9]))
        resolver = TokenInfoResolver(rpc, client=AsyncMock())

        first = await resolver.resolve(TOKEN.upper().replace("0X", "0x"))
        second = await resolver.resolve(TOKEN)

        assert first == TokenInfo(symbol="TKN", decimals=9)
        assert second is first
        assert rpc.eth_call.await_count == 2

    @pytest.mark.asyncio
    async def test_known_token_needs_no_call(self) -> None:
        rpc = fake_rpc("0x", "0x")
        resolver = TokenInfoResolver(rpc, client=AsyncMock(), chain_id=1)

        info = await resolver.resolve(MKR)

        assert info.symbol == "MKR"
        rpc.eth_call.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failure_falls_back_uncached(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test unresolvable tokens show their short address and are retried later."""
        rpc = AsyncMock()
        rpc.eth_call.side_effect = RpcFatalError("execution reverted")
        resolver = TokenInfoResolver(rpc, client=AsyncMock(), chain_id=10)

        info = await resolver.resolve(TOKEN)

        assert info == TokenInfo(
            symbol="0x666666666666...66666666", decimals=18, resolved=False
        )
        assert TOKEN not in resolver.cache
        assert "Failed to load symbol" in caplog.text
