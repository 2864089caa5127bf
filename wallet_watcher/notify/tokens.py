"""Token symbol and decimals lookup through ``eth_call``."""

import httpx

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from pydantic import BaseModel, ConfigDict

from wallet_watcher.errors import RpcError
from wallet_watcher.helpers.logging import get_logger
from wallet_watcher.helpers.parsers import format_short_address
from wallet_watcher.helpers.rpc import RPCClient


logger = get_logger(__name__)

SYMBOL_SELECTOR = "0x95d89b41"
"""symbol()"""

DECIMALS_SELECTOR = "0x313ce567"
"""decimals()"""

DEFAULT_DECIMALS = 18

# Tokens whose symbol() does not return an ABI string
KNOWN_TOKENS: dict[int, dict[str, tuple[str, int]]] = {
    1: {"0x9f8f72aa9304c8b593d555f12ef6589cc3a579a2": ("MKR", 18)},
}


class TokenInfo(BaseModel):
    """Display data of a token."""

    symbol: str
    decimals: int
    resolved: bool = True

    model_config = ConfigDict(frozen=True)


def decode_symbol(raw: str) -> str:
    """Decode a ``symbol()`` result, accepting both string and bytes32 returns.

    Raises:
        ValueError: If the result is empty or undecodable
    """
    data = bytes.fromhex(raw.removeprefix("0x"))
    if not data:
        msg = "Empty symbol() result"
        raise ValueError(msg)
    try:
        (symbol,) = decode(["string"], data)
    except (DecodingError, OverflowError):
        (raw_symbol,) = decode(["bytes32"], data[:32].ljust(32, b"\0"))
        symbol = raw_symbol.rstrip(b"\0").decode("utf-8", errors="replace")
    if not symbol:
        msg = "Blank symbol"
        raise ValueError(msg)
    return symbol


def decode_decimals(raw: str) -> int:
    """Decode a ``decimals()`` result.

    Raises:
        ValueError: If the result is empty or undecodable
    """
    data = bytes.fromhex(raw.removeprefix("0x"))
    try:
        (decimals,) = decode(["uint8"], data)
    except (DecodingError, OverflowError) as e:
        msg = f"Bad decimals() result {raw!r}"
        raise ValueError(msg) from e
    return int(decimals)


class TokenInfoResolver:
    """Caches symbol and decimals per token for one chain.

    Tokens that cannot be resolved are shown by their short address with 18
    decimals, and are retried on the next lookup.
    """

    def __init__(self, rpc: RPCClient, client: httpx.AsyncClient, chain_id: int = 1) -> None:
        self.rpc = rpc
        self.client = client
        self.cache: dict[str, TokenInfo] = {
            token: TokenInfo(symbol=symbol, decimals=decimals)
            for token, (symbol, decimals) in KNOWN_TOKENS.get(chain_id, {}).items()
        }

    async def resolve(self, token: str) -> TokenInfo:
        token = token.lower()
        cached = self.cache.get(token)
        if cached is not None:
            return cached

        try:
            symbol = decode_symbol(await self.rpc.eth_call(self.client, token, SYMBOL_SELECTOR))
            decimals = decode_decimals(
                await self.rpc.eth_call(self.client, token, DECIMALS_SELECTOR)
            )
        except (RpcError, ValueError) as e:
            logger.error("Failed to load symbol for token %s: %s", token, e)
            return TokenInfo(
                symbol=format_short_address(token), decimals=DEFAULT_DECIMALS, resolved=False
            )

        info = TokenInfo(symbol=symbol, decimals=decimals)
        self.cache[token] = info
        return info


__all__ = [
    "DECIMALS_SELECTOR",
    "SYMBOL_SELECTOR",
    "TokenInfo",
    "TokenInfoResolver",
    "decode_decimals",
    "decode_symbol",
]
