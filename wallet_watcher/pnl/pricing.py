"""Price lookups for converting deltas into a reference currency.

Sources are asynchronous; a block's prices are fetched up front into a
``PriceBook`` so aggregation itself stays synchronous.
"""

import asyncio

from collections.abc import Iterable, Mapping
from decimal import Decimal
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field

from wallet_watcher.errors import PriceUnavailableError
from wallet_watcher.helpers.logging import get_logger
from wallet_watcher.pnl.models import NATIVE_ASSET


logger = get_logger(__name__)

NATIVE_DECIMALS = 18


class PriceQuote(BaseModel):
    """Price of one whole unit of an asset in the reference currency."""

    price: Decimal
    decimals: int = Field(default=18, ge=0)

    model_config = ConfigDict(frozen=True)

    def convert(self, amount: int) -> Decimal:
        """Value of ``amount`` smallest units."""
        return Decimal(amount) / (Decimal(10) ** self.decimals) * self.price


class PriceSource(Protocol):
    async def price_of(self, asset: str, block_number: int) -> PriceQuote:
        """Return the price of ``asset`` at ``block_number``.

        Raises:
            PriceUnavailableError: If no price is known
        """
        ...


class StaticPriceSource:
    """Fixed quotes, typically from the configuration file.

    The reference asset is always priced at 1. With the default native
    reference, every other asset needs a configured quote.
    """

    def __init__(
        self,
        quotes: Mapping[str, PriceQuote] | None = None,
        reference: str = NATIVE_ASSET,
    ) -> None:
        self.reference = reference.lower()
        self.quotes = {asset.lower(): quote for asset, quote in (quotes or {}).items()}

    async def price_of(self, asset: str, block_number: int) -> PriceQuote:
        asset = asset.lower()
        quote = self.quotes.get(asset)
        if quote is not None:
            return quote
        if asset == self.reference:
            decimals = NATIVE_DECIMALS if asset == NATIVE_ASSET else 0
            return PriceQuote(price=Decimal(1), decimals=decimals)
        raise PriceUnavailableError(asset, block_number)


class PriceBook:
    """Synchronous view of the prices fetched for one block."""

    def __init__(
        self,
        block_number: int,
        quotes: Mapping[str, PriceQuote] | None = None,
    ) -> None:
        self.block_number = block_number
        self.quotes = dict(quotes or {})

    def quote(self, asset: str) -> PriceQuote:
        """Return the quote for ``asset``.

        Raises:
            PriceUnavailableError: If the asset was not priced for this block
        """
        try:
            return self.quotes[asset]
        except KeyError:
            raise PriceUnavailableError(asset, self.block_number) from None


async def prefetch_prices(
    source: PriceSource, assets: Iterable[str], block_number: int
) -> PriceBook:
    """Fetch the prices of ``assets`` concurrently.

    Assets without a price are left out of the book; lookups for them raise
    PriceUnavailableError later. Unexpected source errors are logged and
    treated the same way.

    Args:
        source: Price source to query
        assets: Asset identifiers to price
        block_number: Block height of the lookup

    Returns:
        PriceBook for the block
    """
    unique = sorted(set(assets))
    results = await asyncio.gather(
        *(source.price_of(asset, block_number) for asset in unique),
        return_exceptions=True,
    )

    quotes: dict[str, PriceQuote] = {}
    for asset, result in zip(unique, results, strict=True):
        if isinstance(result, PriceQuote):
            quotes[asset] = result
        elif isinstance(result, PriceUnavailableError):
            logger.debug("%s", result)
        elif isinstance(result, Exception):
            logger.warning("Price lookup for %s at block %d failed: %s", asset, block_number, result)
        else:
            raise result

    return PriceBook(block_number, quotes)


__all__ = [
    "PriceBook",
    "PriceQuote",
    "PriceSource",
    "StaticPriceSource",
    "prefetch_prices",
]
