"""Per-chain constants: native symbol, wrapped native token and explorers."""

from pydantic import BaseModel, ConfigDict


class ChainInfo(BaseModel):
    """Static description of an EVM chain."""

    chain_id: int
    name: str
    native_symbol: str = "ETH"
    wrapped_native: str | None = None
    explorer_url: str | None = None
    phalcon_tag: str | None = None
    has_l1_fee: bool = False

    model_config = ConfigDict(frozen=True)


KNOWN_CHAINS: dict[int, ChainInfo] = {
    chain.chain_id: chain
    for chain in (
        ChainInfo(
            chain_id=1,
            name="mainnet",
            wrapped_native="0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2",
            explorer_url="https://etherscan.io",
            phalcon_tag="eth",
        ),
        ChainInfo(
            chain_id=10,
            name="optimism",
            wrapped_native="0x4200000000000000000000000000000000000006",
            explorer_url="https://optimistic.etherscan.io",
            phalcon_tag="optimism",
            has_l1_fee=True,
        ),
        ChainInfo(
            chain_id=56,
            name="bsc",
            native_symbol="BNB",
            wrapped_native="0xbb4cdb9cbd36b01bd1cbaebf2de08d9173bc095c",
            explorer_url="https://bscscan.com",
            phalcon_tag="bsc",
        ),
        ChainInfo(
            chain_id=137,
            name="polygon",
            native_symbol="MATIC",
            wrapped_native="0x0d500b1d8e8ef31e21c99d1db9a6444d3adf1270",
            explorer_url="https://polygonscan.com",
            phalcon_tag="polygon",
        ),
        ChainInfo(
            chain_id=8453,
            name="base",
            wrapped_native="0x4200000000000000000000000000000000000006",
            explorer_url="https://basescan.org",
            phalcon_tag="base",
            has_l1_fee=True,
        ),
        ChainInfo(
            chain_id=42161,
            name="arbitrum",
            wrapped_native="0x82af49447d8a07e3bd95bd0d56f35241523fbab1",
            explorer_url="https://arbiscan.io",
            phalcon_tag="arbitrum",
        ),
        ChainInfo(
            chain_id=81457,
            name="blast",
            wrapped_native="0x4300000000000000000000000000000000000004",
            explorer_url="https://blastscan.io",
        ),
        ChainInfo(
            chain_id=11155111,
            name="sepolia",
            wrapped_native="0xfff9976782d46cc05630d1f6ebab18b2324d6b14",
            explorer_url="https://sepolia.etherscan.io",
            phalcon_tag="eth-sepolia",
        ),
    )
}


def get_chain_info(chain_id: int, name: str | None = None) -> ChainInfo:
    """Look up a chain by id, falling back to a bare description.

    Args:
        chain_id: EIP-155 chain id
        name: Configured name used when the chain is unknown

    Returns:
        ChainInfo for the chain

    Example:
        >>> get_chain_info(1).native_symbol
        'ETH'
        >>> get_chain_info(999, "devnet").wrapped_native is None
        True
    """
    known = KNOWN_CHAINS.get(chain_id)
    if known is not None:
        return known
    return ChainInfo(chain_id=chain_id, name=name or f"chain-{chain_id}")


__all__ = [
    "KNOWN_CHAINS",
    "ChainInfo",
    "get_chain_info",
]
