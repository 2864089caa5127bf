"""Pytest configuration and shared fixtures."""

import pytest

from wallet_watcher.pnl.chains import ChainInfo, get_chain_info
from wallet_watcher.pnl.models import WatchedWallet
from tests.factories import BUILDER, WALLET


@pytest.fixture
def mainnet() -> ChainInfo:
    return get_chain_info(1)


@pytest.fixture
def devnet() -> ChainInfo:
    """A chain without wrapped native token or explorer."""
    return get_chain_info(31337, "devnet")


@pytest.fixture
def searcher() -> WatchedWallet:
    return WatchedWallet(name="searcher", address=WALLET)


@pytest.fixture
def producer() -> WatchedWallet:
    return WatchedWallet(name="producer", address=WALLET, builder=BUILDER)
