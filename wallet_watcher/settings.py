"""Configuration file schema and loader.

The file is YAML, read once at startup. ``${VAR}`` placeholders are expanded
from the environment (and ``.env``) before validation.

Example:
    ```yaml
    log_level: INFO
    database_url: sqlite+aiosqlite:///pnl.db

    chains:
      mainnet: ${ETH_RPC_URL}
      base:
        rpc_url: https://base.example/rpc
        ws_url: wss://base.example/ws
        trace_dialect: parity

    channels:
      - bot_token: ${TELEGRAM_BOT_TOKEN}
        chat_id: "-1001234567890"
        wallets:
          - name: searcher
            address: "0x1111111111111111111111111111111111111111"
            chains: [mainnet]
    ```
"""

import re

from pathlib import Path
from typing import Any, Literal, Self

import yaml

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from wallet_watcher.errors import ConfigError
from wallet_watcher.helpers.config import expand_env_vars
from wallet_watcher.helpers.constants import DEFAULT_PREFETCH
from wallet_watcher.helpers.logging import LOG_LEVELS
from wallet_watcher.pnl.builder import FeeCreditPolicy
from wallet_watcher.pnl.extractor import SelfDestructPolicy
from wallet_watcher.pnl.models import NATIVE_ASSET, WatchedWallet
from wallet_watcher.pnl.pricing import PriceQuote
from wallet_watcher.pnl.token_rules import TokenTransferRule


_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")


def _address(value: str) -> str:
    if not isinstance(value, str) or not _ADDRESS.match(value):
        msg = f"Invalid address: {value!r}"
        raise ValueError(msg)
    return value.lower()


class ChainSettings(BaseModel):
    """Connection and accounting options for one chain."""

    rpc_url: str
    ws_url: str | None = None
    trace_dialect: Literal["auto", "geth", "parity"] = "auto"
    fee_credit: FeeCreditPolicy = FeeCreditPolicy.FULL
    self_destruct: SelfDestructPolicy = SelfDestructPolicy.TRACE
    conservation_tolerance: int = Field(default=0, ge=0)
    start_block: int | None = Field(default=None, ge=0)
    prefetch: int = Field(default=DEFAULT_PREFETCH, ge=1)

    model_config = ConfigDict(extra="forbid")


class WalletSettings(BaseModel):
    """A watched wallet as written in the file."""

    name: str
    address: str
    builder: str | None = None
    other_addresses: list[str] = Field(default_factory=list)
    chains: list[str] = Field(default_factory=list)
    include_recipient: bool = False

    model_config = ConfigDict(extra="forbid")

    @field_validator("address", "builder")
    @classmethod
    def _check_address(cls, value: str | None) -> str | None:
        return _address(value) if value is not None else None

    @field_validator("other_addresses")
    @classmethod
    def _check_addresses(cls, value: list[str]) -> list[str]:
        return [_address(item) for item in value]

    def to_watched(self) -> WatchedWallet:
        return WatchedWallet(
            name=self.name,
            address=self.address,
            builder=self.builder,
            other_addresses=self.other_addresses,
            include_recipient=self.include_recipient,
        )


class ChannelSettings(BaseModel):
    """A Telegram destination and the wallets reported to it."""

    bot_token: str
    chat_id: str
    thread_id: str | None = None
    wallets: list[WalletSettings]

    model_config = ConfigDict(extra="forbid")

    @field_validator("chat_id", "thread_id", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value


class PriceSettings(BaseModel):
    """Reference currency and fixed quotes."""

    reference: str = NATIVE_ASSET
    static: dict[str, PriceQuote] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")

    @field_validator("static")
    @classmethod
    def _lowercase_assets(cls, value: dict[str, PriceQuote]) -> dict[str, PriceQuote]:
        return {asset.lower(): quote for asset, quote in value.items()}


class WalletSubscription(BaseModel):
    """A wallet on one chain together with its notification channel."""

    wallet: WatchedWallet
    channel: ChannelSettings


class Settings(BaseModel):
    """The whole configuration file."""

    chains: dict[str, ChainSettings]
    channels: list[ChannelSettings] = Field(default_factory=list)
    token_rules: list[TokenTransferRule] = Field(default_factory=list)
    prices: PriceSettings = Field(default_factory=PriceSettings)
    database_url: str | None = None
    log_level: str | None = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("chains", mode="before")
    @classmethod
    def _expand_chain_shorthand(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {
                name: {"rpc_url": chain} if isinstance(chain, str) else chain
                for name, chain in value.items()
            }
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str | None) -> str | None:
        if value is not None and value.upper() not in LOG_LEVELS:
            msg = f"Invalid log level {value!r}, expected one of {sorted(LOG_LEVELS)}"
            raise ValueError(msg)
        return value.upper() if value else value

    @model_validator(mode="after")
    def _check_references(self) -> Self:
        if not self.chains:
            msg = "At least one chain must be configured"
            raise ValueError(msg)

        for i, channel in enumerate(self.channels):
            if not channel.wallets:
                msg = f"Channel #{i} has no wallets"
                raise ValueError(msg)
            for wallet in channel.wallets:
                for chain in wallet.chains:
                    if chain not in self.chains:
                        msg = f"Chain {chain} not found for wallet {wallet.name}"
                        raise ValueError(msg)
        return self

    def subscriptions_by_chain(self) -> dict[str, list[WalletSubscription]]:
        """Wallets per chain; a wallet without ``chains`` is on every chain."""
        result: dict[str, list[WalletSubscription]] = {name: [] for name in self.chains}
        for channel in self.channels:
            for wallet in channel.wallets:
                for chain in wallet.chains or list(self.chains):
                    result[chain].append(
                        WalletSubscription(wallet=wallet.to_watched(), channel=channel)
                    )
        return result


def load_config(path: str | Path) -> Settings:
    """Read, expand and validate a configuration file.

    Args:
        path: Path to the YAML file

    Returns:
        Validated settings

    Raises:
        ConfigError: If the file is missing, unreadable, references an unset
            environment variable or fails validation
    """
    path = Path(path)
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        msg = f"Cannot read config file {path}: {e}"
        raise ConfigError(msg) from e
    except yaml.YAMLError as e:
        msg = f"Config file {path} is not valid YAML: {e}"
        raise ConfigError(msg) from e

    if not isinstance(raw, dict):
        msg = f"Config file {path} must contain a mapping"
        raise ConfigError(msg)

    try:
        expanded = expand_env_vars(raw)
    except ValueError as e:
        msg = f"Config file {path}: {e}"
        raise ConfigError(msg) from e

    try:
        return Settings.model_validate(expanded)
    except ValidationError as e:
        msg = f"Invalid config file {path}: {e}"
        raise ConfigError(msg) from e


__all__ = [
    "ChainSettings",
    "ChannelSettings",
    "PriceSettings",
    "Settings",
    "WalletSettings",
    "WalletSubscription",
    "load_config",
]
