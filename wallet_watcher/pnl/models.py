"""Pydantic models for the trace-to-PnL engine.

Addresses are lowercase ``0x`` strings, amounts are integers in the asset's
smallest unit and converted values are ``Decimal``.
"""

from collections import defaultdict
from collections.abc import Iterator
from decimal import Decimal
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


NATIVE_ASSET = "native"
"""Asset identifier of the chain's native currency"""

FEE_SINK = "fee-sink"
"""Pseudo-address credited with every transaction's gas cost"""

ZERO_ADDRESS = "0x" + "0" * 40


class CallType(StrEnum):
    """Kind of a call frame, as reported by the node."""

    CALL = "CALL"
    CALLCODE = "CALLCODE"
    DELEGATECALL = "DELEGATECALL"
    STATICCALL = "STATICCALL"
    CREATE = "CREATE"
    CREATE2 = "CREATE2"
    SELFDESTRUCT = "SELFDESTRUCT"


class Log(BaseModel):
    """Event emitted by a contract."""

    address: str
    topics: list[str] = Field(default_factory=list)
    data: str = "0x"

    model_config = ConfigDict(frozen=True)


class CallFrame(BaseModel):
    """One node of a transaction's call tree.

    ``reverted`` is already propagated: a frame is reverted when it or any of
    its ancestors failed.
    """

    call_type: CallType
    caller: str
    callee: str | None = None
    value: int = 0
    value_known: bool = True
    reverted: bool = False
    error: str | None = None
    logs: list[Log] = Field(default_factory=list)
    calls: list["CallFrame"] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)

    def walk(self, *, skip_reverted: bool = False) -> Iterator["CallFrame"]:
        """Yield this frame and its descendants depth-first, in call order."""
        if skip_reverted and self.reverted:
            return
        yield self
        for call in self.calls:
            yield from call.walk(skip_reverted=skip_reverted)


class Transaction(BaseModel):
    """A transaction with its call tree and effective logs."""

    index: int
    hash: str
    sender: str
    to: str | None = None
    value: int = 0
    gas_used: int
    effective_gas_price: int
    l1_fee: int = 0
    success: bool
    root: CallFrame
    logs: list[Log] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)

    @property
    def gas_cost(self) -> int:
        return self.gas_used * self.effective_gas_price + self.l1_fee

    def priority_fee(self, base_fee: int | None) -> int:
        """Part of the gas cost paid to the block producer."""
        tip = self.effective_gas_price - (base_fee or 0)
        return max(tip, 0) * self.gas_used


class SkippedTransaction(BaseModel):
    """A transaction the normalizer could not turn into a call tree."""

    index: int | None = None
    hash: str | None = None
    reason: str

    model_config = ConfigDict(frozen=True)


class Block(BaseModel):
    """A normalized block, immutable once built."""

    number: int
    hash: str
    beneficiary: str
    base_fee: int | None = None
    timestamp: int = 0
    transactions: list[Transaction] = Field(default_factory=list)
    skipped: list[SkippedTransaction] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


class BalanceDelta(BaseModel):
    """Signed balance change of one address in one asset.

    ``counterparty`` is the other side of a transfer, None for fees.
    """

    address: str
    asset: str
    amount: int
    tx_index: int
    kind: Literal["transfer", "fee"] = "transfer"
    counterparty: str | None = None

    model_config = ConfigDict(frozen=True)


class TransactionLedger(BaseModel):
    """All balance deltas produced by one transaction."""

    tx_index: int
    tx_hash: str
    sender: str
    to: str | None = None
    gas_cost: int = 0
    success: bool = True
    incomplete: bool = False
    deltas: list[BalanceDelta] = Field(default_factory=list)

    def net(self, *, include_fees: bool = True) -> dict[str, dict[str, int]]:
        """Net amount per address and asset, zero entries removed."""
        totals: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        for delta in self.deltas:
            if delta.kind == "fee" and not include_fees:
                continue
            totals[delta.address][delta.asset] += delta.amount

        return {
            address: {asset: amount for asset, amount in assets.items() if amount}
            for address, assets in totals.items()
            if any(assets.values())
        }

    def touched_addresses(self) -> set[str]:
        """Addresses with a nonzero net change, fee sink excluded."""
        return {address for address in self.net() if address != FEE_SINK}

    def native_sum(self) -> int:
        return sum(d.amount for d in self.deltas if d.asset == NATIVE_ASSET)


class WatchedWallet(BaseModel):
    """A wallet whose PnL is tracked."""

    name: str
    address: str
    builder: str | None = None
    other_addresses: list[str] = Field(default_factory=list)
    include_recipient: bool = False

    model_config = ConfigDict(frozen=True)

    @property
    def addresses(self) -> frozenset[str]:
        """Main, builder and extra addresses, lowercased."""
        found = {self.address, *self.other_addresses}
        if self.builder:
            found.add(self.builder)
        return frozenset(address.lower() for address in found)

    def is_producer(self, beneficiary: str) -> bool:
        return self.builder is not None and self.builder.lower() == beneficiary.lower()


class AttributionGroup(BaseModel):
    """Transactions of one block evaluated together."""

    group_id: str
    block_number: int
    members: list[int]
    watched_members: list[int] = Field(default_factory=list)
    wallets: list[str] = Field(default_factory=list)
    pattern: Literal["single", "multi"] = "single"

    model_config = ConfigDict(frozen=True)


class BuilderPayment(BaseModel):
    """Native amount a wallet's transaction paid the block producer beyond the fee."""

    amount: int
    asset: str = NATIVE_ASSET
    from_address: str
    tx_index: int
    wallet: str

    model_config = ConfigDict(frozen=True)


class TxRef(BaseModel):
    """Transaction reference carried in a PnL record."""

    index: int
    hash: str
    success: bool = True

    model_config = ConfigDict(frozen=True)


class PnLRecord(BaseModel):
    """Realized PnL of one wallet for one attribution group.

    Only derived from block data, so reprocessing a block gives the same
    serialized record.
    """

    wallet: str
    address: str
    block_number: int
    group_id: str
    transactions: list[TxRef] = Field(default_factory=list)
    pattern: Literal["single", "multi"] = "single"
    native_delta: int = 0
    token_deltas: dict[str, int] = Field(default_factory=dict)
    token_values: dict[str, Decimal] = Field(default_factory=dict)
    unpriced_assets: list[str] = Field(default_factory=list)
    total_value: Decimal = Decimal(0)
    builder_reward: int = 0
    builder_payments: list[BuilderPayment] = Field(default_factory=list)
    producer_fees: int = 0
    proposer_payment: int = 0
    incomplete: bool = False

    model_config = ConfigDict(frozen=True)


class RunningTotal(BaseModel):
    """Process-lifetime sums for one wallet."""

    records: int = 0
    native_delta: int = 0
    token_deltas: dict[str, int] = Field(default_factory=dict)
    total_value: Decimal = Decimal(0)
    builder_rewards: int = 0
    unpriced_records: int = 0


__all__ = [
    "FEE_SINK",
    "NATIVE_ASSET",
    "ZERO_ADDRESS",
    "AttributionGroup",
    "BalanceDelta",
    "Block",
    "BuilderPayment",
    "CallFrame",
    "CallType",
    "Log",
    "PnLRecord",
    "RunningTotal",
    "SkippedTransaction",
    "Transaction",
    "TransactionLedger",
    "TxRef",
    "WatchedWallet",
]
