"""Combination of grouped deltas into PnL records, plus running totals."""

from collections import defaultdict
from collections.abc import Mapping, Sequence
from decimal import Decimal

from wallet_watcher.errors import PriceUnavailableError
from wallet_watcher.helpers.logging import get_logger
from wallet_watcher.pnl.models import (
    NATIVE_ASSET,
    AttributionGroup,
    Block,
    BuilderPayment,
    PnLRecord,
    RunningTotal,
    TransactionLedger,
    TxRef,
    WatchedWallet,
)
from wallet_watcher.pnl.pricing import PriceBook


logger = get_logger(__name__)


class PnLAggregator:
    """Builds PnL records and owns the per-wallet running totals.

    The totals are the only state kept across blocks. Readers get copies via
    ``snapshot()``.
    """

    def __init__(self, wrapped_native: str | None = None) -> None:
        self.wrapped_native = wrapped_native.lower() if wrapped_native else None
        self.totals: dict[str, RunningTotal] = {}

    def build_record(
        self,
        block: Block,
        group: AttributionGroup,
        wallet: WatchedWallet,
        addresses: frozenset[str],
        ledgers: Mapping[int, TransactionLedger],
        prices: PriceBook,
        *,
        payments: Sequence[BuilderPayment] = (),
        producer_fees: int = 0,
        proposer_payment: int = 0,
    ) -> PnLRecord:
        """Sum one wallet's deltas over a group and value them.

        Args:
            block: The block being processed
            group: Attribution group
            wallet: Watched wallet
            addresses: The wallet's addresses in this block
            ledgers: Ledgers by transaction index
            prices: Prices fetched for this block
            payments: Builder payments of the wallet in this group
            producer_fees: Priority fees earned when the wallet built the block
            proposer_payment: Payment to the proposer in the block's last tx

        Returns:
            The record (totals are not updated, see ``record``)
        """
        per_asset: dict[str, int] = defaultdict(int)
        incomplete = False
        for index in group.members:
            ledger = ledgers[index]
            incomplete = incomplete or ledger.incomplete
            for delta in ledger.deltas:
                if delta.address in addresses:
                    per_asset[delta.asset] += delta.amount

        if self.wrapped_native is not None and self.wrapped_native in per_asset:
            per_asset[NATIVE_ASSET] += per_asset.pop(self.wrapped_native)

        builder_reward = sum(payment.amount for payment in payments)
        native_delta = per_asset.pop(NATIVE_ASSET, 0) + builder_reward + producer_fees
        token_deltas = {asset: amount for asset, amount in sorted(per_asset.items()) if amount}

        token_values: dict[str, Decimal] = {}
        unpriced: list[str] = []
        total_value = Decimal(0)

        for asset, amount in [(NATIVE_ASSET, native_delta), *token_deltas.items()]:
            if amount == 0:
                continue
            try:
                value = prices.quote(asset).convert(amount)
            except PriceUnavailableError as e:
                logger.debug("%s", e)
                unpriced.append(asset)
                continue
            if asset != NATIVE_ASSET:
                token_values[asset] = value
            total_value += value

        return PnLRecord(
            wallet=wallet.name,
            address=wallet.address.lower(),
            block_number=block.number,
            group_id=group.group_id,
            transactions=[
                TxRef(index=index, hash=ledgers[index].tx_hash, success=ledgers[index].success)
                for index in group.members
            ],
            pattern=group.pattern,
            native_delta=native_delta,
            token_deltas=token_deltas,
            token_values=token_values,
            unpriced_assets=sorted(unpriced),
            total_value=total_value,
            builder_reward=builder_reward,
            builder_payments=sorted(payments, key=lambda payment: payment.tx_index),
            producer_fees=producer_fees,
            proposer_payment=proposer_payment,
            incomplete=incomplete,
        )

    def record(self, record: PnLRecord) -> None:
        """Add an emitted record to its wallet's running total."""
        total = self.totals.setdefault(record.wallet, RunningTotal())
        total.records += 1
        total.native_delta += record.native_delta
        for asset, amount in record.token_deltas.items():
            total.token_deltas[asset] = total.token_deltas.get(asset, 0) + amount
        total.total_value += record.total_value
        total.builder_rewards += record.builder_reward
        if record.unpriced_assets:
            total.unpriced_records += 1

    def snapshot(self) -> dict[str, RunningTotal]:
        """Deep copy of the running totals."""
        return {wallet: total.model_copy(deep=True) for wallet, total in self.totals.items()}

    def reset(self) -> None:
        self.totals.clear()


__all__ = [
    "PnLAggregator",
]
