"""Separation of payments to the block producer from wallet PnL."""

from collections.abc import Sequence
from enum import StrEnum

from wallet_watcher.helpers.logging import get_logger
from wallet_watcher.pnl.models import (
    NATIVE_ASSET,
    Block,
    BuilderPayment,
    Transaction,
    TransactionLedger,
)


logger = get_logger(__name__)


class FeeCreditPolicy(StrEnum):
    """How much of a transaction's gas cost is assumed to reach the beneficiary.

    Gas deltas are credited to the fee sink, so the isolator adds this amount
    back before subtracting the full gas cost:

    - ``full``: the whole fee, so only explicit transfers count as reward
    - ``priority``: only the tip above the base fee, the burned part must be
      exceeded by explicit transfers
    - ``none``: nothing, explicit transfers must exceed the whole fee
    """

    FULL = "full"
    PRIORITY = "priority"
    NONE = "none"

    def fee_credit(self, tx: Transaction, base_fee: int | None) -> int:
        if self is FeeCreditPolicy.FULL:
            return tx.gas_cost
        if self is FeeCreditPolicy.PRIORITY:
            return tx.priority_fee(base_fee)
        return 0


class BuilderRewardIsolator:
    """Finds the part of a wallet's transaction paid to the block producer.

    Example:
        ```python
        isolator = BuilderRewardIsolator(FeeCreditPolicy.NONE)
        payment = isolator.isolate(block, tx, ledger, "searcher", addresses)
        if payment is not None:
            print(payment.amount)
        ```
    """

    def __init__(self, policy: FeeCreditPolicy = FeeCreditPolicy.FULL) -> None:
        self.policy = policy

    def isolate(
        self,
        block: Block,
        tx: Transaction,
        ledger: TransactionLedger,
        wallet: str,
        addresses: frozenset[str],
    ) -> BuilderPayment | None:
        """Compute the builder reward of one transaction sent by a wallet.

        Only native paid to the beneficiary by one of ``addresses`` counts,
        and only a strictly positive remainder over the gas cost is a reward.

        Args:
            block: Block of the transaction (beneficiary, base fee)
            tx: Transaction sent by the wallet
            ledger: The transaction's ledger
            wallet: Wallet name
            addresses: The wallet's addresses in this block

        Returns:
            The payment, or None when nothing beyond the fee was paid
        """
        if tx.sender not in addresses or block.beneficiary in addresses:
            return None

        credited = sum(
            delta.amount
            for delta in ledger.deltas
            if delta.address == block.beneficiary
            and delta.asset == NATIVE_ASSET
            and delta.kind == "transfer"
            and delta.amount > 0
            and delta.counterparty in addresses
        )
        credited += self.policy.fee_credit(tx, block.base_fee)

        paid_to_producer = credited - tx.gas_cost
        if paid_to_producer <= 0:
            return None

        logger.debug(
            "Tx %s of %s paid %d wei to producer %s",
            tx.hash,
            wallet,
            paid_to_producer,
            block.beneficiary,
        )
        return BuilderPayment(
            amount=paid_to_producer,
            asset=NATIVE_ASSET,
            from_address=tx.sender,
            tx_index=tx.index,
            wallet=wallet,
        )


def producer_fees(block: Block) -> int:
    """Priority fees earned by the beneficiary over the whole block."""
    return sum(tx.priority_fee(block.base_fee) for tx in block.transactions)


def proposer_payment(
    block: Block, ledgers: Sequence[TransactionLedger], addresses: frozenset[str]
) -> int:
    """Largest native credit of the block's last transaction, if the wallet sent it.

    Builders pay the proposer in the final transaction of their block.
    """
    if not ledgers:
        return 0
    last = max(ledgers, key=lambda ledger: ledger.tx_index)
    if last.sender not in addresses or not last.success:
        return 0

    credits = [
        amount
        for address, changes in last.net(include_fees=False).items()
        if (amount := changes.get(NATIVE_ASSET, 0)) > 0 and address not in addresses
    ]
    return max(credits, default=0)


__all__ = [
    "BuilderRewardIsolator",
    "FeeCreditPolicy",
    "producer_fees",
    "proposer_payment",
]
