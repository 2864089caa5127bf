"""Balance-delta extraction from normalized transactions."""

from collections.abc import Sequence
from enum import StrEnum

from wallet_watcher.errors import InconsistentAccountingError
from wallet_watcher.helpers.logging import get_logger
from wallet_watcher.pnl.models import (
    FEE_SINK,
    NATIVE_ASSET,
    BalanceDelta,
    Block,
    CallType,
    Transaction,
    TransactionLedger,
)
from wallet_watcher.pnl.token_rules import TokenTransferRule, default_token_rules


logger = get_logger(__name__)

VALUE_TRANSFER_CALLS = frozenset({CallType.CALL, CallType.CREATE, CallType.CREATE2})


class SelfDestructPolicy(StrEnum):
    """How self-destruct frames are accounted.

    ``trace`` credits the beneficiary with the balance reported in the trace
    and only flags the transaction when the node reports none. ``flag`` never
    trusts the trace and always flags.
    """

    TRACE = "trace"
    FLAG = "flag"


class DeltaExtractor:
    """Walks call trees and logs to produce per-transaction ledgers.

    Example:
        ```python
        extractor = DeltaExtractor(default_token_rules(chain.wrapped_native))
        ledgers = extractor.extract_block(block)
        for ledger in ledgers:
            check_conservation(ledger)
        ```
    """

    def __init__(
        self,
        token_rules: Sequence[TokenTransferRule] | None = None,
        self_destruct_policy: SelfDestructPolicy = SelfDestructPolicy.TRACE,
    ) -> None:
        self.token_rules = list(token_rules) if token_rules is not None else default_token_rules()
        self.self_destruct_policy = self_destruct_policy

    def extract_block(self, block: Block) -> list[TransactionLedger]:
        return [self.extract(tx) for tx in block.transactions]

    def extract(self, tx: Transaction) -> TransactionLedger:
        """Compute all balance deltas of one transaction.

        Reverted frames contribute nothing. Gas is charged to the sender and
        credited to ``FEE_SINK`` whether or not the transaction succeeded.

        Args:
            tx: Normalized transaction

        Returns:
            The transaction's ledger
        """
        deltas: list[BalanceDelta] = []
        incomplete = False

        def transfer(asset: str, sender: str | None, recipient: str | None, amount: int) -> None:
            if amount == 0:
                return
            if sender is not None:
                deltas.append(
                    BalanceDelta(
                        address=sender,
                        asset=asset,
                        amount=-amount,
                        tx_index=tx.index,
                        counterparty=recipient,
                    )
                )
            if recipient is not None:
                deltas.append(
                    BalanceDelta(
                        address=recipient,
                        asset=asset,
                        amount=amount,
                        tx_index=tx.index,
                        counterparty=sender,
                    )
                )

        for frame in tx.root.walk(skip_reverted=True):
            if frame.call_type in VALUE_TRANSFER_CALLS:
                transfer(NATIVE_ASSET, frame.caller, frame.callee, frame.value)
            elif frame.call_type == CallType.SELFDESTRUCT:
                usable = (
                    self.self_destruct_policy == SelfDestructPolicy.TRACE
                    and frame.value_known
                    and frame.callee is not None
                )
                if not usable:
                    logger.debug(
                        "Self-destruct of %s in tx %s has no usable balance", frame.caller, tx.hash
                    )
                    incomplete = True
                    continue
                transfer(NATIVE_ASSET, frame.caller, frame.callee, frame.value)
            # CALLCODE runs in the caller's context and nets to zero

        for log in tx.logs:
            for rule in self.token_rules:
                token_transfer = rule.decode(log)
                if token_transfer is not None:
                    transfer(
                        token_transfer.token,
                        token_transfer.sender,
                        token_transfer.recipient,
                        token_transfer.amount,
                    )
                    break

        if tx.gas_cost:
            deltas.extend([
                BalanceDelta(
                    address=tx.sender,
                    asset=NATIVE_ASSET,
                    amount=-tx.gas_cost,
                    tx_index=tx.index,
                    kind="fee",
                ),
                BalanceDelta(
                    address=FEE_SINK,
                    asset=NATIVE_ASSET,
                    amount=tx.gas_cost,
                    tx_index=tx.index,
                    kind="fee",
                ),
            ])

        return TransactionLedger(
            tx_index=tx.index,
            tx_hash=tx.hash,
            sender=tx.sender,
            to=tx.to,
            gas_cost=tx.gas_cost,
            success=tx.success,
            incomplete=incomplete,
            deltas=deltas,
        )


def check_conservation(ledger: TransactionLedger, tolerance: int = 0) -> None:
    """Verify native deltas of a successful transaction sum to zero.

    Args:
        ledger: Ledger to check
        tolerance: Largest accepted absolute imbalance in wei

    Raises:
        InconsistentAccountingError: If the imbalance exceeds the tolerance
    """
    if not ledger.success:
        return
    imbalance = ledger.native_sum()
    if abs(imbalance) > tolerance:
        raise InconsistentAccountingError(ledger.tx_index, imbalance)


__all__ = [
    "DeltaExtractor",
    "SelfDestructPolicy",
    "check_conservation",
]
