"""Block processor: the synchronous trace-to-PnL pipeline for one block.

``prepare`` runs normalization, extraction, conservation checks and grouping.
The caller then prefetches prices for ``PreparedBlock.assets()`` and hands the
price book to ``finalize``, which isolates builder payments and aggregates.
``process`` chains both for callers that already have a price source.
"""

from collections.abc import Sequence

from pydantic import BaseModel, ConfigDict

from wallet_watcher.helpers.logging import get_logger
from wallet_watcher.helpers.models import RawBlockPayload
from wallet_watcher.pnl.aggregator import PnLAggregator
from wallet_watcher.pnl.builder import (
    BuilderRewardIsolator,
    FeeCreditPolicy,
    producer_fees,
    proposer_payment,
)
from wallet_watcher.pnl.chains import ChainInfo
from wallet_watcher.pnl.extractor import DeltaExtractor, SelfDestructPolicy, check_conservation
from wallet_watcher.pnl.grouping import AttributionGrouper, resolve_wallet_addresses
from wallet_watcher.pnl.models import (
    NATIVE_ASSET,
    AttributionGroup,
    Block,
    BuilderPayment,
    PnLRecord,
    TransactionLedger,
    WatchedWallet,
)
from wallet_watcher.pnl.normalizer import normalize_block
from wallet_watcher.pnl.pricing import PriceBook, PriceSource, prefetch_prices
from wallet_watcher.pnl.token_rules import TokenTransferRule, default_token_rules


logger = get_logger(__name__)


class PreparedBlock(BaseModel):
    """A block after extraction and grouping, waiting for prices."""

    block: Block
    ledgers: list[TransactionLedger]
    addresses: dict[str, frozenset[str]]
    groups: list[AttributionGroup]

    model_config = ConfigDict(frozen=True)

    def ledger_map(self) -> dict[int, TransactionLedger]:
        return {ledger.tx_index: ledger for ledger in self.ledgers}

    def assets(self) -> set[str]:
        """Assets with a watched-wallet delta, plus the native asset."""
        found = {NATIVE_ASSET}
        ledgers = self.ledger_map()
        for group in self.groups:
            own = frozenset().union(*(self.addresses[name] for name in group.wallets))
            for index in group.members:
                found.update(d.asset for d in ledgers[index].deltas if d.address in own)
        return found


class BlockProcessor:
    """Turns raw block payloads into PnL records for a set of wallets.

    Example:
        ```python
        processor = BlockProcessor(wallets, chain=get_chain_info(1))
        records = await processor.process(payload, StaticPriceSource())
        ```
    """

    def __init__(
        self,
        wallets: Sequence[WatchedWallet],
        *,
        chain: ChainInfo,
        token_rules: Sequence[TokenTransferRule] = (),
        dialect: str | None = None,
        fee_credit: FeeCreditPolicy = FeeCreditPolicy.FULL,
        self_destruct: SelfDestructPolicy = SelfDestructPolicy.TRACE,
        conservation_tolerance: int = 0,
        aggregator: PnLAggregator | None = None,
    ) -> None:
        self.wallets = list(wallets)
        self.chain = chain
        self.dialect = dialect
        self.conservation_tolerance = conservation_tolerance
        self.extractor = DeltaExtractor(
            [*default_token_rules(chain.wrapped_native), *token_rules],
            self_destruct_policy=self_destruct,
        )
        self.grouper = AttributionGrouper(self.wallets)
        self.isolator = BuilderRewardIsolator(fee_credit)
        self.aggregator = aggregator or PnLAggregator(chain.wrapped_native)

    def prepare(self, payload: RawBlockPayload) -> PreparedBlock:
        """Normalize, extract and group one block.

        Raises:
            InconsistentAccountingError: If a successful transaction does not
                conserve the native asset
        """
        block = normalize_block(payload, self.dialect or payload.dialect)
        ledgers = self.extractor.extract_block(block)

        for ledger in ledgers:
            check_conservation(ledger, self.conservation_tolerance)

        addresses = resolve_wallet_addresses(self.wallets, ledgers)
        groups = self.grouper.group(block, ledgers, addresses)
        return PreparedBlock(block=block, ledgers=ledgers, addresses=addresses, groups=groups)

    def finalize(self, prepared: PreparedBlock, prices: PriceBook) -> list[PnLRecord]:
        """Isolate builder payments, build the records and update totals.

        Records are ordered by group, then by wallet name.
        """
        block = prepared.block
        ledgers = prepared.ledger_map()
        transactions = {tx.index: tx for tx in block.transactions}
        records: list[PnLRecord] = []
        producers_reported: set[str] = set()
        ordered = sorted(self.wallets, key=lambda wallet: wallet.name)

        for group in prepared.groups:
            for wallet in ordered:
                if wallet.name not in group.wallets:
                    continue
                own = prepared.addresses[wallet.name]

                payments: list[BuilderPayment] = []
                for index in group.members:
                    payment = self.isolator.isolate(
                        block, transactions[index], ledgers[index], wallet.name, own
                    )
                    if payment is not None:
                        payments.append(payment)

                fees, paid = 0, 0
                if wallet.is_producer(block.beneficiary) and wallet.name not in producers_reported:
                    producers_reported.add(wallet.name)
                    fees = producer_fees(block)
                    paid = proposer_payment(block, prepared.ledgers, own)

                records.append(
                    self.aggregator.build_record(
                        block,
                        group,
                        wallet,
                        own,
                        ledgers,
                        prices,
                        payments=payments,
                        producer_fees=fees,
                        proposer_payment=paid,
                    )
                )

        for wallet in ordered:
            if not wallet.is_producer(block.beneficiary) or wallet.name in producers_reported:
                continue
            fees = producer_fees(block)
            if fees == 0:
                continue
            group = AttributionGroup(
                group_id=f"{block.number}-producer",
                block_number=block.number,
                members=[],
                wallets=[wallet.name],
            )
            records.append(
                self.aggregator.build_record(
                    block,
                    group,
                    wallet,
                    prepared.addresses[wallet.name],
                    ledgers,
                    prices,
                    producer_fees=fees,
                )
            )

        for record in records:
            self.aggregator.record(record)
        return records

    async def process(self, payload: RawBlockPayload, prices: PriceSource) -> list[PnLRecord]:
        """Run the whole pipeline for one block.

        Raises:
            InconsistentAccountingError: If conservation is violated; no
                records are produced for the block
        """
        prepared = self.prepare(payload)
        if not prepared.groups and not any(
            wallet.is_producer(prepared.block.beneficiary) for wallet in self.wallets
        ):
            return []
        book = await prefetch_prices(prices, prepared.assets(), prepared.block.number)
        return self.finalize(prepared, book)


__all__ = [
    "BlockProcessor",
    "PreparedBlock",
]
