"""End-to-end tests for the block processor."""

from decimal import Decimal

import pytest

from wallet_watcher.errors import InconsistentAccountingError
from wallet_watcher.pnl.builder import FeeCreditPolicy
from wallet_watcher.pnl.chains import ChainInfo
from wallet_watcher.pnl.models import NATIVE_ASSET, BalanceDelta, TransactionLedger, WatchedWallet
from wallet_watcher.pnl.pricing import PriceBook, PriceQuote, StaticPriceSource
from wallet_watcher.pnl.processor import BlockProcessor
from tests.factories import (
    BUILDER,
    ETHER,
    GWEI,
    OTHER,
    POOL,
    PROPOSER,
    ROUTER,
    TOKEN,
    VICTIM,
    WALLET,
    contract_tip,
    geth_payload,
    simple_transfer,
    swap,
)


class UnbalancedExtractor:
    """Extractor that credits value out of thin air."""

    def extract_block(self, block):
        return [
            TransactionLedger(
                tx_index=tx.index,
                tx_hash=tx.hash,
                sender=tx.sender,
                to=tx.to,
                deltas=[
                    BalanceDelta(address=tx.sender, asset=NATIVE_ASSET, amount=5, tx_index=tx.index)
                ],
            )
            for tx in block.transactions
        ]


class TestBlockProcessor:
    """Tests for BlockProcessor.process."""

    @pytest.mark.asyncio
    async def test_plain_transfer_end_to_end(
        self, devnet: ChainInfo, searcher: WatchedWallet
    ) -> None:
        """Test a wallet paying one ether plus 0.001 ether gas."""
        payload = geth_payload([simple_transfer(0, WALLET, OTHER, ETHER, gas_used=1_000_000)])
        processor = BlockProcessor([searcher], chain=devnet)

        [record] = await processor.process(payload, StaticPriceSource())

        assert record.native_delta == -1_001_000_000_000_000_000
        assert record.token_deltas == {}
        assert record.builder_payments == []
        assert record.builder_reward == 0
        assert record.total_value == Decimal("-1.001")
        assert record.group_id == "100-0"

    @pytest.mark.asyncio
    async def test_reprocessing_is_identical(
        self, mainnet: ChainInfo, searcher: WatchedWallet
    ) -> None:
        """Test processing the same payload twice gives identical records."""
        payload = geth_payload(
            [swap(0, WALLET, POOL), swap(1, VICTIM, POOL), swap(2, WALLET, POOL)]
        )

        first = await BlockProcessor([searcher], chain=mainnet).process(payload, StaticPriceSource())
        second = await BlockProcessor([searcher], chain=mainnet).process(payload, StaticPriceSource())

        assert [r.model_dump_json() for r in first] == [r.model_dump_json() for r in second]
        assert first[0].unpriced_assets == [TOKEN]

    @pytest.mark.asyncio
    async def test_uninvolved_block(self, devnet: ChainInfo, searcher: WatchedWallet) -> None:
        payload = geth_payload([simple_transfer(0, OTHER, POOL, 1)])

        assert await BlockProcessor([searcher], chain=devnet).process(payload, StaticPriceSource()) == []

    @pytest.mark.asyncio
    async def test_inconsistent_accounting_withholds_block(
        self, devnet: ChainInfo, searcher: WatchedWallet
    ) -> None:
        """Test a conservation violation raises instead of emitting records."""
        processor = BlockProcessor([searcher], chain=devnet)
        processor.extractor = UnbalancedExtractor()
        payload = geth_payload([simple_transfer(0, WALLET, OTHER, 1)])

        with pytest.raises(InconsistentAccountingError):
            await processor.process(payload, StaticPriceSource())

        assert processor.aggregator.snapshot() == {}

    @pytest.mark.asyncio
    async def test_tolerance_allows_small_imbalance(
        self, devnet: ChainInfo, searcher: WatchedWallet
    ) -> None:
        processor = BlockProcessor([searcher], chain=devnet, conservation_tolerance=5)
        processor.extractor = UnbalancedExtractor()
        payload = geth_payload([simple_transfer(0, WALLET, OTHER, 1)])

        [record] = await processor.process(payload, StaticPriceSource())

        assert record.native_delta == 5

    @pytest.mark.asyncio
    async def test_builder_payment_recorded(self, devnet: ChainInfo, searcher: WatchedWallet) -> None:
        """Test a direct payment to the producer shows up as builder reward."""
        payload = geth_payload([simple_transfer(0, WALLET, BUILDER, 21_000 * GWEI + 1)])
        processor = BlockProcessor([searcher], chain=devnet, fee_credit=FeeCreditPolicy.NONE)

        [record] = await processor.process(payload, StaticPriceSource())

        assert record.builder_reward == 1
        assert [p.amount for p in record.builder_payments] == [1]

    @pytest.mark.asyncio
    async def test_tip_from_unlisted_contract(self, devnet: ChainInfo, searcher: WatchedWallet) -> None:
        """Test a bot contract outside the wallet paying the producer adds nothing to the wallet."""
        payload = geth_payload([contract_tip(0, WALLET, ROUTER, 5)])

        [record] = await BlockProcessor([searcher], chain=devnet).process(payload, StaticPriceSource())

        assert record.native_delta == -21_000 * GWEI
        assert record.builder_reward == 0
        assert record.builder_payments == []

    @pytest.mark.asyncio
    async def test_tip_from_listed_contract(self, devnet: ChainInfo) -> None:
        """Test a tip paid by one of the wallet's contracts is reported as builder reward."""
        wallet = WatchedWallet(name="searcher", address=WALLET, other_addresses=[ROUTER])
        payload = geth_payload([contract_tip(0, WALLET, ROUTER, 5)])

        [record] = await BlockProcessor([wallet], chain=devnet).process(payload, StaticPriceSource())

        assert record.native_delta == -21_000 * GWEI
        assert record.builder_reward == 5
        assert [(p.amount, p.from_address) for p in record.builder_payments] == [(5, WALLET)]

    @pytest.mark.asyncio
    async def test_producer_only_record(self, devnet: ChainInfo, producer: WatchedWallet) -> None:
        """Test a producer without own transactions still gets its fees."""
        payload = geth_payload([simple_transfer(0, OTHER, POOL, 1)])

        [record] = await BlockProcessor([producer], chain=devnet).process(payload, StaticPriceSource())

        assert record.group_id == "100-producer"
        assert record.transactions == []
        assert record.producer_fees == 21_000 * GWEI
        assert record.native_delta == 21_000 * GWEI

    @pytest.mark.asyncio
    async def test_producer_fees_on_first_group(self, devnet: ChainInfo, producer: WatchedWallet) -> None:
        """Test producer fees and proposer payment are attached once."""
        payload = geth_payload(
            [
                simple_transfer(0, OTHER, POOL, 1, gas_price=2 * GWEI),
                simple_transfer(1, WALLET, PROPOSER, 5, gas_price=0),
            ],
            base_fee=GWEI,
        )

        [record] = await BlockProcessor([producer], chain=devnet).process(payload, StaticPriceSource())

        assert record.group_id == "100-1"
        assert record.producer_fees == 21_000 * GWEI
        assert record.proposer_payment == 5

    @pytest.mark.asyncio
    async def test_records_ordered_by_group_then_wallet(self, devnet: ChainInfo) -> None:
        zed = WatchedWallet(name="zed", address=WALLET)
        amy = WatchedWallet(name="amy", address=OTHER)
        payload = geth_payload([
            simple_transfer(0, WALLET, POOL, 1),
            simple_transfer(1, WALLET, OTHER, 1),
        ])

        records = await BlockProcessor([zed, amy], chain=devnet).process(payload, StaticPriceSource())

        assert [(r.group_id, r.wallet) for r in records] == [
            ("100-0", "zed"),
            ("100-1", "amy"),
            ("100-1", "zed"),
        ]

    @pytest.mark.asyncio
    async def test_running_totals(self, devnet: ChainInfo, searcher: WatchedWallet) -> None:
        processor = BlockProcessor([searcher], chain=devnet)
        payload = geth_payload([simple_transfer(0, WALLET, OTHER, 10, gas_price=0)])

        await processor.process(payload, StaticPriceSource())
        await processor.process(payload, StaticPriceSource())

        assert processor.aggregator.snapshot()["searcher"].native_delta == -20


class TestPrepareFinalize:
    """Tests for the two-step API."""

    def test_assets(self, mainnet: ChainInfo, searcher: WatchedWallet) -> None:
        """Test only assets the wallet holds deltas in are requested."""
        processor = BlockProcessor([searcher], chain=mainnet)

        prepared = processor.prepare(geth_payload([swap(0, WALLET, POOL), swap(1, OTHER, POOL, token=VICTIM)]))

        assert prepared.assets() == {NATIVE_ASSET, TOKEN}

    def test_finalize_with_prices(self, mainnet: ChainInfo, searcher: WatchedWallet) -> None:
        processor = BlockProcessor([searcher], chain=mainnet)
        prepared = processor.prepare(geth_payload([swap(0, WALLET, POOL, gas_used=0)]))
        book = PriceBook(
            100,
            {
                NATIVE_ASSET: PriceQuote(price=Decimal(2000), decimals=18),
                TOKEN: PriceQuote(price=Decimal(2), decimals=0),
            },
        )

        [record] = processor.finalize(prepared, book)

        assert record.token_values == {TOKEN: Decimal(2000)}
        assert record.total_value == Decimal(0)
