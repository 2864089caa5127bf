"""Tests for the Telegram notifier."""

import json

from decimal import Decimal

import httpx
import pytest

from pytest_httpx import HTTPXMock

from wallet_watcher.notify.base import NotificationContext
from wallet_watcher.notify.telegram import (
    TelegramNotifier,
    escape,
    phalcon_link,
    render_record,
    token_owner_link,
)
from wallet_watcher.notify.tokens import TokenInfo
from wallet_watcher.pnl.chains import ChainInfo
from wallet_watcher.pnl.models import BuilderPayment, PnLRecord, TxRef
from tests.factories import TOKEN, WALLET, tx_hash


API_URL = "https://telegram.test"


def record(**overrides: object) -> PnLRecord:
    fields: dict[str, object] = {
        "wallet": "searcher",
        "address": WALLET,
        "block_number": 100,
        "group_id": "100-0",
        "transactions": [TxRef(index=0, hash=tx_hash(0))],
        "native_delta": -1_001_000_000_000_000_000,
    }
    fields.update(overrides)
    return PnLRecord.model_validate(fields)


@pytest.fixture
def context(mainnet: ChainInfo) -> NotificationContext:
    return NotificationContext(chain=mainnet, chain_name="mainnet", block_number=100)


class TestEscape:
    def test_special_characters(self) -> None:
        assert escape("-1.5 (x)_*") == "\\-1\\.5 \\(x\\)\\_\\*"

    def test_plain_text(self) -> None:
        assert escape("searcher") == "searcher"


class TestLinks:
    """Tests for explorer link helpers."""

    def test_token_owner_link(self, mainnet: ChainInfo) -> None:
        link = token_owner_link(mainnet, TOKEN, WALLET, "TKN")

        assert link == f"[TKN](https://etherscan.io/token/{TOKEN}?a={WALLET})"

    def test_unsupported_chain(self, devnet: ChainInfo) -> None:
        """Test chains without explorer or Phalcon support get a placeholder."""
        assert phalcon_link(devnet, "0xaa") == (
            "[Phalcon](https://app.blocksec.com/explorer/tx/unsupported-chain/0xaa)"
        )
        assert "unsupported-chain/tx/0xaa" in render_record(
            record(transactions=[TxRef(index=0, hash="0xaa")]),
            NotificationContext(chain=devnet, chain_name="devnet", block_number=100),
            {},
        )


class TestRenderRecord:
    """Tests for render_record."""

    def test_simple_record(self, context: NotificationContext) -> None:
        """Test the full message of a plain native-only record."""
        hash_ = tx_hash(0)

        text = render_record(record(), context, {})

        assert text == (
            f"[searcher](https://etherscan.io/address/{WALLET}) · \\#MAINNET · "
            "[100](https://etherscan.io/block/100)\n"
            "ETH: *\\-1\\.001*\n"
            f"\\[`0`\\] ✓[0x0000\\.\\.0001](https://etherscan.io/tx/{hash_}) "
            f"\\[[Phalcon](https://app.blocksec.com/explorer/tx/eth/{hash_})\\]\n"
        )

    def test_token_lines(self, context: NotificationContext) -> None:
        """Test token amounts use the resolved symbol and decimals."""
        tokens = {TOKEN: TokenInfo(symbol="VERYLONGSYMBOLNAME", decimals=6)}

        text = render_record(
            record(
                token_deltas={TOKEN: 12_500_000},
                token_values={TOKEN: Decimal("0.005")},
                total_value=Decimal("-0.996"),
            ),
            context,
            tokens,
        )

        assert f"[VERYLONGSYMB](https://etherscan.io/token/{TOKEN}?a={WALLET}): 12\\.5" in text
        assert "Value: \\-0\\.996" in text

    def test_unknown_token_falls_back_to_address(self, context: NotificationContext) -> None:
        text = render_record(record(token_deltas={TOKEN: -300}), context, {})

        assert "\\-300 wei" in text

    def test_builder_and_producer_lines(self, context: NotificationContext) -> None:
        payment = BuilderPayment(amount=10**16, from_address=WALLET, tx_index=0, wallet="searcher")

        text = render_record(
            record(
                builder_reward=10**16,
                builder_payments=[payment],
                producer_fees=2 * 10**15,
                proposer_payment=5 * 10**16,
                unpriced_assets=[TOKEN],
                incomplete=True,
            ),
            context,
            {},
        )

        lines = text.splitlines()
        assert lines[0].endswith(" \\[B\\]")
        assert "Builder reward: 0\\.01" in lines
        assert "Producer fees: 0\\.002" in lines
        assert "VBribe: 0\\.05" in lines
        assert "Unpriced: 1" in lines
        assert "Incomplete accounting \\(self\\-destruct\\)" in lines

    def test_failed_transaction_marker(self, context: NotificationContext) -> None:
        text = render_record(
            record(transactions=[TxRef(index=3, hash=tx_hash(3)), TxRef(index=12, hash=tx_hash(12), success=False)]),
            context,
            {},
        )

        assert "\\[` 3`\\] ✓" in text
        assert "\\[`12`\\] ✗" in text

    def test_long_message_truncated(self, context: NotificationContext) -> None:
        """Test messages are cut at a line boundary below the Telegram limit."""
        transactions = [TxRef(index=i, hash=tx_hash(i)) for i in range(100)]

        text = render_record(record(transactions=transactions), context, {})

        assert len(text) <= 4096
        assert text.endswith(")\\]\n")


class TestTelegramNotifier:
    """Tests for TelegramNotifier.send."""

    @pytest.mark.asyncio
    async def test_posts_one_message_per_record(
        self, httpx_mock: HTTPXMock, context: NotificationContext
    ) -> None:
        httpx_mock.add_response(url=f"{API_URL}/bot123:abc/sendMessage", method="POST", json={"ok": True})
        httpx_mock.add_response(url=f"{API_URL}/bot123:abc/sendMessage", method="POST", json={"ok": True})

        async with httpx.AsyncClient() as client:
            notifier = TelegramNotifier("123:abc", "-100", client, thread_id="7", api_url=API_URL)
            await notifier.send([record(), record(wallet="other")], context)

        requests = httpx_mock.get_requests()
        assert len(requests) == 2
        body = json.loads(requests[0].content)
        assert body["chat_id"] == "-100"
        assert body["message_thread_id"] == "7"
        assert body["parse_mode"] == "MarkdownV2"
        assert body["disable_web_page_preview"] is True
        assert body["text"].startswith("[searcher]")

    @pytest.mark.asyncio
    async def test_rejected_message_raises(
        self, httpx_mock: HTTPXMock, context: NotificationContext
    ) -> None:
        """Test Telegram errors propagate to the dispatcher."""
        httpx_mock.add_response(status_code=400, json={"ok": False})

        async with httpx.AsyncClient() as client:
            notifier = TelegramNotifier("t", "-100", client, api_url=API_URL)
            with pytest.raises(httpx.HTTPStatusError):
                await notifier.send([record()], context)

    @pytest.mark.asyncio
    async def test_tokens_resolved_once(
        self, httpx_mock: HTTPXMock, context: NotificationContext
    ) -> None:
        """Test each token is looked up once for all records."""
        httpx_mock.add_response(json={"ok": True})
        httpx_mock.add_response(json={"ok": True})

        class Resolver:
            calls: list[str] = []

            async def resolve(self, token: str) -> TokenInfo:
                self.calls.append(token)
                return TokenInfo(symbol="TKN", decimals=0)

        resolver = Resolver()
        async with httpx.AsyncClient() as client:
            notifier = TelegramNotifier("t", "-100", client, resolver, api_url=API_URL)  # type: ignore[arg-type]
            await notifier.send(
                [record(token_deltas={TOKEN: 5}), record(wallet="b", token_deltas={TOKEN: 6})],
                context,
            )

        assert resolver.calls == [TOKEN]
        assert "TKN" in json.loads(httpx_mock.get_requests()[1].content)["text"]
