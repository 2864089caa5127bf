"""Tests for replaying recorded cases."""

import io

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from rich.console import Console

from wallet_watcher.backtest import (
    CASE_WALLET,
    BacktestCase,
    BacktestRunner,
    CaseResult,
    dump_cases,
    generated_cases,
    load_cases,
)
from wallet_watcher.errors import ConfigError, RpcFatalError
from wallet_watcher.helpers.models import RawBlockPayload
from wallet_watcher.pnl.chains import ChainInfo
from wallet_watcher.pnl.models import PnLRecord
from tests.factories import BUILDER, ETHER, OTHER, POOL, WALLET, geth_payload, simple_transfer


CASES = f"""
- remark: plain transfer
  block: 100
  address: "{WALLET.upper().replace("0X", "0x")}"
- block: 101
  address: "{WALLET}"
  builder: "{BUILDER}"
  other_addresses: ["{POOL}"]
  include_recipient: true
"""


class FakeRPC:
    async def fetch_block_payload(self, client: object, height: int) -> RawBlockPayload:
        if height == 404:
            msg = "header not found"
            raise RpcFatalError(msg)
        return geth_payload([simple_transfer(0, WALLET, OTHER, ETHER)], number=height)


def runner(chain: ChainInfo) -> tuple[BacktestRunner, io.StringIO]:
    output = io.StringIO()
    return (
        BacktestRunner(
            FakeRPC(),  # type: ignore[arg-type]
            MagicMock(),
            chain,
            console=Console(file=output, width=200),
        ),
        output,
    )


class TestCaseFile:
    """Tests for load_cases and dump_cases."""

    def test_load(self, tmp_path: Path) -> None:
        path = tmp_path / "cases.yaml"
        path.write_text(CASES)

        first, second = load_cases(path)

        assert first.address == WALLET
        assert first.records is None
        assert second.other_addresses == [POOL]
        assert second.include_recipient

    def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "cases.yaml"
        path.write_text("")

        assert load_cases(path) == []

    def test_invalid_file(self, tmp_path: Path) -> None:
        path = tmp_path / "cases.yaml"
        path.write_text("- remark: no block\n")

        with pytest.raises(ConfigError, match="Cannot load test data"):
            load_cases(path)

    def test_dump_keeps_order_and_records(self, tmp_path: Path) -> None:
        path = tmp_path / "cases.yaml"
        record = PnLRecord(
            wallet=CASE_WALLET, address=WALLET, block_number=100, group_id="100-0", native_delta=-5
        )
        cases = [BacktestCase(block=100, address=WALLET, records=[record]), BacktestCase(block=7, address=OTHER)]

        dump_cases(path, cases)

        assert load_cases(path) == cases
        assert "remark" not in path.read_text()


class TestBacktestCase:
    def test_str(self) -> None:
        assert str(BacktestCase(block=100, address=WALLET)) == f"{WALLET}:100"

    def test_debug_command(self) -> None:
        case = BacktestCase(
            block=100, address=WALLET, builder=BUILDER, other_addresses=[POOL, OTHER], include_recipient=True
        )

        assert case.debug_command() == (
            f"LOG_LEVEL=DEBUG wallet-watcher run-block 100 {WALLET} -a {POOL},{OTHER} "
            f"-b {BUILDER} --include-recipient"
        )

    def test_passed(self) -> None:
        case = BacktestCase(block=100, address=WALLET, records=[])

        assert CaseResult(index=0, case=case, records=[]).passed
        assert not CaseResult(index=0, case=case, records=None, error="boom").passed
        assert not CaseResult(index=0, case=case.model_copy(update={"records": None}), records=[]).passed


class TestBacktestRunner:
    """Tests for BacktestRunner."""

    @pytest.mark.asyncio
    async def test_results_in_case_order(self, mainnet: ChainInfo) -> None:
        backtest, _ = runner(mainnet)
        cases = [BacktestCase(block=b, address=WALLET) for b in (102, 100, 101)]

        results = await backtest.run(cases)

        assert [r.case.block for r in results] == [102, 100, 101]
        assert [r.index for r in results] == [0, 1, 2]
        [record] = results[0].records or []
        assert record.wallet == CASE_WALLET
        assert record.native_delta == -ETHER - 21_000 * 10**9

    @pytest.mark.asyncio
    async def test_failed_case(self, mainnet: ChainInfo) -> None:
        backtest, _ = runner(mainnet)

        result = await backtest.run_case(3, BacktestCase(block=404, address=WALLET))

        assert result.error == "header not found"
        assert not result.passed

    @pytest.mark.asyncio
    async def test_generate_then_compare(self, mainnet: ChainInfo) -> None:
        """Test generated expectations pass on the next replay."""
        backtest, output = runner(mainnet)
        cases = [BacktestCase(block=100, address=WALLET), BacktestCase(block=404, address=WALLET)]

        first = await backtest.run(cases)
        assert not backtest.display(first)
        assert "Failed Cases" in output.getvalue()

        regenerated = generated_cases(first)[:1]
        second = await backtest.run(regenerated)

        assert backtest.display(second)
        assert "All tests passed" in output.getvalue()

    @pytest.mark.asyncio
    async def test_unmatched_shows_debug_command(self, mainnet: ChainInfo) -> None:
        backtest, output = runner(mainnet)

        results = await backtest.run([BacktestCase(block=100, address=WALLET, records=[])])

        assert not backtest.display(results)
        assert "Unmatched Case #0" in output.getvalue()
        assert "wallet-watcher run-block 100" in output.getvalue()
