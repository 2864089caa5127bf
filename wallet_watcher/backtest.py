"""Replay recorded blocks and compare the computed records with stored ones.

A test data file is a YAML list of cases:

```yaml
- remark: sandwich with builder tip
  block: 19000000
  address: "0x1111111111111111111111111111111111111111"
  builder: "0x2222222222222222222222222222222222222222"
  records: [...]
```

With ``--generate`` the ``records`` of every case are recomputed and written
back to the file, in the original case order.
"""

import time

from collections.abc import Sequence
from pathlib import Path

import asyncio

import httpx
import yaml

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator
from rich.console import Console
from rich.table import Table

from wallet_watcher.errors import ConfigError, RpcError, WalletWatcherError
from wallet_watcher.helpers.constants import BACKTEST_CONCURRENCY
from wallet_watcher.helpers.http import create_http_client
from wallet_watcher.helpers.logging import get_logger
from wallet_watcher.helpers.progress import track_progress
from wallet_watcher.helpers.rpc import RPCClient
from wallet_watcher.pnl.builder import FeeCreditPolicy
from wallet_watcher.pnl.chains import ChainInfo, get_chain_info
from wallet_watcher.pnl.models import PnLRecord, WatchedWallet
from wallet_watcher.pnl.pricing import PriceSource, StaticPriceSource
from wallet_watcher.pnl.processor import BlockProcessor
from wallet_watcher.pnl.token_rules import TokenTransferRule


logger = get_logger(__name__)

CASE_WALLET = "testcase"


class BacktestCase(BaseModel):
    """One wallet at one block, with the expected records."""

    remark: str = ""
    block: int
    address: str
    builder: str | None = None
    other_addresses: list[str] = Field(default_factory=list)
    include_recipient: bool = False
    records: list[PnLRecord] | None = None

    @field_validator("address", "builder")
    @classmethod
    def _lowercase(cls, value: str | None) -> str | None:
        return value.lower() if value else value

    @field_validator("other_addresses")
    @classmethod
    def _lowercase_all(cls, value: list[str]) -> list[str]:
        return [item.lower() for item in value]

    def __str__(self) -> str:
        return f"{self.address}:{self.block}"

    def wallet(self) -> WatchedWallet:
        return WatchedWallet(
            name=CASE_WALLET,
            address=self.address,
            builder=self.builder,
            other_addresses=self.other_addresses,
            include_recipient=self.include_recipient,
        )

    def debug_command(self) -> str:
        """The ``run-block`` invocation reproducing this case."""
        cmd = f"LOG_LEVEL=DEBUG wallet-watcher run-block {self.block} {self.address}"
        if self.other_addresses:
            cmd += f" -a {','.join(self.other_addresses)}"
        if self.builder:
            cmd += f" -b {self.builder}"
        if self.include_recipient:
            cmd += " --include-recipient"
        return cmd


class CaseResult(BaseModel):
    index: int
    case: BacktestCase
    records: list[PnLRecord] | None = None
    error: str | None = None
    elapsed: float = 0.0

    @property
    def passed(self) -> bool:
        return self.error is None and self.records == self.case.records


_CASES = TypeAdapter(list[BacktestCase])


def load_cases(path: str | Path) -> list[BacktestCase]:
    """Read a test data file.

    Raises:
        ConfigError: If the file cannot be read or parsed
    """
    path = Path(path)
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        return _CASES.validate_python(raw or [])
    except (OSError, yaml.YAMLError, ValidationError) as e:
        msg = f"Cannot load test data {path}: {e}"
        raise ConfigError(msg) from e


def dump_cases(path: str | Path, cases: Sequence[BacktestCase]) -> None:
    data = [case.model_dump(mode="json", exclude_defaults=True) for case in cases]
    Path(path).write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")


class BacktestRunner:
    """Runs cases concurrently against one RPC endpoint."""

    def __init__(
        self,
        rpc: RPCClient,
        client: httpx.AsyncClient,
        chain: ChainInfo,
        *,
        token_rules: Sequence[TokenTransferRule] = (),
        fee_credit: FeeCreditPolicy = FeeCreditPolicy.FULL,
        prices: PriceSource | None = None,
        concurrency: int = BACKTEST_CONCURRENCY,
        console: Console | None = None,
    ) -> None:
        self.rpc = rpc
        self.client = client
        self.chain = chain
        self.token_rules = list(token_rules)
        self.fee_credit = fee_credit
        self.prices = prices or StaticPriceSource()
        self.semaphore = asyncio.Semaphore(concurrency)
        self.console = console or Console()

    async def run_case(self, index: int, case: BacktestCase) -> CaseResult:
        start = time.perf_counter()
        processor = BlockProcessor(
            [case.wallet()],
            chain=self.chain,
            token_rules=self.token_rules,
            fee_credit=self.fee_credit,
        )
        try:
            async with self.semaphore:
                payload = await self.rpc.fetch_block_payload(self.client, case.block)
            records = await processor.process(payload, self.prices)
        except (RpcError, WalletWatcherError) as e:
            logger.warning("[%s] failed: %s", case, e)
            return CaseResult(
                index=index, case=case, error=str(e), elapsed=time.perf_counter() - start
            )
        return CaseResult(
            index=index, case=case, records=records, elapsed=time.perf_counter() - start
        )

    async def run(self, cases: Sequence[BacktestCase]) -> list[CaseResult]:
        """Run every case; results keep the order of ``cases``."""
        results: list[CaseResult] = []
        with track_progress("Replaying cases", len(cases), self.console) as (progress, task_id):
            for next_result in asyncio.as_completed(
                [self.run_case(i, case) for i, case in enumerate(cases)]
            ):
                results.append(await next_result)
                progress.update(task_id, advance=1)
        results.sort(key=lambda result: result.index)
        return results

    def display(self, results: Sequence[CaseResult]) -> bool:
        """Print a results table and the details of unmatched cases.

        Returns:
            True when every case passed
        """
        table = Table(title="Backtest Results")
        table.add_column("#", justify="right", style="dim")
        table.add_column("Case", style="cyan")
        table.add_column("Remark", style="magenta")
        table.add_column("Elapsed", justify="right", style="yellow")
        table.add_column("Status", justify="center", style="bold")

        for result in results:
            if result.error is not None:
                status = "[red]Failed[/red]"
            elif result.passed:
                status = "[green]✓[/green]"
            else:
                status = "[red]Unmatched[/red]"
            table.add_row(
                str(result.index),
                str(result.case),
                result.case.remark,
                f"{result.elapsed:.2f}s",
                status,
            )
        self.console.print(table)

        unmatched = [r for r in results if r.error is None and not r.passed]
        failed = [r for r in results if r.error is not None]
        for i, result in enumerate(unmatched):
            self.console.print(f"\n[bold]=== Unmatched Case #{i}: {result.case} ===[/bold]")
            self.console.print(f"Debug command: {result.case.debug_command()}")
            self.console.print("Expected:")
            self.console.print(result.case.records)
            self.console.print("Actual:")
            self.console.print(result.records)

        if failed:
            self.console.print("\n[bold]=== Failed Cases ===[/bold]")
            for result in failed:
                self.console.print(f"{result.case}: {result.error}")

        if not unmatched and not failed:
            self.console.print("\n[bold green]✓ All tests passed![/bold green]")
            return True
        return False


def generated_cases(results: Sequence[CaseResult]) -> list[BacktestCase]:
    """Cases with their ``records`` replaced by the computed ones."""
    return [result.case.model_copy(update={"records": result.records}) for result in results]


async def backtest(
    path: str | Path,
    rpc_url: str,
    *,
    generate: bool = False,
    console: Console | None = None,
) -> bool:
    """Replay a test data file.

    Args:
        path: YAML test data file
        rpc_url: Archive node with tracing enabled
        generate: Rewrite the expected records instead of comparing
        console: Rich console for output

    Returns:
        True when every case passed (always True when generating)

    Raises:
        ConfigError: If the test data cannot be loaded
        RpcError: If the endpoint is unreachable
    """
    cases = load_cases(path)
    console = console or Console()

    async with create_http_client() as client:
        rpc = RPCClient(rpc_url)
        chain = get_chain_info(await rpc.get_chain_id(client))
        runner = BacktestRunner(rpc, client, chain, console=console)
        results = await runner.run(cases)

    if generate:
        dump_cases(path, generated_cases(results))
        console.print(f"[dim]Wrote {len(results)} cases to {path}[/dim]")
        return True
    return runner.display(results)


__all__ = [
    "BacktestCase",
    "BacktestRunner",
    "CaseResult",
    "backtest",
    "dump_cases",
    "generated_cases",
    "load_cases",
]
