"""Command line interface.

Usage:
    wallet-watcher start config.yaml
    wallet-watcher run-block 19000000 0x1111... -b 0x2222... -a 0x3333,0x4444
    wallet-watcher run-tx 0xabcd...
    wallet-watcher backtest tests.yaml [--generate]

RPC URLs default to ``ETH_RPC_URL`` (from the environment or ``.env``).
"""

from argparse import ArgumentParser, Namespace
import sys

from collections.abc import Sequence

import asyncio

from rich.console import Console
from rich.table import Table

from wallet_watcher.backtest import backtest
from wallet_watcher.errors import ConfigError, RpcError
from wallet_watcher.helpers.config import get_eth_rpc_url
from wallet_watcher.helpers.http import create_http_client
from wallet_watcher.helpers.logging import get_logger, set_log_level
from wallet_watcher.helpers.parsers import format_ether_trimmed, format_short_hash
from wallet_watcher.helpers.rpc import RPCClient
from wallet_watcher.live import run
from wallet_watcher.notify.base import NotificationContext
from wallet_watcher.notify.telegram import render_record
from wallet_watcher.notify.tokens import TokenInfoResolver
from wallet_watcher.pnl.chains import get_chain_info
from wallet_watcher.pnl.extractor import DeltaExtractor
from wallet_watcher.pnl.models import NATIVE_ASSET, PnLRecord, TransactionLedger, WatchedWallet
from wallet_watcher.pnl.normalizer import normalize_block
from wallet_watcher.pnl.pricing import StaticPriceSource
from wallet_watcher.pnl.processor import BlockProcessor
from wallet_watcher.pnl.token_rules import default_token_rules
from wallet_watcher.settings import load_config


logger = get_logger(__name__)

console = Console()


def _address_list(value: str) -> list[str]:
    return [item.strip().lower() for item in value.split(",") if item.strip()]


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(
        prog="wallet-watcher", description="Per-block PnL of watched EVM wallets"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    start = subparsers.add_parser("start", help="Run the live pipeline")
    start.add_argument(
        "config",
        nargs="?",
        default="config.yaml",
        help="Path to the config file (default: config.yaml)",
    )
    start.set_defaults(handler=cmd_start)

    run_block = subparsers.add_parser("run-block", help="Process one block for one wallet")
    run_block.add_argument("block", type=int, help="Block number")
    run_block.add_argument("address", type=str.lower, help="The address of the wallet")
    run_block.add_argument("-b", "--builder", type=str.lower, help="Builder address of the wallet")
    run_block.add_argument(
        "-a",
        "--address",
        dest="other_addresses",
        type=_address_list,
        default=[],
        help="Other addresses to include, comma separated",
    )
    run_block.add_argument(
        "--include-recipient",
        action="store_true",
        help="Count the recipient of the wallet's transactions as the wallet",
    )
    run_block.add_argument("-r", "--rpc-url", help="RPC URL (default: ETH_RPC_URL)")
    run_block.set_defaults(handler=cmd_run_block)

    run_tx = subparsers.add_parser("run-tx", help="Print the balance changes of one transaction")
    run_tx.add_argument("hash", help="Transaction hash")
    run_tx.add_argument("-r", "--rpc-url", help="RPC URL (default: ETH_RPC_URL)")
    run_tx.set_defaults(handler=cmd_run_tx)

    backtest_cmd = subparsers.add_parser("backtest", help="Replay recorded test cases")
    backtest_cmd.add_argument("test_data", help="Path to the YAML test data")
    backtest_cmd.add_argument("-r", "--rpc-url", help="RPC URL (default: ETH_RPC_URL)")
    backtest_cmd.add_argument(
        "--generate", action="store_true", help="Rewrite the expected records"
    )
    backtest_cmd.set_defaults(handler=cmd_backtest)

    return parser


async def run_block(
    rpc_url: str, block_number: int, wallet: WatchedWallet
) -> tuple[list[PnLRecord], list[str]]:
    """Process one block for one wallet.

    Returns:
        The records and their rendered Telegram messages
    """
    async with create_http_client() as client:
        rpc = RPCClient(rpc_url)
        chain = get_chain_info(await rpc.get_chain_id(client))
        payload = await rpc.fetch_block_payload(client, block_number)
        records = await BlockProcessor([wallet], chain=chain).process(
            payload, StaticPriceSource()
        )

        resolver = TokenInfoResolver(rpc, client, chain.chain_id)
        context = NotificationContext(
            chain=chain, chain_name=chain.name, block_number=block_number
        )
        messages = []
        for record in records:
            tokens = {token: await resolver.resolve(token) for token in record.token_deltas}
            messages.append(render_record(record, context, tokens))
    return records, messages


async def run_tx(rpc_url: str, tx_hash: str) -> TransactionLedger | None:
    """Balance-delta ledger of one transaction, None when its trace is unusable."""
    async with create_http_client() as client:
        rpc = RPCClient(rpc_url)
        chain = get_chain_info(await rpc.get_chain_id(client))
        payload = await rpc.fetch_transaction_payload(client, tx_hash)

    block = normalize_block(payload)
    for skipped in block.skipped:
        logger.error("Transaction %s skipped: %s", skipped.hash or tx_hash, skipped.reason)
    if not block.transactions:
        return None
    extractor = DeltaExtractor(default_token_rules(chain.wrapped_native))
    return extractor.extract(block.transactions[0])


def display_records(records: Sequence[PnLRecord]) -> None:
    if not records:
        console.print("[yellow]No activity of the wallet in this block[/yellow]")
        return

    table = Table(title="PnL Records")
    table.add_column("Group", style="cyan")
    table.add_column("Pattern", style="magenta")
    table.add_column("Txs", style="dim")
    table.add_column("Native", justify="right", style="green")
    table.add_column("Tokens", style="yellow")
    table.add_column("Value", justify="right")
    table.add_column("Builder reward", justify="right")

    for record in records:
        table.add_row(
            record.group_id,
            record.pattern,
            ", ".join(str(tx.index) for tx in record.transactions),
            format_ether_trimmed(record.native_delta),
            "\n".join(f"{token}: {amount}" for token, amount in record.token_deltas.items()),
            f"{record.total_value:f}",
            format_ether_trimmed(record.builder_reward),
        )
    console.print(table)


def display_ledger(ledger: TransactionLedger) -> None:
    status = "[green]success[/green]" if ledger.success else "[red]reverted[/red]"
    table = Table(title=f"Tx {format_short_hash(ledger.tx_hash)} ({ledger.tx_index})")
    table.add_column("Address", style="cyan")
    table.add_column("Asset", style="magenta")
    table.add_column("Amount", justify="right", style="green")

    for address, assets in sorted(ledger.net().items()):
        for asset, amount in sorted(assets.items()):
            shown = format_ether_trimmed(amount) if asset == NATIVE_ASSET else str(amount)
            table.add_row(address, asset, shown)

    console.print(table)
    console.print(f"Status: {status}, gas cost: {format_ether_trimmed(ledger.gas_cost)}")
    if ledger.incomplete:
        console.print("[yellow]Accounting is incomplete (self-destruct)[/yellow]")


def cmd_start(args: Namespace) -> int:
    settings = load_config(args.config)
    if settings.log_level:
        set_log_level(settings.log_level)
    asyncio.run(run(settings))
    return 0


def cmd_run_block(args: Namespace) -> int:
    wallet = WatchedWallet(
        name="unnamed",
        address=args.address,
        builder=args.builder,
        other_addresses=args.other_addresses,
        include_recipient=args.include_recipient,
    )
    records, messages = asyncio.run(run_block(get_eth_rpc_url(args.rpc_url), args.block, wallet))
    display_records(records)
    for message in messages:
        console.print("\n[bold]Message:[/bold]")
        console.print(message, markup=False, highlight=False)
    return 0


def cmd_run_tx(args: Namespace) -> int:
    ledger = asyncio.run(run_tx(get_eth_rpc_url(args.rpc_url), args.hash))
    if ledger is None:
        return 1
    display_ledger(ledger)
    return 0


def cmd_backtest(args: Namespace) -> int:
    passed = asyncio.run(
        backtest(
            args.test_data,
            get_eth_rpc_url(args.rpc_url),
            generate=args.generate,
            console=console,
        )
    )
    return 0 if passed else 1


def main(argv: Sequence[str] | None = None) -> int:
    """Parse arguments and run the selected command.

    Returns:
        Process exit code: 0 on success, 1 on configuration or RPC failure
    """
    args = build_parser().parse_args(argv)
    try:
        return args.handler(args)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
    except ValueError as e:
        logger.error("%s", e)
    except RpcError as e:
        logger.error("RPC endpoint unreachable: %s", e)
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, exiting...")
        return 0
    return 1


if __name__ == "__main__":
    sys.exit(main())
