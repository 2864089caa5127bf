"""Live wallet watcher.

One WalletWatcher runs per configured chain, all under one event loop:

1. Head tracking: a websocket newHeads subscription, or eth_blockNumber
   polling when no ws_url is configured
2. Prefetch: payloads of the next heights are fetched concurrently, bounded
   by the chain's prefetch window
3. Emission: blocks are processed strictly in height order, records are sent
   to the notifiers and stored in the history store

SIGINT/SIGTERM stop scheduling new fetches; the block being processed is
finished before the watcher exits.

Usage:
    wallet-watcher start config.yaml
"""

import json
import signal

from collections.abc import Sequence

import asyncio

import httpx

from sqlalchemy.exc import SQLAlchemyError
from websockets.asyncio.client import ClientConnection, connect

from wallet_watcher.errors import InconsistentAccountingError, RpcError
from wallet_watcher.helpers.constants import HEADS_QUEUE_SIZE, POLL_INTERVAL
from wallet_watcher.helpers.http import create_http_client, log_and_suppress_errors
from wallet_watcher.helpers.logging import get_logger
from wallet_watcher.helpers.models import BlockHeader, RawBlockPayload
from wallet_watcher.helpers.parsers import parse_hex_int
from wallet_watcher.helpers.rpc import RPCClient
from wallet_watcher.history.store import HistoryStore
from wallet_watcher.notify.base import NotificationContext, NotificationDispatcher, Notifier
from wallet_watcher.notify.log import LogNotifier
from wallet_watcher.notify.telegram import TelegramNotifier
from wallet_watcher.notify.tokens import TokenInfoResolver
from wallet_watcher.pnl.chains import ChainInfo, get_chain_info
from wallet_watcher.pnl.models import PnLRecord, WatchedWallet
from wallet_watcher.pnl.pricing import PriceSource, StaticPriceSource
from wallet_watcher.pnl.processor import BlockProcessor
from wallet_watcher.settings import ChainSettings, Settings, WalletSubscription


logger = get_logger(__name__)


class WalletWatcher:
    """Follows the head of one chain and reports PnL of its watched wallets."""

    def __init__(
        self,
        name: str,
        settings: ChainSettings,
        *,
        processor: BlockProcessor,
        rpc: RPCClient,
        client: httpx.AsyncClient,
        dispatcher: NotificationDispatcher,
        prices: PriceSource,
        history: HistoryStore | None = None,
    ) -> None:
        self.name = name
        self.settings = settings
        self.processor = processor
        self.rpc = rpc
        self.client = client
        self.dispatcher = dispatcher
        self.prices = prices
        self.history = history

        self.head: int | None = None
        self.next_height: int | None = settings.start_block
        self.head_event = asyncio.Event()
        self.semaphore = asyncio.Semaphore(settings.prefetch)
        self.pending: dict[int, asyncio.Task[RawBlockPayload]] = {}

        # Stats
        self.blocks_processed = 0
        self.blocks_skipped = 0
        self.reconnect_count = 0

        self.should_shutdown = False

    @property
    def chain(self) -> ChainInfo:
        return self.processor.chain

    def update_head(self, height: int) -> None:
        if self.head is None or height > self.head:
            self.head = height
            self.head_event.set()

    async def track_heads(self) -> None:
        if self.settings.ws_url:
            await self.connect_and_subscribe()
        else:
            await self.poll_heads()

    async def poll_heads(self) -> None:
        """Poll eth_blockNumber until shutdown."""
        while not self.should_shutdown:
            try:
                self.update_head(await self.rpc.get_block_number(self.client))
            except RpcError as e:
                logger.warning("%s: failed to poll block number: %s", self.name, e)
            await asyncio.sleep(POLL_INTERVAL)

    async def connect_and_subscribe(self) -> None:
        """Connect to the websocket and subscribe to newHeads with auto-reconnect."""
        retry_delay = 1.0
        max_retry_delay = 60.0

        while not self.should_shutdown:
            try:
                logger.info("%s: connecting to %s", self.name, self.settings.ws_url)
                async with connect(
                    self.settings.ws_url,
                    ping_interval=20,
                    ping_timeout=10,
                    max_queue=HEADS_QUEUE_SIZE,
                ) as websocket:
                    await websocket.send(
                        json.dumps({"id": 1, "method": "eth_subscribe", "params": ["newHeads"]})
                    )
                    response_data = json.loads(await websocket.recv())

                    if "result" in response_data:
                        logger.info(
                            "%s: subscribed to newHeads: %s", self.name, response_data["result"]
                        )
                        retry_delay = 1.0
                        await self._stream_heads(websocket)
                    else:
                        logger.error("%s: subscription failed: %s", self.name, response_data)

            except ConnectionError as e:
                logger.warning("%s: websocket connection closed: %s", self.name, e)
            except Exception:
                logger.exception("%s: websocket error", self.name)

            if not self.should_shutdown:
                self.reconnect_count += 1
                logger.info(
                    "%s: reconnecting in %s s (attempt %s)",
                    self.name,
                    retry_delay,
                    self.reconnect_count,
                )
                await asyncio.sleep(retry_delay)
                retry_delay = min(retry_delay * 2, max_retry_delay)

    async def _stream_heads(self, websocket: ClientConnection) -> None:
        async for message in websocket:
            if self.should_shutdown:
                break

            try:
                data = json.loads(message)
                if "params" in data and "result" in data["params"]:
                    header = BlockHeader.model_validate(data["params"]["result"])
                    height = parse_hex_int(header.number)
                    logger.debug("%s: new head #%s hash=%s...", self.name, height, header.hash[:10])
                    self.update_head(height)
            except json.JSONDecodeError:
                logger.exception("%s: failed to decode websocket message", self.name)
            except Exception:
                logger.exception("%s: error processing block header", self.name)

    async def _fetch(self, height: int) -> RawBlockPayload:
        async with self.semaphore:
            return await self.rpc.fetch_block_payload(self.client, height)

    def _schedule(self) -> None:
        """Start fetches for the heights inside the prefetch window."""
        if self.head is None or self.next_height is None or self.should_shutdown:
            return
        last = min(self.head, self.next_height + self.settings.prefetch - 1)
        for height in range(self.next_height, last + 1):
            if height not in self.pending:
                self.pending[height] = asyncio.create_task(self._fetch(height))

    async def _wait_for_head(self) -> None:
        try:
            await asyncio.wait_for(self.head_event.wait(), timeout=1.0)
        except TimeoutError:
            pass
        finally:
            self.head_event.clear()

    async def _cancel_pending(self) -> None:
        if not self.pending:
            return
        logger.info("%s: cancelling %s pending fetches", self.name, len(self.pending))
        for task in self.pending.values():
            task.cancel()
        await asyncio.gather(*self.pending.values(), return_exceptions=True)
        self.pending.clear()

    async def process_blocks(self) -> None:
        """Emit blocks in height order until shutdown."""
        logger.info("%s: block processor started", self.name)
        try:
            while not self.should_shutdown:
                if self.next_height is None and self.head is not None:
                    self.next_height = self.head
                self._schedule()

                if self.next_height is None or self.head is None or self.next_height > self.head:
                    await self._wait_for_head()
                    continue

                height = self.next_height
                task = self.pending.pop(height)
                try:
                    payload = await task
                except RpcError as e:
                    logger.error("%s: skipping block #%s: %s", self.name, height, e)
                    self.blocks_skipped += 1
                except Exception:
                    logger.exception("%s: skipping block #%s", self.name, height)
                    self.blocks_skipped += 1
                else:
                    try:
                        await self.handle_block(payload)
                    except Exception:
                        logger.exception("%s: failed to process block #%s", self.name, height)
                        self.blocks_skipped += 1
                self.next_height = height + 1
        finally:
            await self._cancel_pending()

    async def handle_block(self, payload: RawBlockPayload) -> list[PnLRecord]:
        """Process one fetched block, notify and store its records.

        Args:
            payload: Raw block payload

        Returns:
            The records that were sent to the notifiers
        """
        block_number = payload.block_number
        try:
            records = await self.processor.process(payload, self.prices)
        except InconsistentAccountingError as e:
            logger.critical(
                "%s: withholding records of block #%s: %s", self.name, block_number, e
            )
            return []

        self.blocks_processed += 1
        if not records:
            logger.debug("%s: block #%s has no watched activity", self.name, block_number)
            return []

        fresh = await self._unrecorded(records)
        if fresh:
            context = NotificationContext(
                chain=self.chain, chain_name=self.name, block_number=block_number
            )
            await self.dispatcher.dispatch(fresh, context)

        if self.history is not None:
            async with log_and_suppress_errors(
                f"storing {self.name} block #{block_number}", log_level="error"
            ):
                await self.history.record(self.name, records)

        logger.info(
            "%s: block #%s produced %s records (%s new)",
            self.name,
            block_number,
            len(records),
            len(fresh),
        )
        return fresh

    async def _unrecorded(self, records: Sequence[PnLRecord]) -> list[PnLRecord]:
        if self.history is None:
            return list(records)
        try:
            return [
                record
                for record in records
                if not await self.history.is_recorded(
                    self.name, record.wallet, record.block_number, record.group_id
                )
            ]
        except SQLAlchemyError as e:
            logger.warning("%s: history lookup failed, notifying anyway: %s", self.name, e)
            return list(records)

    def shutdown(self) -> None:
        self.should_shutdown = True
        self.head_event.set()

    async def run(self) -> None:
        heads = asyncio.create_task(self.track_heads())
        try:
            await self.process_blocks()
        finally:
            heads.cancel()
            await asyncio.gather(heads, return_exceptions=True)
        logger.info(
            "%s: stopped after %s blocks (%s skipped)",
            self.name,
            self.blocks_processed,
            self.blocks_skipped,
        )


def build_dispatcher(
    subscriptions: Sequence[WalletSubscription],
    client: httpx.AsyncClient,
    resolver: TokenInfoResolver | None = None,
    broadcast: Sequence[Notifier] = (),
) -> NotificationDispatcher:
    """One Telegram notifier per channel, routed to the channel's wallets."""
    by_channel: dict[int, TelegramNotifier] = {}
    routes: dict[str, list[Notifier]] = {}
    for subscription in subscriptions:
        channel = subscription.channel
        notifier = by_channel.get(id(channel))
        if notifier is None:
            notifier = TelegramNotifier(
                channel.bot_token,
                channel.chat_id,
                client,
                resolver,
                thread_id=channel.thread_id,
            )
            by_channel[id(channel)] = notifier
        targets = routes.setdefault(subscription.wallet.name, [])
        if notifier not in targets:
            targets.append(notifier)
    return NotificationDispatcher(routes, broadcast=broadcast)


def unique_wallets(subscriptions: Sequence[WalletSubscription]) -> list[WatchedWallet]:
    wallets: dict[str, WatchedWallet] = {}
    for subscription in subscriptions:
        wallets.setdefault(subscription.wallet.name, subscription.wallet)
    return list(wallets.values())


class LiveRunner:
    """Builds one WalletWatcher per chain and runs them until a signal arrives."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.client = create_http_client()
        self.history = HistoryStore(settings.database_url) if settings.database_url else None
        self.prices = StaticPriceSource(
            settings.prices.static, reference=settings.prices.reference
        )
        self.watchers: list[WalletWatcher] = []

    async def setup(self) -> None:
        """Connect to every chain and build its watcher.

        Raises:
            RpcError: If a chain's RPC endpoint is unreachable
        """
        if self.history is not None:
            await self.history.create_tables()

        log_notifier = LogNotifier()
        subscriptions = self.settings.subscriptions_by_chain()
        for name, chain_settings in self.settings.chains.items():
            chain_subscriptions = subscriptions.get(name, [])
            if not chain_subscriptions:
                logger.warning("No wallets watched on %s, skipping it", name)
                continue

            rpc = RPCClient(chain_settings.rpc_url, trace_dialect=chain_settings.trace_dialect)
            chain_id = await rpc.get_chain_id(self.client)
            chain = get_chain_info(chain_id, name)
            wallets = unique_wallets(chain_subscriptions)
            logger.info(
                "Watching %s wallets on %s (chain id %s)", len(wallets), name, chain_id
            )

            resolver = TokenInfoResolver(rpc, self.client, chain_id)
            processor = BlockProcessor(
                wallets,
                chain=chain,
                token_rules=self.settings.token_rules,
                fee_credit=chain_settings.fee_credit,
                self_destruct=chain_settings.self_destruct,
                conservation_tolerance=chain_settings.conservation_tolerance,
            )
            self.watchers.append(
                WalletWatcher(
                    name,
                    chain_settings,
                    processor=processor,
                    rpc=rpc,
                    client=self.client,
                    dispatcher=build_dispatcher(
                        chain_subscriptions, self.client, resolver, broadcast=[log_notifier]
                    ),
                    prices=self.prices,
                    history=self.history,
                )
            )

    def shutdown(self) -> None:
        """Gracefully shutdown all watchers."""
        logger.info("Shutdown signal received, stopping...")
        for watcher in self.watchers:
            watcher.shutdown()

    async def cleanup(self) -> None:
        for watcher in self.watchers:
            await watcher.dispatcher.aclose()
        await self.client.aclose()
        if self.history is not None:
            await self.history.aclose()

    async def run(self) -> None:
        """Run every watcher until shutdown.

        Raises:
            RpcError: If an RPC endpoint is unreachable at boot
        """
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.shutdown)

        try:
            await self.setup()
            results = await asyncio.gather(
                *(watcher.run() for watcher in self.watchers), return_exceptions=True
            )
            for watcher, result in zip(self.watchers, results, strict=True):
                if isinstance(result, BaseException):
                    logger.error("%s: watcher failed: %s", watcher.name, result)
        finally:
            await self.cleanup()

        logger.info("Live processor stopped")


async def run(settings: Settings) -> None:
    """Main entry point of the live pipeline."""
    await LiveRunner(settings).run()


__all__ = [
    "LiveRunner",
    "WalletWatcher",
    "build_dispatcher",
    "run",
    "unique_wallets",
]
