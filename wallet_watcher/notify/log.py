"""Notifier that writes records to the log."""

from collections.abc import Sequence

from wallet_watcher.helpers.logging import get_logger
from wallet_watcher.helpers.parsers import format_ether_trimmed
from wallet_watcher.notify.base import NotificationContext, Notifier
from wallet_watcher.pnl.models import PnLRecord


logger = get_logger(__name__)


class LogNotifier(Notifier):
    async def send(self, records: Sequence[PnLRecord], context: NotificationContext) -> None:
        for record in records:
            logger.info(
                "%s block %d wallet %s-%s group %s: native %s %s, tokens %s, value %s, "
                "builder reward %s, txs %s",
                context.chain_name,
                record.block_number,
                record.wallet,
                record.address,
                record.group_id,
                format_ether_trimmed(record.native_delta),
                context.chain.native_symbol,
                record.token_deltas,
                record.total_value,
                format_ether_trimmed(record.builder_reward),
                ", ".join(f"{tx.hash}:{tx.index}" for tx in record.transactions),
            )


__all__ = ["LogNotifier"]
