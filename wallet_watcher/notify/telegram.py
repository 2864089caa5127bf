"""Telegram notifier rendering records as MarkdownV2 messages."""

import re

from collections.abc import Mapping, Sequence

import httpx

from eth_utils import to_checksum_address

from wallet_watcher.helpers.constants import TELEGRAM_API_URL, TELEGRAM_MAX_MESSAGE_LENGTH
from wallet_watcher.helpers.logging import get_logger
from wallet_watcher.helpers.parsers import (
    format_ether_trimmed,
    format_short_hash,
    format_token_amount,
)
from wallet_watcher.notify.base import NotificationContext, Notifier
from wallet_watcher.notify.tokens import TokenInfo, TokenInfoResolver
from wallet_watcher.pnl.chains import ChainInfo
from wallet_watcher.pnl.models import PnLRecord


logger = get_logger(__name__)

_MARKDOWN_SPECIAL = re.compile(r"([_*\[\]()~`>#+\-=|{}.!\\])")

UNSUPPORTED = "unsupported-chain"


def escape(text: str) -> str:
    """Escape MarkdownV2 special characters.

    Example:
        >>> escape("-1.5")
        '\\\\-1\\\\.5'
    """
    return _MARKDOWN_SPECIAL.sub(r"\\\1", text)


def _prefix(chain: ChainInfo) -> str:
    return chain.explorer_url or UNSUPPORTED


def address_link(chain: ChainInfo, address: str, tag: str | None = None) -> str:
    checksum = to_checksum_address(address)
    return f"[{tag or checksum}]({_prefix(chain)}/address/{checksum})"


def block_link(chain: ChainInfo, block_number: int) -> str:
    return f"[{block_number}]({_prefix(chain)}/block/{block_number})"


def tx_link(chain: ChainInfo, tx_hash: str, tag: str | None = None) -> str:
    return f"[{tag or tx_hash}]({_prefix(chain)}/tx/{tx_hash})"


def token_owner_link(chain: ChainInfo, token: str, owner: str, tag: str | None = None) -> str:
    token, owner = to_checksum_address(token), to_checksum_address(owner)
    return f"[{tag or owner}]({_prefix(chain)}/token/{token}?a={owner})"


def phalcon_link(chain: ChainInfo, tx_hash: str, tag: str = "Phalcon") -> str:
    chain_tag = chain.phalcon_tag or UNSUPPORTED
    return f"[{tag}](https://app.blocksec.com/explorer/tx/{chain_tag}/{tx_hash})"


def render_record(
    record: PnLRecord, context: NotificationContext, tokens: Mapping[str, TokenInfo]
) -> str:
    """Render one record as a MarkdownV2 message.

    Args:
        record: Record to render
        context: Chain and block of the record
        tokens: Symbol and decimals of every token in ``record.token_deltas``

    Returns:
        Message text
    """
    chain = context.chain
    lines = [
        "{address} · \\#{chain} · {block}{builder_tag}".format(
            address=address_link(chain, record.address, escape(record.wallet)),
            chain=escape(context.chain_name.upper()),
            block=block_link(chain, record.block_number),
            builder_tag=" \\[B\\]" if record.builder_reward else "",
        ),
        f"{escape(chain.native_symbol)}: *{escape(format_ether_trimmed(record.native_delta))}*",
    ]

    for token, amount in record.token_deltas.items():
        info = tokens.get(token) or TokenInfo(symbol=token, decimals=18, resolved=False)
        symbol = info.symbol[:12]
        lines.append(
            "{link}: {amount}".format(
                link=token_owner_link(chain, token, record.address, escape(symbol)),
                amount=escape(format_token_amount(amount, info.decimals, 8)),
            )
        )

    if record.token_deltas and record.total_value:
        lines.append(f"Value: {escape(f'{record.total_value.normalize():f}')}")
    if record.unpriced_assets:
        lines.append(f"Unpriced: {escape(str(len(record.unpriced_assets)))}")
    if record.builder_reward:
        lines.append(f"Builder reward: {escape(format_ether_trimmed(record.builder_reward))}")
    if record.producer_fees:
        lines.append(f"Producer fees: {escape(format_ether_trimmed(record.producer_fees))}")
    if record.proposer_payment:
        lines.append(f"VBribe: {escape(format_ether_trimmed(record.proposer_payment))}")
    if record.incomplete:
        lines.append(escape("Incomplete accounting (self-destruct)"))

    width = len(str(max((tx.index for tx in record.transactions), default=0)))
    for tx in record.transactions:
        lines.append(
            "\\[`{index}`\\] {status}{link} \\[{phalcon}\\]".format(
                index=str(tx.index).rjust(width),
                status="✓" if tx.success else "✗",
                link=tx_link(chain, tx.hash, escape(format_short_hash(tx.hash))),
                phalcon=phalcon_link(chain, tx.hash),
            )
        )

    text = "\n".join(lines) + "\n"
    if len(text) > TELEGRAM_MAX_MESSAGE_LENGTH:
        logger.warning("Message for %s is too long, truncating", record.group_id)
        text = text[: TELEGRAM_MAX_MESSAGE_LENGTH - 2].rsplit("\n", 1)[0] + "\n"
    return text


class TelegramNotifier(Notifier):
    """Posts one message per record to a Telegram chat."""

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        client: httpx.AsyncClient,
        resolver: TokenInfoResolver | None = None,
        *,
        thread_id: str | None = None,
        api_url: str = TELEGRAM_API_URL,
    ) -> None:
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.thread_id = thread_id
        self.client = client
        self.resolver = resolver
        self.api_url = api_url

    async def _tokens(self, records: Sequence[PnLRecord]) -> dict[str, TokenInfo]:
        tokens: dict[str, TokenInfo] = {}
        if self.resolver is None:
            return tokens
        for record in records:
            for token in record.token_deltas:
                if token not in tokens:
                    tokens[token] = await self.resolver.resolve(token)
        return tokens

    async def send(self, records: Sequence[PnLRecord], context: NotificationContext) -> None:
        """Send every record.

        Raises:
            httpx.HTTPError: If Telegram rejects a message or is unreachable
        """
        tokens = await self._tokens(records)
        for record in records:
            payload: dict[str, object] = {
                "chat_id": self.chat_id,
                "text": render_record(record, context, tokens),
                "parse_mode": "MarkdownV2",
                "disable_web_page_preview": True,
            }
            if self.thread_id is not None:
                payload["message_thread_id"] = self.thread_id

            response = await self.client.post(
                f"{self.api_url}/bot{self.bot_token}/sendMessage", json=payload
            )
            response.raise_for_status()
            logger.debug("Sent %s to chat %s", record.group_id, self.chat_id)


__all__ = [
    "TelegramNotifier",
    "address_link",
    "block_link",
    "escape",
    "phalcon_link",
    "render_record",
    "token_owner_link",
    "tx_link",
]
