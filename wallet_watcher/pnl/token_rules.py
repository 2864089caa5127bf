"""Declarative decoding of token transfer events.

A rule says where the sender, the recipient and the amount live in a log:
``"topic1"`` is the second topic word, ``"data0"`` the first 32-byte word of
the data. Rules are plain data, so new token standards only need a config
entry.
"""

import re

from typing import Literal, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator

from wallet_watcher.pnl.models import ZERO_ADDRESS, Log


TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
"""Transfer(address indexed from, address indexed to, uint256 value)"""

DEPOSIT_TOPIC = "0xe1fffcc4923d04b559f4d29a8bfc6cda04eb5b0d3c460751c2402c5c5cc9109c"
"""WETH9 Deposit(address indexed dst, uint256 wad)"""

WITHDRAWAL_TOPIC = "0x7fcf532c15f0a6db0bd6d0e038bea71d30d808c7d98cb3bf7268a95bf5081b65"
"""WETH9 Withdrawal(address indexed src, uint256 wad)"""

_LOCATION = re.compile(r"^(topic|data)(\d+)$")


class FieldLocation(BaseModel):
    """Position of a 32-byte word in a log."""

    source: Literal["topic", "data"]
    index: int = Field(ge=0)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def parse(cls, text: str) -> Self:
        match = _LOCATION.match(text.strip().lower())
        if match is None:
            msg = f"Invalid field location {text!r}, expected e.g. 'topic1' or 'data0'"
            raise ValueError(msg)
        return cls(source=match.group(1), index=int(match.group(2)))

    def word(self, log: Log) -> str | None:
        """Return the 64 hex digits at this location, or None if out of range."""
        if self.source == "topic":
            if self.index >= len(log.topics):
                return None
            return log.topics[self.index].removeprefix("0x").rjust(64, "0")

        data = log.data.removeprefix("0x")
        start = self.index * 64
        word = data[start : start + 64]
        return word if len(word) == 64 else None


class TokenTransfer(BaseModel):
    """A decoded token movement. A missing side is a mint or a burn."""

    token: str
    sender: str | None
    recipient: str | None
    amount: int


class TokenTransferRule(BaseModel):
    """Maps an event signature to the fields of a token transfer.

    Example:
        ```yaml
        token_rules:
          - name: erc20-transfer
            signature: "0xddf252ad..."
            from: topic1
            to: topic2
            amount: data0
            topics: 3
        ```
    """

    name: str
    signature: str
    from_field: FieldLocation | None = Field(default=None, alias="from")
    to_field: FieldLocation | None = Field(default=None, alias="to")
    amount_field: FieldLocation = Field(alias="amount")
    contract: str | None = None
    topic_count: int | None = Field(default=None, alias="topics")

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    @field_validator("from_field", "to_field", "amount_field", mode="before")
    @classmethod
    def _parse_location(cls, value: object) -> object:
        if isinstance(value, str):
            return FieldLocation.parse(value)
        return value

    @field_validator("signature", "contract")
    @classmethod
    def _lowercase(cls, value: str | None) -> str | None:
        return value.lower() if value else value

    def matches(self, log: Log) -> bool:
        if not log.topics or log.topics[0].lower() != self.signature:
            return False
        if self.contract is not None and log.address.lower() != self.contract:
            return False
        return self.topic_count is None or len(log.topics) == self.topic_count

    def decode(self, log: Log) -> TokenTransfer | None:
        """Decode ``log`` if this rule applies to it.

        Returns:
            The transfer, or None when the log does not match or is too short
        """
        if not self.matches(log):
            return None

        amount_word = self.amount_field.word(log)
        if amount_word is None:
            return None

        sender = _address_at(self.from_field, log)
        recipient = _address_at(self.to_field, log)
        if sender is False or recipient is False:
            return None

        return TokenTransfer(
            token=log.address.lower(),
            sender=sender,
            recipient=recipient,
            amount=int(amount_word, 16),
        )


def _address_at(location: FieldLocation | None, log: Log) -> str | None | Literal[False]:
    if location is None:
        return None
    word = location.word(log)
    if word is None:
        return False
    address = "0x" + word[-40:].lower()
    return None if address == ZERO_ADDRESS else address


def default_token_rules(wrapped_native: str | None = None) -> list[TokenTransferRule]:
    """ERC-20 transfers, plus WETH9 deposit/withdrawal for the wrapped native token.

    Args:
        wrapped_native: Address of the chain's WETH9-style contract, if any

    Returns:
        Rules in matching order
    """
    rules = [
        TokenTransferRule(
            name="erc20-transfer",
            signature=TRANSFER_TOPIC,
            from_field="topic1",
            to_field="topic2",
            amount_field="data0",
            topic_count=3,
        )
    ]
    if wrapped_native:
        rules.extend([
            TokenTransferRule(
                name="weth-deposit",
                signature=DEPOSIT_TOPIC,
                to_field="topic1",
                amount_field="data0",
                contract=wrapped_native,
                topic_count=2,
            ),
            TokenTransferRule(
                name="weth-withdrawal",
                signature=WITHDRAWAL_TOPIC,
                from_field="topic1",
                amount_field="data0",
                contract=wrapped_native,
                topic_count=2,
            ),
        ])
    return rules


__all__ = [
    "DEPOSIT_TOPIC",
    "TRANSFER_TOPIC",
    "WITHDRAWAL_TOPIC",
    "FieldLocation",
    "TokenTransfer",
    "TokenTransferRule",
    "default_token_rules",
]
