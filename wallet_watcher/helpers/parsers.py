"""Parsing and formatting utilities for common data transformations."""

from datetime import UTC, datetime
from decimal import Decimal

from typing import Any


WEI_PER_ETHER = 10**18


def parse_hex_block_number(header: dict[str, Any]) -> int:
    """Parse block number from hex string in block header.

    Args:
        header: Block header dictionary containing a "number" field

    Returns:
        int: Block number as integer

    Example:
        >>> header = {"number": "0x1234"}
        >>> parse_hex_block_number(header)
        4660
    """
    return int(header.get("number", "0x0"), 16)


def parse_hex_timestamp(hex_timestamp: str) -> datetime:
    """Parse Unix timestamp from hex string to datetime.

    Args:
        hex_timestamp: Hex-encoded Unix timestamp string

    Returns:
        datetime: Datetime object from the Unix timestamp

    Example:
        >>> parse_hex_timestamp("0x63a1b2c3")
        datetime.datetime(2022, 12, 20, ...)
    """
    return datetime.fromtimestamp(int(hex_timestamp, 16), tz=UTC)


def parse_hex_int(hex_value: str | None, default: int = 0) -> int:
    """Parse hex string to integer.

    Args:
        hex_value: Hex-encoded string or None
        default: Default value if hex_value is None

    Returns:
        int: Parsed integer value

    Example:
        >>> parse_hex_int("0xff")
        255
        >>> parse_hex_int(None, 0)
        0
    """
    if hex_value is None:
        return default
    return int(hex_value, 16)


def parse_quantity(value: Any, default: int | None = None) -> int:
    """Parse a JSON-RPC quantity that may be hex, decimal or already an int.

    Nodes disagree on the encoding of numeric trace fields, so this accepts
    ``"0x1f"``, ``"31"`` and ``31``.

    Args:
        value: Raw value from an RPC payload
        default: Value returned when ``value`` is None or an empty string

    Returns:
        int: Parsed non-negative integer

    Raises:
        ValueError: If the value is missing without a default, not numeric,
            or negative

    Example:
        >>> parse_quantity("0x1f")
        31
        >>> parse_quantity(None, default=0)
        0
    """
    if value is None or value in {"", "0x"}:
        if default is None:
            msg = "Missing numeric value"
            raise ValueError(msg)
        return default

    if isinstance(value, bool):
        msg = f"Not a numeric value: {value!r}"
        raise ValueError(msg)

    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        try:
            parsed = int(text, 16) if text.lower().startswith("0x") else int(text)
        except ValueError:
            msg = f"Not a numeric value: {value!r}"
            raise ValueError(msg) from None
    else:
        msg = f"Not a numeric value: {value!r}"
        raise ValueError(msg)

    if parsed < 0:
        msg = f"Negative quantity: {value!r}"
        raise ValueError(msg)
    return parsed


def normalize_address(address: str | None) -> str | None:
    """Lowercase an address so it can be used as a dictionary key.

    Args:
        address: Hex address or None

    Returns:
        str | None: Lowercase address, or None if input was None or empty
    """
    if not address:
        return None
    return address.lower()


def wei_to_eth(wei: int | None) -> Decimal | None:
    """Convert Wei to ETH without losing precision.

    Args:
        wei: Amount in Wei, or None

    Returns:
        Decimal | None: Amount in ETH, or None if input was None

    Example:
        >>> wei_to_eth(1000000000000000000)
        Decimal('1')
        >>> wei_to_eth(None)
        None
    """
    return Decimal(wei) / WEI_PER_ETHER if wei is not None else None


def format_units(value: int, decimals: int, keep_decimal: int = 18) -> str:
    """Format an unsigned integer amount with a fixed number of decimals.

    Trailing zeros are trimmed and at most ``keep_decimal`` decimals are kept.

    Args:
        value: Non-negative amount in the smallest unit
        decimals: Number of decimals of the unit
        keep_decimal: Maximum number of decimals in the output

    Returns:
        str: Human readable amount

    Example:
        >>> format_units(1_500_000, 6)
        '1.5'
        >>> format_units(123_456_789, 6, keep_decimal=2)
        '123.45'
    """
    integer, fraction = divmod(value, 10**decimals)
    if fraction == 0 or decimals == 0:
        return str(integer)

    digits = str(fraction).rjust(decimals, "0").rstrip("0")
    digits = digits[:keep_decimal]
    if not digits.rstrip("0"):
        return str(integer)
    return f"{integer}.{digits.rstrip('0')}"


def format_ether_trimmed(value: int) -> str:
    """Format a wei amount as ether with trailing zeros trimmed.

    Args:
        value: Amount in wei (sign is preserved)

    Returns:
        str: Amount in ether

    Example:
        >>> format_ether_trimmed(-1_001_000_000_000_000_000)
        '-1.001'
    """
    sign = "-" if value < 0 else ""
    return f"{sign}{format_units(abs(value), 18)}"


def format_token_amount(value: int, decimals: int, keep_decimal: int = 8) -> str:
    """Format a signed token amount, falling back to raw units for dust.

    Args:
        value: Signed amount in the token's smallest unit
        decimals: Token decimals
        keep_decimal: Maximum number of decimals in the output

    Returns:
        str: Human readable amount, e.g. ``"-12.5"`` or ``"300 wei"``
    """
    sign = "-" if value < 0 else ""
    magnitude = abs(value)
    if decimals > 9 and magnitude < 1_000_000_000:
        return f"{sign}{magnitude} wei"
    return f"{sign}{format_units(magnitude, decimals, keep_decimal)}"


def format_short_hash(tx_hash: str) -> str:
    """Shorten a 32-byte hash for display.

    Example:
        >>> format_short_hash("0x" + "ab" * 32)
        '0xabab..abab'
    """
    body = tx_hash.removeprefix("0x")
    return f"0x{body[:4]}..{body[-4:]}"


def format_short_address(address: str) -> str:
    """Shorten an address for display.

    Example:
        >>> format_short_address("0x" + "12" * 20)
        '0x121212121212...12121212'
    """
    body = address.removeprefix("0x")
    return f"0x{body[:12]}...{body[-8:]}"


__all__ = [
    "WEI_PER_ETHER",
    "format_ether_trimmed",
    "format_short_address",
    "format_short_hash",
    "format_token_amount",
    "format_units",
    "normalize_address",
    "parse_hex_block_number",
    "parse_hex_int",
    "parse_hex_timestamp",
    "parse_quantity",
    "wei_to_eth",
]
