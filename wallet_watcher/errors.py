"""Error taxonomy for the wallet watcher.

Recoverable errors are scoped to the smallest unit that can be skipped:

- MalformedTraceError: one transaction is skipped, the block continues
- RpcTransientError: retried with backoff, then the height is skipped
- RpcFatalError: the height is skipped and the operator is told
- PriceUnavailableError: one asset is flagged as unpriced in a record
- InconsistentAccountingError: the block's records are withheld

Only ConfigError is fatal, and only at startup.
"""


class WalletWatcherError(Exception):
    """Base class for all wallet watcher errors."""


class ConfigError(WalletWatcherError):
    """Configuration file or environment is missing or invalid."""


class MalformedTraceError(WalletWatcherError):
    """A transaction's trace is structurally inconsistent."""

    def __init__(
        self, message: str, tx_index: int | None = None, tx_hash: str | None = None
    ) -> None:
        """Initialize the error.

        Args:
            message: What is wrong with the trace
            tx_index: Index of the affected transaction, when known
            tx_hash: Hash of the affected transaction, when known
        """
        super().__init__(message)
        self.tx_index = tx_index
        self.tx_hash = tx_hash


class RpcError(WalletWatcherError):
    """Base class for RPC failures."""


class RpcTransientError(RpcError):
    """RPC failure that may succeed on retry (timeouts, rate limits, 5xx)."""


class RpcFatalError(RpcError):
    """RPC failure that will not succeed on retry for this request."""

    def __init__(
        self, message: str, code: int | None = None, method: str | None = None
    ) -> None:
        """Initialize the error.

        Args:
            message: What the node reported
            code: JSON-RPC error code, when the node sent one
            method: Method that failed, when known
        """
        super().__init__(message)
        self.code = code
        self.method = method


class PriceUnavailableError(WalletWatcherError):
    """No price is known for an asset at a block height."""

    def __init__(self, asset: str, block_number: int | None = None) -> None:
        """Initialize the error.

        Args:
            asset: Asset identifier that could not be priced
            block_number: Block height of the lookup
        """
        super().__init__(f"No price for {asset} at block {block_number}")
        self.asset = asset
        self.block_number = block_number


class InconsistentAccountingError(WalletWatcherError):
    """Native-asset conservation does not hold for a successful transaction."""

    def __init__(self, tx_index: int, imbalance: int) -> None:
        """Initialize the error.

        Args:
            tx_index: Index of the offending transaction
            imbalance: Sum of native deltas that should have been zero
        """
        super().__init__(
            f"Native deltas of tx {tx_index} sum to {imbalance}, expected 0"
        )
        self.tx_index = tx_index
        self.imbalance = imbalance


__all__ = [
    "ConfigError",
    "InconsistentAccountingError",
    "MalformedTraceError",
    "PriceUnavailableError",
    "RpcError",
    "RpcFatalError",
    "RpcTransientError",
    "WalletWatcherError",
]
