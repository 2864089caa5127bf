"""Common configuration constants used across the application."""

# HTTP and Network Constants
DEFAULT_TIMEOUT = 30.0
"""Default HTTP request timeout in seconds"""

TRACE_TIMEOUT = 120.0
"""Timeout for block trace requests, which can be large"""

# Retry Configuration
MAX_RETRIES = 5
"""Default maximum number of retry attempts"""

RETRY_BASE_DELAY = 1.0
"""Base delay for exponential backoff in seconds"""

RETRY_MAX_DELAY = 60.0
"""Maximum delay between retries in seconds"""

# Live processing
DEFAULT_PREFETCH = 4
"""Number of upcoming block heights fetched ahead of the one being aggregated"""

POLL_INTERVAL = 2.0
"""Seconds between eth_blockNumber polls when no websocket is configured"""

HEADS_QUEUE_SIZE = 100
"""Maximum number of buffered newHeads notifications"""

# Backtest
BACKTEST_CONCURRENCY = 8
"""Number of backtest cases fetched in parallel"""

# HTTP Connection Pooling
MAX_KEEPALIVE_CONNECTIONS = 5
"""Maximum number of keepalive connections in pool"""

MAX_CONNECTIONS = 10
"""Maximum total number of connections"""

# Telegram
TELEGRAM_API_URL = "https://api.telegram.org"
"""Telegram Bot API base URL"""

TELEGRAM_MAX_MESSAGE_LENGTH = 4096
"""Telegram hard limit on message text length"""


__all__ = [
    "BACKTEST_CONCURRENCY",
    "DEFAULT_PREFETCH",
    "DEFAULT_TIMEOUT",
    "HEADS_QUEUE_SIZE",
    "MAX_CONNECTIONS",
    "MAX_KEEPALIVE_CONNECTIONS",
    "MAX_RETRIES",
    "POLL_INTERVAL",
    "RETRY_BASE_DELAY",
    "RETRY_MAX_DELAY",
    "TELEGRAM_API_URL",
    "TELEGRAM_MAX_MESSAGE_LENGTH",
    "TRACE_TIMEOUT",
]
