"""Configuration management and environment variable utilities."""

import os
import re

from typing import Any

from dotenv import load_dotenv


# Load environment variables from .env file
load_dotenv()

ENV_PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


def get_required_env(key: str) -> str:
    """Get a required environment variable.

    Args:
        key: Environment variable name

    Returns:
        Environment variable value

    Raises:
        ValueError: If the environment variable is not set

    Example:
        ```python
        from wallet_watcher.helpers.config import get_required_env

        bot_token = get_required_env("TELEGRAM_BOT_TOKEN")
        ```
    """
    value = os.getenv(key)
    if not value:
        msg = f"{key} environment variable is not set"
        raise ValueError(msg)
    return value


def get_optional_env(key: str, default: str | None = None) -> str | None:
    """Get an optional environment variable with a default value.

    Args:
        key: Environment variable name
        default: Default value if not set

    Returns:
        Environment variable value or default

    Example:
        ```python
        from wallet_watcher.helpers.config import get_optional_env

        prefetch = int(get_optional_env("PREFETCH", "4"))
        ```
    """
    return os.getenv(key, default)


def get_eth_rpc_url(rpc_url: str | None = None) -> str:
    """Get Ethereum RPC URL from parameter or environment.

    Args:
        rpc_url: Optional RPC URL to use directly

    Returns:
        Ethereum RPC URL

    Raises:
        ValueError: If RPC URL is not provided and ETH_RPC_URL env var is not set

    Example:
        ```python
        from wallet_watcher.helpers.config import get_eth_rpc_url

        # Get from environment
        rpc_url = get_eth_rpc_url()

        # Or provide explicitly
        rpc_url = get_eth_rpc_url("http://localhost:8545")
        ```
    """
    if rpc_url:
        return rpc_url

    env_rpc_url = os.getenv("ETH_RPC_URL")
    if not env_rpc_url:
        msg = "ETH_RPC_URL must be provided or set in environment variables"
        raise ValueError(msg)

    return env_rpc_url


def expand_env_vars(value: Any) -> Any:
    """Expand ``${VAR}`` and ``${VAR:-default}`` placeholders recursively.

    Used on the parsed configuration file so secrets such as bot tokens can
    stay in the environment.

    Args:
        value: Parsed YAML value (mapping, list, string or scalar)

    Returns:
        The same structure with placeholders in strings replaced

    Raises:
        ValueError: If a placeholder without default names an unset variable

    Example:
        ```python
        os.environ["BOT_TOKEN"] = "123:abc"
        expand_env_vars({"bot_token": "${BOT_TOKEN}"})
        # {"bot_token": "123:abc"}
        ```
    """
    if isinstance(value, dict):
        return {key: expand_env_vars(item) for key, item in value.items()}
    if isinstance(value, list):
        return [expand_env_vars(item) for item in value]
    if not isinstance(value, str):
        return value

    def replace(match: re.Match[str]) -> str:
        name, default = match.group(1), match.group(2)
        env_value = os.getenv(name)
        if env_value:
            return env_value
        if default is not None:
            return default
        msg = f"{name} environment variable is not set"
        raise ValueError(msg)

    return ENV_PLACEHOLDER.sub(replace, value)


__all__ = [
    "expand_env_vars",
    "get_eth_rpc_url",
    "get_optional_env",
    "get_required_env",
]
