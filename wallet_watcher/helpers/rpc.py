"""Ethereum JSON-RPC client utilities."""

import operator

from typing import Any

import httpx

from wallet_watcher.errors import RpcFatalError, RpcTransientError
from wallet_watcher.helpers.constants import (
    DEFAULT_TIMEOUT,
    MAX_RETRIES,
    RETRY_BASE_DELAY,
    TRACE_TIMEOUT,
)
from wallet_watcher.helpers.http import retry_with_backoff
from wallet_watcher.helpers.logging import get_logger
from wallet_watcher.helpers.models import BlockHeader, RawBlockPayload
from wallet_watcher.helpers.parsers import parse_hex_int
from wallet_watcher.helpers.rpc_models import (
    CALL_TRACER_CONFIG,
    TRACE_REQUESTS,
    EthBlockNumberRequest,
    EthChainIdRequest,
    EthGetBlockByNumberRequest,
    EthGetBlockReceiptsRequest,
    JsonRpcRequest,
    JsonRpcResponse,
)


logger = get_logger(__name__)

METHOD_NOT_FOUND = -32601

TRANSIENT_ERROR_MESSAGES = (
    "header not found",
    "unknown block",
    "block not found",
    "rate limit",
    "too many requests",
    "timeout",
    "timed out",
    "busy",
    "try again",
)
"""Node error messages that usually go away on retry"""


def classify_rpc_error(error: dict[str, Any], method: str) -> RpcTransientError | RpcFatalError:
    """Map a JSON-RPC error object to a transient or fatal error.

    Args:
        error: The ``error`` member of a JSON-RPC response
        method: Method that produced the error

    Returns:
        The exception to raise
    """
    code = error.get("code")
    message = str(error.get("message", ""))
    text = f"RPC error for {method}: {message} (code {code})"

    if code != METHOD_NOT_FOUND and any(
        fragment in message.lower() for fragment in TRANSIENT_ERROR_MESSAGES
    ):
        return RpcTransientError(text)
    return RpcFatalError(text, code=code, method=method)


class RPCClient:
    """Ethereum JSON-RPC client with batching support.

    Transport problems (timeouts, connection errors, HTTP 429/5xx) are raised
    as RpcTransientError, everything the node rejects for good as
    RpcFatalError.
    """

    def __init__(
        self,
        rpc_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        *,
        trace_dialect: str = "auto",
        max_retries: int = MAX_RETRIES,
        retry_base_delay: float = RETRY_BASE_DELAY,
    ) -> None:
        """Initialize RPC client.

        Args:
            rpc_url: Ethereum JSON-RPC endpoint URL
            timeout: Default timeout for requests in seconds
            trace_dialect: "geth", "parity" or "auto" (probe geth first)
            max_retries: Attempts per block payload before giving up
            retry_base_delay: First backoff delay in seconds

        Raises:
            ValueError: If rpc_url is empty or the dialect is unknown
        """
        if not rpc_url:
            msg = "RPC URL cannot be empty"
            raise ValueError(msg)
        if trace_dialect not in {"auto", *TRACE_REQUESTS}:
            msg = f"Unknown trace dialect: {trace_dialect}"
            raise ValueError(msg)

        self.rpc_url = rpc_url
        self.timeout = timeout
        self.trace_dialect = trace_dialect
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay

    async def _post(
        self, client: httpx.AsyncClient, payload: Any, timeout: float | None
    ) -> Any:
        try:
            response = await client.post(
                self.rpc_url, json=payload, timeout=timeout or self.timeout
            )
        except httpx.TimeoutException as e:
            msg = f"RPC request to {self.rpc_url} timed out"
            raise RpcTransientError(msg) from e
        except httpx.TransportError as e:
            msg = f"RPC transport error: {e}"
            raise RpcTransientError(msg) from e

        status = response.status_code
        if status == 429 or status >= 500:
            msg = f"RPC endpoint returned HTTP {status}"
            raise RpcTransientError(msg)
        if status >= 400:
            msg = f"RPC endpoint returned HTTP {status}"
            raise RpcFatalError(msg)

        try:
            return response.json()
        except ValueError as e:
            msg = "RPC endpoint returned invalid JSON"
            raise RpcTransientError(msg) from e

    async def call(
        self,
        client: httpx.AsyncClient,
        method: str,
        params: list[Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Make a single JSON-RPC call.

        Args:
            client: HTTP client instance
            method: RPC method name (e.g., "eth_blockNumber")
            params: Method parameters list
            timeout: Optional timeout override

        Returns:
            RPC result value

        Raises:
            RpcTransientError: If the request may succeed on retry
            RpcFatalError: If the node rejected the request
        """
        request = JsonRpcRequest(method=method, params=params or [])
        return await self.send(client, request, timeout=timeout)

    async def send(
        self,
        client: httpx.AsyncClient,
        request: JsonRpcRequest,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Send one typed request and return its result."""
        body = await self._post(client, request.model_dump(), timeout)
        response = JsonRpcResponse.model_validate(body)
        if response.error is not None:
            raise classify_rpc_error(response.error.model_dump(), request.method)
        return response.result

    async def batch_call(
        self,
        client: httpx.AsyncClient,
        requests: list[JsonRpcRequest],
        *,
        timeout: float | None = None,
    ) -> list[Any]:
        """Make multiple JSON-RPC calls in a single batch request.

        Request ids are reassigned to the position in ``requests``.

        Args:
            client: HTTP client instance
            requests: Requests to send
            timeout: Optional timeout override

        Returns:
            List of results in the same order as requests

        Raises:
            RpcTransientError: If the batch may succeed on retry
            RpcFatalError: If the node rejected one of the requests
        """
        batch_payload = [
            request.model_copy(update={"id": idx}).model_dump()
            for idx, request in enumerate(requests)
        ]

        body = await self._post(client, batch_payload, timeout)
        if isinstance(body, dict):
            # Some nodes answer a whole batch with a single error object
            error = body.get("error") or {"message": "malformed batch response"}
            raise classify_rpc_error(error, "batch")

        responses = [JsonRpcResponse.model_validate(item) for item in body]
        if len(responses) != len(requests):
            msg = f"Batch returned {len(responses)} results for {len(requests)} requests"
            raise RpcTransientError(msg)

        # Sort by ID to match request order
        responses.sort(key=operator.attrgetter("id"))

        results: list[Any] = []
        for request, response in zip(requests, responses, strict=True):
            if response.error is not None:
                raise classify_rpc_error(response.error.model_dump(), request.method)
            results.append(response.result)
        return results

    async def get_block_number(self, client: httpx.AsyncClient) -> int:
        """Get the latest block number.

        Args:
            client: HTTP client instance

        Returns:
            Latest block number
        """
        result = await self.send(client, EthBlockNumberRequest())
        return parse_hex_int(result) if result else 0

    async def get_chain_id(self, client: httpx.AsyncClient) -> int:
        """Get the chain id reported by the node."""
        result = await self.send(client, EthChainIdRequest())
        return parse_hex_int(result) if result else 0

    async def eth_call(
        self,
        client: httpx.AsyncClient,
        to: str,
        data: str,
        block: int | str = "latest",
    ) -> str:
        """Execute a read-only contract call and return the raw hex result."""
        block_param = hex(block) if isinstance(block, int) else block
        result = await self.call(client, "eth_call", [{"to": to, "data": data}, block_param])
        return result or "0x"

    async def fetch_block_payload(
        self, client: httpx.AsyncClient, block_number: int
    ) -> RawBlockPayload:
        """Fetch header, receipts and traces of one block in one batch.

        Transient failures are retried with exponential backoff. With the
        "auto" dialect the geth call tracer is tried first and the client
        switches to parity traces for good if the node answers the trace method
        with method-not-found. Any other fatal error only fails this height.

        Args:
            client: HTTP client instance
            block_number: Block height

        Returns:
            The raw payload, tagged with the dialect used

        Raises:
            RpcTransientError: If retries are exhausted
            RpcFatalError: If the node rejected the request

        Example:
            ```python
            rpc = RPCClient(rpc_url, trace_dialect="geth")
            async with create_http_client() as client:
                payload = await rpc.fetch_block_payload(client, 19_000_000)
            ```
        """
        fetch = retry_with_backoff(
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            retry_on=(RpcTransientError,),
        )(self._fetch_block_payload)

        if self.trace_dialect != "auto":
            return await fetch(client, block_number, self.trace_dialect)

        try:
            payload = await fetch(client, block_number, "geth")
        except RpcFatalError as e:
            geth_trace = TRACE_REQUESTS["geth"].for_block(block_number).method
            if e.code != METHOD_NOT_FOUND or e.method != geth_trace:
                raise
            logger.info("Call tracer unavailable (%s), switching to parity traces", e)
            self.trace_dialect = "parity"
            return await fetch(client, block_number, "parity")

        self.trace_dialect = "geth"
        return payload

    async def _fetch_block_payload(
        self, client: httpx.AsyncClient, block_number: int, dialect: str
    ) -> RawBlockPayload:
        trace_request = TRACE_REQUESTS[dialect].for_block(block_number)
        header, receipts, traces = await self.batch_call(
            client,
            [
                EthGetBlockByNumberRequest.for_block(block_number),
                EthGetBlockReceiptsRequest.for_block(block_number),
                trace_request,
            ],
            timeout=TRACE_TIMEOUT,
        )

        # The head may be announced before every method can serve it
        if header is None or receipts is None or traces is None:
            msg = f"Block {block_number} is not available yet"
            raise RpcTransientError(msg)

        return RawBlockPayload(
            block_number=block_number,
            header=BlockHeader.model_validate(header),
            receipts=receipts,
            traces=traces,
            dialect=dialect,
        )

    async def fetch_transaction_payload(
        self, client: httpx.AsyncClient, tx_hash: str
    ) -> RawBlockPayload:
        """Fetch one transaction as a single-transaction block payload.

        Args:
            client: HTTP client instance
            tx_hash: Transaction hash

        Returns:
            Payload with the enclosing block's header, the receipt and the trace

        Raises:
            RpcFatalError: If the transaction is unknown or the node rejected
                the request
        """
        receipt = await self.call(client, "eth_getTransactionReceipt", [tx_hash])
        if receipt is None:
            msg = f"Transaction {tx_hash} not found"
            raise RpcFatalError(msg)

        block_number = parse_hex_int(receipt["blockNumber"])
        header = await self.send(client, EthGetBlockByNumberRequest.for_block(block_number))

        dialect = "parity" if self.trace_dialect == "parity" else "geth"
        if dialect == "geth":
            try:
                frame = await self.call(
                    client,
                    "debug_traceTransaction",
                    [tx_hash, CALL_TRACER_CONFIG],
                    timeout=TRACE_TIMEOUT,
                )
                traces: list[Any] = [{"txHash": tx_hash, "result": frame}]
            except RpcFatalError as e:
                if self.trace_dialect != "auto" or e.code != METHOD_NOT_FOUND:
                    raise
                dialect = "parity"

        if dialect == "parity":
            traces = await self.call(
                client, "trace_transaction", [tx_hash], timeout=TRACE_TIMEOUT
            )

        return RawBlockPayload(
            block_number=block_number,
            header=BlockHeader.model_validate(header),
            receipts=[receipt],
            traces=traces or [],
            dialect=dialect,
        )


__all__ = [
    "RPCClient",
    "classify_rpc_error",
]
