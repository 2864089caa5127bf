"""Tests for RPC client."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from typing import Any

import httpx

from wallet_watcher.errors import RpcFatalError, RpcTransientError
from wallet_watcher.helpers.rpc import RPCClient, classify_rpc_error
from wallet_watcher.helpers.rpc_models import EthBlockNumberRequest, EthChainIdRequest


HEADER = {
    "number": "0x64",
    "hash": "0x" + "ab" * 32,
    "miner": "0x" + "22" * 20,
    "timestamp": "0x1",
}


def response(body: Any, status_code: int = 200) -> MagicMock:
    mock_response = MagicMock()
    mock_response.status_code = status_code
    mock_response.json.return_value = body
    return mock_response


def http_client(*bodies: Any) -> AsyncMock:
    mock_http_client = AsyncMock(spec=httpx.AsyncClient)
    mock_http_client.post.side_effect = [
        body if isinstance(body, (MagicMock, Exception)) else response(body) for body in bodies
    ]
    return mock_http_client


def node(results: dict[str, Any], errors: dict[str, dict[str, Any]] | None = None) -> AsyncMock:
    """Fake node answering batches by method name."""
    errors = errors or {}
    calls: list[list[str]] = []

    async def post(url: str, json: Any, timeout: float) -> MagicMock:
        requests = json if isinstance(json, list) else [json]
        calls.append([request["method"] for request in requests])
        answers = []
        for request in requests:
            method = request["method"]
            if method in errors:
                answers.append({"jsonrpc": "2.0", "id": request["id"], "error": errors[method]})
            else:
                answers.append({"jsonrpc": "2.0", "id": request["id"], "result": results.get(method)})
        return response(answers if isinstance(json, list) else answers[0])

    mock_http_client = AsyncMock(spec=httpx.AsyncClient)
    mock_http_client.post.side_effect = post
    mock_http_client.calls = calls
    return mock_http_client


class TestRPCClient:
    """Tests for RPCClient class."""

    def test_init_with_valid_url(self) -> None:
        """Test RPCClient initialization with valid URL."""
        client = RPCClient("https://eth.llamarpc.com")

        assert client.rpc_url == "https://eth.llamarpc.com"
        assert client.timeout == 30.0
        assert client.trace_dialect == "auto"

    def test_init_with_empty_url_raises(self) -> None:
        """Test that empty URL raises ValueError."""
        with pytest.raises(ValueError, match="RPC URL cannot be empty"):
            RPCClient("")

    def test_init_with_unknown_dialect_raises(self) -> None:
        with pytest.raises(ValueError, match="Unknown trace dialect"):
            RPCClient("https://test.rpc", trace_dialect="erigon")

    @pytest.mark.asyncio
    async def test_call_single_method(self) -> None:
        """Test making a single RPC call."""
        client = RPCClient("https://test.rpc")
        mock_http_client = http_client({"jsonrpc": "2.0", "id": 1, "result": "0x1000"})

        result = await client.call(mock_http_client, "eth_blockNumber")

        assert result == "0x1000"
        mock_http_client.post.assert_called_once()

    @pytest.mark.asyncio
    async def test_call_with_custom_timeout(self) -> None:
        """Test the timeout override is passed to the HTTP client."""
        client = RPCClient("https://test.rpc", timeout=30.0)
        mock_http_client = http_client({"jsonrpc": "2.0", "id": 1, "result": "0x1"})

        await client.call(mock_http_client, "eth_blockNumber", timeout=60.0)

        assert mock_http_client.post.call_args.kwargs["timeout"] == 60.0

    @pytest.mark.asyncio
    async def test_rpc_error_raises_fatal(self) -> None:
        client = RPCClient("https://test.rpc")
        mock_http_client = http_client(
            {"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "execution reverted"}}
        )

        with pytest.raises(RpcFatalError, match="execution reverted"):
            await client.call(mock_http_client, "eth_call")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [429, 502])
    async def test_http_status_transient(self, status_code: int) -> None:
        client = RPCClient("https://test.rpc")
        mock_http_client = http_client(response(None, status_code))

        with pytest.raises(RpcTransientError, match=f"HTTP {status_code}"):
            await client.call(mock_http_client, "eth_blockNumber")

    @pytest.mark.asyncio
    async def test_http_status_fatal(self) -> None:
        client = RPCClient("https://test.rpc")
        mock_http_client = http_client(response(None, 401))

        with pytest.raises(RpcFatalError, match="HTTP 401"):
            await client.call(mock_http_client, "eth_blockNumber")

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self) -> None:
        client = RPCClient("https://test.rpc")
        mock_http_client = http_client(httpx.ReadTimeout("slow"))

        with pytest.raises(RpcTransientError, match="timed out"):
            await client.call(mock_http_client, "eth_blockNumber")

    @pytest.mark.asyncio
    async def test_invalid_json_is_transient(self) -> None:
        client = RPCClient("https://test.rpc")
        bad = response(None)
        bad.json.side_effect = ValueError("Expecting value")
        mock_http_client = http_client(bad)

        with pytest.raises(RpcTransientError, match="invalid JSON"):
            await client.call(mock_http_client, "eth_blockNumber")

    @pytest.mark.asyncio
    async def test_batch_call(self) -> None:
        """Test results come back in request order even if the node reorders them."""
        client = RPCClient("https://test.rpc")
        mock_http_client = http_client([
            {"jsonrpc": "2.0", "id": 1, "result": "0x1"},
            {"jsonrpc": "2.0", "id": 0, "result": "0x1000"},
        ])

        results = await client.batch_call(
            mock_http_client, [EthBlockNumberRequest(), EthChainIdRequest()]
        )

        assert results == ["0x1000", "0x1"]
        sent = mock_http_client.post.call_args.kwargs["json"]
        assert [item["id"] for item in sent] == [0, 1]

    @pytest.mark.asyncio
    async def test_batch_length_mismatch(self) -> None:
        client = RPCClient("https://test.rpc")
        mock_http_client = http_client([{"jsonrpc": "2.0", "id": 0, "result": "0x1"}])

        with pytest.raises(RpcTransientError, match="1 results for 2 requests"):
            await client.batch_call(mock_http_client, [EthBlockNumberRequest(), EthChainIdRequest()])

    @pytest.mark.asyncio
    async def test_batch_rejected_as_a_whole(self) -> None:
        client = RPCClient("https://test.rpc")
        mock_http_client = http_client(
            {"jsonrpc": "2.0", "id": None, "error": {"code": -32005, "message": "rate limit exceeded"}}
        )

        with pytest.raises(RpcTransientError, match="rate limit"):
            await client.batch_call(mock_http_client, [EthBlockNumberRequest()])

    @pytest.mark.asyncio
    async def test_get_block_number(self) -> None:
        client = RPCClient("https://test.rpc")
        mock_http_client = http_client({"jsonrpc": "2.0", "id": 1, "result": "0x1234"})

        assert await client.get_block_number(mock_http_client) == 0x1234

    @pytest.mark.asyncio
    async def test_get_chain_id(self) -> None:
        client = RPCClient("https://test.rpc")
        mock_http_client = http_client({"jsonrpc": "2.0", "id": 1, "result": "0x1"})

        assert await client.get_chain_id(mock_http_client) == 1

    @pytest.mark.asyncio
    async def test_eth_call(self) -> None:
        """Test eth_call sends the call object and the hex block tag."""
        client = RPCClient("https://test.rpc")
        mock_http_client = http_client({"jsonrpc": "2.0", "id": 1, "result": None})

        result = await client.eth_call(mock_http_client, "0x" + "66" * 20, "0x95d89b41", 100)

        assert result == "0x"
        sent = mock_http_client.post.call_args.kwargs["json"]
        assert sent["params"] == [{"to": "0x" + "66" * 20, "data": "0x95d89b41"}, "0x64"]


class TestFetchBlockPayload:
    """Tests for RPCClient.fetch_block_payload."""

    @pytest.mark.asyncio
    async def test_geth_payload(self) -> None:
        """Test header, receipts and traces are fetched in one batch."""
        client = RPCClient("https://test.rpc", trace_dialect="geth")
        mock_http_client = node({
            "eth_getBlockByNumber": HEADER,
            "eth_getBlockReceipts": [],
            "debug_traceBlockByNumber": [],
        })

        payload = await client.fetch_block_payload(mock_http_client, 100)

        assert payload.block_number == 100
        assert payload.dialect == "geth"
        assert payload.header.miner == HEADER["miner"]
        assert mock_http_client.calls == [
            ["eth_getBlockByNumber", "eth_getBlockReceipts", "debug_traceBlockByNumber"]
        ]

    @pytest.mark.asyncio
    async def test_auto_falls_back_to_parity(self) -> None:
        """Test a node without the call tracer is switched to parity traces."""
        client = RPCClient("https://test.rpc")
        mock_http_client = node(
            {"eth_getBlockByNumber": HEADER, "eth_getBlockReceipts": [], "trace_block": []},
            errors={"debug_traceBlockByNumber": {"code": -32601, "message": "method not found"}},
        )

        payload = await client.fetch_block_payload(mock_http_client, 100)

        assert payload.dialect == "parity"
        assert client.trace_dialect == "parity"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("method", "error"),
        [
            ("debug_traceBlockByNumber", {"code": -32000, "message": "missing trie node"}),
            ("eth_getBlockReceipts", {"code": -32601, "message": "method not found"}),
        ],
    )
    async def test_auto_keeps_dialect_on_other_fatal_errors(self, method: str, error: dict[str, Any]) -> None:
        """Test only a missing trace method switches dialects, other failures fail the height."""
        client = RPCClient("https://test.rpc", retry_base_delay=0)
        mock_http_client = node(
            {"eth_getBlockByNumber": HEADER, "eth_getBlockReceipts": [], "debug_traceBlockByNumber": []},
            errors={method: error},
        )

        with pytest.raises(RpcFatalError) as exc_info:
            await client.fetch_block_payload(mock_http_client, 100)

        assert exc_info.value.method == method
        assert client.trace_dialect == "auto"
        assert len(mock_http_client.calls) == 1

    @pytest.mark.asyncio
    async def test_missing_block_retried_then_raised(self) -> None:
        """Test a head that is not servable yet is retried and finally raised."""
        client = RPCClient("https://test.rpc", trace_dialect="geth", max_retries=2, retry_base_delay=0)
        mock_http_client = node({
            "eth_getBlockByNumber": None,
            "eth_getBlockReceipts": None,
            "debug_traceBlockByNumber": None,
        })

        with pytest.raises(RpcTransientError, match="not available yet"):
            await client.fetch_block_payload(mock_http_client, 100)

        assert len(mock_http_client.calls) == 2

    @pytest.mark.asyncio
    async def test_fatal_error_not_retried(self) -> None:
        client = RPCClient("https://test.rpc", trace_dialect="geth", max_retries=3, retry_base_delay=0)
        mock_http_client = node(
            {"eth_getBlockByNumber": HEADER, "eth_getBlockReceipts": []},
            errors={"debug_traceBlockByNumber": {"code": -32000, "message": "tracing is disabled"}},
        )

        with pytest.raises(RpcFatalError):
            await client.fetch_block_payload(mock_http_client, 100)

        assert len(mock_http_client.calls) == 1


class TestFetchTransactionPayload:
    """Tests for RPCClient.fetch_transaction_payload."""

    @pytest.mark.asyncio
    async def test_geth_transaction(self) -> None:
        client = RPCClient("https://test.rpc", trace_dialect="geth")
        receipt = {"transactionHash": "0xaa", "blockNumber": "0x64", "transactionIndex": "0x0"}
        frame = {"type": "CALL", "from": "0x" + "11" * 20, "to": "0x" + "22" * 20}
        mock_http_client = node({
            "eth_getTransactionReceipt": receipt,
            "eth_getBlockByNumber": HEADER,
            "debug_traceTransaction": frame,
        })

        payload = await client.fetch_transaction_payload(mock_http_client, "0xaa")

        assert payload.block_number == 100
        assert payload.receipts == [receipt]
        assert payload.traces == [{"txHash": "0xaa", "result": frame}]

    @pytest.mark.asyncio
    async def test_unknown_transaction(self) -> None:
        client = RPCClient("https://test.rpc")
        mock_http_client = node({"eth_getTransactionReceipt": None})

        with pytest.raises(RpcFatalError, match="not found"):
            await client.fetch_transaction_payload(mock_http_client, "0xbb")

    @pytest.mark.asyncio
    async def test_auto_trace_failure_not_retried_as_parity(self) -> None:
        client = RPCClient("https://test.rpc")
        receipt = {"transactionHash": "0xaa", "blockNumber": "0x64", "transactionIndex": "0x0"}
        mock_http_client = node(
            {"eth_getTransactionReceipt": receipt, "eth_getBlockByNumber": HEADER, "trace_transaction": []},
            errors={"debug_traceTransaction": {"code": -32000, "message": "missing trie node"}},
        )

        with pytest.raises(RpcFatalError, match="missing trie node"):
            await client.fetch_transaction_payload(mock_http_client, "0xaa")

        assert ["trace_transaction"] not in mock_http_client.calls


class TestClassifyRpcError:
    """Tests for classify_rpc_error."""

    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            ({"code": -32000, "message": "header not found"}, RpcTransientError),
            ({"code": -32000, "message": "Unknown block"}, RpcTransientError),
            ({"code": 429, "message": "Too Many Requests"}, RpcTransientError),
            ({"code": -32601, "message": "the method debug_traceBlockByNumber does not exist"}, RpcFatalError),
            ({"code": -32602, "message": "invalid argument 0"}, RpcFatalError),
        ],
    )
    def test_classification(self, error: dict[str, Any], expected: type[Exception]) -> None:
        assert type(classify_rpc_error(error, "eth_call")) is expected

    def test_message_includes_method(self) -> None:
        error = classify_rpc_error({"code": -1, "message": "boom"}, "trace_block")

        assert str(error) == "RPC error for trace_block: boom (code -1)"
        assert isinstance(error, RpcFatalError)
        assert (error.code, error.method) == (-1, "trace_block")
