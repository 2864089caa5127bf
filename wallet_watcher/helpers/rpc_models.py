"""Pydantic models for JSON-RPC requests and responses."""

from typing import Any, Literal, Self

from pydantic import BaseModel, Field


CALL_TRACER_CONFIG: dict[str, Any] = {
    "tracer": "callTracer",
    "tracerConfig": {"onlyTopCall": False, "withLog": True},
}
"""Tracer options for debug_traceBlockByNumber / debug_traceTransaction"""


class JsonRpcRequest(BaseModel):
    """JSON-RPC 2.0 request model."""

    jsonrpc: str = Field(default="2.0", description="JSON-RPC version")
    method: str = Field(..., description="Method name to call")
    params: list[Any] = Field(
        default_factory=list, description="Method parameters"
    )
    id: int | str = Field(default=1, description="Request ID")


class JsonRpcError(BaseModel):
    """Error object of a JSON-RPC 2.0 response."""

    code: int = 0
    message: str = ""
    data: Any = None


class JsonRpcResponse(BaseModel):
    """JSON-RPC 2.0 response model."""

    jsonrpc: str = "2.0"
    id: int | str | None = None
    result: Any = None
    error: JsonRpcError | None = None


class EthBlockNumberRequest(JsonRpcRequest):
    """JSON-RPC request for eth_blockNumber."""

    method: str = Field(default="eth_blockNumber", frozen=True)
    params: list[Any] = Field(default_factory=list, frozen=True)


class EthChainIdRequest(JsonRpcRequest):
    """JSON-RPC request for eth_chainId."""

    method: str = Field(default="eth_chainId", frozen=True)
    params: list[Any] = Field(default_factory=list, frozen=True)


class EthGetBlockByNumberRequest(JsonRpcRequest):
    """JSON-RPC request for eth_getBlockByNumber (header only)."""

    method: str = Field(default="eth_getBlockByNumber", frozen=True)

    @classmethod
    def for_block(cls, block_number: int, id: int | str = 1) -> Self:
        return cls(params=[hex(block_number), False], id=id)


class EthGetBlockReceiptsRequest(JsonRpcRequest):
    """JSON-RPC request for eth_getBlockReceipts."""

    method: str = Field(default="eth_getBlockReceipts", frozen=True)

    @classmethod
    def for_block(cls, block_number: int, id: int | str = 1) -> Self:
        return cls(params=[hex(block_number)], id=id)


class DebugTraceBlockByNumberRequest(JsonRpcRequest):
    """JSON-RPC request for debug_traceBlockByNumber with the call tracer."""

    method: str = Field(default="debug_traceBlockByNumber", frozen=True)

    @classmethod
    def for_block(cls, block_number: int, id: int | str = 1) -> Self:
        return cls(params=[hex(block_number), CALL_TRACER_CONFIG], id=id)


class TraceBlockRequest(JsonRpcRequest):
    """JSON-RPC request for the parity-style trace_block."""

    method: str = Field(default="trace_block", frozen=True)

    @classmethod
    def for_block(cls, block_number: int, id: int | str = 1) -> Self:
        return cls(params=[hex(block_number)], id=id)


TraceDialectName = Literal["geth", "parity"]

TRACE_REQUESTS: dict[str, type[DebugTraceBlockByNumberRequest | TraceBlockRequest]] = {
    "geth": DebugTraceBlockByNumberRequest,
    "parity": TraceBlockRequest,
}
"""Trace request model per trace dialect"""


__all__ = [
    "CALL_TRACER_CONFIG",
    "TRACE_REQUESTS",
    "DebugTraceBlockByNumberRequest",
    "EthBlockNumberRequest",
    "EthChainIdRequest",
    "EthGetBlockByNumberRequest",
    "EthGetBlockReceiptsRequest",
    "JsonRpcError",
    "JsonRpcRequest",
    "JsonRpcResponse",
    "TraceBlockRequest",
    "TraceDialectName",
]
