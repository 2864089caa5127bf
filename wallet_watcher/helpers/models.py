"""Common Pydantic models for data structures used across the application."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class BlockHeader(BaseModel):
    """Block header from eth_getBlockByNumber or a newHeads subscription."""

    number: str = Field(..., description="Block number as hex string")
    hash: str = Field(..., description="Block hash")
    parent_hash: str | None = Field(
        default=None, description="Parent block hash", alias="parentHash"
    )
    miner: str = Field(..., description="Block beneficiary (fee recipient)")
    timestamp: str = Field(..., description="Block timestamp as hex string")
    gas_used: str | None = Field(
        default=None, description="Gas used as hex string", alias="gasUsed"
    )
    base_fee_per_gas: str | None = Field(
        default=None,
        description="Base fee per gas as hex string",
        alias="baseFeePerGas",
    )

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class RawBlockPayload(BaseModel):
    """Everything fetched from the node for one block height.

    ``traces`` is kept in the node's own shape; interpreting it is the job of
    the trace normalizer selected by ``dialect``.
    """

    block_number: int
    header: BlockHeader
    receipts: list[dict[str, Any]] = Field(default_factory=list)
    traces: list[Any] = Field(default_factory=list)
    dialect: Literal["geth", "parity"] | None = None


__all__ = [
    "BlockHeader",
    "RawBlockPayload",
]
