"""Turn node-specific block traces into canonical call trees.

One normalizer per payload shape. Everything downstream only sees
``Block``/``Transaction``/``CallFrame``; shape differences end here.

A transaction whose trace cannot be interpreted is skipped with a
``MalformedTraceError`` logged, and recorded in ``Block.skipped``. The rest of
the block is still normalized.
"""

import re

from abc import ABC, abstractmethod
from typing import Any, ClassVar

from wallet_watcher.errors import MalformedTraceError
from wallet_watcher.helpers.logging import get_logger
from wallet_watcher.helpers.models import RawBlockPayload
from wallet_watcher.helpers.parsers import normalize_address, parse_quantity
from wallet_watcher.pnl.models import (
    Block,
    CallFrame,
    CallType,
    Log,
    SkippedTransaction,
    Transaction,
)


logger = get_logger(__name__)

_HEX = re.compile(r"^0x[0-9a-fA-F]*$")

VALUELESS_CALLS = frozenset({CallType.DELEGATECALL, CallType.STATICCALL})

PARITY_CALL_TYPES = {
    "call": CallType.CALL,
    "callcode": CallType.CALLCODE,
    "delegatecall": CallType.DELEGATECALL,
    "staticcall": CallType.STATICCALL,
}


def _quantity(raw: dict[str, Any], key: str, tx_index: int | None, default: int | None = None) -> int:
    try:
        return parse_quantity(raw.get(key), default=default)
    except ValueError as e:
        msg = f"Field {key!r}: {e}"
        raise MalformedTraceError(msg, tx_index=tx_index) from None


def _required_address(raw: dict[str, Any], key: str, tx_index: int | None) -> str:
    address = normalize_address(raw.get(key))
    if address is None:
        msg = f"Missing field {key!r}"
        raise MalformedTraceError(msg, tx_index=tx_index)
    return address


def parse_log(raw: dict[str, Any], tx_index: int | None = None) -> Log:
    """Validate one log entry from a trace or a receipt."""
    topics = raw.get("topics") or []
    data = raw.get("data") or "0x"
    if not all(isinstance(t, str) and _HEX.match(t) for t in topics) or not _HEX.match(data):
        msg = "Log topics and data must be hex strings"
        raise MalformedTraceError(msg, tx_index=tx_index)
    return Log(
        address=_required_address(raw, "address", tx_index),
        topics=[t.lower() for t in topics],
        data=data.lower(),
    )


def _receipt_index(receipt: dict[str, Any]) -> int:
    return _quantity(receipt, "transactionIndex", None)


def build_transaction(
    receipt: dict[str, Any], root: CallFrame, logs: list[Log]
) -> Transaction:
    """Combine a receipt with a normalized call tree.

    Args:
        receipt: Raw eth_getBlockReceipts entry
        root: Top-level call frame of the transaction
        logs: Logs emitted by non-reverted frames

    Returns:
        The canonical Transaction

    Raises:
        MalformedTraceError: If receipt fields are missing or not numeric
    """
    index = _receipt_index(receipt)
    success = _quantity(receipt, "status", index, default=1) == 1

    price_key = "effectiveGasPrice" if receipt.get("effectiveGasPrice") is not None else "gasPrice"

    tx_hash = receipt.get("transactionHash")
    if not tx_hash:
        msg = "Receipt has no transactionHash"
        raise MalformedTraceError(msg, tx_index=index)

    if not success and not root.reverted:
        # The receipt is authoritative for the top-level outcome
        root = _mark_reverted(root, root.error or "reverted")

    return Transaction(
        index=index,
        hash=tx_hash.lower(),
        sender=_required_address(receipt, "from", index),
        to=normalize_address(receipt.get("to")),
        value=root.value,
        gas_used=_quantity(receipt, "gasUsed", index),
        effective_gas_price=_quantity(receipt, price_key, index),
        l1_fee=_quantity(receipt, "l1Fee", index, default=0),
        success=success,
        root=root,
        logs=[] if not success else logs,
    )


def _mark_reverted(frame: CallFrame, error: str | None) -> CallFrame:
    return frame.model_copy(
        update={
            "reverted": True,
            "error": frame.error or error,
            "logs": [],
            "calls": [_mark_reverted(call, None) for call in frame.calls],
        }
    )


def _effective_logs(frame: CallFrame) -> list[Log]:
    return [log for node in frame.walk(skip_reverted=True) for log in node.logs]


class TraceNormalizer(ABC):
    """Base class for one trace payload shape."""

    dialect: ClassVar[str]

    def normalize(self, payload: RawBlockPayload) -> Block:
        """Build a Block from a raw payload.

        Args:
            payload: Header, receipts and traces of one block

        Returns:
            The normalized block; unusable transactions are in ``skipped``
        """
        header = payload.header
        block_number = parse_quantity(header.number)
        base_fee = (
            parse_quantity(header.base_fee_per_gas)
            if header.base_fee_per_gas is not None
            else None
        )

        transactions: list[Transaction] = []
        skipped: list[SkippedTransaction] = []
        for item in self._transactions(payload):
            if isinstance(item, MalformedTraceError):
                logger.warning(
                    "Skipping tx %s (index %s) in block %d: %s",
                    item.tx_hash,
                    item.tx_index,
                    block_number,
                    item,
                )
                skipped.append(
                    SkippedTransaction(index=item.tx_index, hash=item.tx_hash, reason=str(item))
                )
            else:
                transactions.append(item)

        transactions.sort(key=lambda tx: tx.index)
        skipped.sort(key=lambda s: (s.index is None, s.index or 0))

        return Block(
            number=block_number,
            hash=header.hash.lower(),
            beneficiary=header.miner.lower(),
            base_fee=base_fee,
            timestamp=parse_quantity(header.timestamp, default=0),
            transactions=transactions,
            skipped=skipped,
        )

    @abstractmethod
    def _transactions(
        self, payload: RawBlockPayload
    ) -> list[Transaction | MalformedTraceError]:
        """Return every transaction, or the error that prevented building it."""


class GethCallTracerNormalizer(TraceNormalizer):
    """``debug_traceBlockByNumber`` with ``callTracer`` and ``withLog``.

    Each entry is ``{"txHash": ..., "result": frame}`` or
    ``{"txHash": ..., "error": ...}``; frames nest through ``calls`` and carry
    their own ``logs``.
    """

    dialect = "geth"

    def _transactions(
        self, payload: RawBlockPayload
    ) -> list[Transaction | MalformedTraceError]:
        receipts = payload.receipts
        traces = payload.traces
        results: list[Transaction | MalformedTraceError] = []

        by_hash = {
            str(trace["txHash"]).lower(): trace
            for trace in traces
            if isinstance(trace, dict) and trace.get("txHash")
        }
        pair_by_hash = len(by_hash) == len(traces)
        used: set[int] = set()

        for position, receipt in enumerate(receipts):
            tx_hash = str(receipt.get("transactionHash", "")).lower() or None
            try:
                tx_index = _receipt_index(receipt)
            except MalformedTraceError as e:
                e.tx_hash = tx_hash
                results.append(e)
                continue

            if pair_by_hash:
                trace = by_hash.get(tx_hash or "")
            else:
                trace = traces[position] if position < len(traces) else None

            if trace is None:
                results.append(
                    MalformedTraceError("No trace for receipt", tx_index=tx_index, tx_hash=tx_hash)
                )
                continue
            used.add(id(trace))

            try:
                results.append(self._transaction(receipt, trace, tx_index))
            except MalformedTraceError as e:
                e.tx_index = tx_index
                e.tx_hash = tx_hash
                results.append(e)

        for trace in traces:
            if id(trace) not in used:
                tx_hash = trace.get("txHash") if isinstance(trace, dict) else None
                results.append(MalformedTraceError("No receipt for trace", tx_hash=tx_hash))

        return results

    def _transaction(
        self, receipt: dict[str, Any], trace: Any, tx_index: int
    ) -> Transaction:
        if not isinstance(trace, dict):
            msg = "Trace entry is not an object"
            raise MalformedTraceError(msg)
        if trace.get("error"):
            msg = f"Node failed to trace transaction: {trace['error']}"
            raise MalformedTraceError(msg)

        raw_root = trace.get("result", trace)
        if not isinstance(raw_root, dict) or "type" not in raw_root:
            msg = "Trace has no call frame"
            raise MalformedTraceError(msg)

        root = self.parse_frame(raw_root, tx_index, parent_reverted=False)
        logs = _effective_logs(root)
        if not logs and receipt.get("logs"):
            # Node without withLog support
            logs = [parse_log(raw, tx_index) for raw in receipt["logs"]]

        return build_transaction(receipt, root, logs)

    def parse_frame(
        self, raw: dict[str, Any], tx_index: int, *, parent_reverted: bool
    ) -> CallFrame:
        """Parse a callTracer frame and its children.

        Raises:
            MalformedTraceError: On unknown call types, missing addresses or
                non-numeric values
        """
        try:
            call_type = CallType(str(raw.get("type", "")).upper())
        except ValueError:
            msg = f"Unknown call type {raw.get('type')!r}"
            raise MalformedTraceError(msg, tx_index=tx_index) from None

        error = raw.get("error") or raw.get("revertReason")
        reverted = parent_reverted or bool(error)

        value_known = True
        if call_type == CallType.SELFDESTRUCT and raw.get("value") is None:
            value_known = False
            value = 0
        else:
            value = _quantity(raw, "value", tx_index, default=0)
        if call_type in VALUELESS_CALLS:
            value = 0

        callee = normalize_address(raw.get("to"))
        if callee is None and not reverted and call_type != CallType.SELFDESTRUCT:
            msg = f"{call_type} frame without target"
            raise MalformedTraceError(msg, tx_index=tx_index)

        logs = [] if reverted else [parse_log(log, tx_index) for log in raw.get("logs") or []]

        calls = [
            self.parse_frame(child, tx_index, parent_reverted=reverted)
            for child in raw.get("calls") or []
        ]

        return CallFrame(
            call_type=call_type,
            caller=_required_address(raw, "from", tx_index),
            callee=callee,
            value=value,
            value_known=value_known,
            reverted=reverted,
            error=error,
            logs=logs,
            calls=calls,
        )


class ParityTraceNormalizer(TraceNormalizer):
    """``trace_block``: a flat action list rebuilt into trees by ``traceAddress``.

    Logs are not part of the traces, so they come from the receipts (which only
    hold logs of frames that did not revert).
    """

    dialect = "parity"

    def _transactions(
        self, payload: RawBlockPayload
    ) -> list[Transaction | MalformedTraceError]:
        grouped: dict[int, list[dict[str, Any]]] = {}
        results: list[Transaction | MalformedTraceError] = []

        for trace in payload.traces:
            if not isinstance(trace, dict):
                results.append(MalformedTraceError("Trace entry is not an object"))
                continue
            position = trace.get("transactionPosition")
            if position is None:
                # Block and uncle rewards
                continue
            try:
                index = parse_quantity(position)
            except ValueError:
                results.append(MalformedTraceError(f"Bad transactionPosition {position!r}"))
                continue
            grouped.setdefault(index, []).append(trace)

        for receipt in payload.receipts:
            tx_hash = str(receipt.get("transactionHash", "")).lower() or None
            try:
                tx_index = _receipt_index(receipt)
                traces = grouped.pop(tx_index, None)
                if traces is None:
                    msg = "No trace for receipt"
                    raise MalformedTraceError(msg)
                root = self.build_tree(traces, tx_index)
                logs = [parse_log(raw, tx_index) for raw in receipt.get("logs") or []]
                results.append(build_transaction(receipt, root, logs))
            except MalformedTraceError as e:
                e.tx_index = e.tx_index if e.tx_index is not None else _safe_index(receipt)
                e.tx_hash = tx_hash
                results.append(e)

        for index, traces in grouped.items():
            tx_hash = traces[0].get("transactionHash")
            results.append(MalformedTraceError("No receipt for trace", tx_index=index, tx_hash=tx_hash))

        return results

    def build_tree(self, traces: list[dict[str, Any]], tx_index: int) -> CallFrame:
        """Rebuild the call tree of one transaction from its flat traces.

        Raises:
            MalformedTraceError: If an entry's parent is missing or there is
                no single root
        """
        entries: list[tuple[tuple[int, ...], dict[str, Any]]] = []
        for trace in traces:
            address = trace.get("traceAddress")
            if not isinstance(address, list) or not all(isinstance(i, int) for i in address):
                msg = f"Bad traceAddress {address!r}"
                raise MalformedTraceError(msg, tx_index=tx_index)
            entries.append((tuple(address), trace))
        entries.sort(key=lambda entry: entry[0])

        if not entries or entries[0][0] != ():
            msg = "Transaction has no root trace"
            raise MalformedTraceError(msg, tx_index=tx_index)

        children: dict[tuple[int, ...], list[tuple[int, ...]]] = {}
        by_address: dict[tuple[int, ...], dict[str, Any]] = {}
        for address, trace in entries:
            if address in by_address:
                msg = f"Duplicate traceAddress {list(address)}"
                raise MalformedTraceError(msg, tx_index=tx_index)
            by_address[address] = trace
            if address:
                parent = address[:-1]
                if parent not in by_address:
                    msg = f"Trace {list(address)} references missing parent {list(parent)}"
                    raise MalformedTraceError(msg, tx_index=tx_index)
                children.setdefault(parent, []).append(address)

        def build(address: tuple[int, ...], parent_reverted: bool) -> CallFrame:
            frame = self.parse_action(by_address[address], tx_index, parent_reverted=parent_reverted)
            calls = [build(child, frame.reverted) for child in children.get(address, [])]
            return frame.model_copy(update={"calls": calls})

        return build((), False)

    def parse_action(
        self, trace: dict[str, Any], tx_index: int, *, parent_reverted: bool
    ) -> CallFrame:
        """Parse one flat trace entry into a frame without children."""
        action = trace.get("action")
        if not isinstance(action, dict):
            msg = "Trace has no action"
            raise MalformedTraceError(msg, tx_index=tx_index)

        error = trace.get("error")
        reverted = parent_reverted or bool(error)
        result = trace.get("result") or {}
        kind = trace.get("type")

        if kind == "call":
            call_type = PARITY_CALL_TYPES.get(str(action.get("callType", "call")).lower())
            if call_type is None:
                msg = f"Unknown call type {action.get('callType')!r}"
                raise MalformedTraceError(msg, tx_index=tx_index)
            caller = _required_address(action, "from", tx_index)
            callee = _required_address(action, "to", tx_index)
            value = _quantity(action, "value", tx_index, default=0)
            value_known = True
        elif kind == "create":
            method = str(action.get("creationMethod", "create")).lower()
            call_type = CallType.CREATE2 if method == "create2" else CallType.CREATE
            caller = _required_address(action, "from", tx_index)
            callee = normalize_address(result.get("address"))
            if callee is None and not reverted:
                msg = "Successful create without address"
                raise MalformedTraceError(msg, tx_index=tx_index)
            value = _quantity(action, "value", tx_index, default=0)
            value_known = True
        elif kind == "suicide":
            call_type = CallType.SELFDESTRUCT
            caller = _required_address(action, "address", tx_index)
            callee = normalize_address(action.get("refundAddress"))
            value_known = action.get("balance") is not None
            value = _quantity(action, "balance", tx_index, default=0)
        else:
            msg = f"Unknown trace type {kind!r}"
            raise MalformedTraceError(msg, tx_index=tx_index)

        if call_type in VALUELESS_CALLS:
            value = 0

        return CallFrame(
            call_type=call_type,
            caller=caller,
            callee=callee,
            value=value,
            value_known=value_known,
            reverted=reverted,
            error=error,
        )


def _safe_index(receipt: dict[str, Any]) -> int | None:
    try:
        return _receipt_index(receipt)
    except MalformedTraceError:
        return None


NORMALIZERS: dict[str, type[TraceNormalizer]] = {
    GethCallTracerNormalizer.dialect: GethCallTracerNormalizer,
    ParityTraceNormalizer.dialect: ParityTraceNormalizer,
}


def detect_dialect(traces: list[Any]) -> str:
    """Guess the payload shape from the first trace entry.

    Example:
        >>> detect_dialect([{"action": {}, "traceAddress": []}])
        'parity'
        >>> detect_dialect([{"txHash": "0x..", "result": {"type": "CALL"}}])
        'geth'
    """
    for trace in traces:
        if isinstance(trace, dict):
            if "traceAddress" in trace or "action" in trace:
                return ParityTraceNormalizer.dialect
            return GethCallTracerNormalizer.dialect
    return GethCallTracerNormalizer.dialect


def get_normalizer(dialect: str) -> TraceNormalizer:
    """Instantiate the normalizer for a dialect name.

    Raises:
        ValueError: If the dialect is unknown
    """
    try:
        return NORMALIZERS[dialect]()
    except KeyError:
        msg = f"Unknown trace dialect: {dialect}"
        raise ValueError(msg) from None


def normalize_block(payload: RawBlockPayload, dialect: str | None = None) -> Block:
    """Normalize a payload with the given dialect, or the detected one."""
    normalizer = get_normalizer(dialect or detect_dialect(payload.traces))
    return normalizer.normalize(payload)


__all__ = [
    "NORMALIZERS",
    "GethCallTracerNormalizer",
    "ParityTraceNormalizer",
    "TraceNormalizer",
    "build_transaction",
    "detect_dialect",
    "get_normalizer",
    "normalize_block",
    "parse_log",
]
