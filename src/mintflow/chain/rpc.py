# src/mintflow/chain/rpc.py
from __future__ import annotations

import base64
import itertools
import json
import socket
import urllib.error
import urllib.request
from typing import Any, Dict, List, Protocol

from mintflow.chain.tx_types import (
    CONFIRMED,
    FAILED,
    FINALIZED,
    NOT_FOUND,
    PENDING,
    ConfirmationStatus,
    OrderingReference,
)
from mintflow.util.canon import canon_json

Json = Dict[str, Any]


class ChainRpc(Protocol):
    def get_recent_ordering_reference(self) -> OrderingReference: ...

    def get_block_height(self) -> int: ...

    def send_transaction(self, wire: bytes) -> str: ...

    def get_status(self, signature: str) -> ConfirmationStatus: ...


class RpcTransportError(Exception):
    """No usable answer (timeout, connection failure, 5xx/429): outcome unknown."""


class RpcResponseError(Exception):
    """The node answered with an explicit JSON-RPC error object."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(f"rpc_error:{code}:{message}")
        self.code = int(code)
        self.message = str(message)
        self.data = data


_STATUS_MAP = {
    "processed": PENDING,
    "confirmed": CONFIRMED,
    "finalized": FINALIZED,
}


def parse_signature_status(value: Any) -> ConfirmationStatus:
    """Map one entry of getSignatureStatuses.value onto a ConfirmationStatus."""
    if value is None:
        return ConfirmationStatus(NOT_FOUND)
    if not isinstance(value, dict):
        raise RpcResponseError(-32603, f"malformed signature status: {value!r}")
    slot = value.get("slot")
    slot_i = int(slot) if isinstance(slot, int) else None
    err = value.get("err")
    if err is not None:
        return ConfirmationStatus(FAILED, reason=canon_json(err), slot=slot_i)
    raw = str(value.get("confirmationStatus") or "processed").strip().lower()
    return ConfirmationStatus(_STATUS_MAP.get(raw, PENDING), slot=slot_i)


class JsonRpcChainClient:
    """ChainRpc over JSON-RPC 2.0 / HTTP (Solana-style method names)."""

    def __init__(self, url: str, *, timeout_s: float = 30.0, commitment: str = "finalized") -> None:
        self.url = url
        self.timeout_s = float(timeout_s)
        self.commitment = commitment
        self._ids = itertools.count(1)

    def _call(self, method: str, params: List[Any]) -> Any:
        body = json.dumps({"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}).encode("utf-8")
        req = urllib.request.Request(url=self.url, method="POST", data=body)
        req.add_header("Content-Type", "application/json")
        req.add_header("Accept", "application/json")

        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                raw = resp.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as e:
            text = e.read().decode("utf-8", errors="replace")
            if e.code >= 500 or e.code == 429:
                raise RpcTransportError(f"{method}:http_{e.code}:{text[:300]}") from e
            # Some nodes return JSON-RPC errors with a 4xx status.
            raw = text
        except (urllib.error.URLError, socket.timeout, TimeoutError, ConnectionError, OSError) as e:
            raise RpcTransportError(f"{method}:{type(e).__name__}:{e}") from e

        try:
            obj = json.loads(raw)
        except json.JSONDecodeError as e:
            raise RpcTransportError(f"{method}:bad_json:{raw[:200]}") from e
        if not isinstance(obj, dict):
            raise RpcTransportError(f"{method}:bad_response:{raw[:200]}")

        err = obj.get("error")
        if isinstance(err, dict):
            raise RpcResponseError(int(err.get("code") or 0), str(err.get("message") or ""), err.get("data"))
        if "result" not in obj:
            raise RpcTransportError(f"{method}:missing_result")
        return obj["result"]

    def get_recent_ordering_reference(self) -> OrderingReference:
        res = self._call("getLatestBlockhash", [{"commitment": self.commitment}])
        value = res.get("value") if isinstance(res, dict) else None
        if not isinstance(value, dict) or not value.get("blockhash"):
            raise RpcResponseError(-32603, f"malformed getLatestBlockhash result: {res!r}")
        # Without a validity window expiry can never be decided safely.
        lvbh = value.get("lastValidBlockHeight")
        if isinstance(lvbh, bool) or not isinstance(lvbh, int) or lvbh <= 0:
            raise RpcResponseError(-32603, f"getLatestBlockhash without a valid lastValidBlockHeight: {res!r}")
        return OrderingReference(blockhash=str(value["blockhash"]), last_valid_block_height=lvbh)

    def get_block_height(self) -> int:
        return int(self._call("getBlockHeight", [{"commitment": self.commitment}]))

    def send_transaction(self, wire: bytes) -> str:
        encoded = base64.b64encode(wire).decode("ascii")
        res = self._call("sendTransaction", [encoded, {"encoding": "base64", "preflightCommitment": self.commitment}])
        return str(res)

    def get_status(self, signature: str) -> ConfirmationStatus:
        res = self._call("getSignatureStatuses", [[signature], {"searchTransactionHistory": True}])
        values = res.get("value") if isinstance(res, dict) else None
        if not isinstance(values, list) or len(values) != 1:
            raise RpcResponseError(-32603, f"malformed getSignatureStatuses result: {res!r}")
        return parse_signature_status(values[0])
