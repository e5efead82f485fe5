# src/mintflow/chain/tx_builder.py
from __future__ import annotations

from typing import Any, Dict

from mintflow.chain.rpc import ChainRpc, RpcResponseError, RpcTransportError
from mintflow.chain.tx_types import OrderingReference, UnsignedTransaction
from mintflow.pipeline.models import MintRequest
from mintflow.runtime.errors import BuildError, ChainUnavailableError
from mintflow.util.canon import canon_bytes, sha256_hex

Json = Dict[str, Any]

MINT_TX_TYPE = "TOKEN_MINT"


def _mint_payload(request: MintRequest) -> Json:
    return {
        "name": request.name,
        "symbol": request.symbol,
        "uri": request.metadata.uri,
        "metadata_cid": request.metadata.content_id,
        "seller_fee_basis_points": int(request.seller_fee_basis_points),
        "max_supply": None if request.max_supply is None else int(request.max_supply),
        "creators": [{"address": c.address, "share": int(c.share)} for c in request.creators],
    }


def build_mint_transaction(request: MintRequest, ordering_ref: OrderingReference, *, chain_id: str) -> UnsignedTransaction:
    """Build the unsigned mint transaction.

    Deterministic: the same request, ordering reference and chain id always
    yield byte-identical message bytes (and therefore the same hash).
    """
    if not isinstance(request, MintRequest):
        raise BuildError("not_a_mint_request", {"type": type(request).__name__})
    if not (request.payer or "").strip():
        raise BuildError("missing_payer")
    if request.metadata is None or not (request.metadata.uri or "").strip():
        raise BuildError("missing_metadata_uri")
    if not (request.name or "").strip() or not (request.symbol or "").strip():
        raise BuildError("missing_name_or_symbol")
    if not 0 <= int(request.seller_fee_basis_points) <= 10_000:
        raise BuildError("royalty_out_of_range", {"seller_fee_basis_points": request.seller_fee_basis_points})
    if not request.creators:
        raise BuildError("missing_creators")
    if ordering_ref is None or not (ordering_ref.blockhash or "").strip():
        raise BuildError("missing_ordering_reference")
    if not (chain_id or "").strip():
        raise BuildError("missing_chain_id")

    msg: Json = {
        "chain_id": str(chain_id),
        "tx_type": MINT_TX_TYPE,
        "payer": request.payer.strip(),
        "recent_blockhash": ordering_ref.blockhash,
        "last_valid_block_height": int(ordering_ref.last_valid_block_height),
        "payload": _mint_payload(request),
    }
    message = canon_bytes(msg)
    return UnsignedTransaction(
        message=message,
        message_hash=sha256_hex(message),
        payer=request.payer.strip(),
        ordering_ref=ordering_ref,
    )


class TransactionBuilder:
    """Fetches a fresh ordering reference per attempt and builds against it."""

    def __init__(self, rpc: ChainRpc, *, chain_id: str) -> None:
        self._rpc = rpc
        self.chain_id = chain_id

    def fetch_ordering_reference(self) -> OrderingReference:
        try:
            return self._rpc.get_recent_ordering_reference()
        except (RpcTransportError, RpcResponseError) as e:
            raise ChainUnavailableError("ordering_reference_unavailable", {"error": str(e)}) from e

    def build(self, request: MintRequest, ordering_ref: OrderingReference) -> UnsignedTransaction:
        return build_mint_transaction(request, ordering_ref, chain_id=self.chain_id)
