# src/mintflow/chain/tx_types.py
from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Any, Dict, Optional

from mintflow.util.canon import canon_bytes

Json = Dict[str, Any]

# Confirmation states reported by the chain.
PENDING = "pending"
CONFIRMED = "confirmed"
FINALIZED = "finalized"
FAILED = "failed"
NOT_FOUND = "not_found"
# Produced by the tracker, never by the chain.
TIMED_OUT = "timed_out"
# Reason on a pending or timed-out status when the last poll itself failed.
STATUS_UNAVAILABLE = "status_unavailable"

_COMMITMENT_RANK = {PENDING: 0, CONFIRMED: 1, FINALIZED: 2}


@dataclass(frozen=True)
class OrderingReference:
    """The chain's recent-blockhash; a transaction built on it expires after last_valid_block_height."""

    blockhash: str
    last_valid_block_height: int

    def to_json(self) -> Json:
        return {"blockhash": self.blockhash, "last_valid_block_height": int(self.last_valid_block_height)}

    @staticmethod
    def from_json(j: Json) -> "OrderingReference":
        return OrderingReference(
            blockhash=str(j.get("blockhash") or ""),
            last_valid_block_height=int(j.get("last_valid_block_height") or 0),
        )


@dataclass(frozen=True)
class UnsignedTransaction:
    message: bytes
    message_hash: str
    payer: str
    ordering_ref: OrderingReference

    def to_json(self) -> Json:
        return {
            "message": base64.b64encode(self.message).decode("ascii"),
            "message_hash": self.message_hash,
            "payer": self.payer,
            "ordering_ref": self.ordering_ref.to_json(),
        }

    @staticmethod
    def from_json(j: Json) -> "UnsignedTransaction":
        return UnsignedTransaction(
            message=base64.b64decode(str(j.get("message") or "")),
            message_hash=str(j.get("message_hash") or ""),
            payer=str(j.get("payer") or ""),
            ordering_ref=OrderingReference.from_json(dict(j.get("ordering_ref") or {})),
        )


@dataclass(frozen=True)
class SignedTransaction:
    unsigned: UnsignedTransaction
    signature: str  # hex; doubles as the transaction id

    def wire_bytes(self) -> bytes:
        """Canonical envelope sent to the chain. Identical for every resend."""
        return canon_bytes(
            {
                "message": base64.b64encode(self.unsigned.message).decode("ascii"),
                "signatures": [self.signature],
                "signer": self.unsigned.payer,
            }
        )

    def to_json(self) -> Json:
        return {"unsigned": self.unsigned.to_json(), "signature": self.signature}

    @staticmethod
    def from_json(j: Json) -> "SignedTransaction":
        return SignedTransaction(
            unsigned=UnsignedTransaction.from_json(dict(j.get("unsigned") or {})),
            signature=str(j.get("signature") or ""),
        )


@dataclass(frozen=True)
class TransactionHandle:
    signature: str
    last_valid_block_height: int = 0
    # True when the send failed without an explicit rejection: it may or may not have landed.
    ambiguous: bool = False


@dataclass(frozen=True)
class ConfirmationStatus:
    state: str
    reason: str = ""
    slot: Optional[int] = None

    @property
    def is_failed(self) -> bool:
        return self.state == FAILED

    def reaches(self, commitment: str) -> bool:
        if self.state not in _COMMITMENT_RANK or commitment not in _COMMITMENT_RANK:
            return False
        return _COMMITMENT_RANK[self.state] >= _COMMITMENT_RANK[commitment]

    def to_json(self) -> Json:
        out: Json = {"state": self.state}
        if self.reason:
            out["reason"] = self.reason
        if self.slot is not None:
            out["slot"] = int(self.slot)
        return out

    @staticmethod
    def from_json(j: Json) -> "ConfirmationStatus":
        slot = j.get("slot")
        return ConfirmationStatus(
            state=str(j.get("state") or NOT_FOUND),
            reason=str(j.get("reason") or ""),
            slot=None if slot is None else int(slot),
        )
