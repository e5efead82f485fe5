# src/mintflow/pipeline/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from mintflow.chain.tx_types import ConfirmationStatus, SignedTransaction, UnsignedTransaction
from mintflow.util.canon import canon_bytes, sha256_hex
from mintflow.util.content_id import content_uri, gateway_url

Json = Dict[str, Any]
AttributeValue = Union[str, int, float, bool]


class DeploymentState(str, Enum):
    CREATED = "created"
    VALIDATED = "validated"
    IMAGE_UPLOADED = "image_uploaded"
    METADATA_UPLOADED = "metadata_uploaded"
    TRANSACTION_BUILT = "transaction_built"
    SIGNED = "signed"
    SUBMITTED = "submitted"
    TIMED_OUT = "timed_out"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Asset:
    data: bytes
    mime_type: str
    declared_size: int

    @property
    def sha256(self) -> str:
        return sha256_hex(self.data)


@dataclass(frozen=True)
class Attribute:
    trait_type: str
    value: AttributeValue

    def to_json(self) -> Json:
        return {"trait_type": self.trait_type, "value": self.value}


@dataclass(frozen=True)
class Creator:
    address: str
    share: int

    def to_json(self) -> Json:
        return {"address": self.address, "share": self.share}


@dataclass(frozen=True)
class TokenFields:
    name: str
    symbol: str
    description: str
    seller_fee_basis_points: int
    creators: Tuple[Creator, ...]
    attributes: Tuple[Attribute, ...] = ()
    external_url: str = ""
    max_supply: Optional[int] = None

    def to_json(self) -> Json:
        return {
            "name": self.name,
            "symbol": self.symbol,
            "description": self.description,
            "seller_fee_basis_points": self.seller_fee_basis_points,
            "external_url": self.external_url,
            "attributes": [a.to_json() for a in self.attributes],
            "creators": [c.to_json() for c in self.creators],
            "max_supply": self.max_supply,
        }

    def fingerprint(self) -> str:
        return sha256_hex(canon_bytes(self.to_json()))


@dataclass(frozen=True)
class ContentReference:
    content_id: str
    uri: str

    @staticmethod
    def for_content_id(cid: str) -> "ContentReference":
        return ContentReference(content_id=cid, uri=content_uri(cid))

    def to_json(self) -> Json:
        return {"content_id": self.content_id, "uri": self.uri}

    @staticmethod
    def from_json(j: Json) -> "ContentReference":
        return ContentReference(content_id=str(j.get("content_id") or ""), uri=str(j.get("uri") or ""))


@dataclass(frozen=True)
class MetadataDocument:
    body: Json

    def to_bytes(self) -> bytes:
        return canon_bytes(self.body)


@dataclass(frozen=True)
class MintRequest:
    payer: str
    metadata: ContentReference
    name: str
    symbol: str
    seller_fee_basis_points: int
    creators: Tuple[Creator, ...]
    max_supply: Optional[int] = None


_TERMINAL = {DeploymentState.CONFIRMED, DeploymentState.CANCELLED}


def _opt(j: Json, key: str, cls: Any) -> Any:
    v = j.get(key)
    return None if v is None else cls.from_json(v)


@dataclass(frozen=True)
class DeploymentRecord:
    """Orchestration state for one deployment id.

    `version` and `cancel_requested` live in their own store columns; they are
    not part of record_json.
    """

    deployment_id: str
    state: DeploymentState
    asset_hash: str
    fields_hash: str
    version: int = 0
    image_ref: Optional[ContentReference] = None
    metadata_ref: Optional[ContentReference] = None
    unsigned_tx: Optional[UnsignedTransaction] = None
    signed_tx: Optional[SignedTransaction] = None
    submission_attempts: int = 0
    tx_signature: Optional[str] = None
    confirmation_status: Optional[ConfirmationStatus] = None
    failed_stage: Optional[str] = None
    last_error: Optional[Json] = None
    retryable: bool = False
    cancel_requested: bool = False
    superseded_signatures: Tuple[str, ...] = field(default_factory=tuple)
    created_ms: int = 0
    updated_ms: int = 0

    @property
    def is_terminal(self) -> bool:
        if self.state in _TERMINAL:
            return True
        return self.state == DeploymentState.FAILED and not self.retryable

    def to_json(self) -> Json:
        return {
            "deployment_id": self.deployment_id,
            "state": self.state.value,
            "asset_hash": self.asset_hash,
            "fields_hash": self.fields_hash,
            "image_ref": self.image_ref.to_json() if self.image_ref else None,
            "metadata_ref": self.metadata_ref.to_json() if self.metadata_ref else None,
            "unsigned_tx": self.unsigned_tx.to_json() if self.unsigned_tx else None,
            "signed_tx": self.signed_tx.to_json() if self.signed_tx else None,
            "submission_attempts": int(self.submission_attempts),
            "tx_signature": self.tx_signature,
            "confirmation_status": self.confirmation_status.to_json() if self.confirmation_status else None,
            "failed_stage": self.failed_stage,
            "last_error": self.last_error,
            "retryable": bool(self.retryable),
            "superseded_signatures": list(self.superseded_signatures),
            "created_ms": int(self.created_ms),
            "updated_ms": int(self.updated_ms),
        }

    @staticmethod
    def from_json(j: Json, *, version: int = 0, cancel_requested: bool = False) -> "DeploymentRecord":
        return DeploymentRecord(
            deployment_id=str(j["deployment_id"]),
            state=DeploymentState(str(j["state"])),
            asset_hash=str(j.get("asset_hash") or ""),
            fields_hash=str(j.get("fields_hash") or ""),
            version=int(version),
            image_ref=_opt(j, "image_ref", ContentReference),
            metadata_ref=_opt(j, "metadata_ref", ContentReference),
            unsigned_tx=_opt(j, "unsigned_tx", UnsignedTransaction),
            signed_tx=_opt(j, "signed_tx", SignedTransaction),
            submission_attempts=int(j.get("submission_attempts") or 0),
            tx_signature=j.get("tx_signature"),
            confirmation_status=_opt(j, "confirmation_status", ConfirmationStatus),
            failed_stage=j.get("failed_stage"),
            last_error=j.get("last_error"),
            retryable=bool(j.get("retryable", False)),
            cancel_requested=bool(cancel_requested),
            superseded_signatures=tuple(str(s) for s in (j.get("superseded_signatures") or [])),
            created_ms=int(j.get("created_ms") or 0),
            updated_ms=int(j.get("updated_ms") or 0),
        )

    def to_public_json(self, *, gateway_base: str = "") -> Json:
        """Progress view: everything except raw transaction bytes.

        With a gateway base, each uploaded reference also carries an HTTP
        `gateway_url` for viewing the content.
        """
        out = self.to_json()
        out.pop("unsigned_tx", None)
        out.pop("signed_tx", None)
        for key in ("image_ref", "metadata_ref"):
            ref = out.get(key)
            if isinstance(ref, dict) and gateway_base:
                ref["gateway_url"] = gateway_url(gateway_base, str(ref.get("content_id") or ""))
        out["version"] = int(self.version)
        out["cancel_requested"] = bool(self.cancel_requested)
        out["terminal"] = self.is_terminal
        out["message_hash"] = self.unsigned_tx.message_hash if self.unsigned_tx else None
        return out
