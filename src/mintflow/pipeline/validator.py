# src/mintflow/pipeline/validator.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Tuple
from urllib.parse import urlparse

from mintflow.pipeline.models import Asset, Attribute, Creator, TokenFields
from mintflow.runtime.config import DEFAULT_MIME_TYPES
from mintflow.runtime.errors import ValidationError

Json = Dict[str, Any]

MAX_NAME_LEN = 32
MAX_SYMBOL_LEN = 10
MAX_DESCRIPTION_LEN = 4096
MAX_ATTRIBUTES = 64
MAX_CREATORS = 5
MAX_ROYALTY_BPS = 10_000


@dataclass(frozen=True)
class ValidatedAsset:
    asset: Asset
    fields: TokenFields


def _is_int(v: Any) -> bool:
    return isinstance(v, int) and not isinstance(v, bool)


def _looks_like_svg(data: bytes) -> bool:
    head = data[:1024].lstrip(b"\xef\xbb\xbf \t\r\n").lower()
    return head.startswith(b"<") and b"<svg" in head


# Leading bytes each image type must start with. Types not listed here
# (operator-added) are accepted on their declared MIME type alone.
_SIGNATURES = {
    "image/png": lambda d: d.startswith(b"\x89PNG"),
    "image/jpeg": lambda d: d.startswith(b"\xff\xd8\xff"),
    "image/gif": lambda d: d.startswith((b"GIF87a", b"GIF89a")),
    "image/webp": lambda d: d[:4] == b"RIFF" and d[8:12] == b"WEBP",
    "image/svg+xml": _looks_like_svg,
}


def content_matches_mime(data: bytes, mime_type: str) -> bool:
    check = _SIGNATURES.get((mime_type or "").strip().lower())
    return True if check is None else bool(check(bytes(data)))


def _require_text(field: str, value: Any, max_len: int) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(field, "required")
    if len(value) > max_len:
        raise ValidationError(field, f"too_long (max {max_len})")


def _check_creators(creators: Tuple[Creator, ...]) -> None:
    if not creators:
        raise ValidationError("creators", "required")
    if len(creators) > MAX_CREATORS:
        raise ValidationError("creators", f"too_many (max {MAX_CREATORS})")
    seen = set()
    total = 0
    for c in creators:
        if not isinstance(c, Creator) or not isinstance(c.address, str) or not c.address.strip():
            raise ValidationError("creators", "missing_address")
        if c.address in seen:
            raise ValidationError("creators", f"duplicate_address:{c.address}")
        seen.add(c.address)
        if not _is_int(c.share) or not 0 <= c.share <= 100:
            raise ValidationError("creators", f"share_out_of_range:{c.address}")
        total += c.share
    if total != 100:
        raise ValidationError("creators", f"shares_must_sum_to_100 (got {total})")


def _check_attributes(attributes: Tuple[Attribute, ...]) -> None:
    if len(attributes) > MAX_ATTRIBUTES:
        raise ValidationError("attributes", f"too_many (max {MAX_ATTRIBUTES})")
    seen = set()
    for a in attributes:
        if not isinstance(a, Attribute) or not isinstance(a.trait_type, str) or not a.trait_type.strip():
            raise ValidationError("attributes", "missing_trait_type")
        if not isinstance(a.value, (str, int, float, bool)):
            raise ValidationError("attributes", f"value_not_scalar:{a.trait_type}")
        if isinstance(a.value, str) and not a.value.strip():
            raise ValidationError("attributes", f"empty_value:{a.trait_type}")
        if a.trait_type in seen:
            raise ValidationError("attributes", f"duplicate_trait_type:{a.trait_type}")
        seen.add(a.trait_type)


def validate_asset(
    asset: Asset,
    fields: TokenFields,
    *,
    max_bytes: int,
    allowed_mime_types: Iterable[str] = DEFAULT_MIME_TYPES,
) -> ValidatedAsset:
    """Check an asset and its token fields before any network call. Pure."""
    if not isinstance(asset, Asset):
        raise ValidationError("asset", "required")
    mime = (asset.mime_type or "").strip().lower()
    if mime not in {m.lower() for m in allowed_mime_types}:
        raise ValidationError("mime_type", f"not_allowed:{asset.mime_type}")
    if not asset.data:
        raise ValidationError("asset", "empty")
    if int(asset.declared_size) != len(asset.data):
        raise ValidationError("declared_size", f"mismatch (declared {asset.declared_size}, actual {len(asset.data)})")
    if len(asset.data) > int(max_bytes):
        raise ValidationError("asset", f"too_large (max {max_bytes} bytes)")
    if not content_matches_mime(asset.data, mime):
        raise ValidationError("asset", f"content_does_not_match:{mime}")

    if not isinstance(fields, TokenFields):
        raise ValidationError("fields", "required")
    _require_text("name", fields.name, MAX_NAME_LEN)
    _require_text("symbol", fields.symbol, MAX_SYMBOL_LEN)
    _require_text("description", fields.description, MAX_DESCRIPTION_LEN)

    if not _is_int(fields.seller_fee_basis_points) or not 0 <= fields.seller_fee_basis_points <= MAX_ROYALTY_BPS:
        raise ValidationError("seller_fee_basis_points", f"out_of_range [0, {MAX_ROYALTY_BPS}]")

    if fields.external_url:
        u = urlparse(fields.external_url)
        if u.scheme not in {"http", "https"} or not u.netloc:
            raise ValidationError("external_url", "must_be_http_url")

    if fields.max_supply is not None and (not _is_int(fields.max_supply) or fields.max_supply < 0):
        raise ValidationError("max_supply", "must_be_non_negative_int")

    _check_creators(fields.creators)
    _check_attributes(fields.attributes)

    return ValidatedAsset(asset=asset, fields=fields)


def parse_token_fields(obj: Any) -> TokenFields:
    """Build TokenFields from a JSON object (CLI / HTTP input).

    Only the structure is checked here; ranges and sums are validate_asset's job.
    """
    if not isinstance(obj, dict):
        raise ValidationError("fields", "must_be_object")

    def _int_or_raw(field: str, v: Any) -> Any:
        if v is None or _is_int(v):
            return v
        if isinstance(v, str) and v.strip().lstrip("-").isdigit():
            return int(v.strip())
        raise ValidationError(field, "must_be_integer")

    raw_creators = obj.get("creators") or []
    if not isinstance(raw_creators, list):
        raise ValidationError("creators", "must_be_list")
    creators: List[Creator] = []
    for c in raw_creators:
        if not isinstance(c, dict):
            raise ValidationError("creators", "entry_must_be_object")
        creators.append(Creator(address=str(c.get("address") or "").strip(), share=_int_or_raw("creators", c.get("share"))))

    raw_attrs = obj.get("attributes") or []
    if not isinstance(raw_attrs, list):
        raise ValidationError("attributes", "must_be_list")
    attributes: List[Attribute] = []
    for a in raw_attrs:
        if not isinstance(a, dict) or "trait_type" not in a or "value" not in a:
            raise ValidationError("attributes", "entry_must_have_trait_type_and_value")
        attributes.append(Attribute(trait_type=str(a.get("trait_type") or "").strip(), value=a.get("value")))

    return TokenFields(
        name=str(obj.get("name") or "").strip(),
        symbol=str(obj.get("symbol") or "").strip(),
        description=str(obj.get("description") or "").strip(),
        seller_fee_basis_points=_int_or_raw("seller_fee_basis_points", obj.get("seller_fee_basis_points", 0)),
        creators=tuple(creators),
        attributes=tuple(attributes),
        external_url=str(obj.get("external_url") or "").strip(),
        max_supply=_int_or_raw("max_supply", obj.get("max_supply")),
    )
