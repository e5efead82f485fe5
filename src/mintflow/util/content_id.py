# src/mintflow/util/content_id.py
"""Content identifiers for the storage network.

Identifiers are CIDv1 strings computed locally, before any upload:

  multibase  "b" (base32, lowercase, no padding)
  version    0x01
  codec      0x55 (raw)
  multihash  0x12 0x20 + sha2-256(payload)

Kubo produces the same CID for `add --cid-version=1 --raw-leaves` as long as
the payload fits in a single chunk, which is why uploads are bounded by the
chunk size (see KuboStorageNetwork).
"""

from __future__ import annotations

import base64
import hashlib
import re
from dataclasses import dataclass

URI_SCHEME = "ipfs"

_CIDV1_PREFIX_RAW_SHA256 = bytes([0x01, 0x55, 0x12, 0x20])

_CIDV0_RE = re.compile(r"^Qm[1-9A-HJ-NP-Za-km-z]{44}$")  # base58btc (no 0,O,I,l)
_CIDV1_BASE32_RE = re.compile(r"^b[a-z2-7]{10,}$")


@dataclass(frozen=True)
class CidValidation:
    ok: bool
    reason: str
    cid: str


def compute_content_id(data: bytes) -> str:
    digest = hashlib.sha256(bytes(data)).digest()
    raw = _CIDV1_PREFIX_RAW_SHA256 + digest
    return "b" + base64.b32encode(raw).decode("ascii").lower().rstrip("=")


def content_uri(cid: str) -> str:
    return f"{URI_SCHEME}://{normalize_cid(cid)}"


def gateway_url(gateway_base: str, cid: str) -> str:
    """HTTP gateway link for `cid`, or "" when no gateway is configured."""
    c = normalize_cid(cid)
    base = (gateway_base or "").strip()
    if not c or not base:
        return ""
    return f"{base.rstrip('/')}/{URI_SCHEME}/{c}"


def normalize_cid(cid: str) -> str:
    return (cid or "").strip()


def validate_cid(cid: str, *, max_len: int = 128) -> CidValidation:
    """Shape check for identifiers returned by the network.

    Not a multiformats parser; it only rejects obviously malformed values.
    """
    c = normalize_cid(cid)
    if not c:
        return CidValidation(False, "missing_cid", "")
    if len(c) > int(max_len):
        return CidValidation(False, "cid_too_long", c)
    if _CIDV0_RE.match(c) or _CIDV1_BASE32_RE.match(c):
        return CidValidation(True, "ok", c)
    return CidValidation(False, "invalid_cid_format", c)
