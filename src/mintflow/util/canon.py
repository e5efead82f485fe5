# src/mintflow/util/canon.py
from __future__ import annotations

import hashlib
import json
from typing import Any, Dict

Json = Dict[str, Any]


def canon_json(obj: Any) -> str:
    """Canonical JSON encoding (sorted keys, no whitespace).

    Anything that is hashed or persisted goes through here. Unknown types are
    NOT coerced: a non-JSON value leaking in must fail loudly, otherwise the
    same inputs could serialize differently between runs.
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def canon_bytes(obj: Any) -> bytes:
    return canon_json(obj).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()
