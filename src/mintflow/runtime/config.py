# src/mintflow/runtime/config.py
from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse

import yaml

Json = Dict[str, Any]


def _as_int(v: Any, default: int) -> int:
    try:
        return int(v)
    except (TypeError, ValueError):
        return int(default)


def _as_float(v: Any, default: float) -> float:
    try:
        return float(v)
    except (TypeError, ValueError):
        return float(default)


def _as_str(v: Any, default: str) -> str:
    if v is None:
        return str(default)
    s = str(v)
    return s if s.strip() else str(default)


def _as_bool(v: Any, default: bool) -> bool:
    if v is None:
        return bool(default)
    if isinstance(v, bool):
        return v
    s = str(v).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


def _as_str_tuple(v: Any, default: Tuple[str, ...]) -> Tuple[str, ...]:
    if v is None:
        return tuple(default)
    if isinstance(v, str):
        items = [x.strip() for x in v.split(",")]
    elif isinstance(v, (list, tuple)):
        items = [str(x).strip() for x in v]
    else:
        return tuple(default)
    out = tuple(x for x in items if x)
    return out or tuple(default)


DEFAULT_MIME_TYPES: Tuple[str, ...] = (
    "image/png",
    "image/jpeg",
    "image/gif",
    "image/webp",
    "image/svg+xml",
)


@dataclass(frozen=True)
class MintflowConfig:
    mode: str  # "dev" | "testnet" | "prod"
    chain_id: str

    # Single SQLite DB file for deployment records.
    db_path: str

    ipfs_api_base: str
    ipfs_gateway_base: str
    ipfs_pin: bool

    rpc_url: str
    http_timeout_s: float

    max_asset_bytes: int
    allowed_mime_types: Tuple[str, ...]

    upload_max_attempts: int
    upload_backoff_base_ms: int
    upload_backoff_cap_ms: int

    poll_interval_ms: int
    poll_timeout_ms: int
    commitment: str  # "confirmed" | "finalized"

    payer_public_key: str
    signer_seed: str
    signer_timeout_s: float

    lease_ttl_ms: int
    retention_ms: int

    api_host: str
    api_port: int

    log_level: str


_ALLOWED_MODES = {"dev", "testnet", "prod"}
_ALLOWED_COMMITMENTS = {"confirmed", "finalized"}

# Kubo refuses chunk sizes above 1 MiB; larger payloads would stop being a
# single raw leaf and the locally computed CID would no longer match.
MAX_SINGLE_CHUNK_BYTES = 1024 * 1024


def _require_http_url(name: str, url: str) -> None:
    u = urlparse(url or "")
    if u.scheme not in {"http", "https"} or not u.hostname:
        raise ValueError(f"{name} must be an http(s) URL; got: {url!r}")


def validate_config(cfg: MintflowConfig) -> None:
    """Fail-fast validation for operator config."""

    if not isinstance(cfg.chain_id, str) or not cfg.chain_id.strip():
        raise ValueError("chain_id must be a non-empty string")

    mode = str(cfg.mode or "").strip().lower()
    if mode not in _ALLOWED_MODES:
        raise ValueError(f"mode must be one of {_ALLOWED_MODES}; got: {cfg.mode!r}")

    if not isinstance(cfg.db_path, str) or not cfg.db_path.strip():
        raise ValueError("db_path must be a non-empty string")

    _require_http_url("ipfs_api_base", cfg.ipfs_api_base)
    _require_http_url("rpc_url", cfg.rpc_url)
    if cfg.ipfs_gateway_base:
        _require_http_url("ipfs_gateway_base", cfg.ipfs_gateway_base)

    if float(cfg.http_timeout_s) <= 0:
        raise ValueError(f"http_timeout_s must be > 0; got: {cfg.http_timeout_s}")

    if int(cfg.max_asset_bytes) <= 0 or int(cfg.max_asset_bytes) > MAX_SINGLE_CHUNK_BYTES:
        raise ValueError(f"max_asset_bytes must be 1..{MAX_SINGLE_CHUNK_BYTES}; got: {cfg.max_asset_bytes}")

    if not cfg.allowed_mime_types:
        raise ValueError("allowed_mime_types must not be empty")

    if int(cfg.upload_max_attempts) <= 0:
        raise ValueError(f"upload_max_attempts must be > 0; got: {cfg.upload_max_attempts}")
    if int(cfg.upload_backoff_base_ms) <= 0:
        raise ValueError(f"upload_backoff_base_ms must be > 0; got: {cfg.upload_backoff_base_ms}")
    if int(cfg.upload_backoff_cap_ms) < int(cfg.upload_backoff_base_ms):
        raise ValueError("upload_backoff_cap_ms must be >= upload_backoff_base_ms")

    if int(cfg.poll_interval_ms) <= 0:
        raise ValueError(f"poll_interval_ms must be > 0; got: {cfg.poll_interval_ms}")
    if int(cfg.poll_timeout_ms) < int(cfg.poll_interval_ms):
        raise ValueError("poll_timeout_ms must be >= poll_interval_ms")

    if cfg.commitment not in _ALLOWED_COMMITMENTS:
        raise ValueError(f"commitment must be one of {_ALLOWED_COMMITMENTS}; got: {cfg.commitment!r}")

    if float(cfg.signer_timeout_s) <= 0:
        raise ValueError(f"signer_timeout_s must be > 0; got: {cfg.signer_timeout_s}")

    # A driver must be able to finish its longest stage (confirmation polling)
    # before its lease can be taken over.
    if int(cfg.lease_ttl_ms) <= int(cfg.poll_timeout_ms):
        raise ValueError("lease_ttl_ms must be > poll_timeout_ms")

    if int(cfg.retention_ms) <= 0:
        raise ValueError(f"retention_ms must be > 0; got: {cfg.retention_ms}")

    if int(cfg.api_port) <= 0 or int(cfg.api_port) > 65535:
        raise ValueError(f"api_port must be 1..65535; got: {cfg.api_port}")


def default_config() -> MintflowConfig:
    return MintflowConfig(
        mode="prod",
        chain_id="mintflow-dev",
        db_path="./data/mintflow.db",
        ipfs_api_base="http://127.0.0.1:5001",
        ipfs_gateway_base="http://127.0.0.1:8080",
        ipfs_pin=True,
        rpc_url="http://127.0.0.1:8899",
        http_timeout_s=30.0,
        max_asset_bytes=MAX_SINGLE_CHUNK_BYTES,
        allowed_mime_types=DEFAULT_MIME_TYPES,
        upload_max_attempts=5,
        upload_backoff_base_ms=500,
        upload_backoff_cap_ms=30_000,
        poll_interval_ms=2_000,
        poll_timeout_ms=60_000,
        commitment="finalized",
        payer_public_key="",
        signer_seed="",
        signer_timeout_s=120.0,
        lease_ttl_ms=300_000,
        retention_ms=30 * 24 * 60 * 60 * 1000,
        api_host="127.0.0.1",
        api_port=8080,
        log_level="INFO",
    )


def _coerce(raw: Json, base: MintflowConfig) -> MintflowConfig:
    """Overlay raw (file or env) values onto `base`, coercing by field type."""
    updates: Json = {}
    for f in fields(MintflowConfig):
        if f.name not in raw:
            continue
        cur = getattr(base, f.name)
        v = raw[f.name]
        if isinstance(cur, bool):
            updates[f.name] = _as_bool(v, cur)
        elif isinstance(cur, int):
            updates[f.name] = _as_int(v, cur)
        elif isinstance(cur, float):
            updates[f.name] = _as_float(v, cur)
        elif isinstance(cur, tuple):
            updates[f.name] = _as_str_tuple(v, cur)
        else:
            updates[f.name] = _as_str(v, cur).strip()
    return replace(base, **updates)


def read_config_file(path: str) -> MintflowConfig:
    p = Path(path)
    text = p.read_text(encoding="utf-8")
    if p.suffix.lower() in {".yaml", ".yml"}:
        raw = yaml.safe_load(text)
    else:
        raw = json.loads(text)
    if not isinstance(raw, dict):
        raise ValueError("mintflow config must be a mapping")
    return _coerce(raw, default_config())


def env_overrides(environ: Optional[Dict[str, str]] = None) -> Json:
    env = os.environ if environ is None else environ
    out: Json = {}
    for f in fields(MintflowConfig):
        key = "MINTFLOW_" + f.name.upper()
        if key in env and str(env[key]).strip() != "":
            out[f.name] = env[key]
    return out


def load_config(*, config_path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> MintflowConfig:
    """File (MINTFLOW_CONFIG_PATH) first, then MINTFLOW_* env overrides, then validation."""
    env = os.environ if environ is None else environ
    p = config_path or env.get("MINTFLOW_CONFIG_PATH")
    cfg = read_config_file(p) if p else default_config()
    cfg = _coerce(env_overrides(env), cfg)
    validate_config(cfg)
    return cfg
