from __future__ import annotations

import json
from dataclasses import replace
from pathlib import Path

import pytest

from mintflow.runtime.config import (
    DEFAULT_MIME_TYPES,
    MAX_SINGLE_CHUNK_BYTES,
    default_config,
    load_config,
    validate_config,
)


def test_defaults_are_valid() -> None:
    cfg = default_config()
    validate_config(cfg)
    assert cfg.max_asset_bytes == MAX_SINGLE_CHUNK_BYTES
    assert cfg.allowed_mime_types == DEFAULT_MIME_TYPES
    assert cfg.commitment == "finalized"


def test_env_overrides_are_coerced() -> None:
    cfg = load_config(
        environ={
            "MINTFLOW_CHAIN_ID": "mintflow-test",
            "MINTFLOW_UPLOAD_MAX_ATTEMPTS": "3",
            "MINTFLOW_HTTP_TIMEOUT_S": "2.5",
            "MINTFLOW_IPFS_PIN": "false",
            "MINTFLOW_ALLOWED_MIME_TYPES": "image/png, image/gif",
            "MINTFLOW_COMMITMENT": "confirmed",
            "MINTFLOW_MAX_ASSET_BYTES": "",
        }
    )
    assert cfg.chain_id == "mintflow-test"
    assert cfg.upload_max_attempts == 3
    assert cfg.http_timeout_s == 2.5
    assert cfg.ipfs_pin is False
    assert cfg.allowed_mime_types == ("image/png", "image/gif")
    assert cfg.commitment == "confirmed"
    assert cfg.max_asset_bytes == MAX_SINGLE_CHUNK_BYTES


def test_yaml_file_then_env(tmp_path: Path) -> None:
    p = tmp_path / "mintflow.yaml"
    p.write_text(
        "chain_id: from-file\n"
        "poll_interval_ms: 500\n"
        "allowed_mime_types:\n"
        "  - image/png\n",
        encoding="utf-8",
    )
    cfg = load_config(config_path=str(p), environ={"MINTFLOW_CHAIN_ID": "from-env"})
    assert cfg.chain_id == "from-env"
    assert cfg.poll_interval_ms == 500
    assert cfg.allowed_mime_types == ("image/png",)


def test_json_file_via_env_path(tmp_path: Path) -> None:
    p = tmp_path / "mintflow.json"
    p.write_text(json.dumps({"db_path": str(tmp_path / "x.db"), "mode": "dev"}), encoding="utf-8")
    cfg = load_config(environ={"MINTFLOW_CONFIG_PATH": str(p)})
    assert cfg.mode == "dev"
    assert cfg.db_path.endswith("x.db")


@pytest.mark.parametrize(
    "changes",
    [
        {"mode": "staging"},
        {"chain_id": " "},
        {"rpc_url": "ws://127.0.0.1:8900"},
        {"ipfs_gateway_base": "ipfs.example"},
        {"max_asset_bytes": MAX_SINGLE_CHUNK_BYTES + 1},
        {"upload_max_attempts": 0},
        {"upload_backoff_cap_ms": 100, "upload_backoff_base_ms": 500},
        {"poll_timeout_ms": 100, "poll_interval_ms": 1_000},
        {"commitment": "processed"},
        {"lease_ttl_ms": 60_000, "poll_timeout_ms": 60_000},
        {"api_port": 70_000},
    ],
)
def test_invalid_configs_fail_fast(changes: dict) -> None:
    with pytest.raises(ValueError):
        validate_config(replace(default_config(), **changes))
