# src/mintflow/cli.py
from __future__ import annotations

import argparse
import json
import mimetypes
import sys
from pathlib import Path
from typing import Any, List, Optional

from mintflow.env import load_dotenv_if_present
from mintflow.pipeline.models import Asset, DeploymentState
from mintflow.pipeline.validator import parse_token_fields
from mintflow.runtime.boot import build_orchestrator
from mintflow.runtime.config import MintflowConfig, load_config
from mintflow.runtime.deployment_store import SqliteDeploymentStore
from mintflow.runtime.errors import DeploymentBusyError, PipelineError
from mintflow.runtime.event_log import configure_structured_logging
from mintflow.runtime.sqlite_db import SqliteDB


def _print(obj: Any) -> None:
    print(json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False), flush=True)


def _parse_args(argv: List[str]) -> argparse.Namespace:
    ap = argparse.ArgumentParser(prog="mintflow", description="Upload an image, mint it, and track the deployment")
    ap.add_argument("--config", dest="config_path", default=None, help="JSON or YAML config file")
    sub = ap.add_subparsers(dest="command", required=True)

    d = sub.add_parser("deploy", help="start or resume a deployment")
    d.add_argument("--id", dest="deployment_id", required=True)
    d.add_argument("--image", dest="image", required=True)
    d.add_argument("--fields", dest="fields", required=True, help="token fields JSON file")
    d.add_argument("--mime", dest="mime", default="", help="override the guessed MIME type")

    for name, text in (
        ("status", "print the latest snapshot"),
        ("cancel", "request cancellation"),
        ("clear", "delete a deployment record"),
    ):
        p = sub.add_parser(name, help=text)
        p.add_argument("--id", dest="deployment_id", required=True)

    sub.add_parser("purge", help="delete terminal records older than the retention window")
    return ap.parse_args(argv)


def _store(cfg: MintflowConfig) -> SqliteDeploymentStore:
    return SqliteDeploymentStore(db=SqliteDB(path=cfg.db_path))


def _deploy(cfg: MintflowConfig, args: argparse.Namespace) -> int:
    image = Path(args.image)
    if not image.is_file():
        print(f"ERROR: image not found: {image}", file=sys.stderr)
        return 2
    try:
        fields_obj = json.loads(Path(args.fields).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        print(f"ERROR: cannot read fields JSON {args.fields}: {e}", file=sys.stderr)
        return 2

    data = image.read_bytes()
    mime = (args.mime or "").strip() or (mimetypes.guess_type(image.name)[0] or "")

    orch = build_orchestrator(cfg)
    try:
        fields = parse_token_fields(fields_obj)
        last = None
        for last in orch.start_or_resume(args.deployment_id, Asset(data=data, mime_type=mime, declared_size=len(data)), fields):
            _print(last.to_public_json(gateway_base=cfg.ipfs_gateway_base))
    except PipelineError as e:
        _print({"ok": False, "error": e.to_json()})
        return 1
    except DeploymentBusyError as e:
        _print({"ok": False, "error": {"code": "deployment_busy", "reason": str(e)}})
        return 1
    finally:
        orch.close()
    return 0 if last is not None and last.state == DeploymentState.CONFIRMED else 1


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv_if_present()
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    try:
        cfg = load_config(config_path=args.config_path)
    except (OSError, ValueError) as e:
        print(f"ERROR: invalid config: {e}", file=sys.stderr)
        return 2
    configure_structured_logging(cfg.log_level)

    if args.command == "deploy":
        return _deploy(cfg, args)

    store = _store(cfg)
    if args.command == "status":
        rec = store.load(args.deployment_id)
        if rec is None:
            _print({"ok": False, "error": {"code": "deployment_not_found", "deployment_id": args.deployment_id}})
            return 1
        _print({"ok": True, "deployment": rec.to_public_json(gateway_base=cfg.ipfs_gateway_base)})
        return 0
    if args.command == "cancel":
        ok = store.request_cancel(args.deployment_id)
        _print({"ok": ok, "deployment_id": args.deployment_id, "cancel_requested": ok})
        return 0 if ok else 1
    if args.command == "clear":
        try:
            ok = store.delete(args.deployment_id)
        except DeploymentBusyError as e:
            _print({"ok": False, "error": {"code": "deployment_busy", "reason": str(e)}})
            return 1
        _print({"ok": ok, "deployment_id": args.deployment_id, "cleared": ok})
        return 0 if ok else 1
    if args.command == "purge":
        n = store.purge_expired(retention_ms=cfg.retention_ms)
        _print({"ok": True, "purged": n})
        return 0
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
