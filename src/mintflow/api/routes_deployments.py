from __future__ import annotations

import json
import logging
import mimetypes
from typing import Any, Iterator

from fastapi import APIRouter, File, Form, Request, UploadFile
from fastapi.responses import StreamingResponse
from pydantic import ValidationError as SchemaError

from mintflow.api.errors import ApiError, api_error_for
from mintflow.api.schemas import TokenFieldsModel
from mintflow.pipeline.models import Asset, DeploymentRecord
from mintflow.pipeline.orchestrator import DeploymentOrchestrator
from mintflow.runtime.config import MAX_SINGLE_CHUNK_BYTES
from mintflow.runtime.event_log import log_event

router = APIRouter()

_log = logging.getLogger("mintflow.api")

NDJSON_MEDIA_TYPE = "application/x-ndjson"


def _orchestrator(request: Request) -> DeploymentOrchestrator:
    orch = getattr(request.app.state, "orchestrator", None)
    if orch is None:
        raise ApiError.internal("runtime_not_booted", "Deployment runtime is not available")
    return orch


def _line(obj: Any) -> bytes:
    return (json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False) + "\n").encode("utf-8")


def _gateway_base(request: Request) -> str:
    return str(getattr(getattr(request.app.state, "cfg", None), "ipfs_gateway_base", "") or "")


def _snapshot_line(rec: DeploymentRecord, gateway_base: str) -> bytes:
    return _line({"ok": True, "deployment": rec.to_public_json(gateway_base=gateway_base)})


def _parse_fields(raw: str) -> TokenFieldsModel:
    try:
        obj = json.loads(raw or "")
    except json.JSONDecodeError as e:
        raise ApiError.bad_request("invalid_fields", "fields must be a JSON object", {"error": str(e)}) from e
    if not isinstance(obj, dict):
        raise ApiError.bad_request("invalid_fields", "fields must be a JSON object")
    try:
        return TokenFieldsModel.model_validate(obj)
    except SchemaError as e:
        raise ApiError.bad_request(
            "invalid_fields", "fields failed schema validation", {"errors": json.loads(e.json(include_url=False))}
        ) from e


@router.post("/deployments/{deployment_id}")
def deploy(deployment_id: str, request: Request, file: UploadFile = File(...), fields: str = Form(...)):
    """Start or resume a deployment and stream one NDJSON snapshot per transition."""
    orch = _orchestrator(request)
    cfg = getattr(request.app.state, "cfg", None)
    max_bytes = int(getattr(cfg, "max_asset_bytes", MAX_SINGLE_CHUNK_BYTES))
    gateway_base = _gateway_base(request)

    token_fields = _parse_fields(fields).to_token_fields()

    # Read one byte past the limit so oversize uploads never sit fully in memory.
    data = file.file.read(max_bytes + 1)
    if len(data) > max_bytes:
        raise ApiError.bad_request("validation_error", f"too_large (max {max_bytes} bytes)", {"field": "asset"})
    mime = (file.content_type or "").strip() or (mimetypes.guess_type(file.filename or "")[0] or "")
    declared = file.size if file.size is not None else len(data)
    asset = Asset(data=data, mime_type=mime, declared_size=int(declared))

    stream = orch.start_or_resume(deployment_id, asset, token_fields)
    # Pull the first snapshot here so busy/conflict errors become HTTP errors
    # instead of a 200 with a broken body.
    first = next(stream)

    def _body() -> Iterator[bytes]:
        try:
            yield _snapshot_line(first, gateway_base)
            for rec in stream:
                yield _snapshot_line(rec, gateway_base)
        except Exception as e:
            err = api_error_for(e)
            log_event(
                _log, "deployment_stream_error", level=logging.ERROR,
                deployment_id=deployment_id, code=err.code, error=err.message,
            )
            yield _line({"ok": False, "error": {"code": err.code, "message": err.message, "details": err.details}})
        finally:
            stream.close()

    return StreamingResponse(_body(), media_type=NDJSON_MEDIA_TYPE)


@router.get("/deployments/{deployment_id}")
def get_deployment(deployment_id: str, request: Request):
    rec = _orchestrator(request).get(deployment_id)
    if rec is None:
        raise ApiError.not_found("deployment_not_found", f"No deployment {deployment_id!r}")
    return {"ok": True, "deployment": rec.to_public_json(gateway_base=_gateway_base(request))}


@router.post("/deployments/{deployment_id}/cancel")
def cancel_deployment(deployment_id: str, request: Request):
    if not _orchestrator(request).cancel(deployment_id):
        raise ApiError.not_found("deployment_not_found", f"No deployment {deployment_id!r}")
    return {"ok": True, "deployment_id": deployment_id, "cancel_requested": True}


@router.delete("/deployments/{deployment_id}")
def clear_deployment(deployment_id: str, request: Request):
    if not _orchestrator(request).clear(deployment_id):
        raise ApiError.not_found("deployment_not_found", f"No deployment {deployment_id!r}")
    return {"ok": True, "deployment_id": deployment_id, "cleared": True}
