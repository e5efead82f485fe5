from __future__ import annotations

from fastapi import APIRouter, Request

from mintflow import __version__

router = APIRouter()


@router.get("/health")
def health(request: Request):
    cfg = getattr(request.app.state, "cfg", None)
    return {
        "ok": True,
        "service": "mintflow",
        "version": __version__,
        "chain_id": getattr(cfg, "chain_id", None),
        "runtime_booted": getattr(request.app.state, "orchestrator", None) is not None,
    }
