from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, FastAPI

from mintflow.api.errors import install_error_handlers
from mintflow.api.routes_deployments import router as deployments_router
from mintflow.api.routes_health import router as health_router
from mintflow.api.structured_logging import RequestLogMiddleware
from mintflow.pipeline.orchestrator import DeploymentOrchestrator
from mintflow.runtime.boot import build_orchestrator as _build_orchestrator
from mintflow.runtime.config import MintflowConfig, load_config
from mintflow.runtime.event_log import configure_structured_logging


def build_orchestrator(cfg: MintflowConfig) -> DeploymentOrchestrator:
    """Build the DeploymentOrchestrator for API runtime.

    This wrapper exists so tests can monkeypatch `mintflow.api.app.build_orchestrator`
    without reaching into runtime modules.
    """
    return _build_orchestrator(cfg)


def create_app(*, boot_runtime: bool = True, cfg: Optional[MintflowConfig] = None) -> FastAPI:
    """Create the FastAPI application.

    boot_runtime:
      - True (default): build the orchestrator (store, storage, chain, signer)
      - False: keep lightweight for unit tests / import-time validation
    """
    c = cfg or load_config()
    configure_structured_logging(c.log_level)

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        yield
        orch = getattr(app.state, "orchestrator", None)
        if orch is not None:
            orch.close()

    # Disable docs in production.
    if c.mode == "prod":
        app = FastAPI(title="Mintflow API", docs_url=None, redoc_url=None, openapi_url=None, lifespan=_lifespan)
    else:
        app = FastAPI(title="Mintflow API", lifespan=_lifespan)

    app.state.cfg = c
    app.state.orchestrator = build_orchestrator(c) if boot_runtime else None

    app.add_middleware(RequestLogMiddleware)
    install_error_handlers(app)

    v1 = APIRouter()
    v1.include_router(health_router, tags=["health"])
    v1.include_router(deployments_router, tags=["deployments"])
    app.include_router(v1, prefix="/v1")

    return app
