from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from mintflow.runtime.errors import DeploymentBusyError, IdempotencyConflictError, PipelineError, ValidationError


@dataclass(frozen=True)
class ApiError(Exception):
    status_code: int
    code: str
    message: str
    details: Dict[str, Any]

    @staticmethod
    def bad_request(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(400, code, message, details or {})

    @staticmethod
    def not_found(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(404, code, message, details or {})

    @staticmethod
    def conflict(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(409, code, message, details or {})

    @staticmethod
    def internal(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(500, code, message, details or {})

    def to_response(self) -> JSONResponse:
        return JSONResponse(
            status_code=self.status_code,
            content={"ok": False, "error": {"code": self.code, "message": self.message, "details": self.details}},
        )


def api_error_for(exc: Exception) -> ApiError:
    """Map domain errors raised before a stream starts onto HTTP errors."""
    if isinstance(exc, ApiError):
        return exc
    if isinstance(exc, ValidationError):
        return ApiError.bad_request(exc.code, exc.reason, {"field": exc.field})
    if isinstance(exc, IdempotencyConflictError):
        return ApiError.conflict(exc.code, exc.reason, {"deployment_id": exc.deployment_id})
    if isinstance(exc, DeploymentBusyError):
        return ApiError.conflict("deployment_busy", str(exc))
    if isinstance(exc, PipelineError):
        return ApiError.internal(exc.code, exc.reason, exc.to_json())
    return ApiError.internal("internal_error", f"{type(exc).__name__}: {exc}")


def install_error_handlers(app: FastAPI) -> None:
    async def _handle(request: Request, exc: Exception) -> JSONResponse:
        return api_error_for(exc).to_response()

    for exc_type in (ApiError, ValidationError, IdempotencyConflictError, DeploymentBusyError):
        app.add_exception_handler(exc_type, _handle)
