from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

Json = Dict[str, Any]


@dataclass
class PipelineError(Exception):
    """Canonical error type for pipeline stage failures.

    Components raise these; only the orchestrator decides whether a failure is
    terminal, retried on the next run, or resumed. `stage` is filled in by the
    orchestrator when it records the failure.
    """

    code: str
    reason: str
    details: Any | None = None
    retryable: bool = False
    stage: Optional[str] = None

    def __str__(self) -> str:  # pragma: no cover
        if self.details is None:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"

    def to_json(self) -> Json:
        return {
            "code": self.code,
            "reason": self.reason,
            "details": self.details,
            "retryable": bool(self.retryable),
            "stage": self.stage,
        }


class ValidationError(PipelineError):
    def __init__(self, field: str, reason: str) -> None:
        super().__init__("validation_error", reason, {"field": field}, False)
        self.field = field


class UploadError(PipelineError):
    """Storage upload failure.

    transient=False on anything that escapes the uploader: either retries were
    exhausted (retryable on a later run) or the network rejected the payload.
    """

    def __init__(
        self,
        reason: str,
        *,
        transient: bool = False,
        retryable: bool = False,
        cause: Optional[BaseException] = None,
        details: Optional[Json] = None,
    ) -> None:
        d: Json = dict(details or {})
        d["transient"] = bool(transient)
        if cause is not None:
            d["cause"] = str(cause)[:500]
        super().__init__("upload_error", reason, d, retryable)
        self.transient = bool(transient)
        self.cause = cause


class BuildError(PipelineError):
    def __init__(self, reason: str, details: Optional[Json] = None) -> None:
        super().__init__("build_error", reason, details, False)


class SigningError(PipelineError):
    # Never retried automatically; the next start_or_resume call is the fresh user action.
    def __init__(self, reason: str, details: Optional[Json] = None) -> None:
        super().__init__("signing_error", reason, details, True)


class SubmissionError(PipelineError):
    def __init__(self, reason: str, *, rejected: bool, details: Optional[Json] = None) -> None:
        super().__init__("submission_error", reason, details, not rejected)
        self.rejected = bool(rejected)


class ConfirmationFailed(PipelineError):
    def __init__(self, reason: str, details: Optional[Json] = None) -> None:
        super().__init__("confirmation_failed", reason, details, False)


class ChainUnavailableError(PipelineError):
    def __init__(self, reason: str, details: Optional[Json] = None) -> None:
        super().__init__("chain_unavailable", reason, details, True)


class IdempotencyConflictError(PipelineError):
    def __init__(self, deployment_id: str, reason: str) -> None:
        super().__init__("idempotency_conflict", reason, {"deployment_id": deployment_id}, False)
        self.deployment_id = deployment_id


class SignerRejected(Exception):
    """Raised by a Signer when the user or device declines to sign."""


class StoreError(RuntimeError):
    pass


class StaleRecordError(StoreError):
    """Compare-and-swap lost: the stored version moved, or the lease changed hands."""


class DeploymentBusyError(StoreError):
    """Another driver holds a live lease on this deployment id."""
