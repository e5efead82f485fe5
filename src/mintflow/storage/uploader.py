# src/mintflow/storage/uploader.py
from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional

from mintflow.pipeline.models import ContentReference
from mintflow.runtime.errors import UploadError
from mintflow.runtime.event_log import log_event
from mintflow.storage.ipfs import StorageNetwork, StorageRejectedError, StorageTransportError
from mintflow.util.content_id import compute_content_id, normalize_cid, validate_cid

_log = logging.getLogger("mintflow.storage")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    backoff_base_ms: int = 500
    backoff_cap_ms: int = 30_000

    def backoff_ms(self, attempt: int, rng: random.Random) -> int:
        """Full-jitter exponential backoff; `attempt` starts at 1 for the first failure."""
        a = max(1, int(attempt))
        ceiling = min(int(self.backoff_cap_ms), int(self.backoff_base_ms) * (2 ** (a - 1)))
        return int(rng.uniform(0, ceiling))


class StorageUploader:
    """Uploads payloads to a content-addressed network with bounded retries.

    The content id is computed locally before any network call, so the same
    bytes always map to the same reference and a caller holding a reference
    never needs to upload again.
    """

    def __init__(
        self,
        network: StorageNetwork,
        *,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._network = network
        self._policy = policy or RetryPolicy()
        self._sleep = sleep
        self._rng = rng or random.Random()

    @staticmethod
    def reference_for(payload: bytes) -> ContentReference:
        return ContentReference.for_content_id(compute_content_id(payload))

    def is_uploaded(self, payload: bytes, known: Optional[ContentReference]) -> bool:
        return known is not None and known.content_id == compute_content_id(payload)

    def upload(self, payload: bytes, *, name: str = "upload", deployment_id: str = "") -> ContentReference:
        ref = self.reference_for(payload)
        last_error: Optional[StorageTransportError] = None

        for attempt in range(1, int(self._policy.max_attempts) + 1):
            try:
                returned = normalize_cid(self._network.put(payload, name=name))
            except StorageRejectedError as e:
                log_event(
                    _log, "upload_rejected", level=logging.WARNING,
                    deployment_id=deployment_id, cid=ref.content_id, attempt=attempt, error=str(e),
                )
                raise UploadError("rejected_by_storage", transient=False, retryable=False, cause=e) from e
            except StorageTransportError as e:
                last_error = e
                if attempt >= int(self._policy.max_attempts):
                    break
                delay_ms = self._policy.backoff_ms(attempt, self._rng)
                log_event(
                    _log, "upload_retry", level=logging.WARNING,
                    deployment_id=deployment_id, cid=ref.content_id, attempt=attempt,
                    delay_ms=delay_ms, error=str(e),
                )
                self._sleep(delay_ms / 1000.0)
                continue

            check = validate_cid(returned)
            if not check.ok or returned != ref.content_id:
                raise UploadError(
                    "cid_mismatch",
                    transient=False,
                    retryable=False,
                    details={"expected": ref.content_id, "returned": returned, "check": check.reason},
                )

            log_event(_log, "upload_ok", deployment_id=deployment_id, cid=ref.content_id, attempt=attempt, size=len(payload))
            return ref

        log_event(
            _log, "upload_exhausted", level=logging.ERROR,
            deployment_id=deployment_id, cid=ref.content_id, attempts=self._policy.max_attempts,
        )
        raise UploadError(
            "retries_exhausted",
            transient=False,
            retryable=True,
            cause=last_error,
            details={"attempts": int(self._policy.max_attempts)},
        )
