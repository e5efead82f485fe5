# src/mintflow/chain/submission.py
from __future__ import annotations

import logging
import time
from typing import Callable, Iterator, Optional

from mintflow.chain.rpc import ChainRpc, RpcResponseError, RpcTransportError
from mintflow.chain.tx_types import (
    FINALIZED,
    NOT_FOUND,
    PENDING,
    STATUS_UNAVAILABLE,
    TIMED_OUT,
    ConfirmationStatus,
    SignedTransaction,
    TransactionHandle,
)
from mintflow.runtime.errors import ChainUnavailableError, SubmissionError
from mintflow.runtime.event_log import log_event

_log = logging.getLogger("mintflow.submission")

# sendTransaction error for a signature the node has already seen.
_ALREADY_PROCESSED_MARKERS = ("already been processed", "alreadyprocessed")


class SubmissionTracker:
    """Sends a signed transaction once, then polls it to an outcome.

    Ambiguous sends (no explicit rejection) are never blindly resent: the
    tracker moves on to polling, because the identical signed bytes may
    already have landed.
    """

    def __init__(
        self,
        rpc: ChainRpc,
        *,
        poll_interval_ms: int = 2_000,
        poll_timeout_ms: int = 60_000,
        commitment: str = FINALIZED,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._rpc = rpc
        self.poll_interval_ms = int(poll_interval_ms)
        self.poll_timeout_ms = int(poll_timeout_ms)
        self.commitment = commitment
        self._sleep = sleep
        self._clock = clock

    def submit(self, signed: SignedTransaction, *, deployment_id: str = "") -> TransactionHandle:
        lvbh = int(signed.unsigned.ordering_ref.last_valid_block_height)
        try:
            returned = self._rpc.send_transaction(signed.wire_bytes())
        except RpcResponseError as e:
            if any(m in e.message.lower() for m in _ALREADY_PROCESSED_MARKERS):
                log_event(_log, "submit_duplicate", deployment_id=deployment_id, signature=signed.signature)
                return TransactionHandle(signature=signed.signature, last_valid_block_height=lvbh)
            log_event(
                _log, "submit_rejected", level=logging.WARNING,
                deployment_id=deployment_id, signature=signed.signature, rpc_code=e.code, error=e.message,
            )
            raise SubmissionError(e.message or "rejected", rejected=True, details={"rpc_code": e.code, "data": e.data}) from e
        except RpcTransportError as e:
            log_event(
                _log, "submit_ambiguous", level=logging.WARNING,
                deployment_id=deployment_id, signature=signed.signature, error=str(e),
            )
            return TransactionHandle(signature=signed.signature, last_valid_block_height=lvbh, ambiguous=True)

        if returned and returned != signed.signature:
            raise SubmissionError(
                "signature_mismatch",
                rejected=True,
                details={"expected": signed.signature, "returned": returned},
            )
        log_event(_log, "submit_ok", deployment_id=deployment_id, signature=signed.signature)
        return TransactionHandle(signature=signed.signature, last_valid_block_height=lvbh)

    def poll_once(self, handle: TransactionHandle) -> ConfirmationStatus:
        try:
            return self._rpc.get_status(handle.signature)
        except (RpcTransportError, RpcResponseError) as e:
            raise ChainUnavailableError("status_unavailable", {"signature": handle.signature, "error": str(e)}) from e

    def is_expired(self, handle: TransactionHandle) -> bool:
        """True once the chain is past the handle's last valid block height (it can no longer land)."""
        if handle.last_valid_block_height <= 0:
            return True
        try:
            height = int(self._rpc.get_block_height())
        except (RpcTransportError, RpcResponseError) as e:
            raise ChainUnavailableError("block_height_unavailable", {"error": str(e)}) from e
        return height > handle.last_valid_block_height

    def track(self, handle: TransactionHandle, *, deployment_id: str = "") -> Iterator[ConfirmationStatus]:
        """Poll at a fixed interval, yielding each status change.

        The last status yielded is the outcome: one that reaches the configured
        commitment, a failure, or TIMED_OUT carrying the last observation as
        its reason. NOT_FOUND before the deadline counts as pending. A poll
        that errors is not an observation: if the final poll failed the
        TIMED_OUT reason is STATUS_UNAVAILABLE, never NOT_FOUND.
        """
        deadline = self._clock() + self.poll_timeout_ms / 1000.0
        last: Optional[ConfirmationStatus] = None
        last_poll_ok = False

        while True:
            try:
                status = self._rpc.get_status(handle.signature)
                last_poll_ok = True
            except (RpcTransportError, RpcResponseError) as e:
                log_event(
                    _log, "poll_error", level=logging.WARNING,
                    deployment_id=deployment_id, signature=handle.signature, error=str(e),
                )
                last_poll_ok = False
                status = last or ConfirmationStatus(PENDING, reason=STATUS_UNAVAILABLE)

            if status.is_failed or status.reaches(self.commitment):
                log_event(_log, "poll_outcome", deployment_id=deployment_id, signature=handle.signature, state=status.state)
                yield status
                return

            if last is None or status.state != last.state:
                yield status if status.state != NOT_FOUND else ConfirmationStatus(PENDING, reason=NOT_FOUND)
            last = status

            if self._clock() >= deadline:
                reason = status.state if last_poll_ok else STATUS_UNAVAILABLE
                log_event(
                    _log, "poll_timeout", level=logging.WARNING,
                    deployment_id=deployment_id, signature=handle.signature, last_state=reason,
                )
                yield ConfirmationStatus(TIMED_OUT, reason=reason)
                return

            self._sleep(self.poll_interval_ms / 1000.0)

    def await_finality(self, handle: TransactionHandle, *, deployment_id: str = "") -> ConfirmationStatus:
        outcome = ConfirmationStatus(TIMED_OUT, reason=NOT_FOUND)
        for status in self.track(handle, deployment_id=deployment_id):
            outcome = status
        return outcome
