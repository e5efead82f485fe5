# src/mintflow/pipeline/orchestrator.py
from __future__ import annotations

import logging
import mimetypes
import os
import socket
import time
import uuid
from dataclasses import replace
from typing import Any, Callable, Iterable, Iterator, Optional

from mintflow.chain.signing import SigningGateway
from mintflow.chain.submission import SubmissionTracker
from mintflow.chain.tx_builder import TransactionBuilder
from mintflow.chain.tx_types import NOT_FOUND, PENDING, TIMED_OUT, ConfirmationStatus, TransactionHandle
from mintflow.pipeline.metadata import METADATA_FILENAME, assemble_metadata
from mintflow.pipeline.models import Asset, DeploymentRecord, DeploymentState, MintRequest, TokenFields
from mintflow.pipeline.validator import validate_asset
from mintflow.runtime.config import DEFAULT_MIME_TYPES, MAX_SINGLE_CHUNK_BYTES
from mintflow.runtime.deployment_store import SqliteDeploymentStore
from mintflow.runtime.errors import ConfirmationFailed, IdempotencyConflictError, PipelineError, ValidationError
from mintflow.runtime.event_log import log_event
from mintflow.storage.uploader import StorageUploader

_log = logging.getLogger("mintflow.orchestrator")

S = DeploymentState

# Stage attempted from each resume point; a failure is recorded against it.
_NEXT_STAGE = {
    S.CREATED: S.VALIDATED,
    S.VALIDATED: S.IMAGE_UPLOADED,
    S.IMAGE_UPLOADED: S.METADATA_UPLOADED,
    S.METADATA_UPLOADED: S.TRANSACTION_BUILT,
    S.TRANSACTION_BUILT: S.SIGNED,
    S.SIGNED: S.SUBMITTED,
    S.SUBMITTED: S.CONFIRMED,
    S.TIMED_OUT: S.CONFIRMED,
}


def _now_ms() -> int:
    return int(time.time() * 1000)


_STAGE_LABELS = {
    S.VALIDATED: "validation",
    S.IMAGE_UPLOADED: "image upload",
    S.METADATA_UPLOADED: "metadata upload",
    S.TRANSACTION_BUILT: "transaction build",
    S.SIGNED: "signing",
    S.SUBMITTED: "submission",
    S.CONFIRMED: "confirmation",
}


def _describe(stage: DeploymentState, err: PipelineError) -> str:
    return f"{_STAGE_LABELS.get(stage, stage.value)} failed: {err.reason}"


class DeploymentOrchestrator:
    """Drives one deployment id through validate, upload, mint and confirm.

    Every transition is persisted with compare-and-swap before it is yielded,
    so the stored record is always a valid resume point. A run resumes from
    the first stage whose output is not recorded yet:

      image_ref        -> image is never uploaded again
      metadata_ref     -> metadata is never uploaded again
      sent signature   -> the transaction is polled, never rebuilt blindly

    An unsigned (or signed but never sent) transaction is not reused across
    runs: its ordering reference may have expired, and since it never left
    the process nothing can land from it.
    """

    def __init__(
        self,
        *,
        store: SqliteDeploymentStore,
        uploader: StorageUploader,
        builder: TransactionBuilder,
        signing: SigningGateway,
        tracker: SubmissionTracker,
        payer_public_key: str,
        max_asset_bytes: int = MAX_SINGLE_CHUNK_BYTES,
        allowed_mime_types: Iterable[str] = DEFAULT_MIME_TYPES,
        lease_ttl_ms: int = 300_000,
        retention_ms: int = 30 * 24 * 60 * 60 * 1000,
        now_ms: Callable[[], int] = _now_ms,
    ) -> None:
        self._store = store
        self._uploader = uploader
        self._builder = builder
        self._signing = signing
        self._tracker = tracker
        self.payer_public_key = payer_public_key
        self.max_asset_bytes = int(max_asset_bytes)
        self.allowed_mime_types = tuple(allowed_mime_types)
        self.lease_ttl_ms = int(lease_ttl_ms)
        self.retention_ms = int(retention_ms)
        self._now_ms = now_ms
        self._owner_prefix = f"{socket.gethostname()}:{os.getpid()}"

    # ----------------------------
    # Public surface
    # ----------------------------

    def start_or_resume(self, deployment_id: str, asset: Asset, fields: TokenFields) -> Iterator[DeploymentRecord]:
        """Return the progress stream for `deployment_id`.

        The first snapshot is the stored state (so resumed progress is
        visible), then one snapshot per persisted transition. The stream ends
        at a terminal state, at timed_out, or at a failure.

        Raises (from the stream) DeploymentBusyError if another driver holds
        the id, IdempotencyConflictError if the id was started with other
        inputs.
        """
        did = (deployment_id or "").strip()
        if not did:
            raise ValidationError("deployment_id", "required")
        if not isinstance(asset, Asset):
            raise ValidationError("asset", "required")
        if not isinstance(fields, TokenFields):
            raise ValidationError("fields", "required")
        return self._run(did, asset, fields)

    def run(self, deployment_id: str, asset: Asset, fields: TokenFields) -> DeploymentRecord:
        last: Optional[DeploymentRecord] = None
        for last in self.start_or_resume(deployment_id, asset, fields):
            pass
        assert last is not None
        return last

    def get(self, deployment_id: str) -> Optional[DeploymentRecord]:
        return self._store.load(deployment_id)

    def cancel(self, deployment_id: str) -> bool:
        ok = self._store.request_cancel(deployment_id)
        log_event(_log, "deployment_cancel_requested", deployment_id=deployment_id, found=ok)
        return ok

    def clear(self, deployment_id: str) -> bool:
        ok = self._store.delete(deployment_id, now_ms=self._now_ms())
        log_event(_log, "deployment_cleared", deployment_id=deployment_id, found=ok)
        return ok

    def purge_expired(self) -> int:
        return self._store.purge_expired(retention_ms=self.retention_ms, now_ms=self._now_ms())

    def close(self) -> None:
        self._signing.close()

    # ----------------------------
    # Driver
    # ----------------------------

    def _run(self, did: str, asset: Asset, fields: TokenFields) -> Iterator[DeploymentRecord]:
        owner = f"{self._owner_prefix}:{uuid.uuid4().hex}"
        now = self._now_ms()
        purged = self.purge_expired()
        if purged:
            log_event(_log, "deployments_purged", count=purged)

        initial = DeploymentRecord(
            deployment_id=did,
            state=S.CREATED,
            asset_hash=asset.sha256,
            fields_hash=fields.fingerprint(),
            created_ms=now,
            updated_ms=now,
        )
        rec = self._store.claim(initial, owner=owner, ttl_ms=self.lease_ttl_ms, now_ms=now)
        try:
            if rec.asset_hash != initial.asset_hash or rec.fields_hash != initial.fields_hash:
                raise IdempotencyConflictError(did, "inputs differ from the ones this deployment id was started with")

            log_event(
                _log, "deployment_resume" if rec.version > 1 else "deployment_start",
                deployment_id=did, state=rec.state.value, version=rec.version,
            )
            yield rec
            if rec.is_terminal:
                return
            yield from self._drive(rec, asset, fields, owner)
        finally:
            self._store.release_lease(did, owner)

    def _resume_point(self, rec: DeploymentRecord) -> DeploymentState:
        if rec.state == S.TIMED_OUT:
            return S.TIMED_OUT
        if rec.signed_tx is not None and rec.tx_signature and rec.submission_attempts > 0:
            return S.SUBMITTED
        if rec.metadata_ref is not None:
            return S.METADATA_UPLOADED
        if rec.image_ref is not None:
            return S.IMAGE_UPLOADED
        if rec.state == S.CREATED or rec.failed_stage == S.VALIDATED.value:
            return S.CREATED
        return S.VALIDATED

    def _drive(self, rec: DeploymentRecord, asset: Asset, fields: TokenFields, owner: str) -> Iterator[DeploymentRecord]:
        cursor = self._resume_point(rec)
        # Only a resumed timeout may give up on its signature once the blockhash expires.
        may_supersede = cursor == S.TIMED_OUT
        if cursor == S.METADATA_UPLOADED and (rec.unsigned_tx is not None or rec.signed_tx is not None):
            # A pending cancel sees the stale transaction first, exactly as it
            # would have in the run that built it.
            if self._cancel_pending(rec):
                yield self._cancel_between_stages(rec, cursor, owner)
                return
            rec = self._save(rec, owner, state=S.METADATA_UPLOADED, unsigned_tx=None, signed_tx=None, tx_signature=None)
            yield rec

        while True:
            if self._cancel_pending(rec):
                cancelled = self._cancel_between_stages(rec, cursor, owner)
                if cancelled is not None:
                    yield cancelled
                    return

            stage = _NEXT_STAGE[cursor]
            try:
                if cursor == S.SUBMITTED:
                    for rec in self._await_outcome(rec, owner, may_supersede=may_supersede):
                        yield rec
                    if rec.state != S.METADATA_UPLOADED:
                        return
                    may_supersede = False
                    cursor = rec.state
                    continue
                if cursor == S.CREATED:
                    rec = self._validate(rec, asset, fields, owner)
                elif cursor == S.VALIDATED:
                    rec = self._upload_image(rec, asset, owner)
                elif cursor == S.IMAGE_UPLOADED:
                    rec = self._upload_metadata(rec, asset, fields, owner)
                elif cursor == S.METADATA_UPLOADED:
                    rec = self._build(rec, fields, owner)
                elif cursor == S.TRANSACTION_BUILT:
                    rec = self._sign(rec, owner)
                elif cursor == S.SIGNED:
                    rec = self._record_attempt(rec, owner)
                    rec = self._submit(rec, owner)
                elif cursor == S.TIMED_OUT:
                    rec = self._reconcile_timeout(rec, owner)
                else:
                    raise RuntimeError(f"no stage after {cursor.value}")
            except PipelineError as e:
                yield self._fail(rec, owner, stage, e)
                return

            yield rec
            if rec.is_terminal:
                return
            cursor = rec.state

    def _cancel_pending(self, rec: DeploymentRecord) -> bool:
        return rec.cancel_requested or self._store.is_cancel_requested(rec.deployment_id)

    def _cancel_between_stages(
        self, rec: DeploymentRecord, cursor: DeploymentState, owner: str
    ) -> Optional[DeploymentRecord]:
        """Apply a pending cancel. Returns None when the deployment must keep polling."""
        if cursor in (S.SUBMITTED, S.TIMED_OUT):
            # Possibly on-chain: only the chain can tell us how this ends.
            return None
        if rec.signed_tx is None:
            log_event(_log, "deployment_cancelled", deployment_id=rec.deployment_id, at=cursor.value)
            return self._save(rec, owner, state=S.CANCELLED)
        # Signed but never sent: it cannot land, but a signature exists, so
        # the record ends as a failure rather than "cancelled".
        return self._fail(rec, owner, S.SUBMITTED, ConfirmationFailed("cancelled_before_submission"))

    # ----------------------------
    # Stages
    # ----------------------------

    def _validate(self, rec: DeploymentRecord, asset: Asset, fields: TokenFields, owner: str) -> DeploymentRecord:
        validate_asset(asset, fields, max_bytes=self.max_asset_bytes, allowed_mime_types=self.allowed_mime_types)
        return self._save(rec, owner, state=S.VALIDATED)

    def _upload_image(self, rec: DeploymentRecord, asset: Asset, owner: str) -> DeploymentRecord:
        if self._uploader.is_uploaded(asset.data, rec.image_ref):
            return self._save(rec, owner, state=S.IMAGE_UPLOADED)
        ext = mimetypes.guess_extension(asset.mime_type) or ""
        ref = self._uploader.upload(asset.data, name=f"image{ext}", deployment_id=rec.deployment_id)
        return self._save(rec, owner, state=S.IMAGE_UPLOADED, image_ref=ref)

    def _upload_metadata(self, rec: DeploymentRecord, asset: Asset, fields: TokenFields, owner: str) -> DeploymentRecord:
        assert rec.image_ref is not None
        doc = assemble_metadata(fields, rec.image_ref, mime_type=asset.mime_type)
        ref = self._uploader.upload(doc.to_bytes(), name=METADATA_FILENAME, deployment_id=rec.deployment_id)
        return self._save(rec, owner, state=S.METADATA_UPLOADED, metadata_ref=ref)

    def _build(self, rec: DeploymentRecord, fields: TokenFields, owner: str) -> DeploymentRecord:
        assert rec.metadata_ref is not None
        ordering_ref = self._builder.fetch_ordering_reference()
        request = MintRequest(
            payer=self.payer_public_key,
            metadata=rec.metadata_ref,
            name=fields.name,
            symbol=fields.symbol,
            seller_fee_basis_points=fields.seller_fee_basis_points,
            creators=fields.creators,
            max_supply=fields.max_supply,
        )
        unsigned = self._builder.build(request, ordering_ref)
        return self._save(
            rec, owner,
            state=S.TRANSACTION_BUILT, unsigned_tx=unsigned, signed_tx=None, tx_signature=None, confirmation_status=None,
        )

    def _sign(self, rec: DeploymentRecord, owner: str) -> DeploymentRecord:
        assert rec.unsigned_tx is not None
        signed = self._signing.request_signature(rec.unsigned_tx, deployment_id=rec.deployment_id)
        return self._save(rec, owner, state=S.SIGNED, signed_tx=signed, tx_signature=signed.signature)

    def _record_attempt(self, rec: DeploymentRecord, owner: str) -> DeploymentRecord:
        # Persisted before the send: after a crash past this point the
        # transaction may have landed and must be polled, not rebuilt.
        return self._save(rec, owner, submission_attempts=rec.submission_attempts + 1)

    def _submit(self, rec: DeploymentRecord, owner: str) -> DeploymentRecord:
        assert rec.signed_tx is not None
        handle = self._tracker.submit(rec.signed_tx, deployment_id=rec.deployment_id)
        return self._save(
            rec, owner,
            state=S.SUBMITTED,
            confirmation_status=ConfirmationStatus(PENDING, reason="ambiguous_send" if handle.ambiguous else ""),
        )

    def _handle(self, rec: DeploymentRecord) -> TransactionHandle:
        assert rec.signed_tx is not None and rec.tx_signature
        return TransactionHandle(
            signature=rec.tx_signature,
            last_valid_block_height=rec.signed_tx.unsigned.ordering_ref.last_valid_block_height,
        )

    def _await_outcome(
        self, rec: DeploymentRecord, owner: str, *, may_supersede: bool = False
    ) -> Iterator[DeploymentRecord]:
        handle = self._handle(rec)
        commitment = self._tracker.commitment
        for status in self._tracker.track(handle, deployment_id=rec.deployment_id):
            if status.reaches(commitment):
                yield self._save(rec, owner, state=S.CONFIRMED, confirmation_status=status)
                return
            if status.is_failed:
                raise ConfirmationFailed(status.reason or "transaction_failed", {"signature": handle.signature})
            if status.state == TIMED_OUT:
                cancelled = self._cancel_pending(rec)
                if status.reason == NOT_FOUND and (cancelled or may_supersede):
                    settled = self._settle_expired(rec, owner, handle, cancelled=cancelled)
                    if settled is not None:
                        yield settled
                        return
                yield self._save(rec, owner, state=S.TIMED_OUT, confirmation_status=status)
                return
            rec = self._save(rec, owner, confirmation_status=status)
            yield rec

    def _reconcile_timeout(self, rec: DeploymentRecord, owner: str) -> DeploymentRecord:
        """Decide what a timed-out submission turned into before doing anything else."""
        handle = self._handle(rec)
        # Expiry is read before the status so a not_found answer postdates it.
        expired = self._tracker.is_expired(handle)
        status = self._tracker.poll_once(handle)
        if status.reaches(self._tracker.commitment):
            return self._save(rec, owner, state=S.CONFIRMED, confirmation_status=status)
        if status.is_failed:
            raise ConfirmationFailed(status.reason or "transaction_failed", {"signature": handle.signature})

        if status.state == NOT_FOUND and expired:
            return self._give_up_on(rec, owner, handle)

        # Known to the chain, or not yet expired: it may still land, keep polling it.
        return self._save(rec, owner, state=S.SUBMITTED, confirmation_status=status)

    def _settle_expired(
        self, rec: DeploymentRecord, owner: str, handle: TransactionHandle, *, cancelled: bool
    ) -> Optional[DeploymentRecord]:
        """Re-check a transaction the tracker last saw as not_found.

        Returns None while it may still land (blockhash not expired).
        ChainUnavailableError propagates: an unanswered status query never
        counts as "never landed".
        """
        if not self._tracker.is_expired(handle):
            return None
        status = self._tracker.poll_once(handle)
        if status.reaches(self._tracker.commitment):
            return self._save(rec, owner, state=S.CONFIRMED, confirmation_status=status)
        if status.is_failed:
            raise ConfirmationFailed(status.reason or "transaction_failed", {"signature": handle.signature})
        if status.state != NOT_FOUND:
            # Landed late but not final yet: a resume keeps polling it.
            return self._save(
                rec, owner, state=S.TIMED_OUT, confirmation_status=ConfirmationStatus(TIMED_OUT, reason=status.state)
            )
        if cancelled:
            raise ConfirmationFailed("cancelled_not_landed", {"signature": handle.signature})
        return self._supersede(rec, owner, handle.signature)

    def _give_up_on(self, rec: DeploymentRecord, owner: str, handle: TransactionHandle) -> DeploymentRecord:
        if self._cancel_pending(rec):
            raise ConfirmationFailed("cancelled_not_landed", {"signature": handle.signature})
        return self._supersede(rec, owner, handle.signature)

    def _supersede(self, rec: DeploymentRecord, owner: str, signature: str) -> DeploymentRecord:
        """Drop an expired, never-seen transaction so the next build uses a fresh blockhash."""
        log_event(
            _log, "transaction_superseded", level=logging.WARNING,
            deployment_id=rec.deployment_id, signature=signature,
        )
        return self._save(
            rec, owner,
            state=S.METADATA_UPLOADED,
            unsigned_tx=None,
            signed_tx=None,
            tx_signature=None,
            confirmation_status=None,
            superseded_signatures=rec.superseded_signatures + (signature,),
        )

    # ----------------------------
    # Persistence
    # ----------------------------

    def _save(self, rec: DeploymentRecord, owner: str, *, clear_error: bool = True, **changes: Any) -> DeploymentRecord:
        if clear_error:
            changes.setdefault("failed_stage", None)
            changes.setdefault("last_error", None)
            changes.setdefault("retryable", False)
        now = self._now_ms()
        new = replace(rec, updated_ms=now, **changes)
        stored = self._store.compare_and_swap(
            new,
            expected_version=rec.version,
            lease_owner=owner,
            lease_ttl_ms=self.lease_ttl_ms,
            now_ms=now,
        )
        if stored.state != rec.state:
            log_event(
                _log, "deployment_transition",
                deployment_id=rec.deployment_id, from_state=rec.state.value, to_state=stored.state.value,
                version=stored.version,
            )
        return stored

    def _fail(self, rec: DeploymentRecord, owner: str, stage: DeploymentState, err: PipelineError) -> DeploymentRecord:
        err.stage = stage.value
        last_error = err.to_json()
        last_error["message"] = _describe(stage, err)
        log_event(
            _log, "deployment_failed", level=logging.ERROR if not err.retryable else logging.WARNING,
            deployment_id=rec.deployment_id, stage=stage.value, code=err.code, reason=err.reason,
            retryable=err.retryable,
        )
        return self._save(
            rec, owner,
            clear_error=False,
            state=S.FAILED,
            failed_stage=stage.value,
            last_error=last_error,
            retryable=bool(err.retryable),
        )
