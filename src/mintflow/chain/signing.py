# src/mintflow/chain/signing.py
from __future__ import annotations

import concurrent.futures
import logging
from typing import Protocol

from mintflow.chain.tx_types import SignedTransaction, UnsignedTransaction
from mintflow.crypto.sig import SIGNATURE_BYTES, verify_ed25519_signature
from mintflow.runtime.errors import SignerRejected, SigningError
from mintflow.runtime.event_log import log_event
from mintflow.util.canon import sha256_hex

_log = logging.getLogger("mintflow.signing")


class Signer(Protocol):
    def sign(self, message: bytes, expected_public_key: str) -> bytes:
        """Return a signature over `message`, or raise SignerRejected."""
        ...


class SigningGateway:
    """Hands unsigned transactions to an external signer and checks what comes back.

    Holds no key material. A returned signature is accepted only if it is a
    valid Ed25519 signature by the payer over exactly the message bytes that
    were sent out.
    """

    def __init__(self, signer: Signer, *, timeout_s: float = 120.0, max_workers: int = 4) -> None:
        self._signer = signer
        self.timeout_s = float(timeout_s)
        self._pool = concurrent.futures.ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="mintflow-signer")

    def close(self) -> None:
        self._pool.shutdown(wait=False)

    def request_signature(self, unsigned: UnsignedTransaction, *, deployment_id: str = "") -> SignedTransaction:
        if sha256_hex(unsigned.message) != unsigned.message_hash:
            raise SigningError("message_hash_mismatch", {"message_hash": unsigned.message_hash})

        message = bytes(unsigned.message)
        fut = self._pool.submit(self._signer.sign, message, unsigned.payer)
        try:
            sig = fut.result(timeout=self.timeout_s)
        except concurrent.futures.TimeoutError as e:
            # The signer thread cannot be interrupted; its late answer is discarded.
            fut.cancel()
            log_event(_log, "signing_timeout", level=logging.WARNING, deployment_id=deployment_id, timeout_s=self.timeout_s)
            raise SigningError("signer_timeout", {"timeout_s": self.timeout_s}) from e
        except SignerRejected as e:
            log_event(_log, "signing_rejected", level=logging.WARNING, deployment_id=deployment_id, reason=str(e))
            raise SigningError("rejected_by_signer", {"reason": str(e)}) from e
        except Exception as e:
            log_event(_log, "signing_error", level=logging.ERROR, deployment_id=deployment_id, error=repr(e))
            raise SigningError("signer_error", {"error": f"{type(e).__name__}: {e}"}) from e

        if not isinstance(sig, (bytes, bytearray)) or len(sig) != SIGNATURE_BYTES:
            raise SigningError("malformed_signature", {"length": len(sig) if isinstance(sig, (bytes, bytearray)) else None})
        if not verify_ed25519_signature(message=message, sig=bytes(sig), pubkey=unsigned.payer):
            raise SigningError("signature_mismatch", {"payer": unsigned.payer, "message_hash": unsigned.message_hash})

        log_event(_log, "signing_ok", deployment_id=deployment_id, message_hash=unsigned.message_hash)
        return SignedTransaction(unsigned=unsigned, signature=bytes(sig).hex())
