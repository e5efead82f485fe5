# src/mintflow/crypto/sig.py
from __future__ import annotations

import base64

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from mintflow.runtime.errors import SignerRejected

SIGNATURE_BYTES = 64


def decode_key_bytes(s: str) -> bytes:
    """Decode a key or signature given as hex or base64/base64url."""
    s = (s or "").strip()
    if not s:
        raise ValueError("empty string")
    try:
        return bytes.fromhex(s)
    except ValueError:
        pass
    try:
        padding = "=" * (-len(s) % 4)
        s2 = (s + padding).replace("-", "+").replace("_", "/")
        return base64.b64decode(s2, validate=True)
    except ValueError as e:
        raise ValueError("not hex or base64") from e


def verify_ed25519_signature(*, message: bytes, sig: bytes, pubkey: str) -> bool:
    try:
        key = Ed25519PublicKey.from_public_bytes(decode_key_bytes(pubkey))
        key.verify(bytes(sig), message)
        return True
    except (InvalidSignature, ValueError):
        return False


def _private_key_from_seed(seed: str) -> Ed25519PrivateKey:
    sk_b = decode_key_bytes(seed)
    # Many wallets export the 64-byte expanded form (seed || pubkey).
    if len(sk_b) == 64:
        sk_b = sk_b[:32]
    if len(sk_b) != 32:
        raise ValueError("ed25519 private key must be a 32-byte seed (or 64-byte expanded key)")
    return Ed25519PrivateKey.from_private_bytes(sk_b)


def public_key_hex(sk: Ed25519PrivateKey) -> str:
    return sk.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw).hex()


class Ed25519SeedSigner:
    """Signer capability backed by a locally held seed.

    For trusted-backend deployments (the service signs as payer). The pipeline
    only ever sees the `sign(message, expected_public_key)` surface.
    """

    def __init__(self, seed: str) -> None:
        self._sk = _private_key_from_seed(seed)
        self.public_key = public_key_hex(self._sk)

    def sign(self, message: bytes, expected_public_key: str) -> bytes:
        if decode_key_bytes(expected_public_key).hex() != self.public_key:
            raise SignerRejected(f"signer holds {self.public_key}, asked to sign for {expected_public_key}")
        return self._sk.sign(bytes(message))
