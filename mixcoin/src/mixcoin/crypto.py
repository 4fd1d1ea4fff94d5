"""
Signing primitives for warrants.

Warrants are ECDSA signatures (secp256k1, DER encoded) over the SHA256
digest of a canonical message. The digest is signed directly
(``hasher=None``) so any third party holding the service public key can
recompute and check it.
"""

from __future__ import annotations

import hashlib

from coincurve import PrivateKey, PublicKey


class CryptoError(Exception):
    pass


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


class KeyPair:
    """The service's long-term signing key."""

    def __init__(self, private_key: PrivateKey | None = None):
        if private_key is None:
            private_key = PrivateKey()
        self._private_key = private_key
        self._public_key = private_key.public_key

    @classmethod
    def from_hex(cls, private_key_hex: str) -> KeyPair:
        try:
            key_bytes = bytes.fromhex(private_key_hex)
        except ValueError as e:
            raise CryptoError(f"Invalid private key hex: {e}") from e
        if len(key_bytes) != 32:
            raise CryptoError(f"Invalid private key length: {len(key_bytes)}, expected 32")
        return cls(PrivateKey(key_bytes))

    @property
    def public_key(self) -> PublicKey:
        return self._public_key

    def sign(self, message: bytes) -> bytes:
        """Sign SHA256(message), returning a DER signature."""
        return self._private_key.sign(sha256(message), hasher=None)

    def verify(self, message: bytes, signature: bytes) -> bool:
        return verify_signature(self.public_key_bytes(), message, signature)

    def public_key_bytes(self) -> bytes:
        return self._public_key.format(compressed=True)

    def public_key_hex(self) -> str:
        return self.public_key_bytes().hex()


def verify_signature(pubkey: bytes | str, message: bytes, signature: bytes) -> bool:
    """
    Verify a DER signature over SHA256(message).

    Args:
        pubkey: Compressed public key (33 bytes) or its hex encoding
        message: The signed message
        signature: DER-encoded signature

    Returns:
        True if signature is valid; malformed keys or signatures are
        reported as invalid rather than raised
    """
    try:
        pubkey_bytes = bytes.fromhex(pubkey) if isinstance(pubkey, str) else pubkey
        if not signature:
            return False
        return PublicKey(pubkey_bytes).verify(signature, sha256(message), hasher=None)
    except Exception:
        return False
