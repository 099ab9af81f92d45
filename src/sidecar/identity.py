"""Ephemeral device identity for the gateway handshake.

This module provides:
- Ed25519 keypair generation
- Device id derivation (hex SHA-256 of the raw public key)
- Payload signing and verification

Encoding notes:
- Public keys and signatures travel as URL-safe base64 without padding
- Identities are never written to disk; every process run gets a new one
"""

import base64
import binascii
import hashlib
from dataclasses import dataclass

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
)

from sidecar.errors import CryptoError

__all__ = [
    "CryptoError",
    "DeviceIdentity",
    "b64url_encode",
    "b64url_decode",
    "derive_device_id",
    "generate_identity",
    "sign_payload",
    "verify_signature",
]

KEY_LENGTH = 32  # raw Ed25519 key size


def b64url_encode(raw: bytes) -> str:
    """Encode bytes as URL-safe base64 with padding stripped."""
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def b64url_decode(text: str) -> bytes:
    """Decode unpadded URL-safe base64.

    Raises:
        CryptoError: If text is not valid base64.
    """
    padded = text + "=" * (-len(text) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, ValueError) as e:
        raise CryptoError(f"Invalid base64url data: {e}") from e


def derive_device_id(public_key_raw: bytes) -> str:
    """Derive the device id from a raw public key.

    Args:
        public_key_raw: 32-byte raw Ed25519 public key.

    Returns:
        64-character lowercase hex SHA-256 digest.

    Raises:
        ValueError: If the key is not 32 bytes.
    """
    if len(public_key_raw) != KEY_LENGTH:
        raise ValueError(f"Public key must be {KEY_LENGTH} bytes")
    return hashlib.sha256(public_key_raw).hexdigest()


@dataclass(frozen=True)
class DeviceIdentity:
    """Signing keypair plus the identity derived from it.

    Attributes:
        private_key: Ed25519 private key used to sign auth payloads.
        public_key: Matching public key.
        public_key_b64url: Raw public key, URL-safe base64 without padding.
        device_id: Hex SHA-256 of the raw public key.
    """

    private_key: Ed25519PrivateKey
    public_key: Ed25519PublicKey
    public_key_b64url: str
    device_id: str

    @classmethod
    def from_private_key(cls, private_key: Ed25519PrivateKey) -> "DeviceIdentity":
        """Build an identity around an existing private key."""
        public_key = private_key.public_key()
        raw = public_key.public_bytes(encoding=Encoding.Raw, format=PublicFormat.Raw)
        return cls(
            private_key=private_key,
            public_key=public_key,
            public_key_b64url=b64url_encode(raw),
            device_id=derive_device_id(raw),
        )

    @classmethod
    def from_private_bytes(cls, raw: bytes) -> "DeviceIdentity":
        """Rebuild an identity from 32 raw private key bytes.

        Raises:
            ValueError: If raw is not 32 bytes.
        """
        if len(raw) != KEY_LENGTH:
            raise ValueError(f"Private key must be {KEY_LENGTH} bytes")
        return cls.from_private_key(Ed25519PrivateKey.from_private_bytes(raw))

    def private_bytes(self) -> bytes:
        """Return the raw 32-byte private key."""
        return self.private_key.private_bytes(
            encoding=Encoding.Raw,
            format=PrivateFormat.Raw,
            encryption_algorithm=NoEncryption(),
        )

    def public_bytes(self) -> bytes:
        """Return the raw 32-byte public key."""
        return self.public_key.public_bytes(
            encoding=Encoding.Raw, format=PublicFormat.Raw
        )

    def sign(self, payload: str) -> str:
        """Sign payload with this identity's private key."""
        return sign_payload(self.private_key, payload)


def generate_identity() -> DeviceIdentity:
    """Generate a fresh Ed25519 identity.

    Returns:
        New DeviceIdentity; the private key only lives in memory.
    """
    return DeviceIdentity.from_private_key(Ed25519PrivateKey.generate())


def sign_payload(private_key: Ed25519PrivateKey, payload: str) -> str:
    """Sign the UTF-8 bytes of payload.

    Args:
        private_key: Ed25519 signing key.
        payload: Canonical auth payload string.

    Returns:
        64-byte signature as URL-safe base64 without padding.
    """
    signature = private_key.sign(payload.encode("utf-8"))
    return b64url_encode(signature)


def verify_signature(public_key_b64url: str, payload: str, signature: str) -> bool:
    """Verify a signature produced by sign_payload.

    Args:
        public_key_b64url: Raw public key, URL-safe base64.
        payload: Payload string that was signed.
        signature: Signature, URL-safe base64.

    Returns:
        True if the signature is valid for payload, False otherwise.
    """
    try:
        raw = b64url_decode(public_key_b64url)
        key = Ed25519PublicKey.from_public_bytes(raw)
        key.verify(b64url_decode(signature), payload.encode("utf-8"))
        return True
    except (CryptoError, InvalidSignature, ValueError):
        return False
