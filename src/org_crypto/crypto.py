"""
AES-256-GCM building blocks shared by the field cipher and the resolver.

- SecureKey: holder for an unwrapped DEK, redacted in reprs, zeroed when collected
- AesGcmCipher: one-shot AEAD seal/open with a random 96-bit nonce
- generate_dek: fresh organization DEK
"""

from __future__ import annotations

import hmac
import secrets
from typing import Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import AuthenticationFailedError, CipherError, MalformedBlobError

AES_256_KEY_SIZE: int = 32
NONCE_SIZE: int = 12
TAG_SIZE: int = 16


class SecureKey:
    """
    Unwrapped DEK material.

    Stored in a bytearray so the bytes can be overwritten once the object is
    garbage collected. Copies handed out by ``as_bytes`` are not tracked, so
    the wipe is best-effort only.
    """

    __slots__ = ("_material",)

    def __init__(self, material: bytes | bytearray) -> None:
        if not isinstance(material, (bytes, bytearray)):
            raise CipherError(f"DEK material must be bytes, got {type(material).__name__}")
        self._material = bytearray(material)

    @classmethod
    def generate(cls) -> SecureKey:
        return cls(secrets.token_bytes(AES_256_KEY_SIZE))

    def as_bytes(self) -> bytes:
        return bytes(self._material)

    def matches(self, other: SecureKey) -> bool:
        """Constant-time comparison of two keys."""
        return hmac.compare_digest(self._material, other._material)

    def __len__(self) -> int:
        return len(self._material)

    def __repr__(self) -> str:
        return f"SecureKey(<{len(self._material)} bytes redacted>)"

    def __del__(self) -> None:
        material = getattr(self, "_material", None)
        if material is not None:
            material[:] = bytes(len(material))


class AesGcmCipher:
    """Static AES-256-GCM seal/open; the caller owns nonce storage."""

    @staticmethod
    def encrypt(
        key: SecureKey,
        plaintext: bytes,
        aad: Optional[bytes] = None,
    ) -> Tuple[bytes, bytes]:
        """
        Seal ``plaintext`` under a freshly drawn nonce.

        Args:
            key: 32-byte DEK
            plaintext: Bytes to seal
            aad: Associated data authenticated but not encrypted

        Returns:
            (nonce, ciphertext) where ciphertext ends with the 16-byte tag

        Raises:
            CipherError: If the key is not 32 bytes
        """
        _require_aes256(key)
        nonce = secrets.token_bytes(NONCE_SIZE)
        return nonce, AESGCM(key.as_bytes()).encrypt(nonce, plaintext, aad)

    @staticmethod
    def decrypt(
        key: SecureKey,
        nonce: bytes,
        ciphertext: bytes,
        aad: Optional[bytes] = None,
    ) -> bytes:
        """
        Open a sealed value.

        Args:
            key: 32-byte DEK
            nonce: Nonce returned by ``encrypt``
            ciphertext: Ciphertext with trailing tag
            aad: Same associated data passed to ``encrypt``

        Returns:
            Plaintext bytes

        Raises:
            MalformedBlobError: Nonce or ciphertext has an impossible length
            AuthenticationFailedError: Tag did not verify
        """
        _require_aes256(key)
        if len(nonce) != NONCE_SIZE:
            raise MalformedBlobError(f"Nonce must be {NONCE_SIZE} bytes, got {len(nonce)}")
        if len(ciphertext) < TAG_SIZE:
            raise MalformedBlobError("Ciphertext shorter than authentication tag")

        try:
            return AESGCM(key.as_bytes()).decrypt(nonce, ciphertext, aad)
        except InvalidTag:
            raise AuthenticationFailedError("Decryption failed") from None


def _require_aes256(key: SecureKey) -> None:
    if len(key) != AES_256_KEY_SIZE:
        raise CipherError(f"DEK must be {AES_256_KEY_SIZE} bytes, got {len(key)}")


def generate_dek() -> SecureKey:
    """Fresh random 32-byte organization DEK."""
    return SecureKey.generate()
