"""
EncryptedBlob: the ciphertext unit stored in place of a sensitive column.

Binary layout (big-endian)::

    version(1) || dek_version(4) || context_tag(8) || nonce(12) || ciphertext || tag(16)

The 13-byte header is authenticated together with the context string, so
altering the key version or context tag makes decryption fail.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import struct
from dataclasses import dataclass

from .context import FieldContext
from .crypto import NONCE_SIZE, TAG_SIZE
from .errors import MalformedBlobError

BLOB_FORMAT_VERSION: int = 1
CONTEXT_TAG_SIZE: int = 8

_HEADER = struct.Struct(">BI8s")
HEADER_SIZE: int = _HEADER.size  # 13
MIN_BLOB_SIZE: int = HEADER_SIZE + NONCE_SIZE + TAG_SIZE  # 41
MAX_DEK_VERSION: int = 0xFFFFFFFF


def context_tag(context: FieldContext) -> bytes:
    """First 8 bytes of SHA-256 over the context string."""
    return hashlib.sha256(context.aad).digest()[:CONTEXT_TAG_SIZE]


@dataclass(frozen=True)
class EncryptedBlob:
    """
    Encrypted field value.

    The ciphertext includes the 16-byte authentication tag appended by AESGCM.
    """

    dek_version: int
    context_tag: bytes  # 8 bytes
    nonce: bytes  # 12 bytes
    ciphertext: bytes  # Ciphertext + 16-byte auth tag
    format_version: int = BLOB_FORMAT_VERSION

    def header(self) -> bytes:
        return _HEADER.pack(self.format_version, self.dek_version, self.context_tag)

    def associated_data(self, context: FieldContext) -> bytes:
        """AAD = header || context."""
        return self.header() + context.aad

    def to_bytes(self) -> bytes:
        """Serialize for a single byte column."""
        return self.header() + self.nonce + self.ciphertext

    @classmethod
    def from_bytes(cls, data: bytes | bytearray | memoryview) -> EncryptedBlob:
        """
        Parse a serialized blob.

        Raises:
            MalformedBlobError: If the blob is too short or has an unknown format
        """
        raw = bytes(data)
        if len(raw) < MIN_BLOB_SIZE:
            raise MalformedBlobError(
                f"Blob too small: expected at least {MIN_BLOB_SIZE} bytes, got {len(raw)}"
            )

        version, dek_version, tag = _HEADER.unpack_from(raw)
        if version != BLOB_FORMAT_VERSION:
            raise MalformedBlobError(f"Unsupported blob format version: {version}")
        if dek_version < 1:
            raise MalformedBlobError("Blob has no DEK version")

        nonce_end = HEADER_SIZE + NONCE_SIZE
        return cls(
            dek_version=dek_version,
            context_tag=tag,
            nonce=raw[HEADER_SIZE:nonce_end],
            ciphertext=raw[nonce_end:],
            format_version=version,
        )

    def to_base64(self) -> str:
        return base64.standard_b64encode(self.to_bytes()).decode("ascii")

    @classmethod
    def from_base64(cls, encoded: str) -> EncryptedBlob:
        try:
            decoded = base64.standard_b64decode(encoded.encode("ascii"))
        except (binascii.Error, UnicodeEncodeError) as e:
            raise MalformedBlobError(f"Base64 decode error: {e}") from e
        return cls.from_bytes(decoded)

    @classmethod
    def coerce(cls, value: EncryptedBlob | bytes | bytearray | memoryview) -> EncryptedBlob:
        """Accept either a parsed blob or its serialized bytes."""
        if isinstance(value, EncryptedBlob):
            return value
        if isinstance(value, (bytes, bytearray, memoryview)):
            return cls.from_bytes(value)
        raise MalformedBlobError(f"Unsupported blob type: {type(value).__name__}")
