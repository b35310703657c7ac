"""
Field cipher: context-bound AES-256-GCM over a caller-supplied DEK.

The DEK is passed in; this module never resolves keys itself.
"""

from __future__ import annotations

import hmac

from .blob import MAX_DEK_VERSION, EncryptedBlob, context_tag
from .context import ContextLike, coerce_context
from .crypto import AesGcmCipher, SecureKey
from .errors import AuthenticationFailedError, CipherError


class FieldCipher:
    """Encrypts and decrypts single field values bound to a ``FieldContext``."""

    @staticmethod
    def encrypt(
        plaintext: bytes,
        dek: SecureKey,
        context: ContextLike,
        dek_version: int = 1,
    ) -> EncryptedBlob:
        """
        Encrypt one field value.

        Args:
            plaintext: Data to encrypt
            dek: Organization DEK
            context: Field context bound into the AAD
            dek_version: Version of ``dek``, stamped into the blob

        Returns:
            EncryptedBlob (fresh nonce on every call)
        """
        ctx = coerce_context(context)
        if not 1 <= dek_version <= MAX_DEK_VERSION:
            raise CipherError(f"Invalid DEK version: {dek_version}")

        # AAD covers the header, so build it before the nonce exists.
        template = EncryptedBlob(
            dek_version=dek_version,
            context_tag=context_tag(ctx),
            nonce=b"",
            ciphertext=b"",
        )
        nonce, ciphertext = AesGcmCipher.encrypt(
            dek, plaintext, template.associated_data(ctx)
        )
        return EncryptedBlob(
            dek_version=dek_version,
            context_tag=template.context_tag,
            nonce=nonce,
            ciphertext=ciphertext,
        )

    @staticmethod
    def decrypt(
        blob: EncryptedBlob | bytes,
        dek: SecureKey,
        context: ContextLike,
    ) -> bytes:
        """
        Decrypt one field value.

        Raises:
            MalformedBlobError: Structural corruption
            AuthenticationFailedError: Wrong key, wrong context, or tampering
        """
        ctx = coerce_context(context)
        parsed = EncryptedBlob.coerce(blob)

        if not hmac.compare_digest(parsed.context_tag, context_tag(ctx)):
            raise AuthenticationFailedError("Decryption failed")

        return AesGcmCipher.decrypt(
            dek, parsed.nonce, parsed.ciphertext, parsed.associated_data(ctx)
        )
