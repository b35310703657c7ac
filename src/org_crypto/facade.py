"""
Organization crypto facade: the only entry point application code uses for
field-level confidentiality.

    crypto = OrgCrypto.from_settings(CryptoSettings.from_env(), storage)
    blob = await crypto.encrypt_for_org(org_id, "Offer on 12 Elm St", FieldContext.EMAIL_SUBJECT)
    subject = await crypto.decrypt_text_for_org(org_id, blob.to_bytes(), FieldContext.EMAIL_SUBJECT)

The raw DEK and the KMS client are never exposed.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Dict, Iterable, List, Optional, TypeVar, Union

from .blob import EncryptedBlob
from .cache import DekCache
from .cipher import FieldCipher
from .config import CryptoSettings
from .context import ContextLike, coerce_context
from .errors import CipherError, DekUnavailableError, OrgCryptoError
from .kms import KmsClient, create_kms_client
from .resolver import DekResolver, ResolvedDek
from .storage import CryptoStorage

logger = logging.getLogger(__name__)

T = TypeVar("T")

BlobLike = Union[EncryptedBlob, bytes, bytearray, memoryview]

DECRYPT_FAILED_PLACEHOLDER = "Could not decrypt"


@dataclass(frozen=True)
class DecryptResult:
    """Outcome of decrypting one item in a batch."""

    plaintext: Optional[bytes] = None
    error: Optional[OrgCryptoError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def text(self, placeholder: str = DECRYPT_FAILED_PLACEHOLDER) -> str:
        """
        Strict UTF-8 plaintext, as ``decrypt_text_for_org`` decodes it.

        ``placeholder`` on failure or when the plaintext is not valid UTF-8,
        "" for empty items.
        """
        if self.error is not None:
            return placeholder
        if self.plaintext is None:
            return ""
        try:
            return self.plaintext.decode("utf-8")
        except UnicodeDecodeError:
            return placeholder


async def _gather_or_cancel(*aws: Awaitable[T]) -> List[T]:
    """``asyncio.gather`` that cancels and awaits the siblings on first error."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


def _to_plaintext_bytes(plaintext: Union[str, bytes, bytearray, memoryview]) -> bytes:
    if isinstance(plaintext, str):
        return plaintext.encode("utf-8")
    if isinstance(plaintext, (bytes, bytearray, memoryview)):
        return bytes(plaintext)
    raise TypeError(
        f"plaintext must be str or bytes-like, not {type(plaintext).__name__}"
    )


class OrgCrypto:
    """Encrypt/decrypt field values for an organization."""

    def __init__(self, resolver: DekResolver) -> None:
        self._resolver = resolver

    @classmethod
    def from_settings(
        cls,
        settings: CryptoSettings,
        storage: CryptoStorage,
        kms: Optional[KmsClient] = None,
        cache: Optional[DekCache] = None,
    ) -> OrgCrypto:
        """Wire the KMS client, DEK cache, and resolver from configuration."""
        if kms is None:
            kms = create_kms_client(settings)
        if cache is None:
            cache = DekCache(
                ttl_seconds=settings.dek_cache_ttl_seconds,
                max_entries=settings.dek_cache_max_entries,
            )
        return cls(DekResolver(storage, kms, cache))

    @property
    def resolver(self) -> DekResolver:
        return self._resolver

    async def encrypt_for_org(
        self,
        org_id: str,
        plaintext: Union[str, bytes, bytearray, memoryview],
        context: ContextLike,
    ) -> EncryptedBlob:
        """
        Encrypt under the organization's ACTIVE DEK.

        Raises:
            DekUnavailableError, KmsUnavailableError, UnknownContextError
            TypeError: If plaintext is neither str nor bytes-like
        """
        ctx = coerce_context(context)
        data = _to_plaintext_bytes(plaintext)
        resolved = await self._resolver.get_dek(org_id)
        return FieldCipher.encrypt(data, resolved.key, ctx, dek_version=resolved.version)

    async def decrypt_for_org(
        self,
        org_id: str,
        blob: BlobLike,
        context: ContextLike,
    ) -> bytes:
        """
        Decrypt using the DEK version stamped in the blob.

        Raises:
            AuthenticationFailedError, MalformedBlobError: This blob is unreadable
            DekUnavailableError, KmsUnavailableError: No key for the organization
        """
        ctx = coerce_context(context)
        parsed = EncryptedBlob.coerce(blob)
        resolved = await self._resolver.get_dek(org_id, parsed.dek_version)
        return FieldCipher.decrypt(parsed, resolved.key, ctx)

    async def decrypt_text_for_org(
        self,
        org_id: str,
        blob: BlobLike,
        context: ContextLike,
    ) -> str:
        plaintext = await self.decrypt_for_org(org_id, blob, context)
        return plaintext.decode("utf-8")

    async def decrypt_many_for_org(
        self,
        org_id: str,
        blobs: Iterable[Optional[BlobLike]],
        context: ContextLike,
    ) -> List[DecryptResult]:
        """
        Decrypt a batch; one unreadable item never aborts the rest.

        Each distinct DEK version in the batch is resolved once, concurrently,
        before any item is decrypted. Cipher and DEK errors are captured per
        item. ``None`` items give an empty result. KmsUnavailableError
        propagates so the caller can retry; the other in-flight resolutions
        are cancelled first.
        """
        ctx = coerce_context(context)

        parsed: List[Union[None, EncryptedBlob, DecryptResult]] = []
        for blob in blobs:
            if blob is None:
                parsed.append(None)
                continue
            try:
                parsed.append(EncryptedBlob.coerce(blob))
            except CipherError as e:
                parsed.append(self._failed(org_id, ctx, e))

        versions = sorted({p.dek_version for p in parsed if isinstance(p, EncryptedBlob)})
        resolved = await _gather_or_cancel(
            *(self._resolve_for_batch(org_id, v) for v in versions)
        )
        keys: Dict[int, Union[ResolvedDek, DekUnavailableError]] = dict(zip(versions, resolved))

        results = []
        for item in parsed:
            if item is None:
                results.append(DecryptResult())
            elif isinstance(item, DecryptResult):
                results.append(item)
            else:
                results.append(self._decrypt_item(org_id, item, keys[item.dek_version], ctx))
        return results

    async def _resolve_for_batch(
        self, org_id: str, dek_version: int
    ) -> Union[ResolvedDek, DekUnavailableError]:
        try:
            return await self._resolver.get_dek(org_id, dek_version)
        except DekUnavailableError as e:
            return e

    def _decrypt_item(
        self,
        org_id: str,
        blob: EncryptedBlob,
        resolved: Union[ResolvedDek, DekUnavailableError],
        context,
    ) -> DecryptResult:
        if isinstance(resolved, DekUnavailableError):
            return self._failed(org_id, context, resolved)
        try:
            return DecryptResult(plaintext=FieldCipher.decrypt(blob, resolved.key, context))
        except CipherError as e:
            return self._failed(org_id, context, e)

    @staticmethod
    def _failed(org_id: str, context, error: OrgCryptoError) -> DecryptResult:
        logger.warning(
            "Field decryption failed (org=%s, context=%s): %s",
            org_id,
            context,
            error.code,
        )
        return DecryptResult(error=error)

    async def reencrypt_for_org(
        self,
        org_id: str,
        blob: BlobLike,
        context: ContextLike,
    ) -> EncryptedBlob:
        """
        Move a blob onto the ACTIVE DEK version (post-rotation migration).

        Blobs already on the ACTIVE version are re-encrypted as well, which
        only refreshes the nonce.
        """
        plaintext = await self.decrypt_for_org(org_id, blob, context)
        return await self.encrypt_for_org(org_id, plaintext, context)
