"""
Token vault: OAuth access/refresh tokens encrypted per organization.

Each token type has one fixed context (``oauth:access`` / ``oauth:refresh``),
used identically when storing and retrieving and independent of the external
account id.

Status per token:
    pending -> ok       encrypted and verified by a decrypt round-trip
    pending -> failed   KMS, DEK, or cipher error during storage
    ok      -> ok       re-stored; the old blob stays readable until then
    ok      -> failed   retrieval found the blob unreadable

A failed token cannot be repaired in place because the plaintext is gone;
it is replaced by calling ``store_token`` again after fresh OAuth consent.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from .context import FieldContext
from .errors import (
    AuthenticationFailedError,
    CipherError,
    DekUnavailableError,
    KmsError,
    OrgCryptoError,
    TokenNotFoundError,
    TokenUnavailableError,
    error_code,
)
from .facade import OrgCrypto
from .storage import CryptoStorage, EncryptionStatus, SecureToken, TokenType, utcnow

logger = logging.getLogger(__name__)

TOKEN_CONTEXTS: Dict[TokenType, FieldContext] = {
    TokenType.OAUTH_ACCESS: FieldContext.OAUTH_ACCESS,
    TokenType.OAUTH_REFRESH: FieldContext.OAUTH_REFRESH,
}


def token_context(token_type: TokenType) -> FieldContext:
    """The one context used for a token type at every write and read site."""
    return TOKEN_CONTEXTS[token_type]


def generate_token_ref(org_id: str, provider: str, token_type: TokenType) -> str:
    return f"{org_id}-{provider}-{token_type.value}-{secrets.token_hex(8)}"


@dataclass
class TokenData:
    """Decrypted OAuth credentials for one connection."""

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    def __repr__(self) -> str:
        return (
            f"TokenData(access_token={'<redacted>' if self.access_token else None}, "
            f"refresh_token={'<redacted>' if self.refresh_token else None}, "
            f"expires_at={self.expires_at!r})"
        )


@dataclass
class TokenEncryptionStats:
    """Token encryption status counts for monitoring."""

    total: int = 0
    ok: int = 0
    pending: int = 0
    failed: int = 0
    oldest_failure: Optional[datetime] = None


class TokenVault:
    """Stores and retrieves OAuth tokens through the org crypto facade."""

    def __init__(self, crypto: OrgCrypto, storage: CryptoStorage) -> None:
        self._crypto = crypto
        self._storage = storage

    async def store_token(
        self,
        org_id: str,
        provider: str,
        token_type: TokenType,
        plaintext_token: str,
        expires_at: Optional[datetime] = None,
    ) -> SecureToken:
        """
        Encrypt and persist a token, replacing any previous one.

        An ``ok`` record already stored for the same key stays readable until
        the new blob is verified, and is left untouched when encryption
        fails. Otherwise a ``pending`` record is written first.

        Encryption failures do not raise: a ``failed`` record with the error
        code is returned, and stored unless it would overwrite an ``ok`` one.
        """
        previous = await self._storage.get_token(org_id, provider, token_type)
        keep_previous = (
            previous is not None
            and previous.encryption_status == EncryptionStatus.OK
            and bool(previous.encrypted_token_blob)
        )

        now = utcnow()
        token = SecureToken(
            token_ref=generate_token_ref(org_id, provider, token_type),
            org_id=org_id,
            provider=provider,
            token_type=token_type,
            encryption_status=EncryptionStatus.PENDING,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
        if not keep_previous:
            await self._storage.save_token(token)

        context = token_context(token_type)
        try:
            blob = await self._crypto.encrypt_for_org(org_id, plaintext_token, context)
            check = await self._crypto.decrypt_text_for_org(org_id, blob, context)
            if check != plaintext_token:
                raise AuthenticationFailedError("Token verification mismatch")
        except (KmsError, DekUnavailableError, CipherError) as e:
            failed = replace(
                token,
                encryption_status=EncryptionStatus.FAILED,
                kms_error_code=error_code(e),
                kms_error_at=utcnow(),
                updated_at=utcnow(),
            )
            if keep_previous:
                logger.warning(
                    "Token encryption failed, previous token kept (org=%s, provider=%s, type=%s, code=%s)",
                    org_id,
                    provider,
                    token_type.value,
                    failed.kms_error_code,
                )
                return failed
            await self._storage.save_token(failed)
            logger.warning(
                "Token encryption failed, stored as failed (org=%s, provider=%s, type=%s, code=%s)",
                org_id,
                provider,
                token_type.value,
                failed.kms_error_code,
            )
            return failed

        stored = replace(
            token,
            encryption_status=EncryptionStatus.OK,
            encrypted_token_blob=blob.to_bytes(),
            key_version=blob.dek_version,
            updated_at=utcnow(),
        )
        await self._storage.save_token(stored)
        logger.info(
            "Token encrypted and stored (org=%s, provider=%s, type=%s, ref=%s)",
            org_id,
            provider,
            token_type.value,
            stored.token_ref,
        )
        return stored

    async def store_oauth_tokens(
        self,
        org_id: str,
        provider: str,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> List[SecureToken]:
        """Store whichever of the access/refresh tokens were issued."""
        results = []
        if access_token:
            results.append(
                await self.store_token(
                    org_id, provider, TokenType.OAUTH_ACCESS, access_token, expires_at
                )
            )
        if refresh_token:
            results.append(
                await self.store_token(
                    org_id, provider, TokenType.OAUTH_REFRESH, refresh_token
                )
            )
        return results

    async def retrieve_token(
        self, org_id: str, provider: str, token_type: TokenType
    ) -> str:
        """
        Decrypt a stored token.

        Raises:
            TokenNotFoundError: No token stored
            TokenUnavailableError: Token is pending or failed
            AuthenticationFailedError, MalformedBlobError: Blob unreadable
            DekUnavailableError, KmsUnavailableError: No key for the organization
        """
        token = await self._storage.get_token(org_id, provider, token_type)
        if token is None:
            raise TokenNotFoundError(
                f"No {token_type.value} token for org {org_id} provider {provider}"
            )
        return await self._decrypt_record(token)

    async def retrieve_token_by_ref(self, token_ref: str) -> str:
        """
        Decrypt a stored token by its opaque reference.

        Raises the same errors as ``retrieve_token``.
        """
        token = await self._storage.get_token_by_ref(token_ref)
        if token is None:
            raise TokenNotFoundError(f"No token with ref {token_ref}")
        return await self._decrypt_record(token)

    async def retrieve_tokens(self, token_refs: Iterable[str]) -> TokenData:
        """
        Collect the access/refresh tokens behind a set of references.

        Refs that are missing or unreadable are logged and skipped, so the
        result may be partial.
        """
        result = TokenData()
        for token_ref in token_refs:
            token = await self._storage.get_token_by_ref(token_ref)
            if token is None:
                logger.warning("Token reference not found (ref=%s)", token_ref)
                continue
            try:
                plaintext = await self._decrypt_record(token)
            except OrgCryptoError as e:
                logger.error(
                    "Failed to retrieve token (ref=%s, code=%s)", token_ref, error_code(e)
                )
                continue

            if token.token_type == TokenType.OAUTH_ACCESS:
                result.access_token = plaintext
                result.expires_at = token.expires_at
            elif token.token_type == TokenType.OAUTH_REFRESH:
                result.refresh_token = plaintext
        return result

    async def _decrypt_record(self, token: SecureToken) -> str:
        if token.encryption_status != EncryptionStatus.OK or not token.encrypted_token_blob:
            raise TokenUnavailableError(
                f"Token {token.token_ref} is {token.encryption_status.value}"
            )
        return await self._crypto.decrypt_text_for_org(
            token.org_id, token.encrypted_token_blob, token_context(token.token_type)
        )

    async def mark_failed(
        self,
        org_id: str,
        provider: str,
        token_type: TokenType,
        error: BaseException,
    ) -> Optional[SecureToken]:
        """Flag a token as failed; it now needs re-provisioning."""
        token = await self._storage.get_token(org_id, provider, token_type)
        if token is None:
            return None
        failed = replace(
            token,
            encryption_status=EncryptionStatus.FAILED,
            kms_error_code=error_code(error),
            kms_error_at=utcnow(),
            updated_at=utcnow(),
        )
        await self._storage.save_token(failed)
        logger.warning(
            "Token marked failed (org=%s, provider=%s, type=%s, code=%s)",
            org_id,
            provider,
            token_type.value,
            failed.kms_error_code,
        )
        return failed

    async def delete_token(
        self, org_id: str, provider: str, token_type: TokenType
    ) -> bool:
        """Explicit cleanup; tokens are never deleted implicitly."""
        return await self._storage.delete_token(org_id, provider, token_type)

    async def get_token(
        self, org_id: str, provider: str, token_type: TokenType
    ) -> Optional[SecureToken]:
        """Stored record (no decryption)."""
        return await self._storage.get_token(org_id, provider, token_type)

    async def list_tokens(self, org_id: str) -> List[SecureToken]:
        return await self._storage.list_tokens(org_id)

    async def get_encryption_status(self, org_id: str) -> TokenEncryptionStats:
        stats = TokenEncryptionStats()
        for token in await self._storage.list_tokens(org_id):
            stats.total += 1
            if token.encryption_status == EncryptionStatus.OK:
                stats.ok += 1
            elif token.encryption_status == EncryptionStatus.PENDING:
                stats.pending += 1
            elif token.encryption_status == EncryptionStatus.FAILED:
                stats.failed += 1
                if token.kms_error_at is not None and (
                    stats.oldest_failure is None or token.kms_error_at < stats.oldest_failure
                ):
                    stats.oldest_failure = token.kms_error_at
        return stats
