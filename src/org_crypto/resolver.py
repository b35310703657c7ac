"""
DEK resolution: organization id -> unwrapped DEK.

Flow:
1. Look up the organization's DEK record (ACTIVE, or a specific version)
2. Return the cached key for (org_id, dek_version) if still fresh
3. Otherwise unwrap the stored blob through the KMS client and cache it

Rotation stores a new version and retires the old record, which stays
available so ciphertext stamped with the old version still decrypts. The
cache key includes the version, so a rotated organization never gets a
stale DEK for new encryptions. Concurrent misses for the same
(org_id, dek_version) share one KMS unwrap.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .cache import DekCache
from .crypto import AES_256_KEY_SIZE, SecureKey, generate_dek
from .errors import (
    DekAlreadyProvisionedError,
    DekUnavailableError,
    KmsInvalidBlobError,
    KmsKeyNotFoundError,
)
from .kms import KmsClient
from .storage import CryptoStorage, OrgDekRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedDek:
    """Unwrapped DEK and the version it belongs to."""

    org_id: str
    version: int
    key: SecureKey


@dataclass(frozen=True)
class DekRotationResult:
    """Result of an organization DEK rotation."""

    org_id: str
    old_version: int
    new_version: int


class DekResolver:
    """Resolves, provisions, and rotates organization DEKs."""

    def __init__(self, storage: CryptoStorage, kms: KmsClient, cache: DekCache) -> None:
        self._storage = storage
        self._kms = kms
        self._cache = cache
        self._unwrap_locks: Dict[Tuple[str, int], asyncio.Lock] = {}

    async def get_dek(self, org_id: str, dek_version: Optional[int] = None) -> ResolvedDek:
        """
        Resolve an organization's DEK.

        Args:
            org_id: Organization id
            dek_version: Specific version (decrypting old blobs); ACTIVE if None

        Returns:
            ResolvedDek

        Raises:
            DekUnavailableError: Missing record/blob, or KMS permanently refuses
            KmsUnavailableError: Transient KMS failure (retryable)
        """
        if dek_version is not None:
            cached = self._cache.get(org_id, dek_version)
            if cached is not None:
                return ResolvedDek(org_id=org_id, version=dek_version, key=cached)
            record = await self._storage.get_org_dek_by_version(org_id, dek_version)
            if record is None:
                raise DekUnavailableError(org_id, f"no DEK version {dek_version}")
        else:
            record = await self._storage.get_active_org_dek(org_id)
            if record is None:
                raise DekUnavailableError(org_id, "organization has no DEK")
            cached = self._cache.get(org_id, record.dek_version)
            if cached is not None:
                return ResolvedDek(org_id=org_id, version=record.dek_version, key=cached)

        key = await self._load(record)
        return ResolvedDek(org_id=org_id, version=record.dek_version, key=key)

    async def _load(self, record: OrgDekRecord) -> SecureKey:
        lock_key = (record.org_id, record.dek_version)
        lock = self._unwrap_locks.setdefault(lock_key, asyncio.Lock())
        try:
            async with lock:
                # Filled by a concurrent caller while we waited
                cached = self._cache.get(record.org_id, record.dek_version)
                if cached is not None:
                    return cached
                key = await self._unwrap(record)
                self._cache.put(record.org_id, record.dek_version, key)
                return key
        finally:
            if not lock.locked() and self._unwrap_locks.get(lock_key) is lock:
                del self._unwrap_locks[lock_key]

    async def _unwrap(self, record: OrgDekRecord) -> SecureKey:
        if not record.encrypted_dek_blob:
            raise DekUnavailableError(record.org_id, "wrapped DEK blob is missing")

        logger.debug(
            "Unwrapping DEK via KMS (org=%s, version=%s)",
            record.org_id,
            record.dek_version,
        )
        try:
            plaintext = await self._kms.unwrap_key(record.encrypted_dek_blob)
        except (KmsInvalidBlobError, KmsKeyNotFoundError) as e:
            raise DekUnavailableError(record.org_id, f"KMS refused unwrap: {e.code}") from e

        if len(plaintext) != AES_256_KEY_SIZE:
            raise DekUnavailableError(
                record.org_id, f"unwrapped DEK has invalid length {len(plaintext)}"
            )
        return SecureKey(plaintext)

    async def provision_org(self, org_id: str) -> OrgDekRecord:
        """
        Create version 1 of an organization's DEK.

        Raises:
            DekAlreadyProvisionedError: If the organization already has a DEK
        """
        if await self._storage.get_active_org_dek(org_id) is not None:
            raise DekAlreadyProvisionedError(org_id, "already provisioned")

        dek = generate_dek()
        wrapped = await self._kms.wrap_key(dek.as_bytes())
        record = OrgDekRecord(org_id=org_id, dek_version=1, encrypted_dek_blob=wrapped)
        await self._storage.store_org_dek(record)
        self._cache.put(org_id, record.dek_version, dek)

        logger.info("Provisioned DEK for org %s (version 1)", org_id)
        return record

    async def rotate_org(self, org_id: str) -> DekRotationResult:
        """
        Replace the ACTIVE DEK with a fresh one. The old version is retired
        but retained for decryption.

        Raises:
            DekUnavailableError: If the organization has no DEK
        """
        current = await self._storage.get_active_org_dek(org_id)
        if current is None:
            raise DekUnavailableError(org_id, "organization has no DEK to rotate")

        dek = generate_dek()
        wrapped = await self._kms.wrap_key(dek.as_bytes())
        new_record = await self._storage.rotate_org_dek(
            org_id, current.dek_version, wrapped
        )
        self._cache.put(org_id, new_record.dek_version, dek)

        logger.info(
            "Rotated DEK for org %s (v%s -> v%s)",
            org_id,
            current.dek_version,
            new_record.dek_version,
        )
        return DekRotationResult(
            org_id=org_id,
            old_version=current.dek_version,
            new_version=new_record.dek_version,
        )

    def invalidate(self, org_id: str) -> None:
        """Drop cached DEKs for an organization."""
        self._cache.invalidate(org_id)
