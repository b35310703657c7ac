"""
Storage abstractions for organization DEKs and secure tokens.

This module provides:
- CryptoStorage: Abstract interface for storage backends
- InMemoryStorage: Thread-safe in-memory implementation for testing
- Supporting data structures: OrgDekRecord, DekStatus, SecureToken,
  TokenType, EncryptionStatus
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .errors import StorageError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DekStatus(Enum):
    """Organization DEK lifecycle status."""

    ACTIVE = "ACTIVE"  # Current DEK (encrypt + decrypt)
    RETIRED = "RETIRED"  # Old version (decrypt only, pending re-encryption)

    def __str__(self) -> str:
        return self.value

    @classmethod
    def from_str(cls, s: str) -> DekStatus:
        """Parse from string."""
        try:
            return cls(s.upper())
        except ValueError:
            raise StorageError(f"Invalid DEK status: {s}") from None


class TokenType(Enum):
    """OAuth token kinds held in the vault."""

    OAUTH_ACCESS = "oauth_access"
    OAUTH_REFRESH = "oauth_refresh"

    def __str__(self) -> str:
        return self.value


class EncryptionStatus(Enum):
    """Per-token encryption state."""

    PENDING = "pending"  # Not yet encrypted
    OK = "ok"  # Encrypted and verified
    FAILED = "failed"  # KMS or cipher error; needs re-provisioning

    def __str__(self) -> str:
        return self.value


@dataclass
class OrgDekRecord:
    """
    Wrapped organization DEK.

    The DEK itself is never stored; only the KMS-wrapped blob.
    """

    org_id: str
    dek_version: int
    encrypted_dek_blob: bytes
    status: DekStatus = DekStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)
    retired_at: Optional[datetime] = None


@dataclass
class SecureToken:
    """Persisted OAuth token: encrypted blob plus metadata."""

    token_ref: str
    org_id: str
    provider: str
    token_type: TokenType
    encryption_status: EncryptionStatus = EncryptionStatus.PENDING
    encrypted_token_blob: Optional[bytes] = None
    key_version: Optional[int] = None
    kms_error_code: Optional[str] = None
    kms_error_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __repr__(self) -> str:
        return (
            f"SecureToken(token_ref={self.token_ref!r}, org_id={self.org_id!r}, "
            f"provider={self.provider!r}, token_type={self.token_type.value!r}, "
            f"encryption_status={self.encryption_status.value!r})"
        )


TokenKey = Tuple[str, str, TokenType]


class CryptoStorage(ABC):
    """
    Abstract storage interface for organization DEKs and secure tokens.

    All methods are async to support both in-memory and database backends.
    """

    # ----- Organization DEKs -----

    @abstractmethod
    async def get_active_org_dek(self, org_id: str) -> Optional[OrgDekRecord]:
        """Get the ACTIVE DEK record for an organization."""
        ...

    @abstractmethod
    async def get_org_dek_by_version(
        self, org_id: str, version: int
    ) -> Optional[OrgDekRecord]:
        """Get a DEK record by version (ACTIVE or RETIRED)."""
        ...

    @abstractmethod
    async def store_org_dek(self, record: OrgDekRecord) -> None:
        """Store a new DEK record. Fails if (org_id, version) exists."""
        ...

    @abstractmethod
    async def rotate_org_dek(
        self, org_id: str, old_version: int, new_blob: bytes
    ) -> OrgDekRecord:
        """Retire ``old_version`` and store ``new_blob`` as old_version + 1."""
        ...

    @abstractmethod
    async def list_org_deks(self, org_id: str) -> List[OrgDekRecord]:
        """All DEK records for an organization, oldest first."""
        ...

    # ----- Secure tokens -----

    @abstractmethod
    async def save_token(self, token: SecureToken) -> None:
        """Insert or replace the token for (org_id, provider, token_type)."""
        ...

    @abstractmethod
    async def get_token(
        self, org_id: str, provider: str, token_type: TokenType
    ) -> Optional[SecureToken]:
        """Get a token by owner and type."""
        ...

    @abstractmethod
    async def get_token_by_ref(self, token_ref: str) -> Optional[SecureToken]:
        """Get a token by its opaque reference."""
        ...

    @abstractmethod
    async def delete_token(
        self, org_id: str, provider: str, token_type: TokenType
    ) -> bool:
        """Delete a token. Returns True if one was removed."""
        ...

    @abstractmethod
    async def list_tokens(self, org_id: str) -> List[SecureToken]:
        """All tokens for an organization."""
        ...


class InMemoryStorage(CryptoStorage):
    """
    Thread-safe in-memory storage implementation for testing.

    Uses asyncio.Lock for safe concurrent access.
    """

    def __init__(self) -> None:
        self._deks: Dict[Tuple[str, int], OrgDekRecord] = {}
        self._tokens: Dict[TokenKey, SecureToken] = {}
        self._lock = asyncio.Lock()

    async def get_active_org_dek(self, org_id: str) -> Optional[OrgDekRecord]:
        async with self._lock:
            for record in self._deks.values():
                if record.org_id == org_id and record.status == DekStatus.ACTIVE:
                    return record
            return None

    async def get_org_dek_by_version(
        self, org_id: str, version: int
    ) -> Optional[OrgDekRecord]:
        async with self._lock:
            return self._deks.get((org_id, version))

    async def store_org_dek(self, record: OrgDekRecord) -> None:
        async with self._lock:
            key = (record.org_id, record.dek_version)
            if key in self._deks:
                raise StorageError(
                    f"DEK version {record.dek_version} already exists for org {record.org_id}"
                )
            self._deks[key] = record

    async def rotate_org_dek(
        self, org_id: str, old_version: int, new_blob: bytes
    ) -> OrgDekRecord:
        async with self._lock:
            old = self._deks.get((org_id, old_version))
            if old is None or old.status != DekStatus.ACTIVE:
                raise StorageError(
                    f"Cannot rotate org {org_id}: version {old_version} is not ACTIVE"
                )
            now = utcnow()
            self._deks[(org_id, old_version)] = replace(
                old, status=DekStatus.RETIRED, retired_at=now
            )
            new_record = OrgDekRecord(
                org_id=org_id,
                dek_version=old_version + 1,
                encrypted_dek_blob=new_blob,
                status=DekStatus.ACTIVE,
                created_at=now,
            )
            self._deks[(org_id, new_record.dek_version)] = new_record
            return new_record

    async def list_org_deks(self, org_id: str) -> List[OrgDekRecord]:
        async with self._lock:
            records = [r for r in self._deks.values() if r.org_id == org_id]
            return sorted(records, key=lambda r: r.dek_version)

    async def save_token(self, token: SecureToken) -> None:
        async with self._lock:
            self._tokens[(token.org_id, token.provider, token.token_type)] = token

    async def get_token(
        self, org_id: str, provider: str, token_type: TokenType
    ) -> Optional[SecureToken]:
        async with self._lock:
            return self._tokens.get((org_id, provider, token_type))

    async def get_token_by_ref(self, token_ref: str) -> Optional[SecureToken]:
        async with self._lock:
            for token in self._tokens.values():
                if token.token_ref == token_ref:
                    return token
            return None

    async def delete_token(
        self, org_id: str, provider: str, token_type: TokenType
    ) -> bool:
        async with self._lock:
            return self._tokens.pop((org_id, provider, token_type), None) is not None

    async def list_tokens(self, org_id: str) -> List[SecureToken]:
        async with self._lock:
            return [t for t in self._tokens.values() if t.org_id == org_id]
