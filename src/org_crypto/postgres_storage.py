"""
PostgreSQL storage backend for organization DEKs and secure tokens.

This module provides:
- PostgresStorage: asyncpg implementation of CryptoStorage

Tables (see schema.sql):
- org_deks: wrapped DEK per (org_id, dek_version); one ACTIVE row per org
- secure_tokens: encrypted OAuth tokens, unique per (org_id, provider, token_type)

Only KMS-wrapped DEKs are stored; plaintext DEKs never reach the database.
"""

from __future__ import annotations

from typing import List, Optional

import asyncpg

from .errors import StorageError
from .storage import (
    CryptoStorage,
    DekStatus,
    EncryptionStatus,
    OrgDekRecord,
    SecureToken,
    TokenType,
)

_DEK_COLUMNS = "org_id, dek_version, encrypted_dek_blob, status, created_at, retired_at"

_TOKEN_COLUMNS = """
    token_ref, org_id, provider, token_type, encryption_status,
    encrypted_token_blob, key_version, kms_error_code, kms_error_at,
    expires_at, created_at, updated_at
"""


class PostgresStorage(CryptoStorage):
    """PostgreSQL storage backend."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        """
        Initialize PostgreSQL storage.

        Args:
            pool: asyncpg connection pool
        """
        self._pool = pool

    @property
    def pool(self) -> asyncpg.Pool:
        """Get the connection pool."""
        return self._pool

    # ----- Organization DEKs -----

    async def get_active_org_dek(self, org_id: str) -> Optional[OrgDekRecord]:
        query = f"""
            SELECT {_DEK_COLUMNS}
            FROM org_deks
            WHERE org_id = $1 AND status = 'ACTIVE'
        """
        try:
            row = await self._pool.fetchrow(query, org_id)
        except Exception as e:
            raise StorageError(f"Failed to get active DEK: {e}") from e
        return self._row_to_dek(row) if row else None

    async def get_org_dek_by_version(
        self, org_id: str, version: int
    ) -> Optional[OrgDekRecord]:
        query = f"""
            SELECT {_DEK_COLUMNS}
            FROM org_deks
            WHERE org_id = $1 AND dek_version = $2
        """
        try:
            row = await self._pool.fetchrow(query, org_id, version)
        except Exception as e:
            raise StorageError(f"Failed to get DEK by version: {e}") from e
        return self._row_to_dek(row) if row else None

    async def store_org_dek(self, record: OrgDekRecord) -> None:
        query = """
            INSERT INTO org_deks (org_id, dek_version, encrypted_dek_blob, status, created_at)
            VALUES ($1, $2, $3, $4, $5)
        """
        try:
            await self._pool.execute(
                query,
                record.org_id,
                record.dek_version,
                record.encrypted_dek_blob,
                record.status.value,
                record.created_at,
            )
        except Exception as e:
            raise StorageError(f"Failed to store DEK: {e}") from e

    async def rotate_org_dek(
        self, org_id: str, old_version: int, new_blob: bytes
    ) -> OrgDekRecord:
        retire = """
            UPDATE org_deks
            SET status = 'RETIRED', retired_at = now()
            WHERE org_id = $1 AND dek_version = $2 AND status = 'ACTIVE'
        """
        insert = f"""
            INSERT INTO org_deks (org_id, dek_version, encrypted_dek_blob, status, created_at)
            VALUES ($1, $2, $3, 'ACTIVE', now())
            RETURNING {_DEK_COLUMNS}
        """
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    result = await conn.execute(retire, org_id, old_version)
                    if result != "UPDATE 1":
                        raise StorageError(
                            f"Cannot rotate org {org_id}: version {old_version} is not ACTIVE"
                        )
                    row = await conn.fetchrow(insert, org_id, old_version + 1, new_blob)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to rotate DEK: {e}") from e
        return self._row_to_dek(row)

    async def list_org_deks(self, org_id: str) -> List[OrgDekRecord]:
        query = f"""
            SELECT {_DEK_COLUMNS}
            FROM org_deks
            WHERE org_id = $1
            ORDER BY dek_version
        """
        try:
            rows = await self._pool.fetch(query, org_id)
        except Exception as e:
            raise StorageError(f"Failed to list DEKs: {e}") from e
        return [self._row_to_dek(row) for row in rows]

    # ----- Secure tokens -----

    async def save_token(self, token: SecureToken) -> None:
        query = f"""
            INSERT INTO secure_tokens ({_TOKEN_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
            ON CONFLICT (org_id, provider, token_type) DO UPDATE SET
                token_ref = EXCLUDED.token_ref,
                encryption_status = EXCLUDED.encryption_status,
                encrypted_token_blob = EXCLUDED.encrypted_token_blob,
                key_version = EXCLUDED.key_version,
                kms_error_code = EXCLUDED.kms_error_code,
                kms_error_at = EXCLUDED.kms_error_at,
                expires_at = EXCLUDED.expires_at,
                updated_at = EXCLUDED.updated_at
        """
        try:
            await self._pool.execute(
                query,
                token.token_ref,
                token.org_id,
                token.provider,
                token.token_type.value,
                token.encryption_status.value,
                token.encrypted_token_blob,
                token.key_version,
                token.kms_error_code,
                token.kms_error_at,
                token.expires_at,
                token.created_at,
                token.updated_at,
            )
        except Exception as e:
            raise StorageError(f"Failed to save token: {e}") from e

    async def get_token(
        self, org_id: str, provider: str, token_type: TokenType
    ) -> Optional[SecureToken]:
        query = f"""
            SELECT {_TOKEN_COLUMNS}
            FROM secure_tokens
            WHERE org_id = $1 AND provider = $2 AND token_type = $3
        """
        try:
            row = await self._pool.fetchrow(query, org_id, provider, token_type.value)
        except Exception as e:
            raise StorageError(f"Failed to get token: {e}") from e
        return self._row_to_token(row) if row else None

    async def get_token_by_ref(self, token_ref: str) -> Optional[SecureToken]:
        query = f"SELECT {_TOKEN_COLUMNS} FROM secure_tokens WHERE token_ref = $1"
        try:
            row = await self._pool.fetchrow(query, token_ref)
        except Exception as e:
            raise StorageError(f"Failed to get token by ref: {e}") from e
        return self._row_to_token(row) if row else None

    async def delete_token(
        self, org_id: str, provider: str, token_type: TokenType
    ) -> bool:
        query = """
            DELETE FROM secure_tokens
            WHERE org_id = $1 AND provider = $2 AND token_type = $3
        """
        try:
            result = await self._pool.execute(query, org_id, provider, token_type.value)
        except Exception as e:
            raise StorageError(f"Failed to delete token: {e}") from e
        return result == "DELETE 1"

    async def list_tokens(self, org_id: str) -> List[SecureToken]:
        query = f"""
            SELECT {_TOKEN_COLUMNS}
            FROM secure_tokens
            WHERE org_id = $1
            ORDER BY created_at
        """
        try:
            rows = await self._pool.fetch(query, org_id)
        except Exception as e:
            raise StorageError(f"Failed to list tokens: {e}") from e
        return [self._row_to_token(row) for row in rows]

    @staticmethod
    def _row_to_dek(row: asyncpg.Record) -> OrgDekRecord:
        """Convert database row to OrgDekRecord."""
        return OrgDekRecord(
            org_id=row["org_id"],
            dek_version=row["dek_version"],
            encrypted_dek_blob=bytes(row["encrypted_dek_blob"]),
            status=DekStatus.from_str(row["status"]),
            created_at=row["created_at"],
            retired_at=row["retired_at"],
        )

    @staticmethod
    def _row_to_token(row: asyncpg.Record) -> SecureToken:
        """Convert database row to SecureToken."""
        blob = row["encrypted_token_blob"]
        try:
            token_type = TokenType(row["token_type"])
            status = EncryptionStatus(row["encryption_status"])
        except ValueError as e:
            raise StorageError(f"Invalid token row: {e}") from e
        return SecureToken(
            token_ref=row["token_ref"],
            org_id=row["org_id"],
            provider=row["provider"],
            token_type=token_type,
            encryption_status=status,
            encrypted_token_blob=bytes(blob) if blob is not None else None,
            key_version=row["key_version"],
            kms_error_code=row["kms_error_code"],
            kms_error_at=row["kms_error_at"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
