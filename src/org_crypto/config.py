"""
Configuration loaded from environment variables (and an optional .env file).

Variables:
    KMS_PROVIDER            local | gcp | aws | azure (default: local)
    KMS_KEY_ID              base64 32-byte key (local), CryptoKey resource (gcp),
                            key id/ARN/alias (aws), or key name (azure)
    DEK_CACHE_TTL_SECONDS   DEK cache TTL, 1..3600 (default: 300)
    DEK_CACHE_MAX_ENTRIES   DEK cache bound (default: 1024)
    DATABASE_URL            PostgreSQL DSN for PostgresStorage
    AWS_REGION              AWS region for the aws provider
    AZURE_VAULT_URL         Key Vault URL for the azure provider
    GOOGLE_APPLICATION_CREDENTIALS_JSON
                            base64 service-account JSON for the gcp provider
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from .errors import ConfigError

DEFAULT_CACHE_TTL_SECONDS = 300
MAX_CACHE_TTL_SECONDS = 3600
DEFAULT_CACHE_MAX_ENTRIES = 1024


class KmsProvider(Enum):
    """Supported KMS backends."""

    LOCAL = "local"
    GCP = "gcp"
    AWS = "aws"
    AZURE = "azure"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def from_str(cls, s: str) -> KmsProvider:
        """Parse from string."""
        try:
            return cls(s.strip().lower())
        except ValueError:
            raise ConfigError(f"Invalid KMS_PROVIDER: {s}") from None


@dataclass(frozen=True)
class CryptoSettings:
    """Resolved settings for the crypto layer."""

    kms_provider: KmsProvider = KmsProvider.LOCAL
    kms_key_id: Optional[str] = None
    dek_cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS
    dek_cache_max_entries: int = DEFAULT_CACHE_MAX_ENTRIES
    database_url: Optional[str] = None
    aws_region: Optional[str] = None
    azure_vault_url: Optional[str] = None
    gcp_credentials_json: Optional[str] = None

    def __repr__(self) -> str:
        # KMS_KEY_ID holds raw key material for the local provider.
        return (
            f"CryptoSettings(kms_provider={self.kms_provider.value!r}, "
            f"kms_key_id={'[SET]' if self.kms_key_id else None}, "
            f"dek_cache_ttl_seconds={self.dek_cache_ttl_seconds}, "
            f"dek_cache_max_entries={self.dek_cache_max_entries})"
        )

    @classmethod
    def from_env(
        cls,
        env_file: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> CryptoSettings:
        """
        Build settings from the process environment.

        Args:
            env_file: Optional .env path loaded with python-dotenv first
                (existing variables are not overridden)
            environ: Mapping to read instead of os.environ (tests)

        Raises:
            ConfigError: If a value is invalid
        """
        if environ is None:
            load_dotenv(env_file)
            environ = os.environ

        provider = KmsProvider.from_str(environ.get("KMS_PROVIDER") or "local")
        key_id = environ.get("KMS_KEY_ID") or None

        ttl = _parse_number(
            environ, "DEK_CACHE_TTL_SECONDS", float, DEFAULT_CACHE_TTL_SECONDS
        )
        if not 1 <= ttl <= MAX_CACHE_TTL_SECONDS:
            raise ConfigError(
                f"DEK_CACHE_TTL_SECONDS must be between 1 and {MAX_CACHE_TTL_SECONDS}, got {ttl}"
            )

        max_entries = _parse_number(
            environ, "DEK_CACHE_MAX_ENTRIES", int, DEFAULT_CACHE_MAX_ENTRIES
        )
        if max_entries < 1:
            raise ConfigError("DEK_CACHE_MAX_ENTRIES must be at least 1")

        return cls(
            kms_provider=provider,
            kms_key_id=key_id,
            dek_cache_ttl_seconds=ttl,
            dek_cache_max_entries=max_entries,
            database_url=environ.get("DATABASE_URL") or None,
            aws_region=environ.get("AWS_REGION") or None,
            azure_vault_url=environ.get("AZURE_VAULT_URL") or None,
            gcp_credentials_json=environ.get("GOOGLE_APPLICATION_CREDENTIALS_JSON") or None,
        )


def _parse_number(environ: Mapping[str, str], name: str, kind: type, default):
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return kind(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None
