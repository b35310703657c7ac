"""
Organization Crypto Library

Per-organization envelope encryption for sensitive columns and OAuth tokens.

Overview
--------
- **Organization DEKs**: each organization has its own 32-byte data-encryption
  key, stored only in wrapped form (encrypted by a KMS master key)
- **Field contexts**: every encrypted value is bound to a fixed field context
  (e.g. ``email:subject``); a blob decrypts only under the context it was
  written with
- **Versioned blobs**: each blob records the DEK version that produced it, so
  rotation never strands old ciphertext

Quick Start
-----------
```python
import asyncio
import asyncpg
from org_crypto import CryptoSettings, FieldContext, OrgCrypto, PostgresStorage

async def main():
    settings = CryptoSettings.from_env()
    pool = await asyncpg.create_pool(settings.database_url)
    crypto = OrgCrypto.from_settings(settings, PostgresStorage(pool))

    # One-time, when the organization is created
    await crypto.resolver.provision_org("org_123")

    blob = await crypto.encrypt_for_org("org_123", "Offer accepted", FieldContext.EMAIL_SUBJECT)
    subject = await crypto.decrypt_text_for_org("org_123", blob.to_bytes(), FieldContext.EMAIL_SUBJECT)

asyncio.run(main())
```

Modules
-------
- `crypto`: AES-256-GCM primitives and SecureKey
- `context`: Closed set of field contexts
- `blob`: EncryptedBlob binary format
- `cipher`: Context-bound field encryption
- `kms`: Local, GCP, AWS and Azure key wrapping
- `cache`: TTL/LRU cache of unwrapped DEKs
- `resolver`: DEK resolution, provisioning and rotation
- `facade`: OrgCrypto, the application entry point
- `tokens`: OAuth token vault
- `health`: Connected-account health
- `storage` / `postgres_storage`: Persistence backends
- `config`: Environment configuration
- `errors`: Error types
"""

__version__ = "0.1.0"

# ============================================================================
# Crypto Exports
# ============================================================================

from .crypto import (
    AES_256_KEY_SIZE,
    NONCE_SIZE,
    TAG_SIZE,
    AesGcmCipher,
    SecureKey,
    generate_dek,
)

from .context import ContextLike, FieldContext, coerce_context

from .blob import HEADER_SIZE, MIN_BLOB_SIZE, EncryptedBlob, context_tag

from .cipher import FieldCipher

# ============================================================================
# Error Exports
# ============================================================================

from .errors import (
    AuthenticationFailedError,
    CipherError,
    ConfigError,
    DekAlreadyProvisionedError,
    DekUnavailableError,
    KmsError,
    KmsInvalidBlobError,
    KmsKeyNotFoundError,
    KmsPermissionDeniedError,
    KmsUnavailableError,
    MalformedBlobError,
    OrgCryptoError,
    StorageError,
    TokenNotFoundError,
    TokenUnavailableError,
    TokenVaultError,
    UnknownContextError,
    error_code,
)

# ============================================================================
# Configuration and KMS Exports
# ============================================================================

from .config import CryptoSettings, KmsProvider

from .kms import (
    AwsKmsClient,
    AzureKeyVaultClient,
    GcpKmsClient,
    KmsClient,
    LocalKmsClient,
    create_kms_client,
)

# ============================================================================
# Storage Exports
# ============================================================================

from .storage import (
    CryptoStorage,
    DekStatus,
    EncryptionStatus,
    InMemoryStorage,
    OrgDekRecord,
    SecureToken,
    TokenType,
)

from .postgres_storage import PostgresStorage

# ============================================================================
# Service Exports (Primary API)
# ============================================================================

from .cache import DekCache

from .resolver import DekResolver, DekRotationResult, ResolvedDek

from .facade import DECRYPT_FAILED_PLACEHOLDER, DecryptResult, OrgCrypto

from .tokens import TokenData, TokenEncryptionStats, TokenVault, token_context

from .health import AccountStatus, TokenHealth, check_token_health

# ============================================================================
# Public API
# ============================================================================

__all__ = [
    # Version
    "__version__",
    # Crypto
    "AES_256_KEY_SIZE",
    "NONCE_SIZE",
    "TAG_SIZE",
    "AesGcmCipher",
    "SecureKey",
    "generate_dek",
    "ContextLike",
    "FieldContext",
    "coerce_context",
    "HEADER_SIZE",
    "MIN_BLOB_SIZE",
    "EncryptedBlob",
    "context_tag",
    "FieldCipher",
    # Errors
    "OrgCryptoError",
    "ConfigError",
    "StorageError",
    "KmsError",
    "KmsUnavailableError",
    "KmsPermissionDeniedError",
    "KmsInvalidBlobError",
    "KmsKeyNotFoundError",
    "DekUnavailableError",
    "DekAlreadyProvisionedError",
    "CipherError",
    "AuthenticationFailedError",
    "MalformedBlobError",
    "UnknownContextError",
    "TokenVaultError",
    "TokenNotFoundError",
    "TokenUnavailableError",
    "error_code",
    # Configuration and KMS
    "CryptoSettings",
    "KmsProvider",
    "KmsClient",
    "LocalKmsClient",
    "GcpKmsClient",
    "AwsKmsClient",
    "AzureKeyVaultClient",
    "create_kms_client",
    # Storage
    "CryptoStorage",
    "InMemoryStorage",
    "PostgresStorage",
    "OrgDekRecord",
    "DekStatus",
    "SecureToken",
    "TokenType",
    "EncryptionStatus",
    # Services
    "DekCache",
    "DekResolver",
    "ResolvedDek",
    "DekRotationResult",
    "OrgCrypto",
    "DecryptResult",
    "DECRYPT_FAILED_PLACEHOLDER",
    "TokenVault",
    "TokenData",
    "TokenEncryptionStats",
    "token_context",
    "AccountStatus",
    "TokenHealth",
    "check_token_health",
]
