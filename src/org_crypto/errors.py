"""
Exception classes for organization envelope encryption.

Hierarchy:

- OrgCryptoError
  - ConfigError
  - StorageError
  - KmsError
    - KmsUnavailableError (retryable)
      - KmsPermissionDeniedError
    - KmsInvalidBlobError (permanent)
    - KmsKeyNotFoundError (permanent)
  - DekUnavailableError
    - DekAlreadyProvisionedError
  - CipherError
    - AuthenticationFailedError
    - MalformedBlobError
  - UnknownContextError
  - TokenVaultError
    - TokenNotFoundError
    - TokenUnavailableError
"""

from __future__ import annotations


class OrgCryptoError(Exception):
    """Base exception for all organization crypto operations."""

    pass


class ConfigError(OrgCryptoError):
    """Configuration error."""

    pass


class StorageError(OrgCryptoError):
    """Storage backend error (database, in-memory, etc.)."""

    pass


# =============================================================================
# KMS errors
# =============================================================================


class KmsError(OrgCryptoError):
    """Base class for failures talking to the key-management service."""

    code = "KMS_ERROR"


class KmsUnavailableError(KmsError):
    """Transient KMS failure (network, timeout, throttling). Safe to retry."""

    code = "KMS_UNAVAILABLE"


class KmsPermissionDeniedError(KmsUnavailableError):
    """The process credentials are not allowed to use the master key."""

    code = "KMS_PERMISSION_DENIED"


class KmsInvalidBlobError(KmsError):
    """The wrapped blob is corrupt or was not produced by this master key."""

    code = "KMS_INVALID_BLOB"


class KmsKeyNotFoundError(KmsError):
    """The master key does not exist or is disabled."""

    code = "KMS_KEY_NOT_FOUND"


# =============================================================================
# DEK errors
# =============================================================================


class DekUnavailableError(OrgCryptoError):
    """Organization has no usable DEK. Fatal until administratively repaired."""

    code = "DEK_UNAVAILABLE"

    def __init__(self, org_id: str, reason: str) -> None:
        super().__init__(f"DEK unavailable for org {org_id}: {reason}")
        self.org_id = org_id
        self.reason = reason


class DekAlreadyProvisionedError(DekUnavailableError):
    """Organization already has a DEK; use rotation instead."""

    code = "DEK_ALREADY_PROVISIONED"


# =============================================================================
# Cipher errors
# =============================================================================


class CipherError(OrgCryptoError):
    """Field-level decryption failed for one blob."""

    code = "CIPHER_ERROR"


class AuthenticationFailedError(CipherError):
    """Tag mismatch: tampered ciphertext, wrong key, or wrong context."""

    code = "AUTHENTICATION_FAILED"


class MalformedBlobError(CipherError):
    """Blob is structurally corrupt (wrong length, unknown format)."""

    code = "MALFORMED_BLOB"


class UnknownContextError(OrgCryptoError, ValueError):
    """Context string is not a known field context."""

    code = "UNKNOWN_CONTEXT"


# =============================================================================
# Token vault errors
# =============================================================================


class TokenVaultError(OrgCryptoError):
    """Base class for token vault errors."""

    code = "TOKEN_VAULT_ERROR"


class TokenNotFoundError(TokenVaultError):
    """No secure token stored for the requested org/provider/type."""

    code = "TOKEN_NOT_FOUND"


class TokenUnavailableError(TokenVaultError):
    """Token exists but is not in the ``ok`` state."""

    code = "TOKEN_UNAVAILABLE"


def error_code(error: BaseException) -> str:
    """Short machine-readable code for an exception, used in token records."""
    code = getattr(error, "code", None)
    if isinstance(code, str):
        return code
    return type(error).__name__
