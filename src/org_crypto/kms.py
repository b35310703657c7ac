"""
KMS clients that wrap and unwrap organization DEKs with an external master key.

This module provides:
- KmsClient: Abstract wrap/unwrap interface
- LocalKmsClient: AES-256-GCM master key from KMS_KEY_ID (development/tests)
- GcpKmsClient: Google Cloud KMS (google-cloud-kms)
- AwsKmsClient: AWS KMS (boto3)
- AzureKeyVaultClient: Azure Key Vault (azure-keyvault-keys)
- create_kms_client: Provider selection from CryptoSettings

Provider failures are translated into distinct error kinds so callers can tell
"retry later" (KmsUnavailableError) from "this DEK is unrecoverable"
(KmsInvalidBlobError, KmsKeyNotFoundError). No retries happen here.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import secrets
from abc import ABC, abstractmethod
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .config import CryptoSettings, KmsProvider
from .crypto import AES_256_KEY_SIZE, NONCE_SIZE, TAG_SIZE
from .errors import (
    ConfigError,
    KmsError,
    KmsInvalidBlobError,
    KmsKeyNotFoundError,
    KmsPermissionDeniedError,
    KmsUnavailableError,
)

logger = logging.getLogger(__name__)


class KmsClient(ABC):
    """
    Wrap/unwrap capability backed by a key-management service.

    Both operations are remote calls; credentials come from the process
    environment, never from application state.
    """

    provider: KmsProvider

    @abstractmethod
    async def wrap_key(self, plaintext_key: bytes) -> bytes:
        """Encrypt a DEK under the master key."""
        ...

    @abstractmethod
    async def unwrap_key(self, wrapped_blob: bytes) -> bytes:
        """Decrypt a wrapped DEK."""
        ...

    async def aclose(self) -> None:
        """Release provider resources."""
        return None


# =============================================================================
# Local wrapper
# =============================================================================

LOCAL_BLOB_VERSION = 1
_LOCAL_HEADER_SIZE = 1 + NONCE_SIZE + TAG_SIZE  # version || iv || tag


class LocalKmsClient(KmsClient):
    """
    Local AES-256-GCM wrapper using a 32-byte master key.

    Wrapped format: version(1) || iv(12) || tag(16) || ciphertext
    """

    provider = KmsProvider.LOCAL

    def __init__(self, master_key: bytes) -> None:
        if len(master_key) != AES_256_KEY_SIZE:
            raise ConfigError(
                "KMS_KEY_ID must be a 32-byte key in base64 for the local provider"
            )
        self._aesgcm = AESGCM(master_key)

    @classmethod
    def from_base64(cls, encoded: str) -> LocalKmsClient:
        try:
            master_key = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError):
            raise ConfigError("KMS_KEY_ID is not valid base64") from None
        return cls(master_key)

    async def wrap_key(self, plaintext_key: bytes) -> bytes:
        iv = secrets.token_bytes(NONCE_SIZE)
        sealed = self._aesgcm.encrypt(iv, plaintext_key, None)
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return bytes([LOCAL_BLOB_VERSION]) + iv + tag + ciphertext

    async def unwrap_key(self, wrapped_blob: bytes) -> bytes:
        blob = bytes(wrapped_blob)
        if len(blob) < _LOCAL_HEADER_SIZE:
            raise KmsInvalidBlobError("Invalid KMS-wrapped blob")
        if blob[0] != LOCAL_BLOB_VERSION:
            raise KmsInvalidBlobError(f"Unsupported KMS blob version: {blob[0]}")

        iv = blob[1 : 1 + NONCE_SIZE]
        tag = blob[1 + NONCE_SIZE : _LOCAL_HEADER_SIZE]
        ciphertext = blob[_LOCAL_HEADER_SIZE:]
        try:
            return self._aesgcm.decrypt(iv, ciphertext + tag, None)
        except InvalidTag:
            raise KmsInvalidBlobError("Wrapped DEK failed authentication") from None


# =============================================================================
# Google Cloud KMS
# =============================================================================


class GcpKmsClient(KmsClient):
    """
    Google Cloud KMS using the async KeyManagementService client.

    ``key_name`` is a CryptoKey resource:
    projects/P/locations/L/keyRings/R/cryptoKeys/K
    """

    provider = KmsProvider.GCP

    def __init__(
        self,
        key_name: str,
        *,
        credentials_json: Optional[str] = None,
        client: Any = None,
    ) -> None:
        if not key_name.startswith("projects/"):
            raise ConfigError(
                "KMS_KEY_ID must be a CryptoKey resource name for the gcp provider"
            )
        self._key_name = key_name
        self._credentials_json = credentials_json
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            from google.cloud import kms

            if self._credentials_json:
                from google.oauth2 import service_account

                info = json.loads(base64.b64decode(self._credentials_json))
                credentials = service_account.Credentials.from_service_account_info(info)
                self._client = kms.KeyManagementServiceAsyncClient(credentials=credentials)
            else:
                self._client = kms.KeyManagementServiceAsyncClient()
        return self._client

    async def wrap_key(self, plaintext_key: bytes) -> bytes:
        client = self._get_client()
        try:
            response = await client.encrypt(
                request={"name": self._key_name, "plaintext": plaintext_key}
            )
        except Exception as e:
            raise _log_kms_failure(self.provider, "wrap", translate_gcp_error(e)) from e
        if not response.ciphertext:
            raise KmsUnavailableError("GCP KMS encrypt: missing ciphertext")
        return bytes(response.ciphertext)

    async def unwrap_key(self, wrapped_blob: bytes) -> bytes:
        client = self._get_client()
        try:
            response = await client.decrypt(
                request={"name": self._key_name, "ciphertext": bytes(wrapped_blob)}
            )
        except Exception as e:
            raise _log_kms_failure(self.provider, "unwrap", translate_gcp_error(e)) from e
        if not response.plaintext:
            raise KmsInvalidBlobError("GCP KMS decrypt: missing plaintext")
        return bytes(response.plaintext)


def translate_gcp_error(error: Exception) -> KmsError:
    """Map google.api_core exceptions onto KMS error kinds."""
    from google.api_core import exceptions as gexc

    message = f"GCP KMS: {error}"
    if isinstance(error, (gexc.NotFound, gexc.FailedPrecondition)):
        return KmsKeyNotFoundError(message)
    if isinstance(error, (gexc.PermissionDenied, gexc.Unauthenticated)):
        return KmsPermissionDeniedError(message)
    if isinstance(error, gexc.InvalidArgument):
        return KmsInvalidBlobError(message)
    return KmsUnavailableError(message)


# =============================================================================
# AWS KMS
# =============================================================================

_AWS_KEY_NOT_FOUND = {"NotFoundException", "DisabledException", "KMSInvalidStateException"}
_AWS_PERMISSION = {"AccessDeniedException", "UnrecognizedClientException"}
_AWS_INVALID_BLOB = {
    "InvalidCiphertextException",
    "IncorrectKeyException",
    "InvalidKeyUsageException",
}


class AwsKmsClient(KmsClient):
    """
    AWS KMS using boto3.

    boto3 is blocking, so calls run in a worker thread.
    """

    provider = KmsProvider.AWS

    def __init__(
        self,
        key_id: str,
        *,
        region: Optional[str] = None,
        client: Any = None,
    ) -> None:
        self._key_id = key_id
        self._region = region
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            import boto3

            self._client = boto3.client("kms", region_name=self._region)
        return self._client

    async def wrap_key(self, plaintext_key: bytes) -> bytes:
        client = self._get_client()
        try:
            response = await asyncio.to_thread(
                client.encrypt, KeyId=self._key_id, Plaintext=plaintext_key
            )
        except Exception as e:
            raise _log_kms_failure(self.provider, "wrap", translate_aws_error(e)) from e
        return bytes(response["CiphertextBlob"])

    async def unwrap_key(self, wrapped_blob: bytes) -> bytes:
        client = self._get_client()
        try:
            response = await asyncio.to_thread(
                client.decrypt, KeyId=self._key_id, CiphertextBlob=bytes(wrapped_blob)
            )
        except Exception as e:
            raise _log_kms_failure(self.provider, "unwrap", translate_aws_error(e)) from e
        return bytes(response["Plaintext"])


def translate_aws_error(error: Exception) -> KmsError:
    """Map botocore exceptions onto KMS error kinds."""
    from botocore.exceptions import ClientError, NoCredentialsError

    message = f"AWS KMS: {error}"
    if isinstance(error, ClientError):
        code = error.response.get("Error", {}).get("Code", "")
        if code in _AWS_KEY_NOT_FOUND:
            return KmsKeyNotFoundError(message)
        if code in _AWS_PERMISSION:
            return KmsPermissionDeniedError(message)
        if code in _AWS_INVALID_BLOB:
            return KmsInvalidBlobError(message)
        return KmsUnavailableError(message)
    if isinstance(error, NoCredentialsError):
        return KmsPermissionDeniedError(message)
    return KmsUnavailableError(message)


# =============================================================================
# Azure Key Vault
# =============================================================================


class AzureKeyVaultClient(KmsClient):
    """
    Azure Key Vault using the async CryptographyClient (RSA-OAEP-256 key wrap).

    Credentials come from azure-identity's DefaultAzureCredential.
    """

    provider = KmsProvider.AZURE

    def __init__(
        self,
        vault_url: str,
        key_name: str,
        *,
        credential: Any = None,
        crypto_client: Any = None,
    ) -> None:
        self._key_id = f"{vault_url.rstrip('/')}/keys/{key_name}"
        self._credential = credential
        self._crypto_client = crypto_client

    def _get_client(self) -> Any:
        if self._crypto_client is None:
            from azure.identity.aio import DefaultAzureCredential
            from azure.keyvault.keys.crypto.aio import CryptographyClient

            if self._credential is None:
                self._credential = DefaultAzureCredential()
            self._crypto_client = CryptographyClient(self._key_id, self._credential)
        return self._crypto_client

    async def wrap_key(self, plaintext_key: bytes) -> bytes:
        from azure.keyvault.keys.crypto import KeyWrapAlgorithm

        client = self._get_client()
        try:
            result = await client.wrap_key(KeyWrapAlgorithm.rsa_oaep_256, plaintext_key)
        except Exception as e:
            raise _log_kms_failure(self.provider, "wrap", translate_azure_error(e)) from e
        return bytes(result.encrypted_key)

    async def unwrap_key(self, wrapped_blob: bytes) -> bytes:
        from azure.keyvault.keys.crypto import KeyWrapAlgorithm

        client = self._get_client()
        try:
            result = await client.unwrap_key(
                KeyWrapAlgorithm.rsa_oaep_256, bytes(wrapped_blob)
            )
        except Exception as e:
            raise _log_kms_failure(self.provider, "unwrap", translate_azure_error(e)) from e
        return bytes(result.key)

    async def aclose(self) -> None:
        if self._crypto_client is not None:
            await self._crypto_client.close()
        if self._credential is not None and hasattr(self._credential, "close"):
            await self._credential.close()


def translate_azure_error(error: Exception) -> KmsError:
    """Map azure.core exceptions onto KMS error kinds."""
    from azure.core.exceptions import (
        ClientAuthenticationError,
        HttpResponseError,
        ResourceNotFoundError,
    )

    message = f"Azure Key Vault: {error}"
    if isinstance(error, ResourceNotFoundError):
        return KmsKeyNotFoundError(message)
    if isinstance(error, ClientAuthenticationError):
        return KmsPermissionDeniedError(message)
    if isinstance(error, HttpResponseError):
        if error.status_code == 403:
            return KmsPermissionDeniedError(message)
        if error.status_code == 400:
            return KmsInvalidBlobError(message)
    return KmsUnavailableError(message)


# =============================================================================
# Factory
# =============================================================================


def create_kms_client(settings: CryptoSettings) -> KmsClient:
    """
    Select the KMS client from KMS_PROVIDER / KMS_KEY_ID.

    Raises:
        ConfigError: If the provider is not fully configured
    """
    key_id = settings.kms_key_id
    if not key_id:
        raise ConfigError(f"KMS_KEY_ID is required for the {settings.kms_provider} provider")

    if settings.kms_provider is KmsProvider.LOCAL:
        return LocalKmsClient.from_base64(key_id)
    if settings.kms_provider is KmsProvider.GCP:
        return GcpKmsClient(key_id, credentials_json=settings.gcp_credentials_json)
    if settings.kms_provider is KmsProvider.AWS:
        return AwsKmsClient(key_id, region=settings.aws_region)
    if settings.kms_provider is KmsProvider.AZURE:
        if not settings.azure_vault_url:
            raise ConfigError("AZURE_VAULT_URL is required for the azure provider")
        return AzureKeyVaultClient(settings.azure_vault_url, key_id)
    raise ConfigError(f"Unsupported KMS provider: {settings.kms_provider}")


def _log_kms_failure(provider: KmsProvider, operation: str, error: KmsError) -> KmsError:
    logger.warning(
        "KMS %s failed (provider=%s, code=%s): %s",
        operation,
        provider.value,
        error.code,
        error,
    )
    return error
