"""
Tests for KMS clients and provider error translation.
"""

import base64
import secrets

import pytest

from org_crypto import (
    AwsKmsClient,
    AzureKeyVaultClient,
    ConfigError,
    CryptoSettings,
    GcpKmsClient,
    KmsInvalidBlobError,
    KmsKeyNotFoundError,
    KmsPermissionDeniedError,
    KmsProvider,
    KmsUnavailableError,
    LocalKmsClient,
    create_kms_client,
)


@pytest.fixture
def local_kms() -> LocalKmsClient:
    return LocalKmsClient(secrets.token_bytes(32))


# =============================================================================
# Local wrapper
# =============================================================================


class TestLocalKmsClient:
    async def test_wrap_unwrap(self, local_kms):
        dek = secrets.token_bytes(32)
        wrapped = await local_kms.wrap_key(dek)
        assert wrapped[0] == 1
        assert len(wrapped) == 1 + 12 + 16 + 32
        assert await local_kms.unwrap_key(wrapped) == dek

    async def test_wrapping_is_randomized(self, local_kms):
        dek = secrets.token_bytes(32)
        assert await local_kms.wrap_key(dek) != await local_kms.wrap_key(dek)

    async def test_other_master_key_cannot_unwrap(self, local_kms):
        wrapped = await local_kms.wrap_key(secrets.token_bytes(32))
        other = LocalKmsClient(secrets.token_bytes(32))
        with pytest.raises(KmsInvalidBlobError):
            await other.unwrap_key(wrapped)

    async def test_truncated_blob(self, local_kms):
        with pytest.raises(KmsInvalidBlobError):
            await local_kms.unwrap_key(b"\x01" * 10)

    async def test_wrong_version(self, local_kms):
        wrapped = bytearray(await local_kms.wrap_key(secrets.token_bytes(32)))
        wrapped[0] = 9
        with pytest.raises(KmsInvalidBlobError):
            await local_kms.unwrap_key(bytes(wrapped))

    def test_master_key_length(self):
        with pytest.raises(ConfigError):
            LocalKmsClient(b"too short")

    def test_from_base64(self):
        encoded = base64.b64encode(secrets.token_bytes(32)).decode()
        assert isinstance(LocalKmsClient.from_base64(encoded), LocalKmsClient)

    def test_from_invalid_base64(self):
        with pytest.raises(ConfigError):
            LocalKmsClient.from_base64("%%%")


# =============================================================================
# Factory
# =============================================================================


class TestCreateKmsClient:
    def test_local(self):
        settings = CryptoSettings(
            kms_provider=KmsProvider.LOCAL,
            kms_key_id=base64.b64encode(secrets.token_bytes(32)).decode(),
        )
        assert isinstance(create_kms_client(settings), LocalKmsClient)

    def test_missing_key_id(self):
        with pytest.raises(ConfigError):
            create_kms_client(CryptoSettings(kms_provider=KmsProvider.AWS))

    def test_gcp_requires_resource_name(self):
        settings = CryptoSettings(kms_provider=KmsProvider.GCP, kms_key_id="my-key")
        with pytest.raises(ConfigError):
            create_kms_client(settings)

    def test_gcp(self):
        settings = CryptoSettings(
            kms_provider=KmsProvider.GCP,
            kms_key_id="projects/p/locations/global/keyRings/r/cryptoKeys/k",
        )
        assert isinstance(create_kms_client(settings), GcpKmsClient)

    def test_aws(self):
        settings = CryptoSettings(
            kms_provider=KmsProvider.AWS, kms_key_id="alias/org-deks", aws_region="us-east-1"
        )
        assert isinstance(create_kms_client(settings), AwsKmsClient)

    def test_azure_requires_vault_url(self):
        settings = CryptoSettings(kms_provider=KmsProvider.AZURE, kms_key_id="org-deks")
        with pytest.raises(ConfigError):
            create_kms_client(settings)

    def test_azure(self):
        settings = CryptoSettings(
            kms_provider=KmsProvider.AZURE,
            kms_key_id="org-deks",
            azure_vault_url="https://vault.example.net/",
        )
        assert isinstance(create_kms_client(settings), AzureKeyVaultClient)


# =============================================================================
# AWS (botocore Stubber)
# =============================================================================


class TestAwsKmsClient:
    @pytest.fixture
    def stubbed(self):
        boto3 = pytest.importorskip("boto3")
        from botocore.stub import Stubber

        client = boto3.client(
            "kms",
            region_name="us-east-1",
            aws_access_key_id="test",
            aws_secret_access_key="test",
        )
        with Stubber(client) as stubber:
            yield AwsKmsClient("alias/org-deks", client=client), stubber

    async def test_wrap(self, stubbed):
        kms, stubber = stubbed
        stubber.add_response(
            "encrypt",
            {"CiphertextBlob": b"wrapped", "KeyId": "alias/org-deks"},
            {"KeyId": "alias/org-deks", "Plaintext": b"k" * 32},
        )
        assert await kms.wrap_key(b"k" * 32) == b"wrapped"

    async def test_unwrap(self, stubbed):
        kms, stubber = stubbed
        stubber.add_response(
            "decrypt",
            {"Plaintext": b"k" * 32, "KeyId": "alias/org-deks"},
            {"KeyId": "alias/org-deks", "CiphertextBlob": b"wrapped"},
        )
        assert await kms.unwrap_key(b"wrapped") == b"k" * 32

    @pytest.mark.parametrize(
        "code, expected",
        [
            ("InvalidCiphertextException", KmsInvalidBlobError),
            ("NotFoundException", KmsKeyNotFoundError),
            ("DisabledException", KmsKeyNotFoundError),
            ("AccessDeniedException", KmsPermissionDeniedError),
            ("ThrottlingException", KmsUnavailableError),
        ],
    )
    async def test_unwrap_errors(self, stubbed, code, expected):
        kms, stubber = stubbed
        stubber.add_client_error("decrypt", service_error_code=code)
        with pytest.raises(expected):
            await kms.unwrap_key(b"wrapped")


# =============================================================================
# GCP / Azure error translation
# =============================================================================


class TestGcpErrorTranslation:
    @pytest.fixture(autouse=True)
    def _requires_api_core(self):
        pytest.importorskip("google.api_core")

    def test_mapping(self):
        from google.api_core import exceptions as gexc

        from org_crypto.kms import translate_gcp_error

        assert isinstance(translate_gcp_error(gexc.NotFound("x")), KmsKeyNotFoundError)
        assert isinstance(
            translate_gcp_error(gexc.PermissionDenied("x")), KmsPermissionDeniedError
        )
        assert isinstance(translate_gcp_error(gexc.InvalidArgument("x")), KmsInvalidBlobError)
        assert isinstance(
            translate_gcp_error(gexc.ServiceUnavailable("x")), KmsUnavailableError
        )

    async def test_client_translates(self):
        from google.api_core import exceptions as gexc

        class FailingClient:
            async def decrypt(self, request):
                raise gexc.InvalidArgument("bad ciphertext")

        kms = GcpKmsClient(
            "projects/p/locations/global/keyRings/r/cryptoKeys/k", client=FailingClient()
        )
        with pytest.raises(KmsInvalidBlobError):
            await kms.unwrap_key(b"wrapped")


class TestAzureErrorTranslation:
    @pytest.fixture(autouse=True)
    def _requires_azure_core(self):
        pytest.importorskip("azure.core")

    def test_mapping(self):
        from azure.core.exceptions import (
            ClientAuthenticationError,
            ResourceNotFoundError,
            ServiceRequestError,
        )

        from org_crypto.kms import translate_azure_error

        assert isinstance(translate_azure_error(ResourceNotFoundError("x")), KmsKeyNotFoundError)
        assert isinstance(
            translate_azure_error(ClientAuthenticationError("x")), KmsPermissionDeniedError
        )
        assert isinstance(translate_azure_error(ServiceRequestError("x")), KmsUnavailableError)


def test_permission_denied_is_transient():
    assert issubclass(KmsPermissionDeniedError, KmsUnavailableError)
