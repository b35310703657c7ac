"""
Unit tests for the AES-256-GCM primitives, blob format, and field cipher.
"""

import pytest

from org_crypto import (
    HEADER_SIZE,
    MIN_BLOB_SIZE,
    NONCE_SIZE,
    AesGcmCipher,
    AuthenticationFailedError,
    CipherError,
    EncryptedBlob,
    FieldCipher,
    FieldContext,
    MalformedBlobError,
    SecureKey,
    UnknownContextError,
    coerce_context,
    context_tag,
)


@pytest.fixture
def dek() -> SecureKey:
    return SecureKey.generate()


# =============================================================================
# SecureKey / AesGcmCipher
# =============================================================================


class TestSecureKey:
    def test_generate_is_32_bytes(self):
        assert len(SecureKey.generate()) == 32

    def test_repr_is_redacted(self, dek):
        assert "redacted" in repr(dek)
        assert dek.as_bytes().hex() not in repr(dek)

    def test_rejects_non_bytes(self):
        with pytest.raises(CipherError):
            SecureKey("not bytes")


class TestAesGcmCipher:
    def test_round_trip_with_aad(self, dek):
        nonce, ct = AesGcmCipher.encrypt(dek, b"hello", b"aad")
        assert AesGcmCipher.decrypt(dek, nonce, ct, b"aad") == b"hello"

    def test_wrong_aad_fails(self, dek):
        nonce, ct = AesGcmCipher.encrypt(dek, b"hello", b"aad")
        with pytest.raises(AuthenticationFailedError):
            AesGcmCipher.decrypt(dek, nonce, ct, b"other")

    def test_short_key_rejected(self):
        with pytest.raises(CipherError):
            AesGcmCipher.encrypt(SecureKey(b"short"), b"x")

    def test_bad_nonce_is_malformed(self, dek):
        _, ct = AesGcmCipher.encrypt(dek, b"hello")
        with pytest.raises(MalformedBlobError):
            AesGcmCipher.decrypt(dek, b"\x00" * 5, ct)


# =============================================================================
# FieldContext
# =============================================================================


class TestFieldContext:
    def test_string_value_coerces(self):
        assert coerce_context("email:subject") is FieldContext.EMAIL_SUBJECT

    def test_oauth_contexts(self):
        assert FieldContext.OAUTH_ACCESS.value == "oauth:access"
        assert FieldContext.OAUTH_REFRESH.value == "oauth:refresh"

    def test_unknown_context_rejected(self):
        with pytest.raises(UnknownContextError):
            coerce_context("email:subjct")

    def test_unknown_context_is_value_error(self):
        with pytest.raises(ValueError):
            coerce_context("")


# =============================================================================
# EncryptedBlob
# =============================================================================


class TestEncryptedBlob:
    def test_layout(self, dek):
        blob = FieldCipher.encrypt(b"abc", dek, FieldContext.EMAIL_BODY, dek_version=7)
        raw = blob.to_bytes()

        assert raw[0] == 1
        assert int.from_bytes(raw[1:5], "big") == 7
        assert raw[5:13] == context_tag(FieldContext.EMAIL_BODY)
        assert len(raw) == MIN_BLOB_SIZE + 3

    def test_parse_preserves_fields(self, dek):
        blob = FieldCipher.encrypt(b"abc", dek, FieldContext.EMAIL_BODY, dek_version=3)
        parsed = EncryptedBlob.from_bytes(blob.to_bytes())
        assert parsed == blob

    def test_base64_form(self, dek):
        blob = FieldCipher.encrypt(b"abc", dek, FieldContext.EMAIL_BODY)
        assert EncryptedBlob.from_base64(blob.to_base64()) == blob

    def test_too_short(self):
        with pytest.raises(MalformedBlobError):
            EncryptedBlob.from_bytes(b"\x01" * (MIN_BLOB_SIZE - 1))

    def test_unknown_format_version(self, dek):
        raw = bytearray(FieldCipher.encrypt(b"abc", dek, FieldContext.EMAIL_BODY).to_bytes())
        raw[0] = 2
        with pytest.raises(MalformedBlobError):
            EncryptedBlob.from_bytes(bytes(raw))

    def test_zero_dek_version(self, dek):
        raw = bytearray(FieldCipher.encrypt(b"abc", dek, FieldContext.EMAIL_BODY).to_bytes())
        raw[1:5] = b"\x00\x00\x00\x00"
        with pytest.raises(MalformedBlobError):
            EncryptedBlob.from_bytes(bytes(raw))

    def test_invalid_base64(self):
        with pytest.raises(MalformedBlobError):
            EncryptedBlob.from_base64("not*base64!")


# =============================================================================
# FieldCipher
# =============================================================================


class TestFieldCipher:
    def test_round_trip(self, dek):
        blob = FieldCipher.encrypt(b"Quarterly numbers", dek, FieldContext.EMAIL_SUBJECT)
        assert FieldCipher.decrypt(blob, dek, FieldContext.EMAIL_SUBJECT) == b"Quarterly numbers"

    def test_round_trip_from_bytes(self, dek):
        blob = FieldCipher.encrypt(b"x", dek, "contact:phone")
        assert FieldCipher.decrypt(blob.to_bytes(), dek, "contact:phone") == b"x"

    def test_empty_plaintext(self, dek):
        blob = FieldCipher.encrypt(b"", dek, FieldContext.TASK_DESCRIPTION)
        assert FieldCipher.decrypt(blob, dek, FieldContext.TASK_DESCRIPTION) == b""

    def test_fresh_nonce_per_call(self, dek):
        a = FieldCipher.encrypt(b"same", dek, FieldContext.EMAIL_SUBJECT)
        b = FieldCipher.encrypt(b"same", dek, FieldContext.EMAIL_SUBJECT)
        assert a.nonce != b.nonce
        assert a.to_bytes() != b.to_bytes()

    def test_context_is_bound(self, dek):
        blob = FieldCipher.encrypt(b"secret", dek, FieldContext.EMAIL_SUBJECT)
        with pytest.raises(AuthenticationFailedError):
            FieldCipher.decrypt(blob, dek, FieldContext.EMAIL_BODY)

    def test_key_is_bound(self, dek):
        blob = FieldCipher.encrypt(b"secret", dek, FieldContext.EMAIL_SUBJECT)
        with pytest.raises(AuthenticationFailedError):
            FieldCipher.decrypt(blob, SecureKey.generate(), FieldContext.EMAIL_SUBJECT)

    def test_ciphertext_bit_flip(self, dek):
        raw = bytearray(FieldCipher.encrypt(b"secret", dek, FieldContext.EMAIL_SUBJECT).to_bytes())
        raw[-1] ^= 0x01
        with pytest.raises(AuthenticationFailedError):
            FieldCipher.decrypt(bytes(raw), dek, FieldContext.EMAIL_SUBJECT)

    @pytest.mark.parametrize(
        "offset", [HEADER_SIZE, HEADER_SIZE + NONCE_SIZE - 1], ids=["nonce_first", "nonce_last"]
    )
    def test_nonce_bit_flip(self, dek, offset):
        raw = bytearray(FieldCipher.encrypt(b"secret", dek, FieldContext.EMAIL_SUBJECT).to_bytes())
        raw[offset] ^= 0x80
        with pytest.raises(AuthenticationFailedError):
            FieldCipher.decrypt(bytes(raw), dek, FieldContext.EMAIL_SUBJECT)

    def test_ciphertext_body_bit_flip(self, dek):
        raw = bytearray(FieldCipher.encrypt(b"secret", dek, FieldContext.EMAIL_SUBJECT).to_bytes())
        raw[HEADER_SIZE + NONCE_SIZE + 2] ^= 0x04
        with pytest.raises(AuthenticationFailedError):
            FieldCipher.decrypt(bytes(raw), dek, FieldContext.EMAIL_SUBJECT)

    def test_every_single_bit_flip_rejected(self, dek):
        original = FieldCipher.encrypt(b"secret", dek, FieldContext.EMAIL_SUBJECT).to_bytes()
        for index in range(len(original)):
            for bit in range(8):
                raw = bytearray(original)
                raw[index] ^= 1 << bit
                with pytest.raises(CipherError):
                    FieldCipher.decrypt(bytes(raw), dek, FieldContext.EMAIL_SUBJECT)

    def test_header_tamper_detected(self, dek):
        raw = bytearray(
            FieldCipher.encrypt(b"secret", dek, FieldContext.EMAIL_SUBJECT, dek_version=1).to_bytes()
        )
        raw[4] = 2  # dek_version 1 -> 2
        with pytest.raises(AuthenticationFailedError):
            FieldCipher.decrypt(bytes(raw), dek, FieldContext.EMAIL_SUBJECT)

    def test_unknown_context_before_crypto(self, dek):
        with pytest.raises(UnknownContextError):
            FieldCipher.encrypt(b"x", dek, "email:unknown")

    def test_invalid_dek_version(self, dek):
        with pytest.raises(CipherError):
            FieldCipher.encrypt(b"x", dek, FieldContext.EMAIL_SUBJECT, dek_version=0)
