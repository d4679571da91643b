"""
Tests for hospitalpms.ssn -- National ID protection.

Covers: AES-GCM round trip, IV freshness, tamper detection, configuration
failures, salted hashing, masking, checksum validation and the
environment-bound ``encrypt_ssn``/``decrypt_ssn`` helpers.
"""

from __future__ import annotations

import base64

import pytest

from hospitalpms import ssn as ssn_module
from hospitalpms.config import SSNSettings, get_ssn_settings
from hospitalpms.models import EncryptedSSN
from hospitalpms.ssn import (
    IV_LENGTH,
    MASK_SENTINEL,
    PBKDF2_ITERATIONS,
    TAG_LENGTH,
    SSNCipher,
    SSNDecryptionError,
    SSNEncryptionError,
    compute_check_digit,
    decrypt_ssn,
    encrypt_ssn,
    get_default_cipher,
    hash_ssn,
    mask_ssn,
    normalize_ssn,
    validate_ssn,
)

VALID_SSN = "900101-1234568"
VALID_SSN_DIGITS = "9001011234568"
OTHER_VALID_SSN = "850315-2345678"
BAD_CHECKSUM_SSN = "900101-1234567"
HASH_SALT = "test-hash-salt"


def _make_settings(**overrides) -> SSNSettings:
    values = {
        "ssn_encryption_key": "k" * 48,
        "ssn_encryption_salt": "test-encryption-salt",
        "ssn_key_version": 1,
        "ssn_hash_salt": HASH_SALT,
    }
    values.update(overrides)
    return SSNSettings(**values)


_CIPHER = SSNCipher(_make_settings())


def _flip_first_byte(b64: str) -> str:
    raw = bytearray(base64.b64decode(b64))
    raw[0] ^= 0x01
    return base64.b64encode(bytes(raw)).decode("ascii")


def _with_check_digit(first_twelve: str) -> str:
    return first_twelve + str(compute_check_digit(first_twelve))


# ---------------------------------------------------------------------------
# 1. Encryption
# ---------------------------------------------------------------------------

class TestEncryption:
    def test_round_trip(self):
        encrypted = _CIPHER.encrypt(VALID_SSN)
        assert _CIPHER.decrypt(encrypted) == VALID_SSN

    def test_ciphertext_does_not_contain_plaintext(self):
        encrypted = _CIPHER.encrypt(VALID_SSN_DIGITS)
        assert VALID_SSN_DIGITS not in encrypted.encrypted
        assert VALID_SSN_DIGITS.encode() not in base64.b64decode(encrypted.encrypted)

    def test_fresh_iv_per_call(self):
        first = _CIPHER.encrypt(VALID_SSN)
        second = _CIPHER.encrypt(VALID_SSN)
        assert first.iv != second.iv
        assert first.encrypted != second.encrypted

    def test_component_lengths(self):
        encrypted = _CIPHER.encrypt(VALID_SSN)
        assert len(base64.b64decode(encrypted.iv)) == IV_LENGTH
        assert len(base64.b64decode(encrypted.tag)) == TAG_LENGTH
        assert encrypted.version == 1

    def test_version_stamped_from_settings(self):
        cipher = SSNCipher(_make_settings(ssn_key_version=3))
        assert cipher.encrypt(VALID_SSN).version == 3

    def test_missing_key_raises_generic_error(self):
        cipher = SSNCipher(_make_settings(ssn_encryption_key=None))
        with pytest.raises(SSNEncryptionError, match="Failed to encrypt SSN"):
            cipher.encrypt(VALID_SSN)

    def test_short_key_raises_generic_error(self):
        cipher = SSNCipher(_make_settings(ssn_encryption_key="too-short"))
        with pytest.raises(SSNEncryptionError) as excinfo:
            cipher.encrypt(VALID_SSN)
        assert "too-short" not in str(excinfo.value)


# ---------------------------------------------------------------------------
# 2. Decryption failures
# ---------------------------------------------------------------------------

class TestDecryptionFailures:
    def test_tampered_tag(self):
        encrypted = _CIPHER.encrypt(VALID_SSN)
        tampered = encrypted.model_copy(update={"tag": _flip_first_byte(encrypted.tag)})
        with pytest.raises(SSNDecryptionError, match="Failed to decrypt SSN"):
            _CIPHER.decrypt(tampered)

    def test_tampered_ciphertext(self):
        encrypted = _CIPHER.encrypt(VALID_SSN)
        tampered = encrypted.model_copy(
            update={"encrypted": _flip_first_byte(encrypted.encrypted)}
        )
        with pytest.raises(SSNDecryptionError):
            _CIPHER.decrypt(tampered)

    def test_swapped_iv(self):
        first = _CIPHER.encrypt(VALID_SSN)
        second = _CIPHER.encrypt(VALID_SSN)
        with pytest.raises(SSNDecryptionError):
            _CIPHER.decrypt(first.model_copy(update={"iv": second.iv}))

    def test_wrong_secret(self):
        encrypted = _CIPHER.encrypt(VALID_SSN)
        other = SSNCipher(_make_settings(ssn_encryption_key="z" * 48))
        with pytest.raises(SSNDecryptionError):
            other.decrypt(encrypted)

    def test_malformed_base64(self):
        encrypted = _CIPHER.encrypt(VALID_SSN)
        with pytest.raises(SSNDecryptionError):
            _CIPHER.decrypt(encrypted.model_copy(update={"iv": "not base64!!"}))

    def test_truncated_tag(self):
        encrypted = _CIPHER.encrypt(VALID_SSN)
        short_tag = base64.b64encode(base64.b64decode(encrypted.tag)[:8]).decode("ascii")
        with pytest.raises(SSNDecryptionError):
            _CIPHER.decrypt(encrypted.model_copy(update={"tag": short_tag}))

    def test_missing_key_on_decrypt(self):
        encrypted = _CIPHER.encrypt(VALID_SSN)
        cipher = SSNCipher(_make_settings(ssn_encryption_key=None))
        with pytest.raises(SSNDecryptionError):
            cipher.decrypt(encrypted)

    def test_version_must_be_positive(self):
        with pytest.raises(Exception):
            EncryptedSSN(encrypted="", iv="", tag="", version=0)


# ---------------------------------------------------------------------------
# 3. Hashing
# ---------------------------------------------------------------------------

class TestHashing:
    def test_deterministic(self):
        assert hash_ssn(VALID_SSN_DIGITS, HASH_SALT) == hash_ssn(VALID_SSN_DIGITS, HASH_SALT)

    def test_hex_sha256(self):
        digest = hash_ssn(VALID_SSN_DIGITS, HASH_SALT)
        assert len(digest) == 64
        int(digest, 16)

    def test_distinct_inputs_distinct_hashes(self):
        numbers = {_with_check_digit(f"9001011{n:05d}") for n in range(50)}
        digests = {hash_ssn(n, HASH_SALT) for n in numbers}
        assert len(digests) == len(numbers)

    def test_salt_changes_hash(self):
        assert hash_ssn(VALID_SSN_DIGITS, "a") != hash_ssn(VALID_SSN_DIGITS, "b")


# ---------------------------------------------------------------------------
# 4. Masking
# ---------------------------------------------------------------------------

class TestMasking:
    def test_dashed_input(self):
        assert mask_ssn(VALID_SSN) == "90****-***4568"

    def test_plain_digits(self):
        assert mask_ssn(VALID_SSN_DIGITS) == "90****-***4568"

    def test_shape(self):
        masked = mask_ssn(OTHER_VALID_SSN)
        assert len(masked) == 14
        assert masked[2:6] == "****"
        assert masked[6] == "-"
        assert masked[7:10] == "***"
        assert masked.endswith("5678")

    @pytest.mark.parametrize("value", ["", "123", "12345", "90010112345689"])
    def test_malformed_gives_sentinel(self, value):
        assert mask_ssn(value) == MASK_SENTINEL


# ---------------------------------------------------------------------------
# 5. Validation
# ---------------------------------------------------------------------------

class TestValidation:
    def test_valid_with_dash(self):
        assert validate_ssn(VALID_SSN) is True

    def test_valid_without_dash(self):
        assert validate_ssn(VALID_SSN_DIGITS) is True

    def test_other_valid_number(self):
        assert validate_ssn(OTHER_VALID_SSN) is True
        assert validate_ssn("011225-3000001") is True

    def test_bad_checksum(self):
        assert validate_ssn(BAD_CHECKSUM_SSN) is False

    def test_check_digit(self):
        assert compute_check_digit("900101123456") == 8

    def test_wrong_length(self):
        assert validate_ssn("900101-123456") is False
        assert validate_ssn("") is False

    def test_month_out_of_range(self):
        assert validate_ssn(_with_check_digit("901301123456")) is False
        assert validate_ssn(_with_check_digit("900001123456")) is False

    def test_day_out_of_range(self):
        assert validate_ssn(_with_check_digit("900132123456")) is False
        assert validate_ssn(_with_check_digit("900100123456")) is False

    def test_normalize(self):
        assert normalize_ssn(" 900101 - 1234568 ") == VALID_SSN_DIGITS

    @pytest.mark.parametrize("value", [
        "９００１０１-１２３４５６８",
        "٩٠٠١٠١-١٢٣٤٥٦٨",
        "९००१०१-१२३४५६८",
    ])
    def test_non_ascii_digits_rejected(self, value):
        assert normalize_ssn(value) == ""
        assert validate_ssn(value) is False
        assert mask_ssn(value) == MASK_SENTINEL

    def test_mixed_width_digits_rejected(self):
        assert normalize_ssn("900101-１２３４５６８") == "900101"
        assert validate_ssn("900101-１２３４５６８") is False


# ---------------------------------------------------------------------------
# 6. Environment-bound helpers
# ---------------------------------------------------------------------------

@pytest.fixture
def configure_environment(monkeypatch):
    def configure(key):
        if key is None:
            monkeypatch.delenv("SSN_ENCRYPTION_KEY", raising=False)
        else:
            monkeypatch.setenv("SSN_ENCRYPTION_KEY", key)
        monkeypatch.setenv("SSN_ENCRYPTION_SALT", "env-encryption-salt")
        get_ssn_settings.cache_clear()
        get_default_cipher.cache_clear()

    yield configure
    get_ssn_settings.cache_clear()
    get_default_cipher.cache_clear()


class TestEnvironmentCipher:
    def test_round_trip(self, configure_environment):
        configure_environment("e" * 40)
        encrypted = encrypt_ssn(VALID_SSN_DIGITS)
        assert decrypt_ssn(encrypted) == VALID_SSN_DIGITS

    def test_missing_key(self, configure_environment):
        configure_environment(None)
        with pytest.raises(SSNEncryptionError, match="Failed to encrypt SSN"):
            encrypt_ssn(VALID_SSN_DIGITS)

    def test_missing_key_on_decrypt(self, configure_environment):
        configure_environment(None)
        with pytest.raises(SSNDecryptionError, match="Failed to decrypt SSN"):
            decrypt_ssn(_CIPHER.encrypt(VALID_SSN_DIGITS))

    def test_key_derived_once(self, configure_environment, monkeypatch):
        configure_environment("e" * 40)
        derivations = []
        real_kdf = ssn_module.PBKDF2HMAC

        def counting_kdf(*args, **kwargs):
            derivations.append(kwargs.get("iterations"))
            return real_kdf(*args, **kwargs)

        monkeypatch.setattr(ssn_module, "PBKDF2HMAC", counting_kdf)
        for _ in range(3):
            decrypt_ssn(encrypt_ssn(VALID_SSN_DIGITS))
        assert derivations == [PBKDF2_ITERATIONS]
        assert get_default_cipher() is get_default_cipher()

    def test_environment_change_picked_up_after_clear(self, configure_environment):
        configure_environment("e" * 40)
        encrypted = encrypt_ssn(VALID_SSN_DIGITS)
        configure_environment("f" * 40)
        with pytest.raises(SSNDecryptionError):
            decrypt_ssn(encrypted)
