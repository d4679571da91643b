"""
National ID (resident registration number) protection.

Stored forms of a national ID:

* ``EncryptedSSN`` -- AES-256-GCM ciphertext, IV and authentication tag,
  base64 encoded, stamped with the key version.  The AES key is derived
  from ``SSN_ENCRYPTION_KEY`` with PBKDF2-HMAC-SHA256 (100 000 iterations).
* ``hash_ssn`` -- salted SHA-256, used for duplicate detection and lookup.
  The salt is static so equal numbers always hash equally.
* ``mask_ssn`` -- display form showing only the birth-year prefix and the
  last four digits.

Input format is ``YYMMDD-GXXXXXX``; dashes and other separators are
ignored.  ``validate_ssn`` is the gate every caller runs before encrypting,
hashing or persisting a number.

Failures never reveal detail to the caller: encryption problems surface as
``SSNEncryptionError("Failed to encrypt SSN")`` and every decrypt problem,
including authentication tag mismatches, as
``SSNDecryptionError("Failed to decrypt SSN")``.  The underlying cause is
logged server side only.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import os
import re
import threading
from functools import lru_cache
from typing import Optional

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from hospitalpms.config import SSNConfigurationError, SSNSettings, get_ssn_settings
from hospitalpms.models import EncryptedSSN

logger = structlog.get_logger(__name__)


KEY_LENGTH = 32  # 256 bits
IV_LENGTH = 16
TAG_LENGTH = 16
PBKDF2_ITERATIONS = 100_000

SSN_LENGTH = 13
CHECKSUM_WEIGHTS = (2, 3, 4, 5, 6, 7, 8, 9, 2, 3, 4, 5)
MASK_SENTINEL = "***-**-****"

_NON_DIGIT = re.compile(r"[^0-9]")


class SSNEncryptionError(Exception):
    """Raised when a national ID cannot be encrypted."""
    pass


class SSNDecryptionError(Exception):
    """Raised when a ciphertext cannot be decrypted or fails authentication."""
    pass


# ---------------------------------------------------------------------------
# Cipher
# ---------------------------------------------------------------------------

class SSNCipher:
    """AES-256-GCM encryption of national IDs.

    Derived keys are cached per key version for the lifetime of the
    instance, since PBKDF2 is the dominant cost of each call and the
    derivation is deterministic for a fixed secret and salt.
    """

    def __init__(self, settings: Optional[SSNSettings] = None) -> None:
        self._settings = settings or get_ssn_settings()
        self._keys: dict[int, bytes] = {}
        self._lock = threading.Lock()

    @property
    def key_version(self) -> int:
        return self._settings.ssn_key_version

    def _derive_key(self, version: int) -> bytes:
        with self._lock:
            cached = self._keys.get(version)
            if cached is not None:
                return cached

            secret = self._settings.require_encryption_key()
            salt = self._settings.ssn_encryption_salt.get_secret_value()
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=KEY_LENGTH,
                salt=salt.encode("utf-8"),
                iterations=PBKDF2_ITERATIONS,
            )
            key = kdf.derive(secret.encode("utf-8"))
            self._keys[version] = key
            return key

    def encrypt(self, plaintext: str) -> EncryptedSSN:
        """Encrypt a national ID with a fresh random IV.

        Args:
            plaintext: The national ID.  Callers validate it first.

        Returns:
            The ciphertext, IV, tag and current key version.

        Raises:
            SSNEncryptionError: If the encryption secret is missing or
                short, or encryption fails for any other reason.
        """
        try:
            key = self._derive_key(self.key_version)
            iv = os.urandom(IV_LENGTH)
            sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
        except SSNConfigurationError:
            logger.error("ssn_encryption_misconfigured", exc_info=True)
            raise SSNEncryptionError("Failed to encrypt SSN") from None
        except Exception:
            logger.error("ssn_encryption_failed", exc_info=True)
            raise SSNEncryptionError("Failed to encrypt SSN") from None

        # AESGCM appends the tag to the ciphertext; it is stored separately.
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return EncryptedSSN(
            encrypted=base64.b64encode(ciphertext).decode("ascii"),
            iv=base64.b64encode(iv).decode("ascii"),
            tag=base64.b64encode(tag).decode("ascii"),
            version=self.key_version,
        )

    def decrypt(self, data: EncryptedSSN) -> str:
        """Decrypt and authenticate a stored national ID.

        No plaintext is returned unless the GCM tag verifies.

        Args:
            data: The stored ciphertext.

        Returns:
            The national ID.

        Raises:
            SSNDecryptionError: On any failure, with a generic message.
        """
        if data.version != self.key_version:
            logger.warning(
                "ssn_decrypt_old_key_version",
                data_version=data.version,
                current_version=self.key_version,
            )

        try:
            key = self._derive_key(data.version)
            ciphertext = base64.b64decode(data.encrypted, validate=True)
            iv = base64.b64decode(data.iv, validate=True)
            tag = base64.b64decode(data.tag, validate=True)
            if len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
                raise ValueError("unexpected iv or tag length")
            plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
            return plaintext.decode("utf-8")
        except InvalidTag:
            logger.error("ssn_decrypt_authentication_failed")
            raise SSNDecryptionError("Failed to decrypt SSN") from None
        except (SSNConfigurationError, ValueError, binascii.Error, UnicodeDecodeError):
            logger.error("ssn_decrypt_failed", exc_info=True)
            raise SSNDecryptionError("Failed to decrypt SSN") from None


@lru_cache
def get_default_cipher() -> SSNCipher:
    """Process-wide cipher over ``get_ssn_settings()``.

    Clear it together with ``get_ssn_settings`` when the environment changes.
    """
    return SSNCipher(get_ssn_settings())


def encrypt_ssn(plaintext: str) -> EncryptedSSN:
    """Encrypt with settings read from the environment."""
    return get_default_cipher().encrypt(plaintext)


def decrypt_ssn(data: EncryptedSSN) -> str:
    """Decrypt with settings read from the environment."""
    return get_default_cipher().decrypt(data)


# ---------------------------------------------------------------------------
# Hashing, masking, validation
# ---------------------------------------------------------------------------

def normalize_ssn(candidate: str) -> str:
    """Strip everything except the ASCII digits 0-9."""
    return _NON_DIGIT.sub("", candidate or "")


def hash_ssn(plaintext: str, salt: Optional[str] = None) -> str:
    """Return the hex SHA-256 of ``plaintext + salt``.

    Args:
        plaintext: The national ID, in the same form it is always hashed in.
        salt: Static salt; defaults to ``SSN_HASH_SALT``.
    """
    if salt is None:
        salt = get_ssn_settings().ssn_hash_salt.get_secret_value()
    return hashlib.sha256((plaintext + salt).encode("utf-8")).hexdigest()


def mask_ssn(plaintext: str) -> str:
    """Return ``YY****-***NNNN``, or ``***-**-****`` for malformed input."""
    if not plaintext or len(plaintext) < 4:
        return MASK_SENTINEL
    cleaned = normalize_ssn(plaintext)
    if len(cleaned) != SSN_LENGTH:
        return MASK_SENTINEL
    return f"{cleaned[:2]}****-***{cleaned[9:]}"


def compute_check_digit(first_twelve: str) -> int:
    """Compute the check digit for the first twelve digits of a national ID."""
    total = sum(int(d) * w for d, w in zip(first_twelve, CHECKSUM_WEIGHTS))
    return (11 - total % 11) % 10


def validate_ssn(candidate: str) -> bool:
    """Validate format, birth month/day range and checksum."""
    cleaned = normalize_ssn(candidate)
    if len(cleaned) != SSN_LENGTH:
        return False

    month = int(cleaned[2:4])
    day = int(cleaned[4:6])
    if not 1 <= month <= 12:
        return False
    if not 1 <= day <= 31:
        return False

    return compute_check_digit(cleaned[:12]) == int(cleaned[12])
