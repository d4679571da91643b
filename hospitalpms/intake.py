"""
Patient intake: national ID protection ahead of persistence.

A national ID is validated, then turned into its two stored forms, the
AES-GCM ciphertext and the salted lookup hash, before a patient record is
created or refreshed.  The plaintext is never stored and never written to
the audit trail.

Both forms are computed over the digits only (``YYMMDDGXXXXXX``) so that
``900101-1234567`` and ``9001011234567`` are the same patient.
"""

from __future__ import annotations

from typing import Optional

import structlog
from pydantic import BaseModel

from hospitalpms.audit import (
    AuditAction,
    AuditLog,
    SSNAccessAction,
    SSNAccessLog,
    log_ssn_access,
)
from hospitalpms.models import EncryptedSSN, Patient, PatientStatus
from hospitalpms.repository import PatientRepository
from hospitalpms.ssn import SSNCipher, hash_ssn, normalize_ssn, validate_ssn

logger = structlog.get_logger(__name__)


MSG_INVALID_SSN = "유효하지 않은 주민등록번호 형식입니다"
MSG_EXISTING_PATIENT = "이미 등록된 환자입니다. 정보가 업데이트됩니다."
MSG_NEW_PATIENT = "신규 환자로 등록됩니다."


class InvalidSSNError(ValueError):
    """Raised when a national ID fails format or checksum validation."""
    pass


class ProtectedSSN(BaseModel):
    """The storage-safe forms of a national ID."""

    encrypted_ssn: EncryptedSSN
    ssn_hash: str


class DuplicateCheckResult(BaseModel):
    valid: bool
    exists: bool = False
    patient_id: Optional[str] = None
    patient_name: Optional[str] = None
    message: str


class IntakeResult(BaseModel):
    patient: Patient
    created: bool


def protect_ssn(
    ssn: str,
    cipher: SSNCipher,
    hash_salt: Optional[str] = None,
) -> ProtectedSSN:
    """Validate, encrypt and hash a national ID.

    Args:
        ssn: National ID, with or without separators.
        cipher: Cipher used for encryption.
        hash_salt: Lookup hash salt; defaults to ``SSN_HASH_SALT``.

    Returns:
        The ciphertext and lookup hash.

    Raises:
        InvalidSSNError: If validation fails.  Nothing is encrypted or
            hashed in that case.
        SSNEncryptionError: If encryption is misconfigured or fails.
    """
    if not validate_ssn(ssn):
        raise InvalidSSNError(MSG_INVALID_SSN)
    digits = normalize_ssn(ssn)
    return ProtectedSSN(
        encrypted_ssn=cipher.encrypt(digits),
        ssn_hash=hash_ssn(digits, hash_salt),
    )


class PatientIntakeService:
    """Registers patients from staff entry or survey submission.

    Args:
        repository: Patient persistence.
        cipher: Encrypts national IDs.
        audit_log: Sink for data-change and SSN access records.
        hash_salt: Lookup hash salt; defaults to ``SSN_HASH_SALT``.
    """

    def __init__(
        self,
        repository: PatientRepository,
        cipher: SSNCipher,
        audit_log: AuditLog,
        hash_salt: Optional[str] = None,
    ) -> None:
        self._repository = repository
        self._cipher = cipher
        self._audit_log = audit_log
        self._hash_salt = hash_salt

    def check_duplicate(self, ssn: str) -> DuplicateCheckResult:
        """Tell whether a patient with this national ID is already registered."""
        if not validate_ssn(ssn):
            return DuplicateCheckResult(valid=False, message=MSG_INVALID_SSN)

        existing = self._repository.find_by_ssn_hash(
            hash_ssn(normalize_ssn(ssn), self._hash_salt)
        )
        if existing is None:
            return DuplicateCheckResult(valid=True, exists=False, message=MSG_NEW_PATIENT)
        return DuplicateCheckResult(
            valid=True,
            exists=True,
            patient_id=existing.patient_id,
            patient_name=existing.name,
            message=MSG_EXISTING_PATIENT,
        )

    def register_patient(
        self,
        actor_id: str,
        name: str,
        ssn: str,
        assigned_bd_id: Optional[str] = None,
        phone: Optional[str] = None,
        email: Optional[str] = None,
    ) -> IntakeResult:
        """Create a patient, or refresh the one already holding this national ID.

        New patients start in ``pending``.  An existing patient keeps its
        status and stored ciphertext; only contact details and the BD
        assignment are refreshed.

        Raises:
            InvalidSSNError: If the national ID is invalid.
            SSNEncryptionError: If encryption is misconfigured or fails.
            pydantic.ValidationError: If the patient fields are invalid,
                for example an empty name, on either path.
            DuplicatePatientError: If a concurrent registration stored the
                same national ID first.
            ConcurrentModificationError: If the existing patient changed
                while being refreshed.
        """
        if not validate_ssn(ssn):
            raise InvalidSSNError(MSG_INVALID_SSN)

        existing = self._repository.find_by_ssn_hash(
            hash_ssn(normalize_ssn(ssn), self._hash_salt)
        )
        if existing is not None:
            return IntakeResult(
                patient=self._refresh(actor_id, existing, name, assigned_bd_id, phone, email),
                created=False,
            )

        protected = protect_ssn(ssn, self._cipher, self._hash_salt)
        patient = self._repository.add(Patient(
            name=name,
            status=PatientStatus.PENDING,
            assigned_bd_id=assigned_bd_id,
            encrypted_ssn=protected.encrypted_ssn,
            ssn_hash=protected.ssn_hash,
            phone=phone,
            email=email,
        ))

        log_ssn_access(self._audit_log, SSNAccessLog(
            user_id=actor_id,
            patient_id=patient.patient_id,
            action=SSNAccessAction.ENCRYPT,
            success=True,
        ))
        self._audit_log.record(
            user_id=actor_id,
            action=AuditAction.INSERT,
            table_name="patients",
            record_id=patient.patient_id,
            new_data=_audit_view(patient),
        )
        logger.info("patient_registered", patient_id=patient.patient_id)
        return IntakeResult(patient=patient, created=True)

    def _refresh(
        self,
        actor_id: str,
        existing: Patient,
        name: str,
        assigned_bd_id: Optional[str],
        phone: Optional[str],
        email: Optional[str],
    ) -> Patient:
        before = _audit_view(existing)
        changes = {
            "name": name,
            "assigned_bd_id": assigned_bd_id or existing.assigned_bd_id,
            "phone": phone or existing.phone,
            "email": email or existing.email,
        }
        refreshed = Patient.model_validate({**existing.model_dump(), **changes})
        updated = self._repository.update(refreshed, expected_version=existing.version)
        self._audit_log.record(
            user_id=actor_id,
            action=AuditAction.UPDATE,
            table_name="patients",
            record_id=updated.patient_id,
            old_data=before,
            new_data=_audit_view(updated),
        )
        logger.info("patient_refreshed", patient_id=updated.patient_id)
        return updated


def _audit_view(patient: Patient) -> dict:
    """Patient fields written to the audit trail; no SSN material."""
    return patient.model_dump(
        mode="json",
        exclude={"encrypted_ssn", "ssn_hash", "created_at", "updated_at", "version"},
    )
