"""
Tests for hospitalpms.ssn_access -- National ID access gate.

Covers: identity resolution, rate limiting ahead of the permission check,
audited permission denials before any decryption, successful decrypts,
decrypt failures, masked viewing and hash lookup.
"""

from __future__ import annotations

from hospitalpms.audit import AuditLog, SSNAccessAction
from hospitalpms.config import SSNSettings
from hospitalpms.models import Patient, Role
from hospitalpms.rate_limit import RateLimiter
from hospitalpms.repository import InMemoryPatientRepository
from hospitalpms.ssn import SSNCipher, hash_ssn
from hospitalpms.ssn_access import (
    MSG_DECRYPT_FORBIDDEN,
    MSG_RATE_LIMITED,
    MSG_UNAUTHORIZED,
    SSNAccessGate,
    SSNAccessOutcome,
    StaticRoleResolver,
    check_ssn_decrypt_permission,
)

HASH_SALT = "access-test-salt"
SSN_DIGITS = "9001011234568"

_CIPHER = SSNCipher(SSNSettings(
    ssn_encryption_key="g" * 40,
    ssn_encryption_salt="access-test-encryption-salt",
))

_ROLES = {
    "admin_1": Role.ADMIN,
    "manager_1": Role.MANAGER,
    "bd_1": Role.BD,
    "cs_1": Role.CS,
    "nurse_1": Role.NURSE,
}


class _CountingCipher:
    """Wraps a cipher and counts decrypt calls."""

    def __init__(self, cipher: SSNCipher) -> None:
        self._cipher = cipher
        self.decrypt_calls = 0

    def decrypt(self, data):
        self.decrypt_calls += 1
        return self._cipher.decrypt(data)


def _make_gate(
    max_attempts: int = 10,
) -> tuple[SSNAccessGate, AuditLog, Patient, _CountingCipher]:
    repository = InMemoryPatientRepository()
    patient = repository.add(Patient(
        name="홍길동",
        encrypted_ssn=_CIPHER.encrypt(SSN_DIGITS),
        ssn_hash=hash_ssn(SSN_DIGITS, HASH_SALT),
    ))
    audit_log = AuditLog()
    cipher = _CountingCipher(_CIPHER)
    gate = SSNAccessGate(
        resolver=StaticRoleResolver(_ROLES),
        repository=repository,
        cipher=cipher,
        rate_limiter=RateLimiter(max_attempts=max_attempts),
        audit_log=audit_log,
        hash_salt=HASH_SALT,
    )
    return gate, audit_log, patient, cipher


# ---------------------------------------------------------------------------
# 1. Access context
# ---------------------------------------------------------------------------

class TestAccessContext:
    def test_admin_context(self):
        context = check_ssn_decrypt_permission("admin_1", StaticRoleResolver(_ROLES))
        assert context.can_decrypt is True
        assert context.can_view_masked is True

    def test_bd_context(self):
        context = check_ssn_decrypt_permission("bd_1", StaticRoleResolver(_ROLES))
        assert context.can_decrypt is False
        assert context.can_view_masked is False

    def test_unknown_user(self):
        assert check_ssn_decrypt_permission("ghost", StaticRoleResolver(_ROLES)) is None
        assert check_ssn_decrypt_permission(None, StaticRoleResolver(_ROLES)) is None


# ---------------------------------------------------------------------------
# 2. Decrypt
# ---------------------------------------------------------------------------

class TestDecrypt:
    def test_admin_decrypts(self):
        gate, audit_log, patient, _ = _make_gate()
        result = gate.decrypt_patient_ssn(
            "admin_1", patient.patient_id, ip_address="10.0.0.1", user_agent="pytest"
        )
        assert result.granted is True
        assert result.http_status == 200
        assert result.ssn == SSN_DIGITS

        records = audit_log.query_ssn_access()
        assert len(records) == 1
        assert records[0].success is True
        assert records[0].action == SSNAccessAction.DECRYPT
        assert records[0].ip_address == "10.0.0.1"

    def test_unauthenticated(self):
        gate, audit_log, patient, _ = _make_gate()
        result = gate.decrypt_patient_ssn(None, patient.patient_id)
        assert result.outcome == SSNAccessOutcome.UNAUTHENTICATED
        assert result.http_status == 401
        assert result.error == MSG_UNAUTHORIZED
        assert len(audit_log) == 0

    def test_forbidden_is_audited_without_decrypting(self):
        gate, audit_log, patient, cipher = _make_gate()
        result = gate.decrypt_patient_ssn("cs_1", patient.patient_id)
        assert result.outcome == SSNAccessOutcome.FORBIDDEN
        assert result.http_status == 403
        assert result.error == MSG_DECRYPT_FORBIDDEN
        assert result.ssn is None
        assert cipher.decrypt_calls == 0

        records = audit_log.query_ssn_access(success=False)
        assert len(records) == 1
        assert records[0].error_message == "Insufficient permissions"
        assert records[0].user_id == "cs_1"

    def test_rate_limit_checked_before_permission(self):
        gate, audit_log, patient, _ = _make_gate(max_attempts=2)
        gate.decrypt_patient_ssn("cs_1", patient.patient_id)
        gate.decrypt_patient_ssn("cs_1", patient.patient_id)
        result = gate.decrypt_patient_ssn("cs_1", patient.patient_id)

        assert result.outcome == SSNAccessOutcome.RATE_LIMITED
        assert result.http_status == 429
        assert result.error == MSG_RATE_LIMITED
        # only the two permission denials are on the trail
        assert len(audit_log.query_ssn_access()) == 2

    def test_eleventh_request_throttled(self):
        gate, _, patient, _ = _make_gate()
        outcomes = [
            gate.decrypt_patient_ssn("admin_1", patient.patient_id).outcome
            for _ in range(11)
        ]
        assert outcomes[:10] == [SSNAccessOutcome.GRANTED] * 10
        assert outcomes[10] == SSNAccessOutcome.RATE_LIMITED

    def test_missing_patient(self):
        gate, audit_log, _, _ = _make_gate()
        result = gate.decrypt_patient_ssn("admin_1", "no-such-patient")
        assert result.outcome == SSNAccessOutcome.NOT_FOUND
        assert result.http_status == 404
        assert audit_log.query_ssn_access(success=False)[0].patient_id == "no-such-patient"

    def test_corrupted_ciphertext(self):
        gate, audit_log, patient, _ = _make_gate()
        repository = gate._repository
        stored = repository.get(patient.patient_id)
        stored.encrypted_ssn = stored.encrypted_ssn.model_copy(
            update={"tag": _CIPHER.encrypt(SSN_DIGITS).tag}
        )
        repository.update(stored, expected_version=stored.version)

        result = gate.decrypt_patient_ssn("manager_1", patient.patient_id)
        assert result.outcome == SSNAccessOutcome.ERROR
        assert result.http_status == 500
        assert result.ssn is None
        record = audit_log.query_ssn_access()[0]
        assert record.success is False
        assert record.error_message == "Failed to decrypt SSN"


# ---------------------------------------------------------------------------
# 3. Masked view
# ---------------------------------------------------------------------------

class TestMaskedView:
    def test_nurse_sees_masked(self):
        gate, audit_log, patient, _ = _make_gate()
        result = gate.view_masked_ssn("nurse_1", patient.patient_id)
        assert result.granted is True
        assert result.ssn == "90****-***4568"
        assert audit_log.query_ssn_access()[0].action == SSNAccessAction.VIEW_MASKED

    def test_bd_cannot_view(self):
        gate, audit_log, patient, cipher = _make_gate()
        result = gate.view_masked_ssn("bd_1", patient.patient_id)
        assert result.outcome == SSNAccessOutcome.FORBIDDEN
        assert cipher.decrypt_calls == 0
        assert len(audit_log.query_ssn_access(success=False)) == 1


# ---------------------------------------------------------------------------
# 4. Lookup
# ---------------------------------------------------------------------------

class TestLookup:
    def test_lookup_by_dashed_number(self):
        gate, audit_log, patient, cipher = _make_gate()
        result = gate.lookup_patient_by_ssn("bd_1", "900101-1234568")
        assert result.granted is True
        assert result.patient_id == patient.patient_id
        assert result.ssn == "90****-***4568"
        assert cipher.decrypt_calls == 0
        assert audit_log.query_ssn_access(action=SSNAccessAction.LOOKUP)[0].success is True

    def test_lookup_no_match(self):
        gate, audit_log, _, _ = _make_gate()
        result = gate.lookup_patient_by_ssn("cs_1", "850315-2345678")
        assert result.outcome == SSNAccessOutcome.NOT_FOUND
        assert audit_log.query_ssn_access()[0].patient_id == "unknown"

    def test_lookup_invalid_number(self):
        gate, _, _, _ = _make_gate()
        result = gate.lookup_patient_by_ssn("cs_1", "900101-1234567")
        assert result.outcome == SSNAccessOutcome.INVALID
        assert result.http_status == 400

    def test_lookup_forbidden_for_clinical_staff(self):
        gate, _, _, _ = _make_gate()
        result = gate.lookup_patient_by_ssn("nurse_1", "900101-1234568")
        assert result.outcome == SSNAccessOutcome.FORBIDDEN
