"""
Access gate for national ID decryption, masked viewing and lookup.

Order of checks for a decrypt request:

1. Resolve the caller through the external profile lookup.  Unknown
   callers are refused as unauthenticated.
2. Rate limit, per user.  Refusals here are plain throttling: they are not
   written to the access audit trail.
3. Role permission (``decrypt_ssn``).  Refusals are audited and happen
   before any cryptographic work.
4. Load the patient and decrypt.  Every outcome from here on is audited.

Results are returned as ``SSNAccessResult`` values carrying an outcome, a
localized message and the HTTP status a route handler should use.
"""

from __future__ import annotations

import enum
from typing import Optional, Protocol

import structlog
from pydantic import BaseModel

from hospitalpms.audit import AuditLog, SSNAccessAction, SSNAccessLog, log_ssn_access
from hospitalpms.models import Actor, Role
from hospitalpms.rate_limit import RateLimiter
from hospitalpms.rbac import check_permission
from hospitalpms.repository import PatientRepository
from hospitalpms.ssn import (
    SSNCipher,
    SSNDecryptionError,
    hash_ssn,
    mask_ssn,
    normalize_ssn,
    validate_ssn,
)

logger = structlog.get_logger(__name__)


MSG_UNAUTHORIZED = "인증이 필요합니다."
MSG_RATE_LIMITED = "요청이 너무 많습니다. 잠시 후 다시 시도해주세요."
MSG_DECRYPT_FORBIDDEN = "권한이 없습니다. 관리자 또는 매니저만 주민번호를 복호화할 수 있습니다."
MSG_VIEW_FORBIDDEN = "권한이 없습니다. 주민번호 조회 권한이 없는 역할입니다."
MSG_LOOKUP_FORBIDDEN = "권한이 없습니다. 주민번호로 환자를 조회할 수 없는 역할입니다."
MSG_PATIENT_NOT_FOUND = "환자 정보를 찾을 수 없습니다."
MSG_SSN_NOT_FOUND = "등록된 주민번호가 없습니다."
MSG_INVALID_SSN = "유효하지 않은 주민등록번호 형식입니다."
MSG_DECRYPT_FAILED = "주민번호 복호화에 실패했습니다."


# ---------------------------------------------------------------------------
# Role lookup
# ---------------------------------------------------------------------------

class RoleResolver(Protocol):
    """External auth/profile lookup."""

    def resolve(self, user_id: str) -> Optional[Actor]: ...


class StaticRoleResolver:
    """``RoleResolver`` over a fixed ``user_id -> Role`` mapping."""

    def __init__(self, roles: dict[str, Role]) -> None:
        self._roles = dict(roles)

    def resolve(self, user_id: str) -> Optional[Actor]:
        role = self._roles.get(user_id)
        if role is None:
            return None
        return Actor(user_id=user_id, role=role)


class SSNAccessContext(BaseModel):
    """Who is asking, and what they may do with national IDs."""

    user_id: str
    user_role: Role
    can_decrypt: bool
    can_view_masked: bool
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


def check_ssn_decrypt_permission(
    user_id: Optional[str],
    resolver: RoleResolver,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Optional[SSNAccessContext]:
    """Build the access context for a caller.

    Returns:
        The context, or None if the caller cannot be resolved.
    """
    if not user_id:
        return None
    actor = resolver.resolve(user_id)
    if actor is None:
        return None
    return SSNAccessContext(
        user_id=actor.user_id,
        user_role=actor.role,
        can_decrypt=check_permission(actor.role, "decrypt_ssn"),
        can_view_masked=check_permission(actor.role, "view_masked_ssn"),
        ip_address=ip_address,
        user_agent=user_agent,
    )


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class SSNAccessOutcome(str, enum.Enum):
    GRANTED = "granted"
    UNAUTHENTICATED = "unauthenticated"
    RATE_LIMITED = "rate_limited"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    INVALID = "invalid"
    ERROR = "error"


_HTTP_STATUS = {
    SSNAccessOutcome.GRANTED: 200,
    SSNAccessOutcome.UNAUTHENTICATED: 401,
    SSNAccessOutcome.RATE_LIMITED: 429,
    SSNAccessOutcome.FORBIDDEN: 403,
    SSNAccessOutcome.NOT_FOUND: 404,
    SSNAccessOutcome.INVALID: 400,
    SSNAccessOutcome.ERROR: 500,
}


class SSNAccessResult(BaseModel):
    outcome: SSNAccessOutcome
    ssn: Optional[str] = None
    patient_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def granted(self) -> bool:
        return self.outcome == SSNAccessOutcome.GRANTED

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self.outcome]


def _deny(outcome: SSNAccessOutcome, message: str) -> SSNAccessResult:
    return SSNAccessResult(outcome=outcome, error=message)


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------

class SSNAccessGate:
    """Mediates every read of a stored national ID.

    Args:
        resolver: External role lookup.
        repository: Patient persistence.
        cipher: Decrypts stored national IDs.
        rate_limiter: Per-user throttle for decrypt requests.
        audit_log: Sink for ``SSNAccessLog`` records.
        hash_salt: Static lookup hash salt; defaults to ``SSN_HASH_SALT``.
    """

    def __init__(
        self,
        resolver: RoleResolver,
        repository: PatientRepository,
        cipher: SSNCipher,
        rate_limiter: RateLimiter,
        audit_log: AuditLog,
        hash_salt: Optional[str] = None,
    ) -> None:
        self._resolver = resolver
        self._repository = repository
        self._cipher = cipher
        self._rate_limiter = rate_limiter
        self._audit_log = audit_log
        self._hash_salt = hash_salt

    def _audit(
        self,
        context: SSNAccessContext,
        patient_id: str,
        action: SSNAccessAction,
        success: bool,
        error_message: Optional[str] = None,
    ) -> None:
        log_ssn_access(self._audit_log, SSNAccessLog(
            user_id=context.user_id,
            patient_id=patient_id,
            action=action,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            success=success,
            error_message=error_message,
        ))

    def decrypt_patient_ssn(
        self,
        user_id: Optional[str],
        patient_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SSNAccessResult:
        """Return a patient's full national ID to an authorized caller."""
        context = check_ssn_decrypt_permission(user_id, self._resolver, ip_address, user_agent)
        if context is None:
            return _deny(SSNAccessOutcome.UNAUTHENTICATED, MSG_UNAUTHORIZED)

        if not self._rate_limiter.check(context.user_id):
            return _deny(SSNAccessOutcome.RATE_LIMITED, MSG_RATE_LIMITED)

        if not context.can_decrypt:
            self._audit(
                context, patient_id, SSNAccessAction.DECRYPT, False, "Insufficient permissions"
            )
            return _deny(SSNAccessOutcome.FORBIDDEN, MSG_DECRYPT_FORBIDDEN)

        patient = self._repository.get(patient_id)
        if patient is None or patient.encrypted_ssn is None:
            self._audit(
                context, patient_id, SSNAccessAction.DECRYPT, False, "No stored SSN"
            )
            message = MSG_PATIENT_NOT_FOUND if patient is None else MSG_SSN_NOT_FOUND
            return _deny(SSNAccessOutcome.NOT_FOUND, message)

        try:
            ssn = self._cipher.decrypt(patient.encrypted_ssn)
        except SSNDecryptionError as exc:
            self._audit(context, patient_id, SSNAccessAction.DECRYPT, False, str(exc))
            return _deny(SSNAccessOutcome.ERROR, MSG_DECRYPT_FAILED)

        self._audit(context, patient_id, SSNAccessAction.DECRYPT, True)
        return SSNAccessResult(
            outcome=SSNAccessOutcome.GRANTED, ssn=ssn, patient_id=patient_id
        )

    def view_masked_ssn(
        self,
        user_id: Optional[str],
        patient_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SSNAccessResult:
        """Return a patient's masked national ID to clinical and office staff."""
        context = check_ssn_decrypt_permission(user_id, self._resolver, ip_address, user_agent)
        if context is None:
            return _deny(SSNAccessOutcome.UNAUTHENTICATED, MSG_UNAUTHORIZED)

        if not context.can_view_masked:
            self._audit(
                context, patient_id, SSNAccessAction.VIEW_MASKED, False, "Insufficient permissions"
            )
            return _deny(SSNAccessOutcome.FORBIDDEN, MSG_VIEW_FORBIDDEN)

        patient = self._repository.get(patient_id)
        if patient is None or patient.encrypted_ssn is None:
            self._audit(
                context, patient_id, SSNAccessAction.VIEW_MASKED, False, "No stored SSN"
            )
            message = MSG_PATIENT_NOT_FOUND if patient is None else MSG_SSN_NOT_FOUND
            return _deny(SSNAccessOutcome.NOT_FOUND, message)

        try:
            masked = mask_ssn(self._cipher.decrypt(patient.encrypted_ssn))
        except SSNDecryptionError as exc:
            self._audit(context, patient_id, SSNAccessAction.VIEW_MASKED, False, str(exc))
            return _deny(SSNAccessOutcome.ERROR, MSG_DECRYPT_FAILED)

        self._audit(context, patient_id, SSNAccessAction.VIEW_MASKED, True)
        return SSNAccessResult(
            outcome=SSNAccessOutcome.GRANTED, ssn=masked, patient_id=patient_id
        )

    def lookup_patient_by_ssn(
        self,
        user_id: Optional[str],
        ssn: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SSNAccessResult:
        """Find a patient by national ID through its lookup hash.

        The returned ``ssn`` is the masked form; the patient is identified
        by ``patient_id``.
        """
        context = check_ssn_decrypt_permission(user_id, self._resolver, ip_address, user_agent)
        if context is None:
            return _deny(SSNAccessOutcome.UNAUTHENTICATED, MSG_UNAUTHORIZED)

        if not check_permission(context.user_role, "lookup_ssn"):
            self._audit(
                context, "unknown", SSNAccessAction.LOOKUP, False, "Insufficient permissions"
            )
            return _deny(SSNAccessOutcome.FORBIDDEN, MSG_LOOKUP_FORBIDDEN)

        if not validate_ssn(ssn):
            return _deny(SSNAccessOutcome.INVALID, MSG_INVALID_SSN)

        patient = self._repository.find_by_ssn_hash(
            hash_ssn(normalize_ssn(ssn), self._hash_salt)
        )
        if patient is None:
            self._audit(context, "unknown", SSNAccessAction.LOOKUP, False, "No matching patient")
            return _deny(SSNAccessOutcome.NOT_FOUND, MSG_PATIENT_NOT_FOUND)

        self._audit(context, patient.patient_id, SSNAccessAction.LOOKUP, True)
        return SSNAccessResult(
            outcome=SSNAccessOutcome.GRANTED,
            ssn=mask_ssn(ssn),
            patient_id=patient.patient_id,
        )
