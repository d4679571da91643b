"""
Append-Only, Tamper-Evident Audit Trail (Hash-Chained).

Two kinds of records share one chain:

* ``AuditEntry`` -- generic data-change records (``action``,
  ``table_name``, ``record_id``, ``old_data``/``new_data``, ``user_id``),
  written for patient and appointment inserts/updates, status changes
  and survey token operations.
* ``SSNAccessLog`` -- one record per national ID access attempt
  (encrypt, decrypt, masked view, lookup), successful or denied.

Each stored record carries the SHA-256 hash of its predecessor, so any
modification after the fact is detected by ``verify_chain()``.  There are
no update or delete operations.

Writing an SSN access record must never block the operation being
audited; ``log_ssn_access`` swallows sink failures after reporting them on
the structured log.

Staff read the trail through ``review_audit_entries``, ``review_ssn_access``
and ``export_audit_for_review``, which check the ``view_audit`` and
``export_audit`` permissions first.
"""

from __future__ import annotations

import enum
import hashlib
import json
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Optional, Union

import structlog
from pydantic import BaseModel, Field

from hospitalpms.models import Role
from hospitalpms.rbac import require_permission

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Action enums
# ---------------------------------------------------------------------------

class AuditAction(str, enum.Enum):
    """Actions recorded as generic audit entries."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    PATIENT_STATUS_CHANGE = "patient_status_change"
    APPOINTMENT_STATUS_CHANGE = "appointment_status_change"
    SURVEY_TOKEN_CREATED = "survey_token_created"
    SURVEY_TOKENS_CLEANUP = "survey_tokens_cleanup"


class SSNAccessAction(str, enum.Enum):
    """Kinds of national ID access."""

    ENCRYPT = "encrypt"
    DECRYPT = "decrypt"
    VIEW_MASKED = "view_masked"
    LOOKUP = "lookup"


# ---------------------------------------------------------------------------
# Record models
# ---------------------------------------------------------------------------

class _ChainedRecord(BaseModel):
    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    previous_hash: str = Field(
        default="",
        description=(
            "SHA-256 hash of the previous record's canonical representation. "
            "Empty string for the first record in the chain."
        ),
    )

    def _canonical_data(self) -> dict[str, Any]:
        raise NotImplementedError

    def canonical_bytes(self) -> bytes:
        """Return a deterministic byte representation for hashing."""
        data = self._canonical_data()
        data["kind"] = type(self).__name__
        data["entry_id"] = self.entry_id
        data["timestamp"] = self.timestamp.isoformat()
        data["previous_hash"] = self.previous_hash
        return json.dumps(data, sort_keys=True, default=str).encode("utf-8")

    def compute_hash(self) -> str:
        """Compute the SHA-256 hash of this record's canonical representation."""
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


class AuditEntry(_ChainedRecord):
    """A generic data-change audit record."""

    user_id: str = Field(
        ...,
        description="Acting user, or 'system' for scheduled jobs.",
    )
    action: AuditAction
    table_name: str = Field(..., min_length=1)
    record_id: Optional[str] = None
    old_data: Optional[dict[str, Any]] = None
    new_data: Optional[dict[str, Any]] = None

    def _canonical_data(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "action": self.action.value,
            "table_name": self.table_name,
            "record_id": self.record_id,
            "old_data": self.old_data,
            "new_data": self.new_data,
        }


class SSNAccessLog(_ChainedRecord):
    """A national ID access attempt.  Created for every attempt, never mutated."""

    user_id: str
    patient_id: str
    action: SSNAccessAction
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    success: bool
    error_message: Optional[str] = None

    def _canonical_data(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "patient_id": self.patient_id,
            "action": self.action.value,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "success": self.success,
            "error_message": self.error_message,
        }


AuditRecord = Union[AuditEntry, SSNAccessLog]


# ---------------------------------------------------------------------------
# PHI redaction
# ---------------------------------------------------------------------------

_PHI_PATTERNS: dict[str, re.Pattern] = {
    "rrn": re.compile(r"\b\d{6}-?\d{7}\b"),
    "phone": re.compile(r"\b01[016789]-?\d{3,4}-?\d{4}\b"),
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
}

_PHI_KEYS = {"name", "patient_name", "ssn", "phone", "patient_phone", "email",
             "patient_email", "address", "birth_date", "encrypted_ssn"}


def redact_phi(data: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    """Replace PHI-bearing fields with ``[REDACTED]`` markers.

    Args:
        data: A record's ``old_data``/``new_data`` payload.

    Returns:
        A new dictionary with PHI redacted, or None if ``data`` is None.
    """
    if data is None:
        return None
    redacted: dict[str, Any] = {}
    for key, value in data.items():
        if key.lower() in _PHI_KEYS:
            redacted[key] = "[REDACTED]"
        elif isinstance(value, str):
            redacted_value = value
            for pattern_name, pattern in _PHI_PATTERNS.items():
                redacted_value = pattern.sub(f"[REDACTED-{pattern_name.upper()}]", redacted_value)
            redacted[key] = redacted_value
        elif isinstance(value, dict):
            redacted[key] = redact_phi(value)
        else:
            redacted[key] = value
    return redacted


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

class AuditLog:
    """Append-only audit trail with SHA-256 hash chaining.

    In-process implementation of the audit sink.  A deployment backed by a
    database keeps the same interface and writes rows instead.
    """

    def __init__(self) -> None:
        self._records: list[AuditRecord] = []
        self._hashes: list[str] = []

    def append(self, record: AuditRecord) -> AuditRecord:
        """Append a record, linking it to the previous one.

        Args:
            record: An ``AuditEntry`` or ``SSNAccessLog``.

        Returns:
            The record with ``previous_hash`` populated.
        """
        record.previous_hash = self._hashes[-1] if self._hashes else ""
        self._records.append(record)
        self._hashes.append(record.compute_hash())
        return record

    def record(
        self,
        user_id: str,
        action: AuditAction,
        table_name: str,
        record_id: Optional[str] = None,
        old_data: Optional[dict[str, Any]] = None,
        new_data: Optional[dict[str, Any]] = None,
    ) -> AuditEntry:
        """Build and append a generic ``AuditEntry``."""
        entry = AuditEntry(
            user_id=user_id,
            action=action,
            table_name=table_name,
            record_id=record_id,
            old_data=old_data,
            new_data=new_data,
        )
        self.append(entry)
        return entry

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Walk the trail and validate every hash link.

        Returns:
            ``(valid, broken_at)`` where ``broken_at`` is the index of the
            first broken link, or None if the chain is intact.
        """
        for i, record in enumerate(self._records):
            if i == 0:
                if record.previous_hash != "":
                    return (False, 0)
            elif record.previous_hash != self._records[i - 1].compute_hash():
                return (False, i)

            if self._hashes[i] != record.compute_hash():
                return (False, i)

        return (True, None)

    def query(
        self,
        table_name: Optional[str] = None,
        action: Optional[AuditAction] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
        user_id: Optional[str] = None,
        record_id: Optional[str] = None,
    ) -> list[AuditEntry]:
        """Return copies of the generic entries matching every given filter."""
        results = []
        for record in self._records:
            if not isinstance(record, AuditEntry):
                continue
            if table_name is not None and record.table_name != table_name:
                continue
            if action is not None and record.action != action:
                continue
            if not _in_window(record, time_start, time_end):
                continue
            if user_id is not None and record.user_id != user_id:
                continue
            if record_id is not None and record.record_id != record_id:
                continue
            results.append(record.model_copy(deep=True))
        return results

    def query_ssn_access(
        self,
        patient_id: Optional[str] = None,
        user_id: Optional[str] = None,
        action: Optional[SSNAccessAction] = None,
        success: Optional[bool] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> list[SSNAccessLog]:
        """Return copies of the SSN access records matching every given filter."""
        results = []
        for record in self._records:
            if not isinstance(record, SSNAccessLog):
                continue
            if patient_id is not None and record.patient_id != patient_id:
                continue
            if user_id is not None and record.user_id != user_id:
                continue
            if action is not None and record.action != action:
                continue
            if success is not None and record.success != success:
                continue
            if not _in_window(record, time_start, time_end):
                continue
            results.append(record.model_copy(deep=True))
        return results

    def export_for_review(
        self,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Produce a JSON-serializable bundle for compliance review.

        Generic entries have their data payloads PHI-redacted.  The chain
        verification result is included in the bundle metadata.
        """
        entries = []
        for entry in self.query(time_start=time_start, time_end=time_end):
            entry_dict = entry.model_dump(mode="json")
            entry_dict["old_data"] = redact_phi(entry.old_data)
            entry_dict["new_data"] = redact_phi(entry.new_data)
            entries.append(entry_dict)

        ssn_access = [
            record.model_dump(mode="json")
            for record in self.query_ssn_access(time_start=time_start, time_end=time_end)
        ]

        chain_valid, broken_at = self.verify_chain()

        return {
            "export_metadata": {
                "exported_at": datetime.now(timezone.utc).isoformat(),
                "entry_count": len(entries),
                "ssn_access_count": len(ssn_access),
                "chain_integrity": "VALID" if chain_valid else f"BROKEN_AT_INDEX_{broken_at}",
            },
            "entries": entries,
            "ssn_access": ssn_access,
        }

    def __len__(self) -> int:
        return len(self._records)


def _in_window(
    record: AuditRecord,
    time_start: Optional[datetime],
    time_end: Optional[datetime],
) -> bool:
    if time_start is not None and record.timestamp < time_start:
        return False
    if time_end is not None and record.timestamp > time_end:
        return False
    return True


def log_ssn_access(audit_log: AuditLog, entry: SSNAccessLog) -> None:
    """Append an SSN access record without ever failing the caller.

    A failure of the sink is reported on the structured log, which acts as
    the fallback channel, and then dropped.
    """
    try:
        audit_log.append(entry)
    except Exception:
        logger.exception(
            "ssn_access_audit_write_failed",
            user_id=entry.user_id,
            patient_id=entry.patient_id,
            action=entry.action.value,
            success=entry.success,
        )
        return

    logger.info(
        "ssn_access",
        user_id=entry.user_id,
        patient_id=entry.patient_id,
        action=entry.action.value,
        success=entry.success,
        error_message=entry.error_message,
    )


# ---------------------------------------------------------------------------
# Role-gated review
# ---------------------------------------------------------------------------

def review_audit_entries(
    audit_log: AuditLog,
    role: Role,
    **filters: Any,
) -> list[AuditEntry]:
    """``AuditLog.query`` for a staff member holding ``view_audit``.

    Raises:
        PermissionError: If ``role`` may not view the audit trail.
    """
    require_permission(role, "view_audit")
    return audit_log.query(**filters)


def review_ssn_access(
    audit_log: AuditLog,
    role: Role,
    **filters: Any,
) -> list[SSNAccessLog]:
    """``AuditLog.query_ssn_access`` for a staff member holding ``view_audit``.

    Raises:
        PermissionError: If ``role`` may not view the audit trail.
    """
    require_permission(role, "view_audit")
    return audit_log.query_ssn_access(**filters)


def export_audit_for_review(
    audit_log: AuditLog,
    role: Role,
    time_start: Optional[datetime] = None,
    time_end: Optional[datetime] = None,
) -> dict[str, Any]:
    """``AuditLog.export_for_review`` for a staff member holding ``export_audit``.

    Raises:
        PermissionError: If ``role`` may not export the audit trail.
    """
    require_permission(role, "export_audit")
    return audit_log.export_for_review(time_start=time_start, time_end=time_end)
