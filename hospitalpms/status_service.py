"""
Patient status change service.

Applies a requested status change on behalf of an authenticated staff
member.  The workflow table decides admit/deny; this service adds the
surrounding steps:

* note enforcement for edges that require one;
* CS manager assignment on edges flagged ``auto_assign_manager``;
* a conditional write (the patient must still be at the version read);
* a ``StatusChangeHistory`` row and a ``patient_status_change`` audit
  entry for every accepted change.

All denials come back as ``StatusChangeResult(success=False, error=...)``
with a user-facing Korean message.  Status-transition denials are not
audited here.
"""

from __future__ import annotations

from typing import Optional

import structlog
from pydantic import BaseModel

from hospitalpms.audit import AuditAction, AuditLog
from hospitalpms.models import (
    Actor,
    Patient,
    PatientStatus,
    Role,
    StatusChangeHistory,
    StatusChangeRequest,
)
from hospitalpms.repository import ConcurrentModificationError, PatientRepository
from hospitalpms.workflow import (
    TRANSITIONS,
    StatusTransition,
    is_handover_to_cs,
    should_auto_assign_manager,
    validate_status_transition,
)

logger = structlog.get_logger(__name__)


MSG_PATIENT_NOT_FOUND = "환자 정보를 찾을 수 없습니다."
MSG_NOTE_REQUIRED = "이 상태 변경에는 사유 입력이 필요합니다."
MSG_CONFLICT = "다른 사용자가 환자 정보를 변경했습니다. 새로고침 후 다시 시도해주세요."


class StatusChangeResult(BaseModel):
    """Outcome of ``PatientStatusService.change_patient_status``."""

    success: bool
    error: Optional[str] = None
    history: Optional[StatusChangeHistory] = None
    patient: Optional[Patient] = None


class PatientStatusService:
    """Performs validated patient status changes.

    Args:
        repository: Patient persistence.
        audit_log: Sink for ``patient_status_change`` entries.
        transitions: Workflow table; defaults to the built-in one.
    """

    def __init__(
        self,
        repository: PatientRepository,
        audit_log: AuditLog,
        transitions: tuple[StatusTransition, ...] = TRANSITIONS,
    ) -> None:
        self._repository = repository
        self._audit_log = audit_log
        self._transitions = transitions

    def change_patient_status(
        self, actor: Actor, request: StatusChangeRequest
    ) -> StatusChangeResult:
        """Move a patient to ``request.new_status`` if ``actor`` may do so.

        Args:
            actor: The authenticated user and their role.
            request: Target status, note and optional manager assignment.

        Returns:
            A ``StatusChangeResult``; on success it holds the updated
            patient and the new history row.
        """
        patient = self._repository.get(request.patient_id)
        if patient is None:
            return StatusChangeResult(success=False, error=MSG_PATIENT_NOT_FOUND)

        current_status = patient.status
        validation = validate_status_transition(
            current_status, request.new_status, actor.role, self._transitions
        )
        if not validation.is_valid:
            logger.info(
                "status_change_rejected",
                patient_id=patient.patient_id,
                from_status=current_status.value,
                to_status=request.new_status.value,
                role=actor.role.value,
            )
            return StatusChangeResult(success=False, error=validation.error)

        notes = (request.notes or "").strip()
        if validation.requires_note and not notes:
            return StatusChangeResult(success=False, error=MSG_NOTE_REQUIRED)

        previous_manager = patient.cs_manager
        read_version = patient.version
        patient.status = request.new_status
        if should_auto_assign_manager(current_status, request.new_status, self._transitions):
            patient.cs_manager = self._resolve_cs_manager(
                actor, patient, current_status, request
            )

        try:
            updated = self._repository.update(patient, expected_version=read_version)
        except ConcurrentModificationError:
            logger.warning("status_change_conflict", patient_id=patient.patient_id)
            return StatusChangeResult(success=False, error=MSG_CONFLICT)

        history = self._repository.add_history(StatusChangeHistory(
            patient_id=updated.patient_id,
            from_status=current_status,
            to_status=request.new_status,
            changed_by=actor.user_id,
            notes=notes or None,
            metadata=request.metadata,
        ))

        self._audit_log.record(
            user_id=actor.user_id,
            action=AuditAction.PATIENT_STATUS_CHANGE,
            table_name="patients",
            record_id=updated.patient_id,
            old_data={"status": current_status.value, "cs_manager": previous_manager},
            new_data={
                "status": request.new_status.value,
                "cs_manager": updated.cs_manager,
                "notes": notes or None,
            },
        )

        logger.info(
            "status_changed",
            patient_id=updated.patient_id,
            from_status=current_status.value,
            to_status=request.new_status.value,
            changed_by=actor.user_id,
            handover=is_handover_to_cs(current_status, request.new_status),
        )
        return StatusChangeResult(success=True, history=history, patient=updated)

    def get_patient_status_history(self, patient_id: str) -> list[StatusChangeHistory]:
        """Status history for a patient, newest first."""
        return self._repository.list_history(patient_id)

    @staticmethod
    def _resolve_cs_manager(
        actor: Actor,
        patient: Patient,
        current_status: PatientStatus,
        request: StatusChangeRequest,
    ) -> Optional[str]:
        """Pick the CS manager for an auto-assigning edge.

        An explicit ``assigned_manager_id`` always wins.  On the BD -> CS
        handover a CS actor takes the patient, a manager takes it only if
        nobody is assigned, and an admin leaves the assignment untouched.
        On any other auto-assigning edge a CS or manager actor takes the
        patient only if nobody is assigned.
        """
        if request.assigned_manager_id:
            return request.assigned_manager_id

        if is_handover_to_cs(current_status, request.new_status):
            if actor.role == Role.CS:
                return actor.user_id
            if actor.role == Role.MANAGER and not patient.cs_manager:
                return actor.user_id
            return patient.cs_manager

        if not patient.cs_manager and actor.role in (Role.CS, Role.MANAGER):
            return actor.user_id
        return patient.cs_manager
