"""
Appointment scheduling for patients in the CS phase.

An appointment moves along ``pending -> confirmed -> completed``; it can be
cancelled before it is completed, and a confirmed appointment the patient
did not attend is marked ``no_show``.  ``completed``, ``cancelled`` and
``no_show`` are final.

Every status change writes an ``AppointmentStatusHistory`` row and an
``appointment_status_change`` audit entry; inserts and detail edits are
audited as ``INSERT``/``UPDATE`` on the ``appointments`` table.  Writes are
conditional on the version read, as for patients.

Free slot lookup is answered by the hosted database and is not part of
this module.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import structlog
from pydantic import BaseModel, Field

from hospitalpms.audit import AuditAction, AuditLog
from hospitalpms.models import Appointment, AppointmentStatus, AppointmentStatusHistory
from hospitalpms.repository import (
    AppointmentNotFoundError,
    AppointmentRepository,
    PatientNotFoundError,
    PatientRepository,
)

logger = structlog.get_logger(__name__)


REMINDER_WINDOW = timedelta(days=1)

APPOINTMENT_STATUS_LABELS: dict[AppointmentStatus, str] = {
    AppointmentStatus.PENDING: "대기중",
    AppointmentStatus.CONFIRMED: "확정",
    AppointmentStatus.COMPLETED: "완료",
    AppointmentStatus.CANCELLED: "취소",
    AppointmentStatus.NO_SHOW: "노쇼",
}

# Maps current status -> statuses it may move to
APPOINTMENT_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.PENDING: frozenset({
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.CANCELLED,
    }),
    AppointmentStatus.CONFIRMED: frozenset({
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
    }),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
    AppointmentStatus.NO_SHOW: frozenset(),
}

# Fields ``update_appointment`` may change; status has its own path.
EDITABLE_FIELDS = frozenset({
    "scheduled_at",
    "duration_minutes",
    "consultation_type",
    "cs_notes",
    "internal_notes",
    "assigned_to",
})


class InvalidAppointmentTransitionError(ValueError):
    """Raised when an appointment cannot move to the requested status."""
    pass


class CreateAppointmentData(BaseModel):
    """Details supplied when booking an appointment."""

    patient_id: str = Field(..., min_length=1)
    scheduled_at: datetime
    duration_minutes: int = Field(default=30, gt=0)
    consultation_type: str = Field(default="general", min_length=1)
    cs_notes: Optional[str] = None
    assigned_to: Optional[str] = None


class AppointmentService:
    """Books appointments and tracks their status.

    Args:
        repository: Appointment persistence.
        patients: Patient persistence, used to check the patient exists.
        audit_log: Sink for appointment audit entries.
        clock: Source of the current UTC time.
    """

    def __init__(
        self,
        repository: AppointmentRepository,
        patients: PatientRepository,
        audit_log: AuditLog,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._repository = repository
        self._patients = patients
        self._audit_log = audit_log
        self._clock = clock

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_appointment(self, actor_id: str, data: CreateAppointmentData) -> Appointment:
        """Book a new appointment in ``pending``.

        Raises:
            PatientNotFoundError: If the patient does not exist.
        """
        if self._patients.get(data.patient_id) is None:
            raise PatientNotFoundError(data.patient_id)

        appointment = self._repository.add(Appointment(
            **data.model_dump(),
            status=AppointmentStatus.PENDING,
            created_by=actor_id,
        ))
        self._audit_log.record(
            user_id=actor_id,
            action=AuditAction.INSERT,
            table_name="appointments",
            record_id=appointment.appointment_id,
            new_data=_audit_view(appointment),
        )
        logger.info(
            "appointment_created",
            appointment_id=appointment.appointment_id,
            patient_id=appointment.patient_id,
        )
        return appointment

    def update_appointment(
        self, actor_id: str, appointment_id: str, **updates: Any
    ) -> Appointment:
        """Change appointment details other than its status.

        Raises:
            ValueError: If a field outside ``EDITABLE_FIELDS`` is given.
            pydantic.ValidationError: If a new value is invalid.
            AppointmentNotFoundError: If the appointment does not exist.
            ConcurrentModificationError: If it changed since it was read.
        """
        unknown = set(updates) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated here: {sorted(unknown)}")

        current = self._require(appointment_id)
        changed = Appointment.model_validate({**current.model_dump(), **updates})
        updated = self._repository.update(changed, expected_version=current.version)
        self._audit_log.record(
            user_id=actor_id,
            action=AuditAction.UPDATE,
            table_name="appointments",
            record_id=appointment_id,
            old_data=_audit_view(current),
            new_data=_audit_view(updated),
        )
        return updated

    def update_appointment_status(
        self,
        actor_id: str,
        appointment_id: str,
        status: AppointmentStatus,
        reason: Optional[str] = None,
        internal_notes: Optional[str] = None,
    ) -> Appointment:
        """Move an appointment to ``status``, recording why.

        Args:
            actor_id: Staff member making the change.
            appointment_id: Appointment to change.
            status: Target status.
            reason: Stored on the history row.
            internal_notes: Replaces the appointment's internal notes.

        Raises:
            InvalidAppointmentTransitionError: If the move is not allowed
                from the current status.
            AppointmentNotFoundError: If the appointment does not exist.
            ConcurrentModificationError: If it changed since it was read.
        """
        current = self._require(appointment_id)
        if status not in APPOINTMENT_TRANSITIONS[current.status]:
            raise InvalidAppointmentTransitionError(
                f"'{current.status.value}'에서 '{status.value}'로 변경할 수 없습니다."
            )

        changes: dict[str, Any] = {"status": status}
        if internal_notes:
            changes["internal_notes"] = internal_notes
        updated = self._repository.update(
            current.model_copy(update=changes), expected_version=current.version
        )

        reason = (reason or "").strip() or None
        self._repository.add_history(AppointmentStatusHistory(
            appointment_id=appointment_id,
            from_status=current.status,
            to_status=status,
            changed_by=actor_id,
            changed_at=self._clock(),
            notes=reason,
        ))
        self._audit_log.record(
            user_id=actor_id,
            action=AuditAction.APPOINTMENT_STATUS_CHANGE,
            table_name="appointments",
            record_id=appointment_id,
            old_data={"status": current.status.value},
            new_data={"status": status.value, "reason": reason},
        )
        logger.info(
            "appointment_status_changed",
            appointment_id=appointment_id,
            from_status=current.status.value,
            to_status=status.value,
        )
        return updated

    def confirm_appointment(self, actor_id: str, appointment_id: str) -> Appointment:
        return self.update_appointment_status(
            actor_id, appointment_id, AppointmentStatus.CONFIRMED
        )

    def cancel_appointment(
        self, actor_id: str, appointment_id: str, reason: str
    ) -> Appointment:
        """Cancel an appointment.  A reason is mandatory.

        Raises:
            ValueError: If ``reason`` is blank.
        """
        if not (reason or "").strip():
            raise ValueError("A cancellation reason is required")
        return self.update_appointment_status(
            actor_id, appointment_id, AppointmentStatus.CANCELLED, reason=reason
        )

    def complete_appointment(
        self, actor_id: str, appointment_id: str, notes: Optional[str] = None
    ) -> Appointment:
        """Mark a confirmed appointment as attended; ``notes`` go to internal notes."""
        return self.update_appointment_status(
            actor_id,
            appointment_id,
            AppointmentStatus.COMPLETED,
            internal_notes=notes,
        )

    def mark_no_show(self, actor_id: str, appointment_id: str) -> Appointment:
        return self.update_appointment_status(
            actor_id, appointment_id, AppointmentStatus.NO_SHOW
        )

    def mark_reminder_sent(self, appointment_id: str) -> Appointment:
        current = self._require(appointment_id)
        return self._repository.update(
            current.model_copy(update={"reminder_sent": True}),
            expected_version=current.version,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_appointment(self, appointment_id: str) -> Optional[Appointment]:
        return self._repository.get(appointment_id)

    def get_patient_appointments(self, patient_id: str) -> list[Appointment]:
        """Appointments of one patient, latest scheduled first."""
        appointments = [
            a for a in self._repository.list_appointments() if a.patient_id == patient_id
        ]
        return sorted(appointments, key=lambda a: a.scheduled_at, reverse=True)

    def get_my_appointments(
        self,
        user_id: str,
        status: Optional[AppointmentStatus] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> list[Appointment]:
        """Appointments a staff member booked or is assigned to, soonest first.

        ``date_from`` and ``date_to`` are inclusive bounds on ``scheduled_at``.
        """
        results = []
        for appointment in self._repository.list_appointments():
            if user_id not in (appointment.assigned_to, appointment.created_by):
                continue
            if status is not None and appointment.status != status:
                continue
            if date_from is not None and appointment.scheduled_at < date_from:
                continue
            if date_to is not None and appointment.scheduled_at > date_to:
                continue
            results.append(appointment)
        return sorted(results, key=lambda a: a.scheduled_at)

    def get_appointment_history(self, appointment_id: str) -> list[AppointmentStatusHistory]:
        """Status history of an appointment, newest first."""
        return self._repository.list_history(appointment_id)

    def get_appointments_needing_reminders(self) -> list[Appointment]:
        """Confirmed appointments in the next day whose reminder is still unsent."""
        now = self._clock()
        return sorted(
            (
                a for a in self._repository.list_appointments()
                if a.status == AppointmentStatus.CONFIRMED
                and not a.reminder_sent
                and now <= a.scheduled_at <= now + REMINDER_WINDOW
            ),
            key=lambda a: a.scheduled_at,
        )

    def _require(self, appointment_id: str) -> Appointment:
        appointment = self._repository.get(appointment_id)
        if appointment is None:
            raise AppointmentNotFoundError(appointment_id)
        return appointment


def get_appointment_status_label(status: AppointmentStatus) -> str:
    """Korean display label for an appointment status."""
    return APPOINTMENT_STATUS_LABELS[status]


def _audit_view(appointment: Appointment) -> dict:
    return appointment.model_dump(
        mode="json",
        exclude={"created_at", "updated_at", "version"},
    )
