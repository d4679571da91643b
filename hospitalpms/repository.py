"""
Persistence boundary for patient and appointment records.

The hosted relational store is an external collaborator.  Services depend
on the ``PatientRepository`` and ``AppointmentRepository`` protocols only;
the ``InMemory*`` classes implement them for tests, demos and
single-process use.

``update`` is conditional on the version the caller read, which gives the
optimistic concurrency a status change needs: if another request changed
the record in between, the write is refused instead of silently
overwriting it.
"""

from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Optional, Protocol

from hospitalpms.models import (
    Appointment,
    AppointmentStatusHistory,
    Patient,
    StatusChangeHistory,
)


class PatientNotFoundError(KeyError):
    """Raised when a patient ID does not exist."""
    pass


class DuplicatePatientError(ValueError):
    """Raised when a patient with the same ID or SSN hash already exists."""
    pass


class ConcurrentModificationError(RuntimeError):
    """Raised when a conditional update finds a newer version in storage."""
    pass


class AppointmentNotFoundError(KeyError):
    """Raised when an appointment ID does not exist."""
    pass


class PatientRepository(Protocol):
    def get(self, patient_id: str) -> Optional[Patient]: ...

    def add(self, patient: Patient) -> Patient: ...

    def update(self, patient: Patient, expected_version: int) -> Patient: ...

    def find_by_ssn_hash(self, ssn_hash: str) -> Optional[Patient]: ...

    def add_history(self, entry: StatusChangeHistory) -> StatusChangeHistory: ...

    def list_history(self, patient_id: str) -> list[StatusChangeHistory]: ...


class InMemoryPatientRepository:
    """Dict-backed ``PatientRepository``.  Returns copies, never live objects."""

    def __init__(self) -> None:
        self._patients: dict[str, Patient] = {}
        self._history: list[StatusChangeHistory] = []

    def get(self, patient_id: str) -> Optional[Patient]:
        patient = self._patients.get(patient_id)
        return patient.model_copy(deep=True) if patient is not None else None

    def add(self, patient: Patient) -> Patient:
        """Store a new patient.

        Raises:
            DuplicatePatientError: If the ID or SSN hash is already taken.
        """
        if patient.patient_id in self._patients:
            raise DuplicatePatientError(f"Patient '{patient.patient_id}' already exists")
        if patient.ssn_hash and self.find_by_ssn_hash(patient.ssn_hash) is not None:
            raise DuplicatePatientError("A patient with this SSN is already registered")
        self._patients[patient.patient_id] = patient.model_copy(deep=True)
        return patient.model_copy(deep=True)

    def update(self, patient: Patient, expected_version: int) -> Patient:
        """Replace a patient if its stored version is ``expected_version``.

        The stored copy gets ``version`` incremented and ``updated_at``
        refreshed.

        Raises:
            PatientNotFoundError: If the patient does not exist.
            ConcurrentModificationError: If the stored version differs.
        """
        stored = self._patients.get(patient.patient_id)
        if stored is None:
            raise PatientNotFoundError(patient.patient_id)
        if stored.version != expected_version:
            raise ConcurrentModificationError(
                f"Patient '{patient.patient_id}' was modified concurrently "
                f"(expected version {expected_version}, found {stored.version})"
            )
        updated = patient.model_copy(
            deep=True,
            update={
                "version": expected_version + 1,
                "updated_at": datetime.now(timezone.utc),
            },
        )
        self._patients[patient.patient_id] = updated
        return updated.model_copy(deep=True)

    def find_by_ssn_hash(self, ssn_hash: str) -> Optional[Patient]:
        for patient in self._patients.values():
            if patient.ssn_hash == ssn_hash:
                return patient.model_copy(deep=True)
        return None

    def add_history(self, entry: StatusChangeHistory) -> StatusChangeHistory:
        self._history.append(copy.deepcopy(entry))
        return entry

    def list_history(self, patient_id: str) -> list[StatusChangeHistory]:
        """Status history of a patient, newest first."""
        entries = [copy.deepcopy(h) for h in self._history if h.patient_id == patient_id]
        return sorted(entries, key=lambda h: h.changed_at, reverse=True)

    def list_patients(self) -> list[Patient]:
        return [p.model_copy(deep=True) for p in self._patients.values()]

    def __len__(self) -> int:
        return len(self._patients)


# ---------------------------------------------------------------------------
# Appointments
# ---------------------------------------------------------------------------

class AppointmentRepository(Protocol):
    def get(self, appointment_id: str) -> Optional[Appointment]: ...

    def add(self, appointment: Appointment) -> Appointment: ...

    def update(self, appointment: Appointment, expected_version: int) -> Appointment: ...

    def list_appointments(self) -> list[Appointment]: ...

    def add_history(self, entry: AppointmentStatusHistory) -> AppointmentStatusHistory: ...

    def list_history(self, appointment_id: str) -> list[AppointmentStatusHistory]: ...


class InMemoryAppointmentRepository:
    """Dict-backed ``AppointmentRepository``.  Returns copies, never live objects."""

    def __init__(self) -> None:
        self._appointments: dict[str, Appointment] = {}
        self._history: list[AppointmentStatusHistory] = []

    def get(self, appointment_id: str) -> Optional[Appointment]:
        appointment = self._appointments.get(appointment_id)
        return appointment.model_copy(deep=True) if appointment is not None else None

    def add(self, appointment: Appointment) -> Appointment:
        if appointment.appointment_id in self._appointments:
            raise ValueError(f"Appointment '{appointment.appointment_id}' already exists")
        self._appointments[appointment.appointment_id] = appointment.model_copy(deep=True)
        return appointment.model_copy(deep=True)

    def update(self, appointment: Appointment, expected_version: int) -> Appointment:
        """Replace an appointment if its stored version is ``expected_version``.

        Raises:
            AppointmentNotFoundError: If the appointment does not exist.
            ConcurrentModificationError: If the stored version differs.
        """
        stored = self._appointments.get(appointment.appointment_id)
        if stored is None:
            raise AppointmentNotFoundError(appointment.appointment_id)
        if stored.version != expected_version:
            raise ConcurrentModificationError(
                f"Appointment '{appointment.appointment_id}' was modified concurrently "
                f"(expected version {expected_version}, found {stored.version})"
            )
        updated = appointment.model_copy(
            deep=True,
            update={
                "version": expected_version + 1,
                "updated_at": datetime.now(timezone.utc),
            },
        )
        self._appointments[appointment.appointment_id] = updated
        return updated.model_copy(deep=True)

    def list_appointments(self) -> list[Appointment]:
        return [a.model_copy(deep=True) for a in self._appointments.values()]

    def add_history(self, entry: AppointmentStatusHistory) -> AppointmentStatusHistory:
        self._history.append(entry.model_copy(deep=True))
        return entry

    def list_history(self, appointment_id: str) -> list[AppointmentStatusHistory]:
        """Status history of an appointment, newest first."""
        entries = [
            h.model_copy(deep=True) for h in self._history
            if h.appointment_id == appointment_id
        ]
        return sorted(entries, key=lambda h: h.changed_at, reverse=True)

    def __len__(self) -> int:
        return len(self._appointments)
