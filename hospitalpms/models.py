"""
Core data models for the hospital patient-management core.

Patients move through a fixed nine-stage lifecycle owned first by the
business-development (BD) team and then by customer service (CS).  The
status value on a ``Patient`` is never assigned directly by callers; it
changes only through ``PatientStatusService.change_patient_status``.

Appointments booked during the CS phase have their own, smaller status
set; see ``hospitalpms.appointments``.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class PatientStatus(str, enum.Enum):
    """Lifecycle stage of a patient, in pipeline order.

    * ``PENDING``                 -- survey completed, BD assigned.
    * ``ACTIVE``                  -- BD consultation in progress.
    * ``CONSULTED``               -- BD consultation done, waiting for CS.
    * ``RESERVATION_IN_PROGRESS`` -- CS arranging the examination booking.
    * ``RESERVATION_COMPLETED``   -- examination booked.
    * ``EXAMINATION_IN_PROGRESS`` -- examination day.
    * ``EXAMINATION_COMPLETED``   -- examination finished.
    * ``AWAITING_RESULTS``        -- waiting for all results.
    * ``CLOSED``                  -- process complete (may be reopened).
    """

    PENDING = "pending"
    ACTIVE = "active"
    CONSULTED = "consulted"
    RESERVATION_IN_PROGRESS = "reservation_in_progress"
    RESERVATION_COMPLETED = "reservation_completed"
    EXAMINATION_IN_PROGRESS = "examination_in_progress"
    EXAMINATION_COMPLETED = "examination_completed"
    AWAITING_RESULTS = "awaiting_results"
    CLOSED = "closed"


class Role(str, enum.Enum):
    """Staff roles.

    ``ADMIN``, ``MANAGER``, ``BD`` and ``CS`` are the profile roles that
    drive the status workflow.  ``DOCTOR`` and ``NURSE`` are recognised by
    the SSN access gate for masked viewing only.
    """

    ADMIN = "admin"
    MANAGER = "manager"
    BD = "bd"
    CS = "cs"
    DOCTOR = "doctor"
    NURSE = "nurse"


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------

class EncryptedSSN(BaseModel):
    """AES-256-GCM ciphertext of a national ID number.

    All binary parts are base64 encoded.  ``version`` records the key
    generation that produced the ciphertext.
    """

    encrypted: str
    iv: str
    tag: str
    version: int = Field(default=1, ge=1)


class Actor(BaseModel):
    """An authenticated staff member as resolved from the profile store."""

    user_id: str = Field(..., min_length=1)
    role: Role


class Patient(BaseModel):
    """A patient record as held by the persistence layer."""

    patient_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique identifier for the patient.",
    )
    name: str = Field(
        ...,
        min_length=1,
        description="Patient display name.",
    )
    status: PatientStatus = Field(
        default=PatientStatus.PENDING,
        description="Current lifecycle stage.",
    )
    assigned_bd_id: Optional[str] = Field(
        default=None,
        description="BD staff member responsible for the consultation phase.",
    )
    cs_manager: Optional[str] = Field(
        default=None,
        description="CS staff member responsible for the reservation phase.",
    )
    encrypted_ssn: Optional[EncryptedSSN] = Field(default=None)
    ssn_hash: Optional[str] = Field(
        default=None,
        description="Salted SHA-256 of the national ID, used as a unique lookup key.",
    )
    phone: Optional[str] = Field(default=None)
    email: Optional[str] = Field(default=None)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    version: int = Field(
        default=0,
        ge=0,
        description="Optimistic concurrency counter, bumped on every persisted change.",
    )


class StatusChangeHistory(BaseModel):
    """One accepted status transition for a patient."""

    history_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    patient_id: str
    from_status: Optional[PatientStatus] = None
    to_status: PatientStatus
    changed_by: str
    changed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    notes: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class StatusChangeRequest(BaseModel):
    """A request to move a patient to a new status."""

    patient_id: str = Field(..., min_length=1)
    new_status: PatientStatus
    notes: Optional[str] = None
    assigned_manager_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Appointments
# ---------------------------------------------------------------------------

class AppointmentStatus(str, enum.Enum):
    """State of a booked examination or consultation slot."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class Appointment(BaseModel):
    """A scheduled visit for a patient."""

    appointment_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    patient_id: str = Field(..., min_length=1)
    scheduled_at: datetime
    status: AppointmentStatus = AppointmentStatus.PENDING
    consultation_type: str = Field(default="general", min_length=1)
    duration_minutes: int = Field(
        default=30,
        gt=0,
        description="Length of the booked slot.",
    )
    cs_notes: Optional[str] = None
    internal_notes: Optional[str] = None
    assigned_to: Optional[str] = Field(
        default=None,
        description="Staff member handling the visit.",
    )
    created_by: str = Field(..., min_length=1)
    reminder_sent: bool = False
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    version: int = Field(default=0, ge=0)


class AppointmentStatusHistory(BaseModel):
    """One accepted appointment status change."""

    history_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    appointment_id: str
    from_status: Optional[AppointmentStatus] = None
    to_status: AppointmentStatus
    changed_by: str
    changed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    notes: Optional[str] = None
