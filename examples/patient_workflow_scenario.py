"""
Synthetic Scenario: Patient Intake to Closure Walkthrough
=========================================================

This script walks one synthetic patient through the hospital PMS core
using entirely made-up data.  The national ID below is a checksum-valid
number generated for the demo, not a real person's.

Steps demonstrated:
  1. Load the status workflow from YAML
  2. Issue a survey token and register the patient from the survey
  3. Walk the patient through the BD and CS phases, booking an appointment
  4. Show a rejected transition and a missing note
  5. Exercise the national ID access gate (decrypt, masked view, lookup)
  6. Export the audit trail for compliance review

Usage:
    python examples/patient_workflow_scenario.py
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

from pydantic import SecretStr

from hospitalpms.appointments import AppointmentService, CreateAppointmentData
from hospitalpms.audit import AuditLog, export_audit_for_review
from hospitalpms.config import AppSettings, SSNSettings
from hospitalpms.intake import PatientIntakeService
from hospitalpms.logconfig import configure_logging
from hospitalpms.models import Actor, PatientStatus, Role, StatusChangeRequest
from hospitalpms.rate_limit import RateLimiter
from hospitalpms.repository import InMemoryAppointmentRepository, InMemoryPatientRepository
from hospitalpms.ssn import SSNCipher
from hospitalpms.ssn_access import SSNAccessGate, StaticRoleResolver
from hospitalpms.status_service import PatientStatusService
from hospitalpms.survey import SurveySubmission, SurveyTokenService, submit_survey
from hospitalpms.workflow import (
    TRANSITIONS,
    get_available_statuses,
    get_status_label,
    load_transitions_from_yaml,
)

DEMO_SSN = "900101-1234568"
DEMO_HASH_SALT = "demo-hash-salt"


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


def main() -> None:
    configure_logging(AppSettings(environment="demo", log_json=False, log_level="WARNING"))

    _banner("Hospital PMS Synthetic Scenario: Intake to Closure")
    print("All data in this demo is synthetic.\n")

    # ------------------------------------------------------------------
    # Step 1: Workflow table
    # ------------------------------------------------------------------
    _banner("Step 1: Load Status Workflow")

    table_path = Path(__file__).parent / "transitions.yaml"
    if table_path.exists():
        transitions = load_transitions_from_yaml(table_path)
        print(f"Loaded {len(transitions)} transitions from {table_path.name}")
    else:
        transitions = TRANSITIONS
        print(f"Using built-in table ({len(transitions)} transitions)")

    # ------------------------------------------------------------------
    # Step 2: Wiring
    # ------------------------------------------------------------------
    audit_log = AuditLog()
    repository = InMemoryPatientRepository()
    cipher = SSNCipher(SSNSettings(
        ssn_encryption_key=SecretStr("demo-only-master-secret-0123456789abcdef"),
        ssn_encryption_salt=SecretStr("demo-encryption-salt"),
        ssn_hash_salt=SecretStr(DEMO_HASH_SALT),
    ))
    intake = PatientIntakeService(repository, cipher, audit_log, hash_salt=DEMO_HASH_SALT)
    tokens = SurveyTokenService(audit_log)
    status_service = PatientStatusService(repository, audit_log, transitions)
    appointments = AppointmentService(InMemoryAppointmentRepository(), repository, audit_log)
    resolver = StaticRoleResolver({
        "admin_demo": Role.ADMIN,
        "bd_demo": Role.BD,
        "cs_demo": Role.CS,
        "nurse_demo": Role.NURSE,
    })
    gate = SSNAccessGate(
        resolver,
        repository,
        cipher,
        RateLimiter.from_settings(),
        audit_log,
        hash_salt=DEMO_HASH_SALT,
    )

    bd = Actor(user_id="bd_demo", role=Role.BD)
    cs = Actor(user_id="cs_demo", role=Role.CS)

    # ------------------------------------------------------------------
    # Step 3: Survey intake
    # ------------------------------------------------------------------
    _banner("Step 2: Survey Intake")

    token = tokens.create_token(bd.user_id, "Synthetic Patient A")
    print(f"Survey token issued, expires at {token.expires_at.isoformat()}")
    print(f"  link: {tokens.survey_url(token.token)}")

    submitted = submit_survey(
        token.token,
        SurveySubmission(
            name="Synthetic Patient A",
            ssn=DEMO_SSN,
            answers={"preferred_date": "weekday mornings"},
        ),
        tokens,
        intake,
    )
    print(f"Submission accepted: {submitted.success}, new patient: {submitted.created}")
    patient_id = submitted.patient_id
    stored = repository.get(patient_id)
    print(f"  status: {stored.status.value} ({get_status_label(stored.status)})")
    print(f"  ssn stored encrypted, key version {stored.encrypted_ssn.version}")

    # ------------------------------------------------------------------
    # Step 4: Workflow walk
    # ------------------------------------------------------------------
    _banner("Step 3: BD and CS Phases")

    steps = [
        (bd, PatientStatus.ACTIVE, None),
        (bd, PatientStatus.CONSULTED, "Consultation finished, wants a full checkup"),
        (cs, PatientStatus.RESERVATION_IN_PROGRESS, None),
        (cs, PatientStatus.RESERVATION_COMPLETED, "Booked for next Tuesday"),
        (cs, PatientStatus.EXAMINATION_IN_PROGRESS, None),
        (cs, PatientStatus.EXAMINATION_COMPLETED, "All scheduled exams done"),
        (cs, PatientStatus.AWAITING_RESULTS, None),
    ]
    for actor, status, notes in steps:
        result = status_service.change_patient_status(
            actor,
            StatusChangeRequest(patient_id=patient_id, new_status=status, notes=notes),
        )
        print(
            f"{actor.role.value:>3} -> {status.value:<26} "
            f"ok={result.success} cs_manager={result.patient.cs_manager}"
        )
        if status == PatientStatus.RESERVATION_IN_PROGRESS:
            booked = appointments.create_appointment(cs.user_id, CreateAppointmentData(
                patient_id=patient_id,
                scheduled_at=datetime.now(timezone.utc) + timedelta(days=7),
                consultation_type="checkup",
            ))
            appointments.confirm_appointment(cs.user_id, booked.appointment_id)
            print(f"    appointment booked and confirmed for {booked.scheduled_at.date()}")

    print(f"\nCS may now choose: {[s.value for s in get_available_statuses(PatientStatus.AWAITING_RESULTS, Role.CS)]}")

    # ------------------------------------------------------------------
    # Step 5: Rejections
    # ------------------------------------------------------------------
    _banner("Step 4: Rejected Changes")

    denied = status_service.change_patient_status(
        bd, StatusChangeRequest(patient_id=patient_id, new_status=PatientStatus.CLOSED)
    )
    print(f"BD closing the case: ok={denied.success} error={denied.error}")

    no_note = status_service.change_patient_status(
        cs, StatusChangeRequest(patient_id=patient_id, new_status=PatientStatus.CLOSED)
    )
    print(f"CS closing without note: ok={no_note.success} error={no_note.error}")

    closed = status_service.change_patient_status(
        cs,
        StatusChangeRequest(
            patient_id=patient_id,
            new_status=PatientStatus.CLOSED,
            notes="Results delivered",
        ),
    )
    print(f"CS closing with note: ok={closed.success}")

    history = status_service.get_patient_status_history(patient_id)
    print(f"\nHistory ({len(history)} entries, newest first):")
    for entry in history[:3]:
        print(f"  {entry.from_status.value} -> {entry.to_status.value} by {entry.changed_by}")

    # ------------------------------------------------------------------
    # Step 6: National ID access
    # ------------------------------------------------------------------
    _banner("Step 5: National ID Access Gate")

    for user_id, call in (
        ("cs_demo", gate.decrypt_patient_ssn),
        ("admin_demo", gate.decrypt_patient_ssn),
        ("nurse_demo", gate.view_masked_ssn),
        ("intruder", gate.decrypt_patient_ssn),
    ):
        access = call(user_id, patient_id, ip_address="127.0.0.1")
        shown = access.ssn if access.granted else access.error
        print(f"{call.__name__:<20} {user_id:<11} -> {access.http_status} {shown}")

    lookup = gate.lookup_patient_by_ssn("bd_demo", DEMO_SSN)
    print(f"lookup_patient_by_ssn bd_demo     -> {lookup.http_status} {lookup.ssn}")

    # ------------------------------------------------------------------
    # Step 7: Audit export
    # ------------------------------------------------------------------
    _banner("Step 6: Audit Trail Export")

    export = export_audit_for_review(audit_log, Role.ADMIN)
    print(json.dumps(export["export_metadata"], indent=2))
    valid, broken_at = audit_log.verify_chain()
    print(f"\nFull chain verification: valid={valid}, broken_at={broken_at}")

    _banner("Scenario Complete")
    print("All data was synthetic.")


if __name__ == "__main__":
    main()
