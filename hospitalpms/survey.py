"""
Tokenized survey intake.

Staff issue a single-use survey token for a prospective patient and share
the survey link.  The patient fills in the survey, including their national
ID; on submission the token is checked, the patient is registered (or an
existing record with the same national ID is refreshed) and the token is
marked used.

A token is valid while it exists, has not expired and has not been used.
Expired tokens that were never used are removed by ``cleanup_expired``.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import structlog
from pydantic import BaseModel, Field

from hospitalpms.audit import AuditAction, AuditLog
from hospitalpms.config import get_app_settings
from hospitalpms.intake import InvalidSSNError, IntakeResult, PatientIntakeService
from hospitalpms.repository import ConcurrentModificationError, DuplicatePatientError

logger = structlog.get_logger(__name__)


MIN_TTL_HOURS = 1
MAX_TTL_HOURS = 168

REASON_MALFORMED = "유효하지 않은 토큰 형식입니다"
REASON_NOT_FOUND = "토큰을 찾을 수 없습니다"
REASON_EXPIRED = "토큰이 만료되었습니다"
REASON_USED = "이미 사용된 토큰입니다"
MSG_SUBMISSION_CONFLICT = "같은 환자 정보가 동시에 처리되었습니다. 잠시 후 다시 시도해주세요."


class SurveyToken(BaseModel):
    token: str = Field(default_factory=lambda: str(uuid.uuid4()))
    patient_name: str = Field(..., min_length=1)
    patient_phone: Optional[str] = None
    patient_email: Optional[str] = None
    created_by: str
    created_at: datetime
    expires_at: datetime
    used_at: Optional[datetime] = None
    patient_id: Optional[str] = None
    survey_data: Optional[dict[str, Any]] = None


class TokenValidationResult(BaseModel):
    valid: bool
    token: Optional[SurveyToken] = None
    reason: Optional[str] = None


class SurveySubmission(BaseModel):
    """Answers submitted through a survey link."""

    name: str = Field(..., min_length=1)
    ssn: str = Field(..., min_length=1)
    phone: Optional[str] = None
    email: Optional[str] = None
    answers: dict[str, Any] = Field(default_factory=dict)


class SurveySubmissionResult(BaseModel):
    success: bool
    error: Optional[str] = None
    patient_id: Optional[str] = None
    created: Optional[bool] = None


class SurveyTokenService:
    """Issues and validates survey tokens (in-process store).

    Args:
        audit_log: Sink for token creation and cleanup records.
        default_ttl_hours: Lifetime used when ``create_token`` is not given
            one; defaults to ``HOSPITAL_PMS_SURVEY_TOKEN_TTL_HOURS``.
        app_url: Base URL survey links point at; defaults to
            ``HOSPITAL_PMS_APP_URL``.
        clock: Source of the current UTC time.
    """

    def __init__(
        self,
        audit_log: AuditLog,
        default_ttl_hours: Optional[int] = None,
        app_url: Optional[str] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        if default_ttl_hours is None or app_url is None:
            settings = get_app_settings()
            if default_ttl_hours is None:
                default_ttl_hours = settings.survey_token_ttl_hours
            if app_url is None:
                app_url = settings.app_url
        _check_ttl(default_ttl_hours)
        self._audit_log = audit_log
        self._default_ttl_hours = default_ttl_hours
        self._app_url = app_url.rstrip("/")
        self._clock = clock
        self._tokens: dict[str, SurveyToken] = {}

    def survey_url(self, token: str) -> str:
        """Link a patient opens to fill in the survey."""
        return f"{self._app_url}/survey/{token}"

    def create_token(
        self,
        created_by: str,
        patient_name: str,
        patient_phone: Optional[str] = None,
        patient_email: Optional[str] = None,
        expires_in_hours: Optional[int] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> SurveyToken:
        """Issue a new single-use token.

        Raises:
            ValueError: If ``expires_in_hours`` is outside 1-168.
        """
        ttl = expires_in_hours if expires_in_hours is not None else self._default_ttl_hours
        _check_ttl(ttl)

        now = self._clock()
        token = SurveyToken(
            patient_name=patient_name,
            patient_phone=patient_phone,
            patient_email=patient_email,
            created_by=created_by,
            created_at=now,
            expires_at=now + timedelta(hours=ttl),
            survey_data=metadata,
        )
        self._tokens[token.token] = token

        self._audit_log.record(
            user_id=created_by,
            action=AuditAction.SURVEY_TOKEN_CREATED,
            table_name="survey_tokens",
            record_id=token.token,
            new_data={"patient_name": patient_name},
        )
        return token.model_copy(deep=True)

    def validate_token(self, token: str) -> TokenValidationResult:
        """Check that a token exists, has not expired and is unused."""
        try:
            uuid.UUID(token)
        except (ValueError, TypeError, AttributeError):
            return TokenValidationResult(valid=False, reason=REASON_MALFORMED)

        stored = self._tokens.get(token)
        if stored is None:
            return TokenValidationResult(valid=False, reason=REASON_NOT_FOUND)
        if self._clock() > stored.expires_at:
            return TokenValidationResult(valid=False, reason=REASON_EXPIRED)
        if stored.used_at is not None:
            return TokenValidationResult(valid=False, reason=REASON_USED)
        return TokenValidationResult(valid=True, token=stored.model_copy(deep=True))

    def mark_used(
        self,
        token: str,
        patient_id: Optional[str] = None,
        answers: Optional[dict[str, Any]] = None,
    ) -> None:
        """Record that a token has been consumed, keeping the survey answers.

        Raises:
            KeyError: If the token does not exist.
        """
        if token not in self._tokens:
            raise KeyError(f"Survey token '{token}' not found")
        stored = self._tokens[token]
        stored.used_at = self._clock()
        stored.patient_id = patient_id
        if answers:
            stored.survey_data = {**(stored.survey_data or {}), **answers}

    def list_tokens(self, created_by: str) -> list[SurveyToken]:
        """Tokens issued by one user, newest first."""
        tokens = [
            t.model_copy(deep=True)
            for t in self._tokens.values()
            if t.created_by == created_by
        ]
        return sorted(tokens, key=lambda t: t.created_at, reverse=True)

    def cleanup_expired(self) -> int:
        """Delete expired tokens that were never used.  Returns the count."""
        now = self._clock()
        expired = [
            key for key, t in self._tokens.items()
            if t.expires_at < now and t.used_at is None
        ]
        for key in expired:
            del self._tokens[key]

        self._audit_log.record(
            user_id="system",
            action=AuditAction.SURVEY_TOKENS_CLEANUP,
            table_name="survey_tokens",
            new_data={"deleted_count": len(expired)},
        )
        logger.info("survey_tokens_cleaned_up", deleted_count=len(expired))
        return len(expired)


def submit_survey(
    token: str,
    submission: SurveySubmission,
    tokens: SurveyTokenService,
    intake: PatientIntakeService,
) -> SurveySubmissionResult:
    """Register the submitting patient and consume the token.

    Invalid tokens, invalid national IDs and registrations that collide
    with a concurrent write are reported in the result; the token stays
    unused in each case so the patient can retry.
    """
    validation = tokens.validate_token(token)
    if not validation.valid or validation.token is None:
        return SurveySubmissionResult(success=False, error=validation.reason)

    issued = validation.token
    try:
        result: IntakeResult = intake.register_patient(
            actor_id=issued.created_by,
            name=submission.name,
            ssn=submission.ssn,
            phone=submission.phone or issued.patient_phone,
            email=submission.email or issued.patient_email,
        )
    except InvalidSSNError as exc:
        return SurveySubmissionResult(success=False, error=str(exc))
    except (DuplicatePatientError, ConcurrentModificationError):
        logger.warning("survey_submission_conflict", token_created_by=issued.created_by)
        return SurveySubmissionResult(success=False, error=MSG_SUBMISSION_CONFLICT)

    tokens.mark_used(token, result.patient.patient_id, submission.answers)
    logger.info(
        "survey_submitted",
        patient_id=result.patient.patient_id,
        created=result.created,
    )
    return SurveySubmissionResult(
        success=True,
        patient_id=result.patient.patient_id,
        created=result.created,
    )


def _check_ttl(hours: int) -> None:
    if not MIN_TTL_HOURS <= hours <= MAX_TTL_HOURS:
        raise ValueError(
            f"expires_in_hours must be between {MIN_TTL_HOURS} and {MAX_TTL_HOURS}, got {hours}"
        )
