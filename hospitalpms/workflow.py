"""
Patient Status Workflow Engine.

A declarative transition table maps ``(from_status, to_status)`` edges to
the roles allowed to perform them, plus two per-edge side conditions:

* ``requires_note`` -- the change must carry a reason.
* ``auto_assign_manager`` -- a CS manager is assigned as part of the change.

**Pipeline:**

    pending -> active -> consulted -> reservation_in_progress
        -> reservation_completed -> examination_in_progress
        -> examination_completed -> awaiting_results -> closed

``pending``, ``active`` and ``consulted`` are worked by BD; the
``consulted -> reservation_in_progress`` edge hands the patient over to CS,
who own the remaining stages.  Admins and managers may close a patient from
any open stage and may reopen a closed patient (``closed -> pending``).

Every function in this module is pure over the table it is given.
Rejections are returned as ``StatusValidationResult`` values and never
raised; the caller decides how to surface them.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional, Sequence, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from hospitalpms.models import PatientStatus, Role


StatusLike = Union[PatientStatus, str]
RoleLike = Union[Role, str]


class TransitionTableError(ValueError):
    """Raised when a transition table violates its structural invariants."""
    pass


# ---------------------------------------------------------------------------
# Transition rule model
# ---------------------------------------------------------------------------

class StatusTransition(BaseModel):
    """An immutable rule admitting one ``from_status -> to_status`` edge."""

    model_config = ConfigDict(frozen=True)

    from_status: PatientStatus
    to_status: PatientStatus
    allowed_roles: frozenset[Role] = Field(..., min_length=1)
    requires_note: bool = False
    auto_assign_manager: bool = False

    @field_validator("to_status")
    @classmethod
    def no_self_loop(cls, v: PatientStatus, info) -> PatientStatus:
        if info.data.get("from_status") == v:
            raise ValueError(f"Transition from '{v.value}' to itself is not allowed")
        return v

    def permits(self, role: Role) -> bool:
        return role in self.allowed_roles


class StatusValidationResult(BaseModel):
    """Outcome of ``validate_status_transition``."""

    is_valid: bool
    error: Optional[str] = None
    requires_note: Optional[bool] = None
    allowed_next_statuses: Optional[list[PatientStatus]] = None


_MANAGERS = frozenset({Role.ADMIN, Role.MANAGER})
_BD_PHASE = frozenset({Role.ADMIN, Role.MANAGER, Role.BD})
_CS_PHASE = frozenset({Role.ADMIN, Role.MANAGER, Role.CS})


def _edge(
    from_status: PatientStatus,
    to_status: PatientStatus,
    roles: frozenset[Role],
    requires_note: bool = False,
    auto_assign_manager: bool = False,
) -> StatusTransition:
    return StatusTransition(
        from_status=from_status,
        to_status=to_status,
        allowed_roles=roles,
        requires_note=requires_note,
        auto_assign_manager=auto_assign_manager,
    )


# ---------------------------------------------------------------------------
# Transition table
# ---------------------------------------------------------------------------

TRANSITIONS: tuple[StatusTransition, ...] = (
    # BD phase
    _edge(PatientStatus.PENDING, PatientStatus.ACTIVE, _BD_PHASE),
    _edge(PatientStatus.ACTIVE, PatientStatus.CONSULTED, _BD_PHASE, requires_note=True),
    # Handover to CS
    _edge(
        PatientStatus.CONSULTED,
        PatientStatus.RESERVATION_IN_PROGRESS,
        _CS_PHASE,
        auto_assign_manager=True,
    ),
    # CS phase
    _edge(
        PatientStatus.RESERVATION_IN_PROGRESS,
        PatientStatus.RESERVATION_COMPLETED,
        _CS_PHASE,
        requires_note=True,
    ),
    _edge(
        PatientStatus.RESERVATION_COMPLETED,
        PatientStatus.EXAMINATION_IN_PROGRESS,
        _CS_PHASE,
    ),
    _edge(
        PatientStatus.EXAMINATION_IN_PROGRESS,
        PatientStatus.EXAMINATION_COMPLETED,
        _CS_PHASE,
        requires_note=True,
    ),
    _edge(
        PatientStatus.EXAMINATION_COMPLETED,
        PatientStatus.AWAITING_RESULTS,
        _CS_PHASE,
    ),
    _edge(PatientStatus.AWAITING_RESULTS, PatientStatus.CLOSED, _CS_PHASE, requires_note=True),
    # Early closure by admin/manager
    _edge(PatientStatus.PENDING, PatientStatus.CLOSED, _MANAGERS, requires_note=True),
    _edge(PatientStatus.ACTIVE, PatientStatus.CLOSED, _MANAGERS, requires_note=True),
    _edge(PatientStatus.CONSULTED, PatientStatus.CLOSED, _MANAGERS, requires_note=True),
    _edge(
        PatientStatus.RESERVATION_IN_PROGRESS,
        PatientStatus.CLOSED,
        _MANAGERS,
        requires_note=True,
    ),
    _edge(
        PatientStatus.RESERVATION_COMPLETED,
        PatientStatus.CLOSED,
        _MANAGERS,
        requires_note=True,
    ),
    _edge(
        PatientStatus.EXAMINATION_IN_PROGRESS,
        PatientStatus.CLOSED,
        _MANAGERS,
        requires_note=True,
    ),
    _edge(
        PatientStatus.EXAMINATION_COMPLETED,
        PatientStatus.CLOSED,
        _MANAGERS,
        requires_note=True,
    ),
    # Reactivation
    _edge(PatientStatus.CLOSED, PatientStatus.PENDING, _MANAGERS, requires_note=True),
)

TERMINAL_STATUS = PatientStatus.CLOSED

BD_MANAGED_STATUSES = frozenset({
    PatientStatus.PENDING,
    PatientStatus.ACTIVE,
    PatientStatus.CONSULTED,
})

CS_MANAGED_STATUSES = frozenset({
    PatientStatus.RESERVATION_IN_PROGRESS,
    PatientStatus.RESERVATION_COMPLETED,
    PatientStatus.EXAMINATION_IN_PROGRESS,
    PatientStatus.EXAMINATION_COMPLETED,
    PatientStatus.AWAITING_RESULTS,
    PatientStatus.CLOSED,
})


# ---------------------------------------------------------------------------
# Status display metadata
# ---------------------------------------------------------------------------

class StatusMetadata(BaseModel):
    """Display information for a status."""

    model_config = ConfigDict(frozen=True)

    label: str
    description: str
    color: str
    next_actions: tuple[str, ...] = ()


STATUS_METADATA: dict[PatientStatus, StatusMetadata] = {
    PatientStatus.PENDING: StatusMetadata(
        label="대기중",
        description="BD 배정된 설문 작성 완료",
        color="secondary",
        next_actions=("BD 문진 상담 시작", "환자 정보 확인"),
    ),
    PatientStatus.ACTIVE: StatusMetadata(
        label="활성",
        description="BD 상담 진행중",
        color="default",
        next_actions=("추가 문진 진행", "희망검사 조사", "상담 완료 처리"),
    ),
    PatientStatus.CONSULTED: StatusMetadata(
        label="상담완료",
        description="BD 상담 완료, CS 이관 대기",
        color="primary",
        next_actions=("CS 담당자 배정", "예약 상담 시작"),
    ),
    PatientStatus.RESERVATION_IN_PROGRESS: StatusMetadata(
        label="예약상담중",
        description="CS 예약 상담 진행",
        color="info",
        next_actions=("검사 일정 조율", "예약 확정"),
    ),
    PatientStatus.RESERVATION_COMPLETED: StatusMetadata(
        label="예약완료",
        description="검사 예약 완료",
        color="success",
        next_actions=("검사 전 안내", "검사 당일 대기"),
    ),
    PatientStatus.EXAMINATION_IN_PROGRESS: StatusMetadata(
        label="검사중",
        description="검사 당일",
        color="warning",
        next_actions=("검사 진행 확인", "검사 완료 처리"),
    ),
    PatientStatus.EXAMINATION_COMPLETED: StatusMetadata(
        label="검사완료",
        description="검사 종료",
        color="success",
        next_actions=("결과 대기", "추가 검사 확인"),
    ),
    PatientStatus.AWAITING_RESULTS: StatusMetadata(
        label="검사결과 대기",
        description="모든 검사 결과 대기중",
        color="info",
        next_actions=("결과 통보 준비", "최종 확인"),
    ),
    PatientStatus.CLOSED: StatusMetadata(
        label="종결",
        description="모든 프로세스 완료",
        color="muted",
        next_actions=("기록 보관", "재등록 가능"),
    ),
}


def get_status_label(status: PatientStatus) -> str:
    meta = STATUS_METADATA.get(status)
    return meta.label if meta else str(status)


def get_status_color(status: PatientStatus) -> str:
    meta = STATUS_METADATA.get(status)
    return meta.color if meta else "default"


def get_status_description(status: PatientStatus) -> str:
    meta = STATUS_METADATA.get(status)
    return meta.description if meta else ""


def get_next_actions(status: PatientStatus) -> list[str]:
    meta = STATUS_METADATA.get(status)
    return list(meta.next_actions) if meta else []


# ---------------------------------------------------------------------------
# Table invariants
# ---------------------------------------------------------------------------

def check_transition_table(transitions: Iterable[StatusTransition]) -> None:
    """Verify the structural invariants of a transition table.

    * At most one rule per ``(from, to)`` pair.
    * Every status has at least one outgoing edge (``closed`` included,
      through its reactivation edge).

    Args:
        transitions: The table to check.

    Raises:
        TransitionTableError: On the first violated invariant.
    """
    seen: set[tuple[PatientStatus, PatientStatus]] = set()
    sources: set[PatientStatus] = set()
    for rule in transitions:
        key = (rule.from_status, rule.to_status)
        if key in seen:
            raise TransitionTableError(
                f"Duplicate transition rule '{rule.from_status.value}' -> "
                f"'{rule.to_status.value}'"
            )
        seen.add(key)
        sources.add(rule.from_status)

    missing = [s.value for s in PatientStatus if s not in sources]
    if missing:
        raise TransitionTableError(
            f"Statuses without any outgoing transition: {missing}"
        )


check_transition_table(TRANSITIONS)


def load_transitions_from_yaml(path: str | Path) -> tuple[StatusTransition, ...]:
    """Load a transition table from a YAML file.

    Example YAML structure::

        transitions:
          - from_status: pending
            to_status: active
            allowed_roles: [admin, manager, bd]
          - from_status: active
            to_status: consulted
            allowed_roles: [admin, manager, bd]
            requires_note: true
            ...

    Args:
        path: Path to the YAML file.

    Returns:
        The validated table.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML structure is invalid.
        TransitionTableError: If the table violates its invariants.
        pydantic.ValidationError: If any rule fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Transition file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "transitions" not in raw:
        raise ValueError(
            "YAML file must contain a top-level 'transitions' key with a list of rules."
        )
    entries = raw["transitions"]
    if not isinstance(entries, list):
        raise ValueError("'transitions' must be a list of rule objects.")

    rules: list[StatusTransition] = []
    for idx, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ValueError(f"Transition entry at index {idx} must be a mapping.")
        rules.append(StatusTransition(**entry))

    check_transition_table(rules)
    return tuple(rules)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def _coerce_status(value: StatusLike) -> Optional[PatientStatus]:
    if isinstance(value, PatientStatus):
        return value
    try:
        return PatientStatus(value)
    except ValueError:
        return None


def _coerce_role(value: RoleLike) -> Optional[Role]:
    if isinstance(value, Role):
        return value
    try:
        return Role(value)
    except ValueError:
        return None


def _label(value: StatusLike | RoleLike) -> str:
    return value.value if isinstance(value, (PatientStatus, Role)) else str(value)


def find_transition(
    from_status: StatusLike,
    to_status: StatusLike,
    transitions: Sequence[StatusTransition] = TRANSITIONS,
) -> Optional[StatusTransition]:
    """Return the rule for ``from_status -> to_status``, or None."""
    source = _coerce_status(from_status)
    target = _coerce_status(to_status)
    if source is None or target is None:
        return None
    for rule in transitions:
        if rule.from_status == source and rule.to_status == target:
            return rule
    return None


def validate_status_transition(
    current_status: StatusLike,
    target_status: StatusLike,
    role: RoleLike,
    transitions: Sequence[StatusTransition] = TRANSITIONS,
) -> StatusValidationResult:
    """Decide whether ``role`` may move a patient from one status to another.

    Checks run in this order and stop at the first failure:

    1. Same status -- no-op transitions are forbidden.
    2. No rule leaves ``current_status``.
    3. No rule for ``current_status -> target_status``; the result lists
       every status reachable from ``current_status``.
    4. ``role`` is not among the rule's allowed roles.

    Args:
        current_status: The patient's status as read from storage.
        target_status: The requested status.
        role: The acting user's role.
        transitions: The table to validate against.

    Returns:
        A ``StatusValidationResult``.  On success it carries
        ``requires_note`` and the statuses ``role`` may move to from
        ``current_status``.
    """
    if _label(current_status) == _label(target_status):
        return StatusValidationResult(
            is_valid=False,
            error="동일한 상태로는 변경할 수 없습니다.",
        )

    source = _coerce_status(current_status)
    outgoing = [r for r in transitions if source is not None and r.from_status == source]
    if not outgoing:
        return StatusValidationResult(
            is_valid=False,
            error=f"'{_label(current_status)}' 상태에서는 다른 상태로 변경할 수 없습니다.",
        )

    target = _coerce_status(target_status)
    rule = next((r for r in outgoing if r.to_status == target), None)
    if rule is None:
        return StatusValidationResult(
            is_valid=False,
            error=(
                f"'{_label(current_status)}'에서 '{_label(target_status)}'로 "
                "직접 변경할 수 없습니다."
            ),
            allowed_next_statuses=[r.to_status for r in outgoing],
        )

    actor_role = _coerce_role(role)
    if actor_role is None or not rule.permits(actor_role):
        return StatusValidationResult(
            is_valid=False,
            error=f"'{_label(role)}' 역할은 이 상태 변경을 수행할 권한이 없습니다.",
        )

    return StatusValidationResult(
        is_valid=True,
        requires_note=rule.requires_note,
        allowed_next_statuses=[r.to_status for r in outgoing if r.permits(actor_role)],
    )


def get_available_transitions(
    current_status: StatusLike,
    role: RoleLike,
    transitions: Sequence[StatusTransition] = TRANSITIONS,
) -> list[StatusTransition]:
    """Return the rules ``role`` may apply from ``current_status``."""
    source = _coerce_status(current_status)
    actor_role = _coerce_role(role)
    if source is None or actor_role is None:
        return []
    return [
        r for r in transitions
        if r.from_status == source and r.permits(actor_role)
    ]


def get_available_statuses(
    current_status: StatusLike,
    role: RoleLike,
    transitions: Sequence[StatusTransition] = TRANSITIONS,
) -> list[PatientStatus]:
    """Return the statuses a selector should offer to ``role``."""
    return [
        r.to_status
        for r in get_available_transitions(current_status, role, transitions)
    ]


def requires_note(
    from_status: StatusLike,
    to_status: StatusLike,
    transitions: Sequence[StatusTransition] = TRANSITIONS,
) -> Optional[bool]:
    """Whether the edge needs a note; None if no such edge exists."""
    rule = find_transition(from_status, to_status, transitions)
    return rule.requires_note if rule is not None else None


def should_auto_assign_manager(
    from_status: StatusLike,
    to_status: StatusLike,
    transitions: Sequence[StatusTransition] = TRANSITIONS,
) -> Optional[bool]:
    """Whether the edge assigns a CS manager; None if no such edge exists."""
    rule = find_transition(from_status, to_status, transitions)
    return rule.auto_assign_manager if rule is not None else None


def can_user_change_status(
    role: RoleLike,
    from_status: StatusLike,
    to_status: StatusLike,
    transitions: Sequence[StatusTransition] = TRANSITIONS,
) -> bool:
    rule = find_transition(from_status, to_status, transitions)
    actor_role = _coerce_role(role)
    return rule is not None and actor_role is not None and rule.permits(actor_role)


def is_handover_to_cs(from_status: StatusLike, to_status: StatusLike) -> bool:
    """True exactly for the BD -> CS handover edge."""
    return (
        _coerce_status(from_status) == PatientStatus.CONSULTED
        and _coerce_status(to_status) == PatientStatus.RESERVATION_IN_PROGRESS
    )


def is_status_managed_by_role(status: StatusLike, role: RoleLike) -> bool:
    """Whether ``status`` belongs to ``role``'s phase (dashboard filtering)."""
    source = _coerce_status(status)
    actor_role = _coerce_role(role)
    if source is None or actor_role is None:
        return False
    if actor_role in _MANAGERS:
        return True
    if actor_role == Role.BD:
        return source in BD_MANAGED_STATUSES
    if actor_role == Role.CS:
        return source in CS_MANAGED_STATUSES
    return False
