"""
Tests for hospitalpms.workflow -- Patient Status Workflow Engine.

Covers: table invariants (closure, no duplicate edges), transition
validation in every rejection branch, role-filtered availability, edge
flag lookups, the BD -> CS handover, phase ownership, status metadata and
YAML table loading.
"""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from hospitalpms.models import PatientStatus, Role
from hospitalpms.workflow import (
    STATUS_METADATA,
    TERMINAL_STATUS,
    TRANSITIONS,
    StatusTransition,
    TransitionTableError,
    can_user_change_status,
    check_transition_table,
    find_transition,
    get_available_statuses,
    get_available_transitions,
    get_next_actions,
    get_status_label,
    is_handover_to_cs,
    is_status_managed_by_role,
    load_transitions_from_yaml,
    requires_note,
    should_auto_assign_manager,
    validate_status_transition,
)


# ---------------------------------------------------------------------------
# 1. Table invariants
# ---------------------------------------------------------------------------

class TestTransitionTable:
    def test_every_status_has_an_outgoing_edge(self):
        sources = {t.from_status for t in TRANSITIONS}
        for status in PatientStatus:
            assert status in sources, f"{status.value} has no outgoing transition"

    def test_terminal_status_only_reopens(self):
        outgoing = [t for t in TRANSITIONS if t.from_status == TERMINAL_STATUS]
        assert len(outgoing) == 1
        assert outgoing[0].to_status == PatientStatus.PENDING

    def test_no_duplicate_edges(self):
        edges = [(t.from_status, t.to_status) for t in TRANSITIONS]
        assert len(edges) == len(set(edges))

    def test_check_rejects_duplicate_edge(self):
        duplicate = StatusTransition(
            from_status=PatientStatus.PENDING,
            to_status=PatientStatus.ACTIVE,
            allowed_roles=frozenset({Role.ADMIN}),
        )
        with pytest.raises(TransitionTableError, match="Duplicate"):
            check_transition_table(TRANSITIONS + (duplicate,))

    def test_check_rejects_status_without_exit(self):
        without_reopen = tuple(
            t for t in TRANSITIONS if t.from_status != PatientStatus.CLOSED
        )
        with pytest.raises(TransitionTableError, match="closed"):
            check_transition_table(without_reopen)

    def test_self_loop_rule_rejected(self):
        with pytest.raises(Exception):
            StatusTransition(
                from_status=PatientStatus.ACTIVE,
                to_status=PatientStatus.ACTIVE,
                allowed_roles=frozenset({Role.ADMIN}),
            )

    def test_empty_role_set_rejected(self):
        with pytest.raises(Exception):
            StatusTransition(
                from_status=PatientStatus.ACTIVE,
                to_status=PatientStatus.CONSULTED,
                allowed_roles=frozenset(),
            )

    def test_admin_and_manager_can_close_every_open_status(self):
        for status in PatientStatus:
            if status == PatientStatus.CLOSED:
                continue
            for role in (Role.ADMIN, Role.MANAGER):
                assert can_user_change_status(role, status, PatientStatus.CLOSED)


# ---------------------------------------------------------------------------
# 2. validate_status_transition
# ---------------------------------------------------------------------------

class TestValidateStatusTransition:
    def test_bd_starts_consultation(self):
        result = validate_status_transition("pending", "active", "bd")
        assert result.is_valid is True
        assert result.requires_note is False
        assert result.allowed_next_statuses == [PatientStatus.ACTIVE]
        assert result.error is None

    def test_same_status_rejected(self):
        result = validate_status_transition(
            PatientStatus.PENDING, PatientStatus.PENDING, Role.ADMIN
        )
        assert result.is_valid is False
        assert "동일한 상태로는 변경할 수 없습니다" in result.error

    def test_missing_edge_lists_reachable_statuses(self):
        result = validate_status_transition("active", "inactive", "cs")
        assert result.is_valid is False
        assert result.error == "'active'에서 'inactive'로 직접 변경할 수 없습니다."
        assert result.allowed_next_statuses == [
            PatientStatus.CONSULTED,
            PatientStatus.CLOSED,
        ]

    def test_skipping_a_stage_is_rejected(self):
        result = validate_status_transition(
            PatientStatus.PENDING, PatientStatus.CONSULTED, Role.ADMIN
        )
        assert result.is_valid is False
        assert "직접 변경할 수 없습니다" in result.error

    def test_unknown_current_status_has_no_exit(self):
        result = validate_status_transition("discharged", "pending", "cs")
        assert result.is_valid is False
        assert result.error == "'discharged' 상태에서는 다른 상태로 변경할 수 없습니다."
        assert result.allowed_next_statuses is None

    def test_role_not_allowed(self):
        result = validate_status_transition(
            PatientStatus.ACTIVE, PatientStatus.CONSULTED, Role.CS
        )
        assert result.is_valid is False
        assert result.error == "'cs' 역할은 이 상태 변경을 수행할 권한이 없습니다."

    def test_bd_cannot_close(self):
        result = validate_status_transition(
            PatientStatus.ACTIVE, PatientStatus.CLOSED, Role.BD
        )
        assert result.is_valid is False
        assert "권한이 없습니다" in result.error

    def test_unknown_role_not_allowed(self):
        result = validate_status_transition("pending", "active", "janitor")
        assert result.is_valid is False
        assert "'janitor'" in result.error

    def test_note_required_flag(self):
        result = validate_status_transition(
            PatientStatus.ACTIVE, PatientStatus.CONSULTED, Role.BD
        )
        assert result.is_valid is True
        assert result.requires_note is True

    def test_allowed_next_statuses_filtered_by_role(self):
        admin = validate_status_transition(
            PatientStatus.ACTIVE, PatientStatus.CONSULTED, Role.ADMIN
        )
        bd = validate_status_transition(
            PatientStatus.ACTIVE, PatientStatus.CONSULTED, Role.BD
        )
        assert admin.allowed_next_statuses == [
            PatientStatus.CONSULTED,
            PatientStatus.CLOSED,
        ]
        assert bd.allowed_next_statuses == [PatientStatus.CONSULTED]

    def test_reactivation_by_manager(self):
        result = validate_status_transition(
            PatientStatus.CLOSED, PatientStatus.PENDING, Role.MANAGER
        )
        assert result.is_valid is True
        assert result.requires_note is True

    def test_never_raises_on_garbage(self):
        result = validate_status_transition("", "???", "")
        assert result.is_valid is False


# ---------------------------------------------------------------------------
# 3. Availability
# ---------------------------------------------------------------------------

class TestAvailability:
    def test_admin_from_pending(self):
        transitions = get_available_transitions(PatientStatus.PENDING, Role.ADMIN)
        assert [t.to_status for t in transitions] == [
            PatientStatus.ACTIVE,
            PatientStatus.CLOSED,
        ]

    def test_bd_from_pending(self):
        statuses = get_available_statuses(PatientStatus.PENDING, Role.BD)
        assert statuses == [PatientStatus.ACTIVE]

    def test_cs_from_active_has_nothing(self):
        assert get_available_statuses(PatientStatus.ACTIVE, Role.CS) == []

    def test_cs_from_awaiting_results_can_close(self):
        statuses = get_available_statuses(PatientStatus.AWAITING_RESULTS, Role.CS)
        assert statuses == [PatientStatus.CLOSED]

    def test_invalid_status_returns_empty(self):
        assert get_available_transitions("invalid", Role.ADMIN) == []

    def test_doctor_has_no_transitions(self):
        for status in PatientStatus:
            assert get_available_statuses(status, Role.DOCTOR) == []


# ---------------------------------------------------------------------------
# 4. Edge flags
# ---------------------------------------------------------------------------

class TestEdgeFlags:
    def test_requires_note(self):
        assert requires_note(PatientStatus.ACTIVE, PatientStatus.CONSULTED) is True
        assert requires_note(PatientStatus.PENDING, PatientStatus.CLOSED) is True
        assert requires_note(PatientStatus.PENDING, PatientStatus.ACTIVE) is False

    def test_requires_note_unknown_edge_is_none(self):
        assert requires_note(PatientStatus.PENDING, PatientStatus.AWAITING_RESULTS) is None

    def test_auto_assign_manager_only_on_handover(self):
        flagged = [
            (t.from_status, t.to_status) for t in TRANSITIONS if t.auto_assign_manager
        ]
        assert flagged == [
            (PatientStatus.CONSULTED, PatientStatus.RESERVATION_IN_PROGRESS)
        ]
        assert should_auto_assign_manager(
            PatientStatus.CONSULTED, PatientStatus.RESERVATION_IN_PROGRESS
        ) is True
        assert should_auto_assign_manager(
            PatientStatus.PENDING, PatientStatus.ACTIVE
        ) is False

    def test_auto_assign_unknown_edge_is_none(self):
        assert should_auto_assign_manager(PatientStatus.CLOSED, PatientStatus.ACTIVE) is None

    def test_find_transition(self):
        rule = find_transition("consulted", "reservation_in_progress")
        assert rule is not None
        assert rule.allowed_roles == frozenset({Role.ADMIN, Role.MANAGER, Role.CS})
        assert find_transition("consulted", "nowhere") is None

    def test_can_user_change_status(self):
        assert can_user_change_status(Role.ADMIN, PatientStatus.PENDING, PatientStatus.ACTIVE)
        assert not can_user_change_status(Role.BD, PatientStatus.ACTIVE, PatientStatus.CLOSED)
        assert not can_user_change_status(Role.CS, PatientStatus.ACTIVE, PatientStatus.CONSULTED)


# ---------------------------------------------------------------------------
# 5. Handover and phase ownership
# ---------------------------------------------------------------------------

class TestOwnership:
    def test_handover_edge(self):
        assert is_handover_to_cs("consulted", "reservation_in_progress") is True

    def test_other_edges_are_not_handover(self):
        for rule in TRANSITIONS:
            if rule.from_status == PatientStatus.CONSULTED and \
                    rule.to_status == PatientStatus.RESERVATION_IN_PROGRESS:
                continue
            assert is_handover_to_cs(rule.from_status, rule.to_status) is False

    def test_bd_and_cs_partition_statuses(self):
        for status in PatientStatus:
            bd = is_status_managed_by_role(status, Role.BD)
            cs = is_status_managed_by_role(status, Role.CS)
            assert bd != cs, status

    def test_bd_owns_consultation_phase(self):
        assert is_status_managed_by_role(PatientStatus.CONSULTED, Role.BD)
        assert not is_status_managed_by_role(PatientStatus.CLOSED, Role.BD)

    def test_managers_own_everything(self):
        for status in PatientStatus:
            assert is_status_managed_by_role(status, Role.ADMIN)
            assert is_status_managed_by_role(status, Role.MANAGER)

    def test_clinical_roles_own_nothing(self):
        assert not is_status_managed_by_role(PatientStatus.PENDING, Role.NURSE)


# ---------------------------------------------------------------------------
# 6. Metadata
# ---------------------------------------------------------------------------

class TestStatusMetadata:
    def test_every_status_has_metadata(self):
        assert set(STATUS_METADATA) == set(PatientStatus)

    def test_labels(self):
        assert get_status_label(PatientStatus.PENDING) == "대기중"
        assert get_status_label(PatientStatus.CLOSED) == "종결"

    def test_next_actions_is_a_copy(self):
        actions = get_next_actions(PatientStatus.ACTIVE)
        actions.append("x")
        assert "x" not in get_next_actions(PatientStatus.ACTIVE)


# ---------------------------------------------------------------------------
# 7. YAML loading
# ---------------------------------------------------------------------------

def _dump_table(tmp_path: Path, rules: list[dict]) -> Path:
    path = tmp_path / "transitions.yaml"
    path.write_text(yaml.safe_dump({"transitions": rules}), encoding="utf-8")
    return path


def _builtin_as_dicts() -> list[dict]:
    return [
        {
            "from_status": t.from_status.value,
            "to_status": t.to_status.value,
            "allowed_roles": sorted(r.value for r in t.allowed_roles),
            "requires_note": t.requires_note,
            "auto_assign_manager": t.auto_assign_manager,
        }
        for t in TRANSITIONS
    ]


class TestYamlLoading:
    def test_builtin_table_survives_yaml(self, tmp_path):
        loaded = load_transitions_from_yaml(_dump_table(tmp_path, _builtin_as_dicts()))
        assert loaded == TRANSITIONS

    def test_loaded_table_drives_validation(self, tmp_path):
        rules = _builtin_as_dicts()
        for rule in rules:
            if rule["from_status"] == "pending" and rule["to_status"] == "active":
                rule["requires_note"] = True
        table = load_transitions_from_yaml(_dump_table(tmp_path, rules))

        result = validate_status_transition("pending", "active", "bd", table)
        assert result.requires_note is True

    def test_duplicate_edge_in_yaml_rejected(self, tmp_path):
        rules = _builtin_as_dicts()
        rules.append(dict(rules[0]))
        with pytest.raises(TransitionTableError):
            load_transitions_from_yaml(_dump_table(tmp_path, rules))

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_transitions_from_yaml(tmp_path / "nope.yaml")

    def test_missing_top_level_key(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("rules: []\n", encoding="utf-8")
        with pytest.raises(ValueError):
            load_transitions_from_yaml(path)

    def test_unknown_role_rejected(self, tmp_path):
        rules = _builtin_as_dicts()
        rules[0]["allowed_roles"] = ["janitor"]
        with pytest.raises(Exception):
            load_transitions_from_yaml(_dump_table(tmp_path, rules))

    def test_load_bundled_example_table(self):
        """The example table shipped with the walkthrough matches the built-in one."""
        sample_path = Path(__file__).parent.parent / "examples" / "transitions.yaml"
        if sample_path.exists():
            assert load_transitions_from_yaml(sample_path) == TRANSITIONS
