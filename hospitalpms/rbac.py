"""
Role-Based Access Control (RBAC) for the hospital PMS core.

A static ``(role, action) -> allowed`` table.  The SSN access gate and the
audit review helpers in ``hospitalpms.audit`` consult it directly; route
handlers use it to gate survey-token management.  Status transitions are gated by
the per-edge role sets in ``hospitalpms.workflow`` instead; the
``change_status`` action here only says whether a role takes part in the
workflow at all.

**Roles:**

* ADMIN, MANAGER -- full access, including national ID decryption.
* BD             -- consultation phase staff.
* CS             -- reservation/examination phase staff; masked IDs only.
* DOCTOR, NURSE  -- clinical staff; masked IDs only.
"""

from __future__ import annotations

from hospitalpms.models import Role


ACTIONS = (
    "change_status",
    "decrypt_ssn",
    "view_masked_ssn",
    "lookup_ssn",
    "view_audit",
    "export_audit",
    "manage_survey_tokens",
)

_GRANTS: dict[Role, set[str]] = {
    Role.ADMIN: set(ACTIONS),
    Role.MANAGER: set(ACTIONS),
    Role.BD: {"change_status", "lookup_ssn", "manage_survey_tokens"},
    Role.CS: {"change_status", "view_masked_ssn", "lookup_ssn", "manage_survey_tokens"},
    Role.DOCTOR: {"view_masked_ssn"},
    Role.NURSE: {"view_masked_ssn"},
}

# Maps (role, action) -> allowed
_PERMISSIONS: dict[tuple[Role, str], bool] = {
    (role, action): action in _GRANTS[role]
    for role in Role
    for action in ACTIONS
}


def check_permission(role: Role, action: str) -> bool:
    """Check whether a role has permission to perform an action.

    Args:
        role: The actor's role.
        action: The action to check (e.g., 'decrypt_ssn').

    Returns:
        True if the role is permitted to perform the action, False otherwise.
    """
    return _PERMISSIONS.get((role, action), False)


def require_permission(role: Role, action: str) -> None:
    """Enforce a permission check; raise if denied.

    Raises:
        PermissionError: If the role is not permitted.
    """
    if not check_permission(role, action):
        raise PermissionError(
            f"Role '{role.value}' is not permitted to perform action '{action}'."
        )


def get_permissions_for_role(role: Role) -> dict[str, bool]:
    """Return all permissions for a given role."""
    return {
        action: allowed
        for (r, action), allowed in _PERMISSIONS.items()
        if r == role
    }
