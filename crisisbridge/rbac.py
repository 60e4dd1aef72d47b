"""
Role-Based Access Control (RBAC) for CrisisBridge.

Gates the administrative operations of the subsystem: protocol updates,
alert handling, key management, emergency channel access, responder
directory changes, escalation resolution and audit access.  Detection and
escalation themselves are system actions and are never gated.

**Roles:**

* USER         -- person in the conversation; no administrative rights.
* PROFESSIONAL -- responder; resolves their escalations and reads audit.
* SUPERVISOR   -- oversees responders; alerts, escalations, directory.
* ADMIN        -- configuration, keys and emergency access.
* AUDITOR      -- read-only access to audit logs and exports.

DISCLAIMER: This is an in-process access layer.  Production deployments
should integrate with enterprise identity providers (e.g., OAuth2/OIDC,
SAML) and enforce additional security controls.
"""

from __future__ import annotations

from crisisbridge.models import Role


class PermissionDeniedError(PermissionError):
    """Raised when a role attempts an action it is not granted."""

    def __init__(self, role: Role, action: str) -> None:
        self.role = role
        self.action = action
        super().__init__(f"Role '{role.value}' is not permitted to perform action '{action}'.")


# ---------------------------------------------------------------------------
# Permission definitions
# ---------------------------------------------------------------------------

ACTIONS = (
    "update_protocol",
    "acknowledge_alert",
    "resolve_alert",
    "rotate_keys",
    "compromise_key",
    "grant_emergency_access",
    "update_professional",
    "resolve_escalation",
    "query_audit",
    "export_audit",
)

_GRANTS: dict[Role, frozenset[str]] = {
    Role.USER: frozenset(),
    Role.PROFESSIONAL: frozenset({
        "resolve_escalation",
        "query_audit",
    }),
    Role.SUPERVISOR: frozenset({
        "acknowledge_alert",
        "resolve_alert",
        "update_professional",
        "resolve_escalation",
        "query_audit",
    }),
    Role.ADMIN: frozenset({
        "update_protocol",
        "acknowledge_alert",
        "resolve_alert",
        "rotate_keys",
        "compromise_key",
        "grant_emergency_access",
        "update_professional",
        "query_audit",
        "export_audit",
    }),
    Role.AUDITOR: frozenset({
        "query_audit",
        "export_audit",
    }),
}


def check_permission(role: Role, action: str) -> bool:
    """Check whether a role may perform an action.

    Unknown actions are denied.
    """
    return action in _GRANTS.get(role, frozenset())


def require_permission(role: Role, action: str) -> None:
    """Enforce a permission check.

    Raises:
        PermissionDeniedError: If the role is not permitted.
    """
    if not check_permission(role, action):
        raise PermissionDeniedError(role, action)


def get_permissions_for_role(role: Role) -> dict[str, bool]:
    return {action: check_permission(role, action) for action in ACTIONS}
