"""
Tests for crisisbridge.rbac -- Role-Based Access Control.

Covers: permission matrix per role, unknown actions, require_permission
error details, and the full permission map.
"""

import pytest

from crisisbridge.models import Role
from crisisbridge.rbac import (
    ACTIONS,
    PermissionDeniedError,
    check_permission,
    get_permissions_for_role,
    require_permission,
)


class TestPermissionMatrix:
    def test_user_has_no_administrative_rights(self):
        assert not any(check_permission(Role.USER, action) for action in ACTIONS)

    def test_professional(self):
        assert check_permission(Role.PROFESSIONAL, "resolve_escalation")
        assert check_permission(Role.PROFESSIONAL, "query_audit")
        assert not check_permission(Role.PROFESSIONAL, "export_audit")
        assert not check_permission(Role.PROFESSIONAL, "acknowledge_alert")

    def test_supervisor(self):
        for action in ("acknowledge_alert", "resolve_alert", "update_professional", "resolve_escalation"):
            assert check_permission(Role.SUPERVISOR, action)
        assert not check_permission(Role.SUPERVISOR, "rotate_keys")
        assert not check_permission(Role.SUPERVISOR, "update_protocol")

    def test_admin_manages_configuration_and_keys(self):
        for action in ("update_protocol", "rotate_keys", "compromise_key", "grant_emergency_access"):
            assert check_permission(Role.ADMIN, action)
        assert not check_permission(Role.ADMIN, "resolve_escalation")

    def test_auditor_is_read_only(self):
        granted = {a for a, ok in get_permissions_for_role(Role.AUDITOR).items() if ok}
        assert granted == {"query_audit", "export_audit"}

    def test_unknown_action_denied(self):
        assert not check_permission(Role.ADMIN, "delete_audit_log")


class TestRequirePermission:
    def test_granted_passes(self):
        require_permission(Role.ADMIN, "rotate_keys")

    def test_denied_raises_with_details(self):
        with pytest.raises(PermissionDeniedError) as exc_info:
            require_permission(Role.AUDITOR, "rotate_keys")
        assert exc_info.value.role == Role.AUDITOR
        assert exc_info.value.action == "rotate_keys"
        assert "AUDITOR" in str(exc_info.value)

    def test_is_a_permission_error(self):
        with pytest.raises(PermissionError):
            require_permission(Role.USER, "query_audit")


class TestPermissionMap:
    def test_map_covers_every_action(self):
        for role in Role:
            assert list(get_permissions_for_role(role)) == list(ACTIONS)
