"""Tests for AccessService: effective permissions, checks and store-level edge cases."""

import logging

import pytest

from app.core.exceptions import DataIntegrityError
from app.database.memory_store import InMemoryRBACStore
from app.database.rbac_store import parse_rows
from app.modules.rbac.schemas import Effect, PermissionSource, UserPermissionOverride
from app.modules.rbac.service import AccessService


@pytest.fixture
def access(store, scenario):
    return AccessService(store)


def decisions(results):
    return {r.permission_id: (r.allowed, r.source, r.details) for r in results}


class TestEffectivePermissions:
    def test_articles_scenario(self, access):
        assert decisions(access.get_effective_permissions("user-a"))["p-edit"] == (
            True, PermissionSource.ROLE, "Allowed by role: editor"
        )
        assert decisions(access.get_effective_permissions("user-b"))["p-edit"] == (
            False, PermissionSource.ROLE, "Denied by role: guest"
        )
        assert decisions(access.get_effective_permissions("user-c"))["p-edit"] == (
            True, PermissionSource.USER_OVERRIDE, "User override: allow"
        )

    def test_user_without_roles_gets_default_deny(self, access):
        results = access.get_effective_permissions("nobody")
        assert len(results) == 2
        assert all(r.source == PermissionSource.DENIED for r in results)

    def test_allowed_permission_names(self, access):
        assert access.get_allowed_permission_names("user-a") == ["articles:edit", "articles:read"]
        assert access.get_allowed_permission_names("user-b") == ["articles:read"]

    def test_overrides_map(self, access):
        assert access.get_overrides("user-c") == {"p-edit": Effect.ALLOW}


class TestOrphanRows:
    def test_orphans_excluded_and_logged(self, caplog):
        store = InMemoryRBACStore(enforce_foreign_keys=False)
        store.create_permission("articles", "read", permission_id="p-read")
        role = store.create_role("editor", role_id="r-editor")
        store.upsert_role_permission(role.id, "p-gone", Effect.ALLOW)
        store.upsert_override("user-a", "p-vanished", Effect.ALLOW)
        store.replace_user_roles("user-a", {role.id})

        with caplog.at_level(logging.WARNING, logger="app.modules.rbac.service"):
            results = AccessService(store).get_effective_permissions("user-a")

        assert [r.permission_id for r in results] == ["p-read"]
        assert results[0].allowed is False
        assert "p-gone" in caplog.text
        assert "p-vanished" in caplog.text


class TestCheckPermission:
    def test_trace_omitted_by_default(self, access):
        result = access.check_permission("user-a", "articles", "edit")
        assert result.allowed is True
        assert result.trace == []

    def test_trace_included_on_request(self, access):
        result = access.check_permission("user-b", "articles", "edit", include_trace=True)
        assert result.allowed is False
        assert result.trace[-1].step == "role_permissions"
        assert "guest" in result.trace[-1].reason

    def test_unknown_user_denied(self, access):
        result = access.check_permission("nobody", "articles", "read", include_trace=True)
        assert result.allowed is False
        assert result.trace[0].step == "user_status"

    def test_batch_check(self, access):
        assert access.check_permissions("user-b", [("articles", "edit"), ("articles", "read"), ("billing", "read")]) == {
            "articles:edit": False,
            "articles:read": True,
            "billing:read": False,
        }


class TestParseRows:
    def test_malformed_effect_is_data_integrity_error(self):
        with pytest.raises(DataIntegrityError):
            parse_rows(UserPermissionOverride, [{"user_id": "u1", "permission_id": "p1", "effect": "maybe"}])

    def test_none_rows_parse_to_empty(self):
        assert parse_rows(UserPermissionOverride, None) == []
