"""Tests for SupabaseRBACStore against a mocked Supabase client."""

from unittest.mock import MagicMock

import pytest
from postgrest.exceptions import APIError

from app.core.exceptions import ConflictError, DataIntegrityError, StoreError, ValidationError
from app.database.rbac_store import SupabaseRBACStore
from app.modules.rbac.models import (
    FN_REPLACE_USER_ROLES,
    TABLE_PROFILES,
    TABLE_ROLE_PERMISSIONS,
    TABLE_USER_PERMISSIONS,
    TABLE_USER_ROLES,
)
from app.modules.rbac.schemas import Effect


def api_error(code, message="boom"):
    return APIError({"message": message, "code": code, "hint": None, "details": None})


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def supabase_store(client):
    return SupabaseRBACStore(client)


class TestErrorTranslation:
    @pytest.mark.parametrize("code,expected", [
        ("23505", ConflictError),
        ("23503", ValidationError),
        ("XX000", StoreError),
    ])
    def test_api_errors_mapped(self, supabase_store, code, expected):
        query = MagicMock()
        query.execute.side_effect = api_error(code)
        with pytest.raises(expected):
            supabase_store._execute(query, "test action")

    def test_no_content_is_none(self, supabase_store):
        query = MagicMock()
        query.execute.side_effect = api_error("204")
        assert supabase_store._execute(query, "get role") is None

    def test_missing_role_returns_none(self, supabase_store, client):
        client.table.return_value.select.return_value.eq.return_value.maybe_single.return_value.execute.side_effect = api_error("204")
        assert supabase_store.get_role("r-missing") is None


class TestReads:
    def test_user_overrides_parsed(self, supabase_store, client):
        client.table.return_value.select.return_value.eq.return_value.execute.return_value.data = [
            {"user_id": "u1", "permission_id": "p1", "effect": "deny"},
        ]
        overrides = supabase_store.get_user_overrides("u1")
        client.table.assert_called_with(TABLE_USER_PERMISSIONS)
        assert overrides[0].effect == Effect.DENY

    def test_malformed_effect_rejected(self, supabase_store, client):
        client.table.return_value.select.return_value.eq.return_value.execute.return_value.data = [
            {"user_id": "u1", "permission_id": "p1", "effect": "sometimes"},
        ]
        with pytest.raises(DataIntegrityError):
            supabase_store.get_user_overrides("u1")

    def test_list_users_from_profiles(self, supabase_store, client):
        client.table.return_value.select.return_value.order.return_value.execute.return_value.data = [
            {"id": "u1", "email": "a@example.com", "full_name": None, "created_at": None},
        ]
        users = supabase_store.list_users()
        client.table.assert_called_with(TABLE_PROFILES)
        client.table.return_value.select.assert_called_with("id, email, full_name, created_at")
        assert users[0].email == "a@example.com"

    def test_all_role_permissions(self, supabase_store, client):
        client.table.return_value.select.return_value.execute.return_value.data = [
            {"role_id": "r1", "permission_id": "p1", "effect": "allow"},
            {"role_id": "r2", "permission_id": "p1", "effect": "deny"},
        ]
        bindings = supabase_store.list_all_role_permissions()
        client.table.assert_called_with(TABLE_ROLE_PERMISSIONS)
        assert [b.effect for b in bindings] == [Effect.ALLOW, Effect.DENY]

    def test_user_role_assignments(self, supabase_store, client):
        client.table.return_value.select.return_value.execute.return_value.data = [{"user_id": "u1", "role_id": "r1"}]
        assignments = supabase_store.list_user_role_assignments()
        client.table.assert_called_with(TABLE_USER_ROLES)
        assert (assignments[0].user_id, assignments[0].role_id) == ("u1", "r1")

    def test_empty_role_list_skips_query(self, supabase_store, client):
        assert supabase_store.list_role_permissions_for_roles([]) == []
        client.table.assert_not_called()


class TestWrites:
    def test_replace_user_roles_uses_single_rpc(self, supabase_store, client):
        client.rpc.return_value.execute.return_value.data = [{"role_id": "r1"}, {"role_id": "r2"}]
        assigned = supabase_store.replace_user_roles("u1", ["r2", "r1", "r2"])
        client.rpc.assert_called_once_with(FN_REPLACE_USER_ROLES, {"p_user_id": "u1", "p_role_ids": ["r1", "r2"]})
        assert assigned == frozenset({"r1", "r2"})

    def test_upsert_override_on_conflict_key(self, supabase_store, client):
        client.table.return_value.upsert.return_value.execute.return_value.data = [
            {"user_id": "u1", "permission_id": "p1", "effect": "allow"},
        ]
        supabase_store.upsert_override("u1", "p1", Effect.ALLOW)
        client.table.return_value.upsert.assert_called_once_with(
            {"user_id": "u1", "permission_id": "p1", "effect": "allow"},
            on_conflict="user_id,permission_id",
        )

    def test_delete_missing_override_returns_false(self, supabase_store, client):
        client.table.return_value.delete.return_value.eq.return_value.eq.return_value.execute.return_value.data = []
        assert supabase_store.delete_override("u1", "p1") is False
