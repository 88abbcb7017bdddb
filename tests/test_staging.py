"""Tests for staged override / role policy sessions."""

import pytest

from app.core.exceptions import (
    CommitPartialFailure,
    NotFoundError,
    SessionStateError,
    StoreError,
    ValidationError,
)
from app.modules.rbac.schemas import Effect, PermissionSource
from app.modules.rbac.service import AccessService, CatalogService
from app.modules.rbac.staging import (
    OverrideSession,
    RoleMatrixSession,
    RolePolicySession,
    SessionState,
    StagedEffectSession,
    normalize_effect,
    split_matrix_key,
)


@pytest.fixture
def session(store, scenario):
    return OverrideSession.open(store, "user-a")


def fail_writes_for(monkeypatch, store, failing_ids):
    original = store.upsert_override

    def flaky_upsert(user_id, permission_id, effect):
        if permission_id in failing_ids:
            raise StoreError(f"write rejected for {permission_id}")
        return original(user_id, permission_id, effect)

    monkeypatch.setattr(store, "upsert_override", flaky_upsert)


class TestNormalizeEffect:
    @pytest.mark.parametrize("value", [None, "none", "None", "", "  "])
    def test_clear_values(self, value):
        assert normalize_effect(value) is None

    @pytest.mark.parametrize("value,expected", [("allow", Effect.ALLOW), ("DENY", Effect.DENY), (Effect.ALLOW, Effect.ALLOW)])
    def test_effects(self, value, expected):
        assert normalize_effect(value) == expected

    def test_invalid_value_rejected(self):
        with pytest.raises(ValidationError):
            normalize_effect("maybe")


class TestStaging:
    def test_new_session_is_clean(self, session):
        assert session.state == SessionState.CLEAN
        assert session.pending_count() == 0

    def test_stage_moves_to_editing(self, session):
        session.stage("p-edit", "deny")
        assert session.state == SessionState.EDITING
        assert session.pending() == {"p-edit": Effect.DENY}

    def test_last_write_wins(self, session):
        session.stage("p-edit", Effect.ALLOW)
        session.stage("p-edit", Effect.DENY)
        assert session.pending_count() == 1
        assert session.effective_value("p-edit") == Effect.DENY

    def test_effective_value_falls_back_to_stored(self, store, scenario):
        session = OverrideSession.open(store, "user-c")
        assert session.effective_value("p-edit") == Effect.ALLOW
        session.stage("p-edit", None)
        assert session.effective_value("p-edit") is None

    def test_unknown_permission_rejected(self, session):
        with pytest.raises(ValidationError) as exc_info:
            session.stage("p-missing", "allow")
        assert exc_info.value.invalid_ids == ["p-missing"]
        assert session.state == SessionState.CLEAN

    def test_unstage_last_entry_returns_to_clean(self, session):
        session.stage("p-edit", "allow")
        session.unstage("p-edit")
        assert session.state == SessionState.CLEAN

    def test_discard_writes_nothing(self, session, store):
        session.stage("p-edit", "deny")
        session.discard()
        assert session.state == SessionState.CLEAN
        assert store.get_user_overrides("user-a") == []


class TestCommit:
    def test_commit_applies_and_resolves(self, session, store):
        session.stage("p-edit", "deny")
        result = session.commit()

        assert result.status == "applied"
        assert result.applied_ids == ["p-edit"]
        assert session.state == SessionState.CLEAN
        assert session.current() == {"p-edit": Effect.DENY}

        effective = {p.permission_id: p for p in AccessService(store).get_effective_permissions("user-a")}
        assert effective["p-edit"].allowed is False
        assert effective["p-edit"].source == PermissionSource.USER_OVERRIDE

    def test_none_reverts_to_role_decision(self, store, scenario):
        session = OverrideSession.open(store, "user-c")
        session.stage("p-edit", "none")
        session.commit()

        assert store.get_user_overrides("user-c") == []
        effective = {p.permission_id: p for p in AccessService(store).get_effective_permissions("user-c")}
        assert effective["p-edit"].allowed is False
        assert effective["p-edit"].details == "Denied by role: guest"

    def test_clearing_absent_override_succeeds(self, session):
        session.stage("p-read", None)
        result = session.commit()
        assert result.status == "applied"

    def test_empty_commit_is_noop(self, session, store):
        result = session.commit()
        assert result.status == "noop"
        assert result.outcomes == []
        assert session.commit().status == "noop"

    def test_permission_deleted_after_staging(self, session, store):
        session.stage("p-edit", "allow")
        session.stage("p-read", "deny")
        store.delete_permission("p-read")

        with pytest.raises(ValidationError) as exc_info:
            session.commit()
        assert exc_info.value.invalid_ids == ["p-read"]
        assert store.get_user_overrides("user-a") == []
        assert session.pending_count() == 2

    def test_stage_during_commit_rejected(self, session, store, monkeypatch):
        original = store.upsert_override
        seen = {}

        def reentrant_upsert(user_id, permission_id, effect):
            seen["state"] = session.state
            with pytest.raises(SessionStateError):
                session.stage("p-read", "allow")
            return original(user_id, permission_id, effect)

        monkeypatch.setattr(store, "upsert_override", reentrant_upsert)
        session.stage("p-edit", "allow")
        session.commit()
        assert seen["state"] == SessionState.COMMITTING
        assert session.state == SessionState.CLEAN


class TestPartialFailure:
    def test_failed_entries_stay_pending(self, session, store, monkeypatch):
        fail_writes_for(monkeypatch, store, {"p-read"})
        session.stage("p-edit", "allow")
        session.stage("p-read", "deny")

        with pytest.raises(CommitPartialFailure) as exc_info:
            session.commit()

        result = exc_info.value.result
        assert exc_info.value.status_code == 207
        assert result.status == "partial"
        assert result.applied_ids == ["p-edit"]
        assert result.failed_ids == ["p-read"]
        assert "write rejected" in result.outcomes[1].error
        assert session.state == SessionState.EDITING
        assert session.pending() == {"p-read": Effect.DENY}
        assert {o.permission_id: o.effect for o in store.get_user_overrides("user-a")} == {"p-edit": Effect.ALLOW}

    def test_retry_commits_only_failed_entries(self, session, store, monkeypatch):
        fail_writes_for(monkeypatch, store, {"p-read"})
        session.stage("p-edit", "allow")
        session.stage("p-read", "deny")
        with pytest.raises(CommitPartialFailure):
            session.commit()

        monkeypatch.undo()
        result = session.commit()
        assert [o.permission_id for o in result.outcomes] == ["p-read"]
        assert session.state == SessionState.CLEAN

    def test_all_failed_reports_failed(self, session, store, monkeypatch):
        fail_writes_for(monkeypatch, store, {"p-edit"})
        session.stage("p-edit", "allow")
        with pytest.raises(CommitPartialFailure) as exc_info:
            session.commit()
        assert exc_info.value.result.status == "failed"
        assert exc_info.value.status_code == 502

    def test_failure_body_carries_outcomes(self, session, store, monkeypatch):
        fail_writes_for(monkeypatch, store, {"p-edit"})
        session.stage("p-edit", "allow")
        with pytest.raises(CommitPartialFailure) as exc_info:
            session.commit()
        body = exc_info.value.to_dict()
        assert body["result"]["outcomes"][0]["permission_id"] == "p-edit"
        assert body["result"]["outcomes"][0]["applied"] is False


class TestRolePolicySession:
    def test_commit_updates_role_bindings(self, store, scenario):
        session = RolePolicySession.open(store, "r-guest")
        assert session.current() == {"p-edit": Effect.DENY}

        session.stage("p-edit", None)
        session.stage("p-read", "deny")
        session.commit()

        bindings = {b.permission_id: b.effect for b in store.list_role_permissions("r-guest")}
        assert bindings == {"p-read": Effect.DENY}

    def test_missing_role_not_found(self, store, scenario):
        with pytest.raises(NotFoundError):
            RolePolicySession.open(store, "r-missing")

    def test_apply_changes_through_service(self, store, scenario):
        result = CatalogService(store).apply_role_policy_changes("r-editor", {"p-edit": Effect.DENY})
        assert result.status == "applied"
        effective = {p.permission_id: p for p in AccessService(store).get_effective_permissions("user-a")}
        assert effective["p-edit"].allowed is False


class TestSessionBase:
    def test_base_session_is_abstract(self, store):
        with pytest.raises(TypeError):
            StagedEffectSession(store, frozenset(), {})

    def test_subclass_must_implement_writes(self, store):
        class ReadOnlySession(StagedEffectSession):
            def _write(self, key, effect):
                pass

        with pytest.raises(TypeError):
            ReadOnlySession(store, frozenset(), {})


class TestRoleMatrixSession:
    def test_open_loads_every_binding(self, store, scenario):
        session = RoleMatrixSession.open(store)
        assert session.current() == {
            "r-editor:p-edit": Effect.ALLOW,
            "r-editor:p-read": Effect.ALLOW,
            "r-guest:p-edit": Effect.DENY,
        }

    def test_commit_across_roles(self, store, scenario):
        session = RoleMatrixSession.open(store)
        session.stage("r-guest:p-edit", "none")
        session.stage("r-guest:p-read", "deny")
        result = session.commit()

        assert result.applied_ids == ["r-guest:p-edit", "r-guest:p-read"]
        assert {(o.role_id, o.permission_id) for o in result.outcomes} == {("r-guest", "p-edit"), ("r-guest", "p-read")}
        assert {b.permission_id: b.effect for b in store.list_role_permissions("r-guest")} == {"p-read": Effect.DENY}

    def test_unset_cell_is_known(self, store, scenario):
        session = RoleMatrixSession.open(store)
        session.stage("r-guest:p-read", "allow")
        assert session.effective_value("r-guest:p-read") == Effect.ALLOW

    def test_unknown_pair_rejected(self, store, scenario):
        session = RoleMatrixSession.open(store)
        with pytest.raises(ValidationError) as exc_info:
            session.stage("r-missing:p-edit", "allow")
        assert exc_info.value.invalid_ids == ["r-missing:p-edit"]

    @pytest.mark.parametrize("key", ["r-guest", "r-guest:", ":p-edit"])
    def test_malformed_key_rejected(self, store, scenario, key):
        with pytest.raises(ValidationError):
            RoleMatrixSession.open(store).stage(key, "allow")

    def test_role_deleted_before_commit(self, store, scenario):
        session = RoleMatrixSession.open(store)
        session.stage("r-guest:p-read", "deny")
        store.delete_role("r-guest")
        with pytest.raises(ValidationError):
            session.commit()
        assert session.pending_count() == 1

    def test_failed_cells_stay_pending(self, store, scenario, monkeypatch):
        original = store.upsert_role_permission

        def flaky_upsert(role_id, permission_id, effect):
            if role_id == "r-editor":
                raise StoreError("write rejected")
            return original(role_id, permission_id, effect)

        monkeypatch.setattr(store, "upsert_role_permission", flaky_upsert)
        session = RoleMatrixSession.open(store)
        session.stage("r-editor:p-read", "deny")
        session.stage("r-guest:p-read", "deny")
        with pytest.raises(CommitPartialFailure) as exc_info:
            session.commit()

        assert exc_info.value.result.failed_ids == ["r-editor:p-read"]
        assert session.pending() == {"r-editor:p-read": Effect.DENY}

    def test_split_matrix_key(self):
        assert split_matrix_key("r1:p1") == ("r1", "p1")
