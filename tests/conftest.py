"""Shared pytest fixtures.

Provides:
- In-memory RBAC store (no Supabase needed for tests)
- The "articles" scenario: roles editor/guest and users A, B, C
- FastAPI test client with store and current-user overrides
"""

import os

import pytest

# Override settings BEFORE any app imports
os.environ.setdefault("RBAC_STORE_BACKEND", "memory")
os.environ.setdefault("SUPABASE_URL", "http://localhost:54321")
os.environ.setdefault("SUPABASE_KEY", "test-anon-key")
os.environ.setdefault("ENVIRONMENT", "testing")

from app.database.memory_store import InMemoryRBACStore  # noqa: E402
from app.modules.rbac.schemas import Effect  # noqa: E402


@pytest.fixture
def store() -> InMemoryRBACStore:
    return InMemoryRBACStore()


@pytest.fixture
def scenario(store):
    """catalog {articles:edit, articles:read}; editor allows edit, guest denies it.

    User A: {editor}; B: {editor, guest}; C: {editor, guest} + allow override on edit.
    """
    edit = store.create_permission("articles", "edit", "Edit articles", permission_id="p-edit")
    read = store.create_permission("articles", "read", "Read articles", permission_id="p-read")
    editor = store.create_role("editor", role_id="r-editor")
    guest = store.create_role("guest", role_id="r-guest")
    store.upsert_role_permission(editor.id, edit.id, Effect.ALLOW)
    store.upsert_role_permission(editor.id, read.id, Effect.ALLOW)
    store.upsert_role_permission(guest.id, edit.id, Effect.DENY)
    for user_id in ("user-a", "user-b", "user-c"):
        store.add_user(user_id)
    store.replace_user_roles("user-a", {editor.id})
    store.replace_user_roles("user-b", {editor.id, guest.id})
    store.replace_user_roles("user-c", {editor.id, guest.id})
    store.upsert_override("user-c", edit.id, Effect.ALLOW)
    return {"edit": edit, "read": read, "editor": editor, "guest": guest}


@pytest.fixture
def rbac_admin_store(store, scenario):
    """Scenario plus an rbac-admin role held by user-admin."""
    admin_role = store.create_role("rbac_admin", role_id="r-admin")
    for action in ("read", "manage", "assign"):
        permission = store.create_permission("rbac", action, permission_id=f"p-rbac-{action}")
        store.upsert_role_permission(admin_role.id, permission.id, Effect.ALLOW)
    store.replace_user_roles("user-admin", {admin_role.id})
    return store


@pytest.fixture
def make_client(rbac_admin_store):
    """Build a TestClient acting as `user_id` (default user-admin)."""
    from fastapi.testclient import TestClient

    from app.core.dependencies import get_current_user_id
    from app.database.supabase_client import get_rbac_store
    from app.main import app

    def _make(user_id: str = "user-admin", app_metadata: dict = None):
        app.dependency_overrides[get_rbac_store] = lambda: rbac_admin_store
        app.dependency_overrides[get_current_user_id] = lambda: {
            "id": user_id,
            "email": f"{user_id}@example.com",
            "user_metadata": {},
            "app_metadata": app_metadata or {},
        }
        return TestClient(app)

    yield _make
    app.dependency_overrides.clear()
