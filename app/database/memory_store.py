"""In-process RBAC store for local development and tests. Thread-safe; every method holds one lock."""
import threading
import uuid
import logging
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from app.core.exceptions import ConflictError, StoreError
from app.database.rbac_store import RBACStore
from app.modules.rbac.schemas import (
    Effect,
    Permission,
    Role,
    RolePermission,
    UserPermissionOverride,
    UserProfile,
    UserRoleAssignment,
)

logger = logging.getLogger(__name__)


class InMemoryRBACStore(RBACStore):
    def __init__(self, enforce_foreign_keys: bool = True):
        self.enforce_foreign_keys = enforce_foreign_keys
        self._lock = threading.RLock()
        self._permissions: Dict[str, Permission] = {}
        self._roles: Dict[str, Role] = {}
        self._role_permissions: Dict[Tuple[str, str], Effect] = {}
        self._user_roles: Dict[str, FrozenSet[str]] = {}
        self._overrides: Dict[Tuple[str, str], Effect] = {}
        self._users: Dict[str, UserProfile] = {}

    def _check_fk(self, kind: str, key: str, table: Dict[str, Any]) -> None:
        if self.enforce_foreign_keys and key not in table:
            raise StoreError(f"Unknown {kind} id: {key}")

    def add_user(self, user_id: str, email: Optional[str] = None, full_name: Optional[str] = None) -> UserProfile:
        with self._lock:
            profile = UserProfile(id=user_id, email=email, full_name=full_name, created_at=datetime.now(timezone.utc))
            self._users[user_id] = profile
            return profile

    # Reference data

    def list_permissions(self) -> List[Permission]:
        with self._lock:
            return sorted(self._permissions.values(), key=lambda p: (p.resource, p.action))

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        with self._lock:
            return self._permissions.get(permission_id)

    def create_permission(self, resource: str, action: str, description: Optional[str] = None,
                          permission_id: Optional[str] = None) -> Permission:
        with self._lock:
            if any(p.resource == resource and p.action == action for p in self._permissions.values()):
                raise ConflictError(f"Permission {resource}:{action} already exists")
            permission = Permission(
                id=permission_id or str(uuid.uuid4()),
                resource=resource,
                action=action,
                description=description,
                created_at=datetime.now(timezone.utc),
            )
            self._permissions[permission.id] = permission
            return permission

    def update_permission(self, permission_id: str, fields: Dict[str, Any]) -> Optional[Permission]:
        with self._lock:
            current = self._permissions.get(permission_id)
            if current is None:
                return None
            updated = current.model_copy(update=fields)
            for other in self._permissions.values():
                if other.id != permission_id and (other.resource, other.action) == (updated.resource, updated.action):
                    raise ConflictError(f"Permission {updated.name} already exists")
            self._permissions[permission_id] = updated
            return updated

    def delete_permission(self, permission_id: str) -> bool:
        with self._lock:
            if self._permissions.pop(permission_id, None) is None:
                return False
            for key in [k for k in self._role_permissions if k[1] == permission_id]:
                del self._role_permissions[key]
            for key in [k for k in self._overrides if k[1] == permission_id]:
                del self._overrides[key]
            return True

    def list_roles(self) -> List[Role]:
        with self._lock:
            return sorted(self._roles.values(), key=lambda r: r.name)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._lock:
            return self._roles.get(role_id)

    def create_role(self, name: str, description: Optional[str] = None,
                    role_id: Optional[str] = None) -> Role:
        with self._lock:
            if any(r.name == name for r in self._roles.values()):
                raise ConflictError(f"Role {name!r} already exists")
            role = Role(
                id=role_id or str(uuid.uuid4()),
                name=name,
                description=description,
                created_at=datetime.now(timezone.utc),
            )
            self._roles[role.id] = role
            return role

    def update_role(self, role_id: str, fields: Dict[str, Any]) -> Optional[Role]:
        with self._lock:
            current = self._roles.get(role_id)
            if current is None:
                return None
            updated = current.model_copy(update=fields)
            if any(r.id != role_id and r.name == updated.name for r in self._roles.values()):
                raise ConflictError(f"Role {updated.name!r} already exists")
            self._roles[role_id] = updated
            return updated

    def delete_role(self, role_id: str) -> bool:
        with self._lock:
            if self._roles.pop(role_id, None) is None:
                return False
            for key in [k for k in self._role_permissions if k[0] == role_id]:
                del self._role_permissions[key]
            for user_id, role_ids in list(self._user_roles.items()):
                if role_id in role_ids:
                    self._user_roles[user_id] = role_ids - {role_id}
            return True

    def count_role_members(self, role_id: str) -> int:
        with self._lock:
            return sum(1 for role_ids in self._user_roles.values() if role_id in role_ids)

    # Role policy

    def list_role_permissions(self, role_id: str) -> List[RolePermission]:
        return self.list_role_permissions_for_roles([role_id])

    def list_role_permissions_for_roles(self, role_ids: Iterable[str]) -> List[RolePermission]:
        wanted = set(role_ids)
        with self._lock:
            return [
                RolePermission(role_id=role_id, permission_id=permission_id, effect=effect)
                for (role_id, permission_id), effect in self._role_permissions.items()
                if role_id in wanted
            ]

    def list_all_role_permissions(self) -> List[RolePermission]:
        with self._lock:
            return [
                RolePermission(role_id=role_id, permission_id=permission_id, effect=effect)
                for (role_id, permission_id), effect in self._role_permissions.items()
            ]

    def upsert_role_permission(self, role_id: str, permission_id: str, effect: Effect) -> RolePermission:
        with self._lock:
            self._check_fk("role", role_id, self._roles)
            self._check_fk("permission", permission_id, self._permissions)
            self._role_permissions[(role_id, permission_id)] = Effect(effect)
            return RolePermission(role_id=role_id, permission_id=permission_id, effect=effect)

    def delete_role_permission(self, role_id: str, permission_id: str) -> bool:
        with self._lock:
            return self._role_permissions.pop((role_id, permission_id), None) is not None

    # Per-user data

    def user_exists(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._users

    def list_users(self) -> List[UserProfile]:
        with self._lock:
            # nulls last, like ORDER BY email in Postgres
            return sorted(self._users.values(), key=lambda u: (u.email is None, u.email or "", u.id))

    def list_user_role_assignments(self) -> List[UserRoleAssignment]:
        with self._lock:
            return [
                UserRoleAssignment(user_id=user_id, role_id=role_id)
                for user_id, role_ids in self._user_roles.items()
                for role_id in sorted(role_ids)
            ]

    def list_user_roles(self, user_id: str) -> FrozenSet[str]:
        with self._lock:
            return self._user_roles.get(user_id, frozenset())

    def replace_user_roles(self, user_id: str, role_ids: Iterable[str]) -> FrozenSet[str]:
        new_roles = frozenset(role_ids)
        with self._lock:
            for role_id in new_roles:
                self._check_fk("role", role_id, self._roles)
            # single assignment: readers see the old set or the new one
            self._user_roles[user_id] = new_roles
            if user_id not in self._users:
                self._users[user_id] = UserProfile(id=user_id)
            return new_roles

    def get_user_overrides(self, user_id: str) -> List[UserPermissionOverride]:
        with self._lock:
            return [
                UserPermissionOverride(user_id=owner, permission_id=permission_id, effect=effect)
                for (owner, permission_id), effect in self._overrides.items()
                if owner == user_id
            ]

    def upsert_override(self, user_id: str, permission_id: str, effect: Effect) -> UserPermissionOverride:
        with self._lock:
            self._check_fk("permission", permission_id, self._permissions)
            self._overrides[(user_id, permission_id)] = Effect(effect)
            return UserPermissionOverride(user_id=user_id, permission_id=permission_id, effect=effect)

    def delete_override(self, user_id: str, permission_id: str) -> bool:
        with self._lock:
            return self._overrides.pop((user_id, permission_id), None) is not None

    def load_snapshot(self, user_id: str):
        # hold the lock across all reads so the snapshot is consistent
        with self._lock:
            return super().load_snapshot(user_id)
