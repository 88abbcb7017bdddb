"""
Data-access boundary for the RBAC tables.

`RBACStore` is the interface the services depend on; `SupabaseRBACStore` talks to
PostgREST through the Supabase SDK. Every row read here is parsed into the frozen
pydantic models from app.modules.rbac.schemas, so a malformed effect value fails
loudly at this boundary instead of reaching the resolver.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, FrozenSet, Iterable, List, NamedTuple, Optional, Type, TypeVar
import logging

from postgrest.exceptions import APIError
from pydantic import BaseModel, ValidationError as PydanticValidationError
from supabase import Client

from app.core.exceptions import ConflictError, DataIntegrityError, StoreError, ValidationError
from app.modules.rbac.models import (
    FN_REPLACE_USER_ROLES,
    TABLE_PERMISSIONS,
    TABLE_PROFILES,
    TABLE_ROLE_PERMISSIONS,
    TABLE_ROLES,
    TABLE_USER_PERMISSIONS,
    TABLE_USER_ROLES,
)
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

ModelT = TypeVar("ModelT", bound=BaseModel)

# Postgres error codes surfaced by PostgREST
_UNIQUE_VIOLATION = "23505"
_FOREIGN_KEY_VIOLATION = "23503"
_NO_CONTENT = "204"


class AccessSnapshot(NamedTuple):
    """Everything the resolver needs for one user, read in one pass."""
    user_id: str
    catalog: List[Permission]
    roles: List[Role]
    role_ids: FrozenSet[str]
    role_bindings: List[RolePermission]
    overrides: List[UserPermissionOverride]

    @property
    def role_names(self) -> Dict[str, str]:
        return {role.id: role.name for role in self.roles}


def parse_rows(model: Type[ModelT], rows: Iterable[Dict[str, Any]]) -> List[ModelT]:
    """Parse raw rows into `model`, turning bad data into DataIntegrityError."""
    parsed = []
    for row in rows or []:
        try:
            parsed.append(model(**row))
        except PydanticValidationError as e:
            raise DataIntegrityError(f"Malformed {model.__name__} row {row!r}: {e}") from e
    return parsed


class RBACStore(ABC):
    """Keyed store for permissions, roles, bindings, assignments and overrides."""

    # Reference data

    @abstractmethod
    def list_permissions(self) -> List[Permission]:
        """All permissions ordered by (resource, action)."""

    @abstractmethod
    def get_permission(self, permission_id: str) -> Optional[Permission]:
        ...

    @abstractmethod
    def create_permission(self, resource: str, action: str, description: Optional[str] = None) -> Permission:
        ...

    @abstractmethod
    def update_permission(self, permission_id: str, fields: Dict[str, Any]) -> Optional[Permission]:
        ...

    @abstractmethod
    def delete_permission(self, permission_id: str) -> bool:
        """Delete a permission together with its bindings and overrides."""

    @abstractmethod
    def list_roles(self) -> List[Role]:
        """All roles ordered by name."""

    @abstractmethod
    def get_role(self, role_id: str) -> Optional[Role]:
        ...

    @abstractmethod
    def create_role(self, name: str, description: Optional[str] = None) -> Role:
        ...

    @abstractmethod
    def update_role(self, role_id: str, fields: Dict[str, Any]) -> Optional[Role]:
        ...

    @abstractmethod
    def delete_role(self, role_id: str) -> bool:
        """Delete a role together with its bindings and user assignments."""

    @abstractmethod
    def count_role_members(self, role_id: str) -> int:
        ...

    # Role policy

    @abstractmethod
    def list_role_permissions(self, role_id: str) -> List[RolePermission]:
        ...

    @abstractmethod
    def list_role_permissions_for_roles(self, role_ids: Iterable[str]) -> List[RolePermission]:
        ...

    @abstractmethod
    def list_all_role_permissions(self) -> List[RolePermission]:
        """Every binding of every role, for the role × permission matrix."""

    @abstractmethod
    def upsert_role_permission(self, role_id: str, permission_id: str, effect: Effect) -> RolePermission:
        ...

    @abstractmethod
    def delete_role_permission(self, role_id: str, permission_id: str) -> bool:
        ...

    # Per-user data

    @abstractmethod
    def user_exists(self, user_id: str) -> bool:
        ...

    @abstractmethod
    def list_users(self) -> List[UserProfile]:
        """All user profiles ordered by email."""

    @abstractmethod
    def list_user_role_assignments(self) -> List[UserRoleAssignment]:
        ...

    @abstractmethod
    def list_user_roles(self, user_id: str) -> FrozenSet[str]:
        ...

    @abstractmethod
    def replace_user_roles(self, user_id: str, role_ids: Iterable[str]) -> FrozenSet[str]:
        """Atomically replace the user's whole role set."""

    @abstractmethod
    def get_user_overrides(self, user_id: str) -> List[UserPermissionOverride]:
        ...

    @abstractmethod
    def upsert_override(self, user_id: str, permission_id: str, effect: Effect) -> UserPermissionOverride:
        ...

    @abstractmethod
    def delete_override(self, user_id: str, permission_id: str) -> bool:
        """Remove an override; returns False (not an error) when none existed."""

    def load_snapshot(self, user_id: str) -> AccessSnapshot:
        catalog = self.list_permissions()
        roles = self.list_roles()
        role_ids = self.list_user_roles(user_id)
        bindings = self.list_role_permissions_for_roles(role_ids) if role_ids else []
        overrides = self.get_user_overrides(user_id)
        return AccessSnapshot(
            user_id=user_id,
            catalog=catalog,
            roles=roles,
            role_ids=role_ids,
            role_bindings=bindings,
            overrides=overrides,
        )


class SupabaseRBACStore(RBACStore):
    def __init__(self, supabase: Client):
        self.supabase = supabase

    def _execute(self, query, action: str):
        """Run a PostgREST query, translating API errors into RBAC errors."""
        try:
            return query.execute()
        except APIError as e:
            # older postgrest clients report an empty maybe_single() as code 204
            if e.code == _NO_CONTENT:
                return None
            if e.code == _UNIQUE_VIOLATION:
                raise ConflictError(f"{action}: {e.message}") from e
            if e.code == _FOREIGN_KEY_VIOLATION:
                raise ValidationError(f"{action}: {e.message}") from e
            logger.error(f"Supabase error during {action}: {e}")
            raise StoreError(f"{action} failed: {e.message}") from e

    def _single(self, model: Type[ModelT], result) -> Optional[ModelT]:
        if result is None or not result.data:
            return None
        rows = result.data if isinstance(result.data, list) else [result.data]
        return parse_rows(model, rows[:1])[0]

    def list_permissions(self) -> List[Permission]:
        result = self._execute(
            self.supabase.table(TABLE_PERMISSIONS)
                .select("*")
                .order("resource")
                .order("action"),
            "list permissions",
        )
        return parse_rows(Permission, result.data)

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        result = self._execute(
            self.supabase.table(TABLE_PERMISSIONS)
                .select("*")
                .eq("id", permission_id)
                .maybe_single(),
            "get permission",
        )
        return self._single(Permission, result)

    def create_permission(self, resource: str, action: str, description: Optional[str] = None) -> Permission:
        result = self._execute(
            self.supabase.table(TABLE_PERMISSIONS).insert({
                "resource": resource,
                "action": action,
                "description": description
            }),
            "create permission",
        )
        permission = self._single(Permission, result)
        if permission is None:
            raise StoreError("Failed to create permission")
        return permission

    def update_permission(self, permission_id: str, fields: Dict[str, Any]) -> Optional[Permission]:
        result = self._execute(
            self.supabase.table(TABLE_PERMISSIONS)
                .update(fields)
                .eq("id", permission_id),
            "update permission",
        )
        return self._single(Permission, result)

    def delete_permission(self, permission_id: str) -> bool:
        # rbac_role_permissions / rbac_user_permissions cascade on delete
        result = self._execute(
            self.supabase.table(TABLE_PERMISSIONS)
                .delete()
                .eq("id", permission_id),
            "delete permission",
        )
        return len(result.data or []) > 0

    def list_roles(self) -> List[Role]:
        result = self._execute(
            self.supabase.table(TABLE_ROLES)
                .select("*")
                .order("name"),
            "list roles",
        )
        return parse_rows(Role, result.data)

    def get_role(self, role_id: str) -> Optional[Role]:
        result = self._execute(
            self.supabase.table(TABLE_ROLES)
                .select("*")
                .eq("id", role_id)
                .maybe_single(),
            "get role",
        )
        return self._single(Role, result)

    def create_role(self, name: str, description: Optional[str] = None) -> Role:
        result = self._execute(
            self.supabase.table(TABLE_ROLES).insert({
                "name": name,
                "description": description
            }),
            "create role",
        )
        role = self._single(Role, result)
        if role is None:
            raise StoreError("Failed to create role")
        return role

    def update_role(self, role_id: str, fields: Dict[str, Any]) -> Optional[Role]:
        result = self._execute(
            self.supabase.table(TABLE_ROLES)
                .update(fields)
                .eq("id", role_id),
            "update role",
        )
        return self._single(Role, result)

    def delete_role(self, role_id: str) -> bool:
        result = self._execute(
            self.supabase.table(TABLE_ROLES)
                .delete()
                .eq("id", role_id),
            "delete role",
        )
        return len(result.data or []) > 0

    def count_role_members(self, role_id: str) -> int:
        result = self._execute(
            self.supabase.table(TABLE_USER_ROLES)
                .select("user_id", count="exact")
                .eq("role_id", role_id),
            "count role members",
        )
        return result.count or 0

    def list_role_permissions(self, role_id: str) -> List[RolePermission]:
        result = self._execute(
            self.supabase.table(TABLE_ROLE_PERMISSIONS)
                .select("role_id, permission_id, effect")
                .eq("role_id", role_id),
            "list role permissions",
        )
        return parse_rows(RolePermission, result.data)

    def list_role_permissions_for_roles(self, role_ids: Iterable[str]) -> List[RolePermission]:
        role_ids = list(role_ids)
        if not role_ids:
            return []
        result = self._execute(
            self.supabase.table(TABLE_ROLE_PERMISSIONS)
                .select("role_id, permission_id, effect")
                .in_("role_id", role_ids),
            "list role permissions",
        )
        return parse_rows(RolePermission, result.data)

    def list_all_role_permissions(self) -> List[RolePermission]:
        result = self._execute(
            self.supabase.table(TABLE_ROLE_PERMISSIONS)
                .select("role_id, permission_id, effect"),
            "list all role permissions",
        )
        return parse_rows(RolePermission, result.data)

    def upsert_role_permission(self, role_id: str, permission_id: str, effect: Effect) -> RolePermission:
        result = self._execute(
            self.supabase.table(TABLE_ROLE_PERMISSIONS).upsert(
                {"role_id": role_id, "permission_id": permission_id, "effect": Effect(effect).value},
                on_conflict="role_id,permission_id",
            ),
            "upsert role permission",
        )
        binding = self._single(RolePermission, result)
        if binding is None:
            raise StoreError("Failed to write role permission")
        return binding

    def delete_role_permission(self, role_id: str, permission_id: str) -> bool:
        result = self._execute(
            self.supabase.table(TABLE_ROLE_PERMISSIONS)
                .delete()
                .eq("role_id", role_id)
                .eq("permission_id", permission_id),
            "delete role permission",
        )
        return len(result.data or []) > 0

    def user_exists(self, user_id: str) -> bool:
        result = self._execute(
            self.supabase.table(TABLE_PROFILES)
                .select("id")
                .eq("id", user_id)
                .maybe_single(),
            "get profile",
        )
        return bool(result is not None and result.data)

    def list_users(self) -> List[UserProfile]:
        result = self._execute(
            self.supabase.table(TABLE_PROFILES)
                .select("id, email, full_name, created_at")
                .order("email"),
            "list profiles",
        )
        return parse_rows(UserProfile, result.data)

    def list_user_role_assignments(self) -> List[UserRoleAssignment]:
        result = self._execute(
            self.supabase.table(TABLE_USER_ROLES)
                .select("user_id, role_id"),
            "list user role assignments",
        )
        return parse_rows(UserRoleAssignment, result.data)

    def list_user_roles(self, user_id: str) -> FrozenSet[str]:
        result = self._execute(
            self.supabase.table(TABLE_USER_ROLES)
                .select("role_id")
                .eq("user_id", user_id),
            "list user roles",
        )
        return frozenset(row["role_id"] for row in result.data or [])

    def replace_user_roles(self, user_id: str, role_ids: Iterable[str]) -> FrozenSet[str]:
        # Delete + insert happen inside one Postgres function (see rbac/models.py)
        result = self._execute(
            self.supabase.rpc(FN_REPLACE_USER_ROLES, {
                "p_user_id": user_id,
                "p_role_ids": sorted(set(role_ids))
            }),
            "replace user roles",
        )
        return frozenset(row["role_id"] for row in result.data or [])

    def get_user_overrides(self, user_id: str) -> List[UserPermissionOverride]:
        result = self._execute(
            self.supabase.table(TABLE_USER_PERMISSIONS)
                .select("user_id, permission_id, effect")
                .eq("user_id", user_id),
            "list user overrides",
        )
        return parse_rows(UserPermissionOverride, result.data)

    def upsert_override(self, user_id: str, permission_id: str, effect: Effect) -> UserPermissionOverride:
        result = self._execute(
            self.supabase.table(TABLE_USER_PERMISSIONS).upsert(
                {"user_id": user_id, "permission_id": permission_id, "effect": Effect(effect).value},
                on_conflict="user_id,permission_id",
            ),
            "upsert user override",
        )
        override = self._single(UserPermissionOverride, result)
        if override is None:
            raise StoreError("Failed to write user override")
        return override

    def delete_override(self, user_id: str, permission_id: str) -> bool:
        result = self._execute(
            self.supabase.table(TABLE_USER_PERMISSIONS)
                .delete()
                .eq("user_id", user_id)
                .eq("permission_id", permission_id),
            "delete user override",
        )
        return len(result.data or []) > 0
