from typing import Dict, Iterable, List, Optional, Tuple
import logging

from app.core.exceptions import NotFoundError, ValidationError
from app.database.rbac_store import AccessSnapshot, RBACStore
from app.modules.rbac import resolver
from app.modules.rbac.schemas import (
    Effect,
    EffectivePermission,
    Permission,
    PermissionCheckResult,
    PermissionCreate,
    PermissionUpdate,
    Role,
    RoleCreate,
    RolePermission,
    RoleUpdate,
    RolePermissionMatrix,
    RoleWithMemberCount,
    UserWithRoles,
)
from app.modules.rbac.staging import (
    CommitResult,
    OverrideSession,
    RoleMatrixSession,
    RolePolicySession,
    StagedInput,
    normalize_effect,
)

logger = logging.getLogger(__name__)


class CatalogService:
    """Permission catalog, role store and role policy administration."""

    def __init__(self, store: RBACStore):
        self.store = store

    def list_permissions(self, resource: Optional[str] = None) -> List[Permission]:
        permissions = self.store.list_permissions()
        if resource:
            permissions = [p for p in permissions if p.resource == resource]
        return permissions

    def get_permission(self, permission_id: str) -> Permission:
        permission = self.store.get_permission(permission_id)
        if permission is None:
            raise NotFoundError("Permission not found")
        return permission

    def create_permission(self, permission_data: PermissionCreate) -> Permission:
        permission = self.store.create_permission(
            permission_data.resource.strip(),
            permission_data.action.strip(),
            permission_data.description,
        )
        logger.info(f"Created permission {permission.name} ({permission.id})")
        return permission

    def update_permission(self, permission_id: str, permission_data: PermissionUpdate) -> Permission:
        update_data = {}
        if permission_data.resource:
            update_data["resource"] = permission_data.resource.strip()
        if permission_data.action:
            update_data["action"] = permission_data.action.strip()
        if permission_data.description is not None:
            update_data["description"] = permission_data.description
        if not update_data:
            return self.get_permission(permission_id)

        permission = self.store.update_permission(permission_id, update_data)
        if permission is None:
            raise NotFoundError("Permission not found")
        return permission

    def delete_permission(self, permission_id: str) -> None:
        if not self.store.delete_permission(permission_id):
            raise NotFoundError("Permission not found")
        logger.info(f"Deleted permission {permission_id} with its bindings and overrides")

    def list_roles(self) -> List[Role]:
        return self.store.list_roles()

    def list_roles_with_member_counts(self) -> List[RoleWithMemberCount]:
        return [
            RoleWithMemberCount(**role.model_dump(), member_count=self.store.count_role_members(role.id))
            for role in self.store.list_roles()
        ]

    def get_role(self, role_id: str) -> Role:
        role = self.store.get_role(role_id)
        if role is None:
            raise NotFoundError("Role not found")
        return role

    def create_role(self, role_data: RoleCreate) -> Role:
        role = self.store.create_role(role_data.name.strip(), role_data.description)
        logger.info(f"Created role {role.name!r} ({role.id})")
        return role

    def update_role(self, role_id: str, role_data: RoleUpdate) -> Role:
        update_data = {}
        if role_data.name:
            update_data["name"] = role_data.name.strip()
        if role_data.description is not None:
            update_data["description"] = role_data.description
        if not update_data:
            return self.get_role(role_id)

        role = self.store.update_role(role_id, update_data)
        if role is None:
            raise NotFoundError("Role not found")
        return role

    def delete_role(self, role_id: str) -> None:
        if not self.store.delete_role(role_id):
            raise NotFoundError("Role not found")
        logger.info(f"Deleted role {role_id} with its bindings and assignments")

    def list_role_permissions(self, role_id: str) -> List[RolePermission]:
        self.get_role(role_id)
        return self.store.list_role_permissions(role_id)

    def set_role_permission(self, role_id: str, permission_id: str, effect: StagedInput) -> Optional[RolePermission]:
        """Write one binding; None removes it. Re-writing a pair replaces its effect."""
        effect = normalize_effect(effect)
        self.get_role(role_id)
        if self.store.get_permission(permission_id) is None:
            raise ValidationError(f"Unknown permission id: {permission_id}", invalid_ids=[permission_id])
        if effect is None:
            self.store.delete_role_permission(role_id, permission_id)
            return None
        return self.store.upsert_role_permission(role_id, permission_id, effect)

    def open_role_policy_session(self, role_id: str) -> RolePolicySession:
        return RolePolicySession.open(self.store, role_id)

    def apply_role_policy_changes(self, role_id: str, changes: Dict[str, StagedInput]) -> CommitResult:
        session = self.open_role_policy_session(role_id)
        for permission_id, effect in changes.items():
            session.stage(permission_id, effect)
        return session.commit()

    def get_role_permission_matrix(self) -> RolePermissionMatrix:
        """All roles × all permissions with the stored bindings between them."""
        roles = self.store.list_roles()
        permissions = self.store.list_permissions()
        role_ids = {role.id for role in roles}
        permission_ids = {permission.id for permission in permissions}
        bindings = [
            b for b in self.store.list_all_role_permissions()
            if b.role_id in role_ids and b.permission_id in permission_ids
        ]
        return RolePermissionMatrix(roles=roles, permissions=permissions, bindings=bindings)

    def open_role_matrix_session(self) -> RoleMatrixSession:
        return RoleMatrixSession.open(self.store)

    def apply_role_matrix_changes(self, changes: Dict[str, StagedInput]) -> CommitResult:
        """Batch save keyed "role_id:permission_id"; failures are reported per cell."""
        session = self.open_role_matrix_session()
        for key, effect in changes.items():
            session.stage(key, effect)
        return session.commit()


class RoleAssignmentService:
    """Full-set replacement of a user's roles."""

    def __init__(self, store: RBACStore):
        self.store = store

    def list_user_roles(self, user_id: str) -> frozenset:
        return self.store.list_user_roles(user_id)

    def get_user_roles(self, user_id: str) -> List[Role]:
        role_ids = self.store.list_user_roles(user_id)
        return [role for role in self.store.list_roles() if role.id in role_ids]

    def list_users_with_roles(self) -> List[UserWithRoles]:
        """Every profile with the roles it holds (ordered by role name)."""
        roles = self.store.list_roles()
        held: Dict[str, set] = {}
        for assignment in self.store.list_user_role_assignments():
            held.setdefault(assignment.user_id, set()).add(assignment.role_id)
        return [
            UserWithRoles(
                id=user.id,
                email=user.email,
                full_name=user.full_name,
                roles=[role for role in roles if role.id in held.get(user.id, ())],
            )
            for user in self.store.list_users()
        ]

    def set_user_roles(self, user_id: str, role_ids: Iterable[str]) -> frozenset:
        """
        Replace every role the user holds with exactly `role_ids`.

        An empty set is valid. Unknown role ids reject the whole call before
        anything is written.
        """
        wanted = frozenset(role_ids)
        known = {role.id for role in self.store.list_roles()}
        unknown = wanted - known
        if unknown:
            raise ValidationError(
                f"Unknown role ids: {', '.join(sorted(unknown))}",
                invalid_ids=unknown,
            )

        previous = self.store.list_user_roles(user_id)
        assigned = self.store.replace_user_roles(user_id, wanted)
        logger.info(
            f"Replaced roles for user {user_id}: "
            f"{len(previous)} -> {len(assigned)} (added {len(assigned - previous)}, removed {len(previous - assigned)})"
        )
        return assigned


class AccessService:
    """Effective permissions, access checks and override editing for users."""

    def __init__(self, store: RBACStore):
        self.store = store

    def _snapshot(self, user_id: str) -> AccessSnapshot:
        snapshot = self.store.load_snapshot(user_id)
        orphans = resolver.find_orphans(snapshot.role_bindings, snapshot.overrides, snapshot.catalog)
        if orphans.role_permissions:
            logger.warning(
                f"Ignoring {len(orphans.role_permissions)} role permission rows with unknown permission ids: "
                f"{sorted({(b.role_id, b.permission_id) for b in orphans.role_permissions})}"
            )
        if orphans.overrides:
            logger.warning(
                f"Ignoring {len(orphans.overrides)} overrides for user {user_id} with unknown permission ids: "
                f"{sorted(o.permission_id for o in orphans.overrides)}"
            )
        return snapshot

    def get_effective_permissions(self, user_id: str) -> List[EffectivePermission]:
        snapshot = self._snapshot(user_id)
        return resolver.resolve_effective_permissions(
            user_id,
            snapshot.role_ids,
            snapshot.role_bindings,
            snapshot.overrides,
            snapshot.catalog,
            snapshot.role_names,
        )

    def get_allowed_permission_names(self, user_id: str) -> List[str]:
        return [f"{p.resource}:{p.action}" for p in self.get_effective_permissions(user_id) if p.allowed]

    def check_permission(self, user_id: str, resource: str, action: str, include_trace: bool = False) -> PermissionCheckResult:
        snapshot = self._snapshot(user_id)
        result = resolver.explain_permission(
            user_id,
            resource,
            action,
            snapshot.role_ids,
            snapshot.role_bindings,
            snapshot.overrides,
            snapshot.catalog,
            snapshot.role_names,
            user_active=self.store.user_exists(user_id),
        )
        if not include_trace:
            result = PermissionCheckResult(allowed=result.allowed)
        return result

    def check_permissions(self, user_id: str, checks: Iterable[Tuple[str, str]]) -> Dict[str, bool]:
        """Batch check against one snapshot; keys are "resource:action"."""
        snapshot = self._snapshot(user_id)
        active = self.store.user_exists(user_id)
        return {
            f"{resource}:{action}": resolver.explain_permission(
                user_id,
                resource,
                action,
                snapshot.role_ids,
                snapshot.role_bindings,
                snapshot.overrides,
                snapshot.catalog,
                snapshot.role_names,
                user_active=active,
            ).allowed
            for resource, action in checks
        }

    def get_overrides(self, user_id: str) -> Dict[str, Effect]:
        return {o.permission_id: o.effect for o in self.store.get_user_overrides(user_id)}

    def open_override_session(self, user_id: str) -> OverrideSession:
        return OverrideSession.open(self.store, user_id)

    def apply_override_changes(self, user_id: str, changes: Dict[str, StagedInput]) -> CommitResult:
        session = self.open_override_session(user_id)
        for permission_id, effect in changes.items():
            session.stage(permission_id, effect)
        return session.commit()
