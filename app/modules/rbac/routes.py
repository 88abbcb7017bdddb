from fastapi import APIRouter, Depends, HTTPException, status
from app.core.dependencies import (
    get_access_cache,
    get_access_service,
    get_catalog_service,
    get_current_user_id,
    get_role_assignment_service,
    get_user_permissions,
    is_super_user,
    require_permission,
)
from app.modules.rbac.schemas import (
    Effect,
    EffectivePermission,
    Permission,
    PermissionCheckRequest,
    PermissionCheckResult,
    PermissionCreate,
    PermissionUpdate,
    Role,
    RoleCreate,
    RolePermission,
    RolePermissionMatrix,
    RoleUpdate,
    RoleWithMemberCount,
    StagedChanges,
    UserRolesResponse,
    UserRolesUpdate,
    UserWithRoles,
)
from app.modules.rbac.service import AccessService, CatalogService, RoleAssignmentService
from app.modules.rbac.staging import CommitResult
from typing import Dict, List, Optional

router = APIRouter(prefix="/rbac", tags=["rbac"])


# Permission catalog
@router.get("/permissions", response_model=List[Permission])
async def list_permissions(
    resource: Optional[str] = None,
    user_data: Dict = Depends(require_permission("rbac:read")),
    service: CatalogService = Depends(get_catalog_service)
):
    """List the permission catalog ordered by resource and action"""
    return service.list_permissions(resource=resource)


@router.post("/permissions", response_model=Permission, status_code=201)
async def create_permission(
    permission_data: PermissionCreate,
    user_data: Dict = Depends(require_permission("rbac:manage")),
    service: CatalogService = Depends(get_catalog_service)
):
    """Create a new permission"""
    return service.create_permission(permission_data)


@router.put("/permissions/{permission_id}", response_model=Permission)
async def update_permission(
    permission_id: str,
    permission_data: PermissionUpdate,
    user_data: Dict = Depends(require_permission("rbac:manage")),
    service: CatalogService = Depends(get_catalog_service)
):
    """Update permission"""
    return service.update_permission(permission_id, permission_data)


@router.delete("/permissions/{permission_id}", status_code=204)
async def delete_permission(
    permission_id: str,
    user_data: Dict = Depends(require_permission("rbac:manage")),
    service: CatalogService = Depends(get_catalog_service)
):
    """Delete permission and every binding/override that references it"""
    service.delete_permission(permission_id)
    return None


# Roles
@router.get("/roles", response_model=List[RoleWithMemberCount])
async def list_roles(
    user_data: Dict = Depends(require_permission("rbac:read")),
    service: CatalogService = Depends(get_catalog_service)
):
    """List roles ordered by name, with the number of users holding each"""
    return service.list_roles_with_member_counts()


@router.post("/roles", response_model=Role, status_code=201)
async def create_role(
    role_data: RoleCreate,
    user_data: Dict = Depends(require_permission("rbac:manage")),
    service: CatalogService = Depends(get_catalog_service)
):
    """Create a new role"""
    return service.create_role(role_data)


@router.put("/roles/{role_id}", response_model=Role)
async def update_role(
    role_id: str,
    role_data: RoleUpdate,
    user_data: Dict = Depends(require_permission("rbac:manage")),
    service: CatalogService = Depends(get_catalog_service)
):
    """Update role"""
    return service.update_role(role_id, role_data)


@router.delete("/roles/{role_id}", status_code=204)
async def delete_role(
    role_id: str,
    user_data: Dict = Depends(require_permission("rbac:manage")),
    service: CatalogService = Depends(get_catalog_service)
):
    """Delete role"""
    service.delete_role(role_id)
    return None


@router.get("/roles/{role_id}/permissions", response_model=List[RolePermission])
async def get_role_permissions(
    role_id: str,
    user_data: Dict = Depends(require_permission("rbac:read")),
    service: CatalogService = Depends(get_catalog_service)
):
    """Get the allow/deny policy of a role"""
    return service.list_role_permissions(role_id)


@router.put("/roles/{role_id}/permissions", response_model=CommitResult)
async def update_role_permissions(
    role_id: str,
    staged: StagedChanges,
    user_data: Dict = Depends(require_permission("rbac:manage")),
    service: CatalogService = Depends(get_catalog_service)
):
    """Apply a batch of role policy changes; null removes a binding"""
    return service.apply_role_policy_changes(role_id, staged.changes)


@router.get("/matrix", response_model=RolePermissionMatrix)
async def get_role_permission_matrix(
    user_data: Dict = Depends(require_permission("rbac:read")),
    service: CatalogService = Depends(get_catalog_service)
):
    """Every role against every permission"""
    return service.get_role_permission_matrix()


@router.put("/matrix", response_model=CommitResult)
async def update_role_permission_matrix(
    staged: StagedChanges,
    user_data: Dict = Depends(require_permission("rbac:manage")),
    service: CatalogService = Depends(get_catalog_service)
):
    """Save matrix cells keyed "role_id:permission_id"; null or "none" unsets a cell. Partial failures return 207."""
    return service.apply_role_matrix_changes(staged.changes)


# User access
@router.get("/users", response_model=List[UserWithRoles])
async def list_users(
    user_data: Dict = Depends(require_permission("rbac:read")),
    service: RoleAssignmentService = Depends(get_role_assignment_service)
):
    """List user profiles with the roles each one holds"""
    return service.list_users_with_roles()


@router.get("/users/{user_id}/roles", response_model=UserRolesResponse)
async def get_user_roles(
    user_id: str,
    user_data: Dict = Depends(require_permission("rbac:read")),
    service: RoleAssignmentService = Depends(get_role_assignment_service)
):
    """Get the roles a user holds"""
    return UserRolesResponse(user_id=user_id, roles=service.get_user_roles(user_id))


@router.put("/users/{user_id}/roles", response_model=UserRolesResponse)
async def set_user_roles(
    user_id: str,
    body: UserRolesUpdate,
    user_data: Dict = Depends(require_permission("rbac:assign")),
    service: RoleAssignmentService = Depends(get_role_assignment_service)
):
    """Replace the user's whole role set"""
    service.set_user_roles(user_id, body.role_ids)
    return UserRolesResponse(user_id=user_id, roles=service.get_user_roles(user_id))


@router.get("/users/{user_id}/overrides", response_model=Dict[str, Effect])
async def get_user_overrides(
    user_id: str,
    user_data: Dict = Depends(require_permission("rbac:read")),
    service: AccessService = Depends(get_access_service)
):
    """Get per-user overrides keyed by permission id"""
    return service.get_overrides(user_id)


@router.put("/users/{user_id}/overrides", response_model=CommitResult)
async def update_user_overrides(
    user_id: str,
    staged: StagedChanges,
    user_data: Dict = Depends(require_permission("rbac:assign")),
    service: AccessService = Depends(get_access_service)
):
    """Commit a batch of override changes; null clears an override. Partial failures return 207."""
    return service.apply_override_changes(user_id, staged.changes)


@router.get("/users/{user_id}/effective", response_model=List[EffectivePermission])
async def get_effective_permissions(
    user_id: str,
    user_data: Dict = Depends(require_permission("rbac:read")),
    service: AccessService = Depends(get_access_service)
):
    """Effective allow/deny for every catalog permission, with the deciding source"""
    return service.get_effective_permissions(user_id)


@router.post("/check", response_model=PermissionCheckResult)
async def check_permission(
    body: PermissionCheckRequest,
    user_data: Dict = Depends(get_current_user_id),
    service: AccessService = Depends(get_access_service),
    cache: Dict = Depends(get_access_cache)
):
    """Check one resource:action for the current user, or for another user with rbac:read"""
    target_user_id = body.user_id or user_data["id"]
    if target_user_id != user_data["id"] and not is_super_user(user_data):
        allowed = get_user_permissions(user_data["id"], service, cache)
        if "rbac:read" not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions. Required: rbac:read"
            )
    return service.check_permission(target_user_id, body.resource, body.action, include_trace=body.include_trace)
