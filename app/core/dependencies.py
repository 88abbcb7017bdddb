"""
Core dependencies for route protection and permission checking
"""

from fastapi import Depends, HTTPException, Request, Security, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from app.config import settings
from app.database.rbac_store import RBACStore
from app.database.supabase_client import get_supabase, get_rbac_store
from app.modules.auth.service import AuthService
from app.modules.rbac.service import AccessService, CatalogService, RoleAssignmentService
from supabase import Client
from typing import Any, Dict, List
import logging

logger = logging.getLogger(__name__)

security = HTTPBearer()


def _get_request_cache(request: Request) -> Dict[str, Any]:
    """Return request-scoped cache for access data (allowed permission names)."""
    if not hasattr(request.state, "access_cache"):
        request.state.access_cache = {}
    return request.state.access_cache


def get_auth_service(supabase: Client = Depends(get_supabase)) -> AuthService:
    return AuthService(supabase)


def get_access_service(store: RBACStore = Depends(get_rbac_store)) -> AccessService:
    return AccessService(store)


def get_catalog_service(store: RBACStore = Depends(get_rbac_store)) -> CatalogService:
    return CatalogService(store)


def get_role_assignment_service(store: RBACStore = Depends(get_rbac_store)) -> RoleAssignmentService:
    return RoleAssignmentService(store)


def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Security(security),
    auth_service: AuthService = Depends(get_auth_service)
) -> dict:
    """Extract current user info from JWT token"""
    token = credentials.credentials
    return auth_service.get_current_user(token)


def is_super_user(user_data: dict) -> bool:
    """Check if user is a super user from app_metadata (set server-side, not user-editable)"""
    if not settings.super_user_bypass:
        return False
    app_metadata = user_data.get("app_metadata") or {}
    return app_metadata.get("type") == "super_user"


def get_user_permissions(user_id: str, access: AccessService, cache: Dict[str, Any] = None) -> List[str]:
    """Names ("resource:action") of every permission the user is allowed. Uses request-scoped cache when provided."""
    if cache is not None and "permission_names" in cache:
        return cache["permission_names"]
    names = access.get_allowed_permission_names(user_id)
    if cache is not None:
        cache["permission_names"] = names
    return names


def require_permission(required_permission: str):
    """Factory function to create permission check dependency"""
    def check_permission(
        request: Request,
        user_data: dict = Depends(get_current_user_id),
        access: AccessService = Depends(get_access_service)
    ) -> dict:
        """Dependency to check if user has required permission"""
        if is_super_user(user_data):
            return user_data
        cache = _get_request_cache(request)
        user_permissions = get_user_permissions(user_data["id"], access, cache)
        if required_permission not in user_permissions:
            logger.info(f"Denied {required_permission} to user {user_data['id']}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Insufficient permissions. Required: {required_permission}"
            )
        return user_data
    return check_permission


def get_access_cache(request: Request) -> Dict[str, Any]:
    """Dependency that returns request-scoped access cache (populated by require_permission when used)."""
    return _get_request_cache(request)
