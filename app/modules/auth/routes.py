from fastapi import APIRouter, Depends
from app.core.dependencies import (
    get_access_service,
    get_catalog_service,
    get_current_user_id,
    get_user_permissions,
    is_super_user,
)
from app.modules.auth.schemas import CurrentUserResponse
from app.modules.rbac.service import AccessService, CatalogService
from typing import Dict, List

router = APIRouter(prefix="/auth", tags=["auth"])


@router.get("/me", response_model=CurrentUserResponse)
async def get_current_user(
    current_user: Dict = Depends(get_current_user_id),
    access: AccessService = Depends(get_access_service),
    catalog: CatalogService = Depends(get_catalog_service),
):
    """Get current authenticated user and their allowed permissions (for frontend UI)."""
    super_user = is_super_user(current_user)
    if super_user:
        permissions: List[str] = [p.name for p in catalog.list_permissions()]
    else:
        permissions = get_user_permissions(current_user["id"], access)
    return CurrentUserResponse(**current_user, is_super_user=super_user, permissions=permissions)
