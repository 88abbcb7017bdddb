from pydantic import BaseModel, Field
from typing import Optional, List, Dict
from datetime import datetime
from enum import Enum


class Effect(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class PermissionSource(str, Enum):
    USER_OVERRIDE = "user_override"
    ROLE = "role"
    DENIED = "denied"


# Stored entities. Frozen so resolver inputs are immutable snapshots.

class Permission(BaseModel):
    id: str
    resource: str
    action: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def name(self) -> str:
        return f"{self.resource}:{self.action}"

    class Config:
        from_attributes = True
        frozen = True


class Role(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
        frozen = True


class RolePermission(BaseModel):
    role_id: str
    permission_id: str
    effect: Effect

    class Config:
        from_attributes = True
        frozen = True


class UserRoleAssignment(BaseModel):
    user_id: str
    role_id: str

    class Config:
        from_attributes = True
        frozen = True


class UserProfile(BaseModel):
    id: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
        frozen = True


class UserPermissionOverride(BaseModel):
    user_id: str
    permission_id: str
    effect: Effect

    class Config:
        from_attributes = True
        frozen = True


# Derived, never stored

class EffectivePermission(BaseModel):
    permission_id: str
    resource: str
    action: str
    allowed: bool
    source: PermissionSource
    details: str

    class Config:
        frozen = True


class TraceStep(BaseModel):
    step: str  # user_status | permission_lookup | user_override | role_permissions | default
    result: str  # allow | deny | skip
    reason: str


class PermissionCheckResult(BaseModel):
    allowed: bool
    trace: List[TraceStep] = Field(default_factory=list)


class OrphanReport(BaseModel):
    role_permissions: List[RolePermission] = Field(default_factory=list)
    overrides: List[UserPermissionOverride] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.role_permissions and not self.overrides


# Request/response payloads

class PermissionCreate(BaseModel):
    resource: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1)
    description: Optional[str] = None


class PermissionUpdate(BaseModel):
    resource: Optional[str] = None
    action: Optional[str] = None
    description: Optional[str] = None


class RoleCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None


class RoleUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None


class RoleWithMemberCount(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    member_count: int = 0


class UserRolesUpdate(BaseModel):
    role_ids: List[str]


class UserRolesResponse(BaseModel):
    user_id: str
    roles: List[Role]


class StagedChanges(BaseModel):
    """Batch of edits: "allow", "deny", or null/"none" to clear the stored row.

    Keys are permission ids, or "role_id:permission_id" for the role matrix.
    Values are checked by the staged session so bad ones come back as ValidationError.
    """
    changes: Dict[str, Optional[str]]


class PermissionCheckRequest(BaseModel):
    resource: str
    action: str
    user_id: Optional[str] = None  # defaults to the current user
    include_trace: bool = False


class UserWithRoles(BaseModel):
    id: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    roles: List[Role] = Field(default_factory=list)


class RolePermissionMatrix(BaseModel):
    """Every role against every permission; cells absent from `bindings` are unset."""
    roles: List[Role]
    permissions: List[Permission]
    bindings: List[RolePermission]
