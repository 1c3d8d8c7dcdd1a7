"""
Pydantic schemas for permissions, roles and permission checks.
"""
from datetime import datetime
from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator


# ============================================================================
# Permission Schemas
# ============================================================================

class PermissionBase(BaseModel):
    """Base permission schema."""
    code: str = Field(..., min_length=1, max_length=100, description="Unique permission code, e.g. 'inventory.products.edit'")
    module: str = Field(..., min_length=1, max_length=50, description="Code of the module the permission belongs to")
    name: str = Field(..., min_length=1, max_length=150)
    category: Optional[str] = Field(None, max_length=50)
    description: Optional[str] = Field(None, max_length=1000)


class PermissionCreate(PermissionBase):
    """Schema for creating a new permission."""

    @field_validator('code')
    @classmethod
    def code_format(cls, v: str) -> str:
        """Codes are lowercase dotted identifiers."""
        if not v.replace('_', '').replace('.', '').isalnum():
            raise ValueError('Permission code must contain only alphanumeric characters, underscores and dots')
        return v.lower()


class PermissionResponse(PermissionBase):
    """Schema for permission response."""
    id: str

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Role Schemas
# ============================================================================

class RoleBase(BaseModel):
    """Base role schema."""
    name: str = Field(..., min_length=1, max_length=50, description="Role name, unique within its organization")
    description: Optional[str] = Field(None, max_length=1000)


class RoleCreate(RoleBase):
    """Schema for creating a tenant role."""
    organization_id: Optional[str] = Field(None, description="Owning organization (null for a shared role)")

    @field_validator('name')
    @classmethod
    def name_format(cls, v: str) -> str:
        if not v.replace('_', '').replace('-', '').replace(' ', '').isalnum():
            raise ValueError('Role name must contain only alphanumeric characters, spaces, underscores, and hyphens')
        return v


class RoleUpdate(BaseModel):
    """Schema for updating a role."""
    name: Optional[str] = Field(None, min_length=1, max_length=50)
    description: Optional[str] = Field(None, max_length=1000)


class RoleClone(BaseModel):
    name: str = Field(..., min_length=1, max_length=50, description="Name of the copy")


class RoleResponse(RoleBase):
    """Schema for role response."""
    id: str
    is_system: bool
    organization_id: Optional[str]
    created_at: datetime
    updated_at: datetime
    member_count: Optional[int] = Field(None, description="Active members holding the role, when listed for an organization")

    model_config = ConfigDict(from_attributes=True)


class RoleWithPermissions(RoleResponse):
    """Role with its granted permissions."""
    permissions: List[PermissionResponse] = []


class SetRolePermissions(BaseModel):
    """Replace the complete set of permissions granted to a role."""
    permission_ids: List[str] = Field(default_factory=list)


class AssignRoleToMember(BaseModel):
    role_id: str = Field(..., description="Role to give the member")


class RolesMatrix(BaseModel):
    """Role name -> granted permission codes."""
    roles: Dict[str, List[str]]


class RoleMemberCount(BaseModel):
    role_id: str
    role_name: str
    member_count: int


class ModulePermissionCount(BaseModel):
    module: str
    permission_count: int


class RoleAnalytics(BaseModel):
    """Role and permission usage within one organization."""
    total_roles: int
    system_roles: int
    custom_roles: int
    total_permissions: int
    total_members: int
    roles_by_member_count: List[RoleMemberCount]
    permissions_by_module: List[ModulePermissionCount]


# ============================================================================
# Permission Check Schemas
# ============================================================================

class PermissionCheck(BaseModel):
    """Outcome of a single permission check."""
    has_permission: bool
    is_super_admin: bool
    role_id: Optional[str] = None
    role_name: Optional[str] = None


class PermissionCheckManyRequest(BaseModel):
    codes: List[str] = Field(..., min_length=1, max_length=200)


class PermissionCheckManyResponse(BaseModel):
    permissions: Dict[str, bool]


class UserPermissionsResponse(BaseModel):
    """Effective permissions of the current user in an organization."""
    user_id: str
    organization_id: str
    is_super_admin: bool
    role_id: Optional[str] = None
    role_name: Optional[str] = None
    permissions: List[str]


# ============================================================================
# Audit Log Schemas
# ============================================================================

class AuditLogResponse(BaseModel):
    """Schema for audit log response."""
    id: str
    user_id: Optional[str]
    action: str
    resource_type: str
    resource_id: Optional[str]
    organization_id: Optional[str]
    details: Optional[Dict[str, Any]]
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditLogListResponse(BaseModel):
    """Schema for paginated audit log list."""
    items: List[AuditLogResponse]
    total: int
    page: int
    page_size: int
    pages: int
