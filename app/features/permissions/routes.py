"""
Permission management API routes.

Provides endpoints for the permission catalog, organization roles and their
grants, member role assignment, and permission checks for the current user.
"""
from typing import Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.modules.catalog import ModuleCatalog
from app.features.organizations.dependencies import get_organization_by_id
from app.features.organizations.models import Organization
from app.features.organizations.schemas import MemberResponse
from app.features.users.dependencies import get_current_user, get_current_admin_user
from app.features.users.models import User
from app.features.permissions.constants import AdminPermission
from app.features.permissions.models import Permission, Role, AuditLog
from app.features.permissions.schemas import (
    PermissionCreate,
    PermissionResponse,
    RoleCreate,
    RoleUpdate,
    RoleClone,
    RoleResponse,
    RoleWithPermissions,
    SetRolePermissions,
    AssignRoleToMember,
    RolesMatrix,
    RoleAnalytics,
    PermissionCheck,
    PermissionCheckManyRequest,
    PermissionCheckManyResponse,
    UserPermissionsResponse,
    AuditLogResponse,
    AuditLogListResponse,
)
from app.features.permissions.dependencies import (
    require_membership,
    require_permission,
    create_audit_log,
    get_permission_resolver,
)
from app.features.permissions.resolver import PermissionResolver
from app.features.permissions.service import RoleAdministration, RoleAdministrationError, RoleNotFound
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter()

require_roles_manage = require_permission(AdminPermission.ROLES_MANAGE)


def _http_error(e: RoleAdministrationError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.detail)


async def _get_organization_role(
    admin: RoleAdministration, organization_id: str, role_id: str, writable: bool = False
) -> Role:
    """
    Load a role visible from the organization.

    Shared roles are visible everywhere but only the organization's own roles
    may be changed from here.
    """
    role = await admin.get_role(role_id)
    allowed_scopes = (organization_id,) if writable else (None, organization_id)
    if role.organization_id not in allowed_scopes:
        raise RoleNotFound("Role not found in this organization")
    return role


# ============================================================================
# Permission Catalog Routes
# ============================================================================

@router.post("/permissions", response_model=PermissionResponse, status_code=status.HTTP_201_CREATED)
async def create_permission(
    permission: PermissionCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_admin_user)  # Only admins can create permissions
):
    """Create a new permission in a module (admin only)."""
    if await ModuleCatalog(db).find_module(permission.module) is None:
        raise HTTPException(status_code=404, detail=f"Module '{permission.module}' not found")

    try:
        db_permission = Permission(**permission.model_dump())
        db.add(db_permission)
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Permission with this code already exists"
        )

    await create_audit_log(
        db,
        user_id=current_user.id,
        action="create",
        resource_type="permission",
        resource_id=db_permission.id,
        details=permission.model_dump(),
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent")
    )
    await db.commit()
    await db.refresh(db_permission)
    return db_permission


@router.get("/permissions", response_model=List[PermissionResponse])
async def list_permissions(
    module: Optional[str] = None,
    category: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List all permissions with optional filtering."""
    stmt = select(Permission)

    if module:
        stmt = stmt.where(Permission.module == module)
    if category:
        stmt = stmt.where(Permission.category == category)

    stmt = stmt.order_by(Permission.module, Permission.code)
    result = await db.execute(stmt)
    return result.scalars().all()


@router.get("/permissions/by-module", response_model=Dict[str, List[PermissionResponse]])
async def list_permissions_by_module(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Permissions grouped by module code, for role editors."""
    return await RoleAdministration(db).permissions_grouped_by_module()


# ============================================================================
# Organization Role Routes
# ============================================================================

@router.get("/organizations/{organization_id}/roles", response_model=List[RoleResponse])
async def list_roles(
    organization: Organization = Depends(get_organization_by_id),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_membership)
):
    """Shared roles plus the organization's own roles, with their member counts."""
    admin = RoleAdministration(db)
    counts = await admin.member_counts(organization.id)
    return [
        RoleResponse.model_validate(role).model_copy(update={"member_count": counts.get(role.id, 0)})
        for role in await admin.list_roles(organization.id)
    ]


@router.post("/organizations/{organization_id}/roles", response_model=RoleWithPermissions,
             status_code=status.HTTP_201_CREATED)
async def create_role(
    role: RoleCreate,
    organization: Organization = Depends(get_organization_by_id),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles_manage)
):
    admin = RoleAdministration(db, actor_id=current_user.id)
    try:
        db_role = await admin.create_role(role.model_copy(update={"organization_id": organization.id}))
    except RoleAdministrationError as e:
        raise _http_error(e)
    await db.commit()
    return db_role


@router.get("/organizations/{organization_id}/roles/analytics", response_model=RoleAnalytics)
async def get_role_analytics(
    organization: Organization = Depends(get_organization_by_id),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_membership)
):
    """Role counts, members per role and permissions per module."""
    return await RoleAdministration(db).role_analytics(organization.id)


@router.get("/organizations/{organization_id}/roles/matrix", response_model=RolesMatrix)
async def export_roles_matrix(
    organization: Organization = Depends(get_organization_by_id),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_membership)
):
    """Role name -> granted permission codes, for every role visible here."""
    roles = await RoleAdministration(db).export_roles_matrix(organization.id)
    return RolesMatrix(roles=roles)


@router.put("/organizations/{organization_id}/roles/matrix", response_model=RolesMatrix)
async def import_roles_matrix(
    matrix: RolesMatrix,
    organization: Organization = Depends(get_organization_by_id),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles_manage)
):
    """
    Apply a roles matrix to the organization's own roles.

    Unknown roles are created; system roles are skipped.
    """
    admin = RoleAdministration(db, actor_id=current_user.id)
    try:
        await admin.import_roles_matrix(matrix.roles, organization.id)
    except RoleAdministrationError as e:
        raise _http_error(e)
    await db.commit()
    return RolesMatrix(roles=await admin.export_roles_matrix(organization.id))


@router.get("/organizations/{organization_id}/roles/{role_id}", response_model=RoleWithPermissions)
async def get_role(
    role_id: str,
    organization: Organization = Depends(get_organization_by_id),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_membership)
):
    try:
        return await _get_organization_role(RoleAdministration(db), organization.id, role_id)
    except RoleAdministrationError as e:
        raise _http_error(e)


@router.patch("/organizations/{organization_id}/roles/{role_id}", response_model=RoleResponse)
async def update_role(
    role_id: str,
    role_update: RoleUpdate,
    organization: Organization = Depends(get_organization_by_id),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles_manage)
):
    admin = RoleAdministration(db, actor_id=current_user.id)
    try:
        await _get_organization_role(admin, organization.id, role_id, writable=True)
        db_role = await admin.update_role(role_id, role_update)
    except RoleAdministrationError as e:
        raise _http_error(e)
    await db.commit()
    return db_role


@router.delete("/organizations/{organization_id}/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role(
    role_id: str,
    organization: Organization = Depends(get_organization_by_id),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles_manage)
):
    """Delete a role that no member holds."""
    admin = RoleAdministration(db, actor_id=current_user.id)
    try:
        await _get_organization_role(admin, organization.id, role_id, writable=True)
        await admin.delete_role(role_id)
    except RoleAdministrationError as e:
        raise _http_error(e)
    await db.commit()


@router.post("/organizations/{organization_id}/roles/{role_id}/clone", response_model=RoleWithPermissions,
             status_code=status.HTTP_201_CREATED)
async def clone_role(
    role_id: str,
    clone: RoleClone,
    organization: Organization = Depends(get_organization_by_id),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles_manage)
):
    """Copy a role and its grants. Shared and system roles can be cloned into the organization."""
    admin = RoleAdministration(db, actor_id=current_user.id)
    try:
        await _get_organization_role(admin, organization.id, role_id)
        db_role = await admin.clone_role(role_id, clone.name, organization_id=organization.id)
    except RoleAdministrationError as e:
        raise _http_error(e)
    await db.commit()
    return db_role


@router.put("/organizations/{organization_id}/roles/{role_id}/permissions", response_model=List[PermissionResponse])
async def set_role_permissions(
    role_id: str,
    grants: SetRolePermissions,
    organization: Organization = Depends(get_organization_by_id),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles_manage)
):
    """Replace every permission granted to the role."""
    admin = RoleAdministration(db, actor_id=current_user.id)
    try:
        await _get_organization_role(admin, organization.id, role_id, writable=True)
        permissions = await admin.set_role_permissions(role_id, grants.permission_ids)
    except RoleAdministrationError as e:
        raise _http_error(e)
    await db.commit()
    return permissions


@router.put("/organizations/{organization_id}/members/{user_id}/role", response_model=MemberResponse)
async def assign_member_role(
    user_id: str,
    assignment: AssignRoleToMember,
    organization: Organization = Depends(get_organization_by_id),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission(AdminPermission.MEMBERS_MANAGE))
):
    """Give a member a different role. A member holds one role per organization."""
    admin = RoleAdministration(db, actor_id=current_user.id)
    try:
        member = await admin.assign_role_to_member(organization.id, user_id, assignment.role_id)
    except RoleAdministrationError as e:
        raise _http_error(e)
    await db.commit()
    response = MemberResponse.model_validate(member)
    response.role_name = member.role.name if member.role else None
    return response


# ============================================================================
# Permission Check Routes
# ============================================================================

@router.get("/organizations/{organization_id}/permissions/check", response_model=PermissionCheck)
async def check_permission(
    organization_id: str,
    code: str = Query(..., min_length=1, description="Permission code to check"),
    resolver: PermissionResolver = Depends(get_permission_resolver),
    current_user: User = Depends(get_current_user)
):
    """Check whether the current user holds a permission in the organization."""
    return await resolver.check_permission(current_user.id, organization_id, code)


@router.post("/organizations/{organization_id}/permissions/check", response_model=PermissionCheckManyResponse)
async def check_permissions(
    organization_id: str,
    request_data: PermissionCheckManyRequest,
    resolver: PermissionResolver = Depends(get_permission_resolver),
    current_user: User = Depends(get_current_user)
):
    """Check several permission codes at once, e.g. to build a menu."""
    permissions = await resolver.check_multiple_permissions(current_user.id, organization_id, request_data.codes)
    return PermissionCheckManyResponse(permissions=permissions)


@router.get("/organizations/{organization_id}/permissions/me", response_model=UserPermissionsResponse)
async def get_my_permissions(
    organization_id: str,
    resolver: PermissionResolver = Depends(get_permission_resolver),
    current_user: User = Depends(get_current_user)
):
    membership = await resolver.find_active_membership(current_user.id, organization_id)
    if membership is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="You are not a member of this organization"
        )
    codes = await resolver.get_user_permission_codes(current_user.id, organization_id)
    return UserPermissionsResponse(
        user_id=current_user.id,
        organization_id=organization_id,
        is_super_admin=membership.is_super_admin,
        role_id=membership.role_id,
        role_name=membership.role_name,
        permissions=sorted(codes),
    )


# ============================================================================
# Audit Log Routes
# ============================================================================

@router.get("/audit-logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    skip: int = 0,
    limit: int = 50,
    organization_id: Optional[str] = None,
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_admin_user)  # Admin only
):
    """List audit logs with optional filtering."""
    stmt = select(AuditLog)

    if organization_id:
        stmt = stmt.where(AuditLog.organization_id == organization_id)
    if user_id:
        stmt = stmt.where(AuditLog.user_id == user_id)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if resource_type:
        stmt = stmt.where(AuditLog.resource_type == resource_type)

    count_stmt = select(func.count()).select_from(stmt.subquery())
    total = (await db.execute(count_stmt)).scalar() or 0

    stmt = stmt.order_by(AuditLog.created_at.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    logs = result.scalars().all()

    pages = (total + limit - 1) // limit if limit > 0 else 0
    page = (skip // limit) + 1 if limit > 0 else 1

    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(entry) for entry in logs],
        total=total,
        page=page,
        page_size=limit,
        pages=pages
    )
