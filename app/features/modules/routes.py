"""
Module catalog and per-organization entitlement routes.

Activation endpoints always answer with an OperationResult body; the HTTP
status follows its failure code (402 when the plan quota is exhausted).
"""
from typing import Annotated, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.core.results import OperationResult
from app.features.modules.catalog import ModuleCatalog, ModuleScope
from app.features.modules.schemas import ModuleAccessResponse, ModuleResponse, ModuleStatus, ModuleUpdate
from app.features.modules.service import EntitlementEngine
from app.features.organizations.dependencies import get_organization_by_id
from app.features.organizations.models import Organization
from app.features.permissions.constants import AdminPermission
from app.features.permissions.dependencies import (
    create_audit_log,
    get_permission_resolver,
    require_membership,
    require_permission,
)
from app.features.permissions.resolver import PermissionResolver
from app.features.permissions.schemas import PermissionResponse
from app.features.users.dependencies import get_current_admin_user, get_current_user
from app.features.users.models import User


router = APIRouter(tags=["modules"])


def get_entitlement_engine(db: AsyncSession = Depends(get_db)) -> EntitlementEngine:
    return EntitlementEngine(db)


# ============================================================================
# Catalog
# ============================================================================

@router.get("/modules", response_model=list[ModuleResponse])
async def list_modules(
    db: Annotated[AsyncSession, Depends(get_db)],
    scope: ModuleScope = Query("all", description="all, core or paid")
):
    return await ModuleCatalog(db).list_modules(scope)


@router.get("/modules/{module_code}/permissions", response_model=list[PermissionResponse])
async def list_module_permissions(
    module_code: str,
    db: Annotated[AsyncSession, Depends(get_db)]
):
    catalog = ModuleCatalog(db)
    if await catalog.find_module(module_code) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Module '{module_code}' not found"
        )
    return await catalog.list_permissions_by_module(module_code)


@router.patch("/modules/{module_code}", response_model=ModuleResponse)
async def update_module(
    module_code: str,
    update_data: ModuleUpdate,
    admin: Annotated[User, Depends(get_current_admin_user)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """
    Edit a catalog entry (admin only).

    Turning `is_active` off withdraws a paid module from activation; existing
    activations are left alone.
    """
    module = await ModuleCatalog(db).find_module(module_code)
    if module is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Module '{module_code}' not found"
        )

    changes = update_data.model_dump(exclude_unset=True)
    for field, value in changes.items():
        setattr(module, field, value)

    await create_audit_log(
        db,
        user_id=admin.id,
        action="update",
        resource_type="module",
        resource_id=module.code,
        details=changes,
    )
    await db.commit()
    await db.refresh(module)
    return module


# ============================================================================
# Organization entitlements
# ============================================================================

@router.get("/organizations/{organization_id}/modules", response_model=ModuleStatus)
async def get_module_status(
    organization: Annotated[Organization, Depends(get_organization_by_id)],
    _user: Annotated[User, Depends(require_permission(AdminPermission.MODULES_VIEW))],
    engine: Annotated[EntitlementEngine, Depends(get_entitlement_engine)]
):
    """Plan, active modules and remaining quota of the organization."""
    return await engine.get_status(organization.id)


@router.get("/organizations/{organization_id}/modules/active", response_model=list[ModuleResponse])
async def list_active_modules(
    organization: Annotated[Organization, Depends(get_organization_by_id)],
    _user: Annotated[User, Depends(require_membership)],
    engine: Annotated[EntitlementEngine, Depends(get_entitlement_engine)]
):
    return await engine.list_active_modules(organization.id)


async def _audit_result(
    db: AsyncSession,
    request: Request,
    user_id: str,
    action: str,
    organization_id: str,
    module_code: str,
    result: OperationResult,
) -> None:
    if not result.success:
        return
    await create_audit_log(
        db,
        user_id=user_id,
        action=action,
        resource_type="module",
        resource_id=module_code,
        organization_id=organization_id,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    await db.commit()


@router.post("/organizations/{organization_id}/modules/{module_code}/activate", response_model=OperationResult)
async def activate_module(
    module_code: str,
    request: Request,
    response: Response,
    organization: Annotated[Organization, Depends(get_organization_by_id)],
    user: Annotated[User, Depends(require_permission(AdminPermission.MODULES_MANAGE))],
    engine: Annotated[EntitlementEngine, Depends(get_entitlement_engine)]
):
    # A failed unit of work rolls the session back and expires loaded objects
    organization_id, user_id = organization.id, user.id
    result = await engine.activate(organization_id, module_code)
    await _audit_result(engine.db, request, user_id, "activate_module", organization_id, module_code, result)
    response.status_code = result.http_status
    return result


@router.post("/organizations/{organization_id}/modules/{module_code}/deactivate", response_model=OperationResult)
async def deactivate_module(
    module_code: str,
    request: Request,
    response: Response,
    organization: Annotated[Organization, Depends(get_organization_by_id)],
    user: Annotated[User, Depends(require_permission(AdminPermission.MODULES_MANAGE))],
    engine: Annotated[EntitlementEngine, Depends(get_entitlement_engine)]
):
    organization_id, user_id = organization.id, user.id
    result = await engine.deactivate(organization_id, module_code)
    await _audit_result(engine.db, request, user_id, "deactivate_module", organization_id, module_code, result)
    response.status_code = result.http_status
    return result


@router.get("/organizations/{organization_id}/modules/{module_code}/access", response_model=ModuleAccessResponse)
async def check_module_access(
    module_code: str,
    organization_id: str,
    user: Annotated[User, Depends(get_current_user)],
    resolver: Annotated[PermissionResolver, Depends(get_permission_resolver)],
    user_id: Optional[str] = Query(None, description="Check another user (platform admins only)")
):
    """Whether the user may enter the module: it is active and they hold one of its permissions."""
    if user_id is not None and user_id != user.id and not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required"
        )
    has_access = await resolver.can_access_module(user_id or user.id, organization_id, module_code)
    return ModuleAccessResponse(module_code=module_code, has_access=has_access)
