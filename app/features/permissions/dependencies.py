"""
Permission dependencies for organization-scoped routes, and audit logging.

Routes that act on an organization take `organization_id` from the path;
the dependencies below resolve the current user's access against it. There
is no implicit "current organization".
"""
from typing import Any, Dict, Optional
from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.users.dependencies import get_current_user
from app.features.users.models import User
from app.features.permissions.models import AuditLog
from app.features.permissions.resolver import PermissionResolver
from app.utils import get_logger


log = get_logger(__name__)


def get_permission_resolver(db: AsyncSession = Depends(get_db)) -> PermissionResolver:
    return PermissionResolver(db)


def require_permission(permission_code: str):
    """
    FastAPI dependency to require a permission in the organization named by
    the `organization_id` path parameter.

    Usage:
        @router.post("/organizations/{organization_id}/modules/{module_code}/activate")
        async def activate(
            organization_id: str,
            user: User = Depends(require_permission(AdminPermission.MODULES_MANAGE)),
        ):
            ...

    Raises:
        HTTPException: 403 if the user lacks the permission
    """
    code = getattr(permission_code, "value", permission_code)

    async def permission_dependency(
        organization_id: str,
        current_user: User = Depends(get_current_user),
        resolver: PermissionResolver = Depends(get_permission_resolver),
    ) -> User:
        # Platform admins have all permissions
        if current_user.is_admin:
            return current_user
        check = await resolver.check_permission(current_user.id, organization_id, code)
        if not check.has_permission:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: {code}"
            )
        return current_user

    return permission_dependency


def require_module_access(module_code: str):
    """
    FastAPI dependency guarding every route of a functional module: the module
    must be active for the organization and the user must hold at least one
    of its permissions.
    """
    async def module_dependency(
        organization_id: str,
        current_user: User = Depends(get_current_user),
        resolver: PermissionResolver = Depends(get_permission_resolver),
    ) -> User:
        if not await resolver.can_access_module(current_user.id, organization_id, module_code):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access to module '{module_code}' denied"
            )
        return current_user

    return module_dependency


async def require_membership(
    organization_id: str,
    current_user: User = Depends(get_current_user),
    resolver: PermissionResolver = Depends(get_permission_resolver),
) -> User:
    """Any active member of the organization (or a platform admin)."""
    if current_user.is_admin:
        return current_user
    if await resolver.find_active_membership(current_user.id, organization_id) is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You are not a member of this organization"
        )
    return current_user


# ============================================================================
# Audit Logging
# ============================================================================

async def create_audit_log(
    db: AsyncSession,
    user_id: Optional[str],
    action: str,
    resource_type: str,
    resource_id: Optional[str] = None,
    organization_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None
) -> AuditLog:
    """
    Add an audit log entry to the current unit of work (flushed, not committed).

    Args:
        db: Database session
        user_id: User performing the action (None for batch jobs)
        action: e.g. "activate_module", "repair", "set_permissions"
        resource_type: e.g. "module", "role", "organization"
    """
    audit_log = AuditLog(
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        organization_id=organization_id,
        details=details,
        ip_address=ip_address,
        user_agent=user_agent
    )
    db.add(audit_log)
    await db.flush()

    log.info(
        f"Audit: user={user_id} action={action} resource={resource_type}:{resource_id} org={organization_id}"
    )
    return audit_log
