"""
Permission resolution for organization members.

A member holds exactly one role per organization. Resolution order:

1. No active membership -> denied (never an error).
2. Super-admin membership -> granted, without looking at role grants.
3. Otherwise granted iff the role has an allowed RolePermission for the code.

Module-level access is gated by entitlements first: a module the organization
has not activated is closed to everyone, whatever their role grants.
"""
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Set

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.modules.catalog import ModuleCatalog
from app.features.modules.service import EntitlementEngine
from app.features.organizations.models import OrganizationMember
from app.features.permissions.models import Permission, Role, RolePermission
from app.features.permissions.schemas import PermissionCheck
from app.utils import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class MembershipSnapshot:
    user_id: str
    organization_id: str
    is_super_admin: bool
    role_id: Optional[str]
    role_name: Optional[str]


class PermissionResolver:
    def __init__(
        self,
        db: AsyncSession,
        entitlements: Optional[EntitlementEngine] = None,
        catalog: Optional[ModuleCatalog] = None,
    ):
        self.db = db
        self.catalog = catalog or ModuleCatalog(db)
        self.entitlements = entitlements or EntitlementEngine(db, catalog=self.catalog)

    async def find_active_membership(self, user_id: str, organization_id: str) -> Optional[MembershipSnapshot]:
        stmt = (
            select(OrganizationMember.is_super_admin, OrganizationMember.role_id, Role.name)
            .outerjoin(Role, Role.id == OrganizationMember.role_id)
            .where(
                OrganizationMember.user_id == user_id,
                OrganizationMember.organization_id == organization_id,
                OrganizationMember.is_active.is_(True),
            )
        )
        row = (await self.db.execute(stmt)).first()
        if row is None:
            return None
        return MembershipSnapshot(
            user_id=user_id,
            organization_id=organization_id,
            is_super_admin=row.is_super_admin,
            role_id=row.role_id,
            role_name=row.name,
        )

    async def list_role_permission_codes(self, role_id: Optional[str]) -> Set[str]:
        if role_id is None:
            return set()
        stmt = (
            select(Permission.code)
            .join(RolePermission, RolePermission.permission_id == Permission.id)
            .where(RolePermission.role_id == role_id, RolePermission.allowed.is_(True))
        )
        result = await self.db.execute(stmt)
        return set(result.scalars().all())

    async def check_permission(self, user_id: str, organization_id: str, permission_code: str) -> PermissionCheck:
        try:
            membership = await self.find_active_membership(user_id, organization_id)
            if membership is None:
                log.debug("User %s has no active membership in organization %s", user_id, organization_id)
                return PermissionCheck(has_permission=False, is_super_admin=False)

            if membership.is_super_admin:
                return PermissionCheck(
                    has_permission=True,
                    is_super_admin=True,
                    role_id=membership.role_id,
                    role_name=membership.role_name,
                )

            codes = await self.list_role_permission_codes(membership.role_id)
        except SQLAlchemyError:
            log.exception("Error checking permission %s for user %s in organization %s",
                          permission_code, user_id, organization_id)
            return PermissionCheck(has_permission=False, is_super_admin=False)

        granted = permission_code in codes
        if not granted:
            log.debug("User %s denied %s in organization %s", user_id, permission_code, organization_id)
        return PermissionCheck(
            has_permission=granted,
            is_super_admin=False,
            role_id=membership.role_id,
            role_name=membership.role_name,
        )

    async def check_multiple_permissions(
        self, user_id: str, organization_id: str, permission_codes: Iterable[str]
    ) -> Dict[str, bool]:
        codes = list(dict.fromkeys(permission_codes))
        try:
            membership = await self.find_active_membership(user_id, organization_id)
            if membership is None:
                return {code: False for code in codes}
            if membership.is_super_admin:
                return {code: True for code in codes}
            granted = await self.list_role_permission_codes(membership.role_id)
        except SQLAlchemyError:
            log.exception("Error checking permissions for user %s in organization %s", user_id, organization_id)
            return {code: False for code in codes}
        return {code: code in granted for code in codes}

    async def get_user_permission_codes(self, user_id: str, organization_id: str) -> Set[str]:
        """Every permission code the member effectively holds."""
        try:
            membership = await self.find_active_membership(user_id, organization_id)
            if membership is None:
                return set()
            if membership.is_super_admin:
                result = await self.db.execute(select(Permission.code))
                return set(result.scalars().all())
            return await self.list_role_permission_codes(membership.role_id)
        except SQLAlchemyError:
            log.exception("Error listing permissions for user %s in organization %s", user_id, organization_id)
            return set()

    async def can_access_module(self, user_id: str, organization_id: str, module_code: str) -> bool:
        """
        Module-level access: the module must be active for the organization,
        and the member must hold at least one of its permissions. Modules
        without granular permissions are open to every active member.
        """
        try:
            if not await self.entitlements.is_module_active(organization_id, module_code):
                log.debug("Module %s is not active for organization %s", module_code, organization_id)
                return False

            membership = await self.find_active_membership(user_id, organization_id)
            if membership is None:
                return False

            module_permissions = await self.catalog.list_permissions_by_module(module_code)
            if not module_permissions:
                return True
            if membership.is_super_admin:
                return True

            granted = await self.list_role_permission_codes(membership.role_id)
        except SQLAlchemyError:
            log.exception("Error checking access to module %s for user %s in organization %s",
                          module_code, user_id, organization_id)
            return False

        return any(permission.code in granted for permission in module_permissions)
