"""
Role and grant administration.

All writes to roles, role_permissions and member role assignments go through
this class so that system-role protection and auditing are applied in one
place. Methods flush; committing is left to the caller's unit of work.
"""
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.organizations.models import OrganizationMember
from app.features.permissions.dependencies import create_audit_log
from app.features.permissions.models import Permission, Role, RolePermission
from app.features.permissions.schemas import (
    ModulePermissionCount,
    RoleAnalytics,
    RoleCreate,
    RoleMemberCount,
    RoleUpdate,
)
from app.utils import get_logger


log = get_logger(__name__)


class RoleAdministrationError(Exception):
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class RoleNotFound(RoleAdministrationError):
    status_code = 404


class MemberNotFound(RoleAdministrationError):
    status_code = 404


class SystemRoleProtected(RoleAdministrationError):
    status_code = 403


class RoleInUse(RoleAdministrationError):
    status_code = 409


class RoleNameTaken(RoleAdministrationError):
    status_code = 409


class UnknownPermission(RoleAdministrationError):
    status_code = 400


class RoleAdministration:
    def __init__(self, db: AsyncSession, actor_id: Optional[str] = None):
        self.db = db
        self.actor_id = actor_id

    async def _audit(self, action: str, resource_id: str, organization_id: Optional[str], **details) -> None:
        await create_audit_log(
            self.db,
            user_id=self.actor_id,
            action=action,
            resource_type="role",
            resource_id=resource_id,
            organization_id=organization_id,
            details=details or None,
        )

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    async def get_role(self, role_id: str) -> Role:
        role = await self.db.get(Role, role_id)
        if role is None:
            raise RoleNotFound("Role not found")
        return role

    async def list_roles(self, organization_id: Optional[str] = None) -> List[Role]:
        """Shared roles plus the organization's own roles, system roles first."""
        stmt = select(Role)
        if organization_id:
            stmt = stmt.where(or_(Role.organization_id == organization_id, Role.organization_id.is_(None)))
        else:
            stmt = stmt.where(Role.organization_id.is_(None))
        stmt = stmt.order_by(Role.is_system.desc(), Role.name)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def _find_role_by_name(self, name: str, organization_id: Optional[str]) -> Optional[Role]:
        stmt = select(Role).where(func.lower(Role.name) == name.lower())
        if organization_id is None:
            stmt = stmt.where(Role.organization_id.is_(None))
        else:
            stmt = stmt.where(Role.organization_id == organization_id)
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def create_role(self, data: RoleCreate, is_system: bool = False) -> Role:
        if await self._find_role_by_name(data.name, data.organization_id):
            raise RoleNameTaken(f"Role '{data.name}' already exists")

        role = Role(
            name=data.name,
            description=data.description,
            organization_id=data.organization_id,
            is_system=is_system,
        )
        self.db.add(role)
        await self.db.flush()
        await self.db.refresh(role)
        await self._audit("create", role.id, role.organization_id, name=role.name)
        log.info("Role %r created (org=%s)", role.name, role.organization_id)
        return role

    async def update_role(self, role_id: str, data: RoleUpdate) -> Role:
        role = await self.get_role(role_id)
        if role.is_system:
            raise SystemRoleProtected("System roles cannot be modified")

        update_data = data.model_dump(exclude_unset=True)
        new_name = update_data.get("name")
        if new_name and new_name.lower() != role.name.lower():
            if await self._find_role_by_name(new_name, role.organization_id):
                raise RoleNameTaken(f"Role '{new_name}' already exists")

        for key, value in update_data.items():
            setattr(role, key, value)
        await self.db.flush()
        await self.db.refresh(role)
        await self._audit("update", role.id, role.organization_id, **update_data)
        return role

    async def delete_role(self, role_id: str) -> None:
        role = await self.get_role(role_id)
        if role.is_system:
            raise SystemRoleProtected("System roles cannot be deleted")

        members = await self.db.execute(
            select(OrganizationMember.id).where(OrganizationMember.role_id == role_id).limit(1)
        )
        if members.first() is not None:
            raise RoleInUse("Cannot delete a role that is assigned to members")

        await self._audit("delete", role.id, role.organization_id, name=role.name)
        await self.db.delete(role)
        await self.db.flush()

    async def clone_role(self, role_id: str, new_name: str, organization_id: Optional[str] = None) -> Role:
        """Copy a role and its grants, into `organization_id` or the original's scope."""
        original = await self.get_role(role_id)
        clone = await self.create_role(RoleCreate(
            name=new_name,
            description=f"Copy of {original.name}",
            organization_id=organization_id or original.organization_id,
        ))
        permission_ids = [permission.id for permission in original.permissions]
        if permission_ids:
            await self.set_role_permissions(clone.id, permission_ids)
        return clone

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    async def get_role_permissions(self, role_id: str) -> List[Permission]:
        await self.get_role(role_id)
        stmt = (
            select(Permission)
            .join(RolePermission, RolePermission.permission_id == Permission.id)
            .where(RolePermission.role_id == role_id, RolePermission.allowed.is_(True))
            .order_by(Permission.module, Permission.code)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def set_role_permissions(
        self, role_id: str, permission_ids: Iterable[str], allow_system: bool = False
    ) -> List[Permission]:
        """
        Replace the role's grants with exactly `permission_ids`.

        Only allowed grants are stored; anything not listed is denied.
        """
        role = await self.get_role(role_id)
        if role.is_system and not allow_system:
            raise SystemRoleProtected("System role permissions cannot be modified")

        wanted = list(dict.fromkeys(permission_ids))
        permissions = []
        if wanted:
            result = await self.db.execute(select(Permission).where(Permission.id.in_(wanted)))
            by_id = {permission.id: permission for permission in result.scalars().all()}
            missing = set(wanted) - by_id.keys()
            if missing:
                raise UnknownPermission(f"Unknown permission ids: {sorted(missing)}")
            permissions = [by_id[permission_id] for permission_id in wanted]

        # Old grants must be gone before rows with the same keys are inserted
        role.grants.clear()
        await self.db.flush()
        for permission in permissions:
            role.grants.append(RolePermission(permission=permission, allowed=True))
        await self.db.flush()

        await self._audit("set_permissions", role.id, role.organization_id, permission_ids=wanted)
        return sorted(permissions, key=lambda p: (p.module, p.code))

    async def permissions_grouped_by_module(self) -> Dict[str, List[Permission]]:
        result = await self.db.execute(select(Permission).order_by(Permission.module, Permission.name))
        grouped: Dict[str, List[Permission]] = {}
        for permission in result.scalars().all():
            grouped.setdefault(permission.module, []).append(permission)
        return grouped

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------

    async def member_counts(self, organization_id: str) -> Dict[str, int]:
        """Role id -> number of active members holding it."""
        stmt = (
            select(OrganizationMember.role_id, func.count())
            .where(
                OrganizationMember.organization_id == organization_id,
                OrganizationMember.is_active.is_(True),
                OrganizationMember.role_id.is_not(None),
            )
            .group_by(OrganizationMember.role_id)
        )
        result = await self.db.execute(stmt)
        return {role_id: count for role_id, count in result.all()}

    async def role_analytics(self, organization_id: str) -> RoleAnalytics:
        roles = await self.list_roles(organization_id)
        counts = await self.member_counts(organization_id)

        total_members = await self.db.scalar(
            select(func.count()).select_from(OrganizationMember).where(
                OrganizationMember.organization_id == organization_id,
                OrganizationMember.is_active.is_(True),
            )
        )
        result = await self.db.execute(select(Permission.module, func.count()).group_by(Permission.module))
        by_module = [ModulePermissionCount(module=module, permission_count=count) for module, count in result.all()]
        by_module.sort(key=lambda item: (-item.permission_count, item.module))

        by_members = [
            RoleMemberCount(role_id=role.id, role_name=role.name, member_count=counts.get(role.id, 0))
            for role in roles
        ]
        by_members.sort(key=lambda item: (-item.member_count, item.role_name))

        system_roles = sum(1 for role in roles if role.is_system)
        return RoleAnalytics(
            total_roles=len(roles),
            system_roles=system_roles,
            custom_roles=len(roles) - system_roles,
            total_permissions=sum(item.permission_count for item in by_module),
            total_members=total_members or 0,
            roles_by_member_count=by_members,
            permissions_by_module=by_module,
        )

    # ------------------------------------------------------------------
    # Members
    # ------------------------------------------------------------------

    async def assign_role_to_member(self, organization_id: str, user_id: str, role_id: str) -> OrganizationMember:
        role = await self.get_role(role_id)
        if role.organization_id not in (None, organization_id):
            raise RoleNotFound("Role not found in this organization")

        result = await self.db.execute(
            select(OrganizationMember).where(
                OrganizationMember.organization_id == organization_id,
                OrganizationMember.user_id == user_id,
            )
        )
        member = result.scalar_one_or_none()
        if member is None:
            raise MemberNotFound("Member not found in this organization")

        member.role_id = role.id
        await self.db.flush()
        await self.db.refresh(member, ["role"])
        await create_audit_log(
            self.db,
            user_id=self.actor_id,
            action="assign_role",
            resource_type="organization_member",
            resource_id=member.id,
            organization_id=organization_id,
            details={"user_id": user_id, "role_id": role.id, "role_name": role.name},
        )
        return member

    # ------------------------------------------------------------------
    # Matrix export / import
    # ------------------------------------------------------------------

    async def export_roles_matrix(self, organization_id: Optional[str] = None) -> Dict[str, List[str]]:
        matrix = {}
        for role in await self.list_roles(organization_id):
            matrix[role.name] = sorted(permission.code for permission in role.permissions)
        return matrix

    async def import_roles_matrix(
        self, matrix: Dict[str, List[str]], organization_id: Optional[str] = None
    ) -> List[str]:
        """
        Apply a role name -> permission codes matrix.

        Missing roles are created in the given organization scope. System roles,
        and shared roles seen from an organization, are left untouched.
        Returns the names of the roles that were written.
        """
        all_codes = {code for codes in matrix.values() for code in codes}
        result = await self.db.execute(select(Permission.code, Permission.id).where(Permission.code.in_(all_codes)))
        ids_by_code = {row.code: row.id for row in result.all()}
        unknown = all_codes - ids_by_code.keys()
        if unknown:
            raise UnknownPermission(f"Unknown permission codes: {sorted(unknown)}")

        written = []
        for name, codes in matrix.items():
            role = await self._find_role_by_name(name, organization_id)
            if role is None and organization_id is not None and await self._find_role_by_name(name, None):
                log.warning("Skipping shared role %r during matrix import", name)
                continue
            if role is not None and role.is_system:
                log.warning("Skipping system role %r during matrix import", name)
                continue
            if role is None:
                role = await self.create_role(RoleCreate(name=name, organization_id=organization_id))
            await self.set_role_permissions(role.id, [ids_by_code[code] for code in codes])
            written.append(role.name)
        return written
