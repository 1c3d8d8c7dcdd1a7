"""
Organization onboarding.
"""
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.modules.service import EntitlementEngine
from app.features.organizations.models import Organization, OrganizationMember
from app.features.permissions.constants import SystemRole
from app.features.permissions.models import Role
from app.utils import get_logger


log = get_logger(__name__)


async def find_system_role(db: AsyncSession, role: SystemRole) -> Optional[Role]:
    result = await db.execute(
        select(Role).where(
            Role.name == role.value,
            Role.is_system.is_(True),
            Role.organization_id.is_(None),
        )
    )
    return result.scalars().first()


async def create_organization(db: AsyncSession, name: str, owner_id: str) -> Organization:
    """
    Create an organization with its owner, default subscription and core modules.

    The owner becomes a super-admin member holding the Owner role (when the
    role has been seeded). Everything is flushed in the caller's transaction.
    """
    organization = Organization(name=name)
    db.add(organization)
    await db.flush()

    owner_role = await find_system_role(db, SystemRole.OWNER)
    db.add(OrganizationMember(
        user_id=owner_id,
        organization_id=organization.id,
        role_id=owner_role.id if owner_role else None,
        is_super_admin=True,
    ))

    engine = EntitlementEngine(db)
    subscription = await engine.plans.assign_default_subscription(organization.id)
    await engine.ensure_core_modules_activated(organization.id)

    await db.refresh(organization, ["members"])
    log.info(
        "Organization %s created by %s on plan %s",
        organization.id, owner_id, subscription.plan.code if subscription else None,
    )
    return organization
