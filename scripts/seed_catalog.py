"""
Seed script to populate the module catalog, plans, permissions and system roles.

Run this script after database initialization to create:
- Core and paid modules
- Subscription plans (the default plan included)
- Module permissions, including the organization.* administration codes
- System roles (Owner, Admin, Member) and their grants

Existing rows are left as they are, so the script can be re-run safely.

Usage:
    python -m scripts.seed_catalog
"""
import asyncio
from decimal import Decimal
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import AsyncSessionLocal, init_db
from app.features.modules.models import Module
from app.features.permissions.constants import AdminPermission, SystemRole
from app.features.permissions.models import Permission, Role
from app.features.permissions.schemas import RoleCreate
from app.features.permissions.service import RoleAdministration
from app.features.plans.models import Plan
from app.utils import get_logger


log = get_logger(__name__)


# code, name, description, icon, is_core, rank
DEFAULT_MODULES = [
    ("dashboard", "Dashboard", "Overview and key indicators", "layout-dashboard", True, 0),
    ("organization", "Organization", "Members, roles, plan and modules", "building", True, 1),
    ("customers", "Customers", "Shared customer directory", "users", True, 2),
    ("inventory", "Inventory", "Products, stock movements and transfers", "package", False, 10),
    ("pos", "Point of Sale", "Sales, cash registers and tables", "shopping-cart", False, 11),
    ("parking", "Parking", "Spaces, sessions and rates", "car", False, 12),
    ("crm", "CRM", "Pipeline, opportunities and inbox", "handshake", False, 13),
    ("hrm", "Human Resources", "Employees, attendance and payroll", "id-card", False, 14),
    ("gym", "Gym", "Memberships, classes and check-in", "dumbbell", False, 15),
    ("accounting", "Accounting", "Ledger, invoices and reports", "calculator", False, 16),
]


# code, name, monthly, yearly, trial_days, max_modules, max_branches
DEFAULT_PLANS = [
    ("free", "Free", Decimal("0"), Decimal("0"), 0, 1, 1),
    ("basic", "Basic", Decimal("29"), Decimal("290"), 14, 3, 2),
    ("pro", "Pro", Decimal("79"), Decimal("790"), 14, 7, 10),
]


# code, module, name, category
DEFAULT_PERMISSIONS = [
    ("dashboard.view", "dashboard", "View dashboard", "view"),

    (AdminPermission.MODULES_VIEW.value, "organization", "View modules and plan", "view"),
    (AdminPermission.MODULES_MANAGE.value, "organization", "Activate and deactivate modules", "manage"),
    (AdminPermission.ROLES_MANAGE.value, "organization", "Manage roles and permissions", "manage"),
    (AdminPermission.MEMBERS_MANAGE.value, "organization", "Manage members", "manage"),
    (AdminPermission.SUBSCRIPTION_MANAGE.value, "organization", "Change subscription plan", "manage"),

    ("customers.view", "customers", "View customers", "view"),
    ("customers.manage", "customers", "Create and edit customers", "manage"),

    ("inventory.products.view", "inventory", "View products", "view"),
    ("inventory.products.edit", "inventory", "Create and edit products", "manage"),
    ("inventory.movements.create", "inventory", "Register stock movements", "operate"),

    ("pos.sales.create", "pos", "Register sales", "operate"),
    ("pos.registers.manage", "pos", "Open and close cash registers", "manage"),

    ("parking.sessions.manage", "parking", "Register vehicle entries and exits", "operate"),
    ("parking.rates.manage", "parking", "Manage parking rates", "manage"),

    ("crm.opportunities.view", "crm", "View pipeline", "view"),
    ("crm.opportunities.manage", "crm", "Manage opportunities", "manage"),

    ("hrm.employees.view", "hrm", "View employees", "view"),
    ("hrm.employees.manage", "hrm", "Manage employees", "manage"),
    ("hrm.payroll.run", "hrm", "Run payroll", "operate"),

    ("gym.checkin", "gym", "Check members in", "operate"),
    ("gym.classes.manage", "gym", "Manage classes", "manage"),

    ("accounting.ledger.view", "accounting", "View ledger", "view"),
    ("accounting.entries.post", "accounting", "Post journal entries", "operate"),
]


DEFAULT_ROLES = {
    SystemRole.OWNER: {
        "description": "Organization owner with every permission",
        "permissions": "ALL",
    },
    SystemRole.ADMIN: {
        "description": "Organization administrator",
        "permissions": "ALL",
        "exclude": [AdminPermission.SUBSCRIPTION_MANAGE.value],
    },
    SystemRole.MEMBER: {
        "description": "Day-to-day access to the organization's modules",
        "categories": ["view", "operate"],
    },
}


async def seed_modules(db: AsyncSession) -> None:
    log.info("Creating module catalog...")
    for code, name, description, icon, is_core, rank in DEFAULT_MODULES:
        if await db.get(Module, code) is not None:
            log.debug(f"Module '{code}' already exists, skipping")
            continue
        db.add(Module(code=code, name=name, description=description, icon=icon, is_core=is_core, rank=rank))
        log.info(f"Created {'core' if is_core else 'paid'} module: {code}")
    await db.flush()


async def seed_plans(db: AsyncSession) -> None:
    log.info("Creating plans...")
    for code, name, monthly, yearly, trial_days, max_modules, max_branches in DEFAULT_PLANS:
        result = await db.execute(select(Plan).where(Plan.code == code))
        if result.scalars().first():
            log.debug(f"Plan '{code}' already exists, skipping")
            continue
        db.add(Plan(
            code=code,
            name=name,
            price_usd_month=monthly,
            price_usd_year=yearly,
            trial_days=trial_days,
            max_modules=max_modules,
            max_branches=max_branches,
            features={},
        ))
        log.info(f"Created plan: {code} (max_modules={max_modules})")
    await db.flush()


async def seed_permissions(db: AsyncSession) -> dict[str, Permission]:
    """
    Create default permissions.

    Returns:
        Dictionary mapping permission codes to Permission objects
    """
    log.info("Creating default permissions...")
    permissions_map = {}

    for code, module, name, category in DEFAULT_PERMISSIONS:
        result = await db.execute(select(Permission).where(Permission.code == code))
        existing = result.scalars().first()

        if existing:
            log.debug(f"Permission '{code}' already exists, skipping")
            permissions_map[code] = existing
            continue

        permission = Permission(code=code, module=module, name=name, category=category)
        db.add(permission)
        permissions_map[code] = permission
        log.info(f"Created permission: {code}")

    await db.flush()
    log.info(f"Seeded {len(permissions_map)} permissions")
    return permissions_map


def _role_permission_ids(role_config: dict, permissions_map: dict[str, Permission]) -> list[str]:
    if role_config.get("permissions") == "ALL":
        excluded = set(role_config.get("exclude", []))
        return [p.id for code, p in permissions_map.items() if code not in excluded]
    categories = set(role_config.get("categories", []))
    return [p.id for p in permissions_map.values() if p.category in categories]


async def seed_roles(db: AsyncSession, permissions_map: dict[str, Permission]) -> None:
    """
    Create the system roles and grant their permissions.

    Args:
        db: Database session
        permissions_map: Dictionary of permission code -> Permission object
    """
    log.info("Creating system roles...")
    admin = RoleAdministration(db)

    for system_role, role_config in DEFAULT_ROLES.items():
        result = await db.execute(
            select(Role).where(Role.name == system_role.value, Role.organization_id.is_(None))
        )
        role = result.scalars().first()

        if role is not None:
            log.debug(f"Role '{system_role.value}' already exists, skipping")
            continue

        role = await admin.create_role(
            RoleCreate(name=system_role.value, description=role_config["description"]),
            is_system=True,
        )
        permission_ids = _role_permission_ids(role_config, permissions_map)
        await admin.set_role_permissions(role.id, permission_ids, allow_system=True)
        log.info(f"Created role '{system_role.value}' with {len(permission_ids)} permissions")


async def seed_catalog(db: AsyncSession) -> None:
    await seed_modules(db)
    await seed_plans(db)
    permissions_map = await seed_permissions(db)
    await seed_roles(db, permissions_map)


async def main():
    """Main function to seed the catalog."""
    log.info("Starting catalog seeding...")

    log.info("Initializing database tables...")
    await init_db()

    async with AsyncSessionLocal() as db:
        try:
            await seed_catalog(db)
            await db.commit()
        except Exception as e:
            log.error(f"Error seeding catalog: {e}", exc_info=True)
            await db.rollback()
            raise

    log.info("Catalog seeding completed successfully!")


if __name__ == "__main__":
    asyncio.run(main())
