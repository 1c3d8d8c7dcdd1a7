import pytest
from sqlalchemy import select, text

from app.features.modules.catalog import ModuleCatalog
from app.features.modules.models import Module
from app.features.modules.service import EntitlementEngine
from app.features.organizations.models import OrganizationMember
from app.features.organizations.service import find_system_role
from app.features.permissions.constants import AdminPermission, SystemRole
from app.features.permissions.models import AuditLog, Permission
from app.features.permissions.resolver import PermissionResolver
from app.features.permissions.schemas import RoleCreate, RoleUpdate
from app.features.permissions.service import (
    RoleAdministration,
    RoleInUse,
    RoleNameTaken,
    SystemRoleProtected,
    UnknownPermission,
)


@pytest.fixture
async def clerk_role(make_role, organization):
    return await make_role("Clerk", organization.id, ["inventory.products.view", "customers.view"])


async def test_owner_is_super_admin_with_owner_role(db, organization, owner):
    check = await PermissionResolver(db).check_permission(owner.id, organization.id, "anything.at.all")

    assert check.has_permission is True
    assert check.is_super_admin is True
    assert check.role_name == "Owner"


async def test_super_admin_without_grants_has_every_permission(db, organization, make_user, add_member):
    user = await make_user("boss")
    await add_member(organization.id, user, role=None, is_super_admin=True)
    resolver = PermissionResolver(db)

    assert (await resolver.check_permission(user.id, organization.id, "hrm.payroll.run")).has_permission
    assert (await resolver.check_permission(user.id, organization.id, "not.a.real.code")).has_permission
    assert await resolver.check_multiple_permissions(user.id, organization.id, ["a", "b"]) == {"a": True, "b": True}


async def test_role_grants_decide_for_regular_members(db, organization, make_user, add_member, clerk_role):
    user = await make_user("clerk")
    await add_member(organization.id, user, role=clerk_role)
    resolver = PermissionResolver(db)

    allowed = await resolver.check_permission(user.id, organization.id, "inventory.products.view")
    denied = await resolver.check_permission(user.id, organization.id, "inventory.products.edit")

    assert allowed.has_permission is True
    assert allowed.role_id == clerk_role.id
    assert denied.has_permission is False
    assert denied.is_super_admin is False


async def test_no_membership_is_denied_not_an_error(db, organization, make_user):
    stranger = await make_user("stranger")
    resolver = PermissionResolver(db)

    check = await resolver.check_permission(stranger.id, organization.id, "customers.view")

    assert check.has_permission is False
    assert check.role_id is None
    assert await resolver.check_multiple_permissions(stranger.id, organization.id, ["customers.view"]) == {
        "customers.view": False
    }
    assert await resolver.get_user_permission_codes(stranger.id, organization.id) == set()


async def test_inactive_membership_is_denied(db, organization, make_user, add_member):
    user = await make_user("former")
    await add_member(organization.id, user, is_super_admin=True, is_active=False)

    check = await PermissionResolver(db).check_permission(user.id, organization.id, "customers.view")

    assert check.has_permission is False


async def test_batch_check(db, organization, make_user, add_member, clerk_role):
    user = await make_user("clerk")
    await add_member(organization.id, user, role=clerk_role)

    result = await PermissionResolver(db).check_multiple_permissions(
        user.id, organization.id, ["customers.view", "customers.manage", "customers.view"]
    )

    assert result == {"customers.view": True, "customers.manage": False}


async def test_can_access_module_requires_activation(db, organization, make_user, add_member, clerk_role):
    user = await make_user("clerk")
    await add_member(organization.id, user, role=clerk_role)
    resolver = PermissionResolver(db)

    assert await resolver.can_access_module(user.id, organization.id, "inventory") is False
    await EntitlementEngine(db).activate(organization.id, "inventory")
    assert await resolver.can_access_module(user.id, organization.id, "inventory") is True


async def test_can_access_module_needs_one_module_permission(db, organization, make_user, add_member, clerk_role):
    user = await make_user("clerk")
    await add_member(organization.id, user, role=clerk_role)
    resolver = PermissionResolver(db)

    assert await resolver.can_access_module(user.id, organization.id, "customers") is True
    assert await resolver.can_access_module(user.id, organization.id, "dashboard") is False


async def test_super_admin_still_needs_module_activation(db, organization, owner):
    resolver = PermissionResolver(db)

    assert await resolver.can_access_module(owner.id, organization.id, "pos") is False
    await EntitlementEngine(db).activate(organization.id, "pos")
    assert await resolver.can_access_module(owner.id, organization.id, "pos") is True


async def test_module_without_permissions_open_to_members(db, organization, make_user, add_member):
    db.add(Module(code="notes", name="Notes", is_core=True, rank=5))
    await db.commit()
    user = await make_user("plain")
    await add_member(organization.id, user)
    stranger = await make_user("stranger")
    resolver = PermissionResolver(db)

    assert await resolver.can_access_module(user.id, organization.id, "notes") is True
    assert await resolver.can_access_module(stranger.id, organization.id, "notes") is False


async def test_user_permission_codes(db, organization, owner, make_user, add_member, clerk_role):
    user = await make_user("clerk")
    await add_member(organization.id, user, role=clerk_role)
    resolver = PermissionResolver(db)

    assert await resolver.get_user_permission_codes(user.id, organization.id) == {
        "inventory.products.view", "customers.view"
    }
    owner_codes = await resolver.get_user_permission_codes(owner.id, organization.id)
    assert AdminPermission.SUBSCRIPTION_MANAGE.value in owner_codes


# Role administration

async def test_system_roles_are_protected(db, catalog):
    admin = RoleAdministration(db)
    owner_role = await find_system_role(db, SystemRole.OWNER)

    with pytest.raises(SystemRoleProtected):
        await admin.update_role(owner_role.id, RoleUpdate(name="Boss"))
    with pytest.raises(SystemRoleProtected):
        await admin.delete_role(owner_role.id)
    with pytest.raises(SystemRoleProtected):
        await admin.set_role_permissions(owner_role.id, [])


async def test_role_names_are_unique_per_organization(db, organization, clerk_role):
    admin = RoleAdministration(db)

    with pytest.raises(RoleNameTaken):
        await admin.create_role(RoleCreate(name="clerk", organization_id=organization.id))

    other = await admin.create_role(RoleCreate(name="Clerk"))
    assert other.organization_id is None


async def test_role_in_use_cannot_be_deleted(db, organization, make_user, add_member, clerk_role):
    user = await make_user("clerk")
    await add_member(organization.id, user, role=clerk_role)

    with pytest.raises(RoleInUse):
        await RoleAdministration(db).delete_role(clerk_role.id)


async def test_set_role_permissions_replaces_grants(db, organization, clerk_role):
    admin = RoleAdministration(db, actor_id=None)
    result = await db.execute(select(Permission).where(Permission.code.in_(["pos.sales.create"])))
    pos_sale = result.scalar_one()

    await admin.set_role_permissions(clerk_role.id, [pos_sale.id])
    await db.commit()

    codes = [p.code for p in await admin.get_role_permissions(clerk_role.id)]
    assert codes == ["pos.sales.create"]
    with pytest.raises(UnknownPermission):
        await admin.set_role_permissions(clerk_role.id, ["missing-id"])

    audit = await db.execute(
        select(AuditLog).where(AuditLog.action == "set_permissions", AuditLog.resource_id == clerk_role.id)
    )
    assert audit.scalars().first() is not None


async def test_clone_role_copies_grants(db, organization, clerk_role):
    admin = RoleAdministration(db)

    clone = await admin.clone_role(clerk_role.id, "Senior Clerk")

    assert clone.organization_id == organization.id
    assert sorted(p.code for p in await admin.get_role_permissions(clone.id)) == [
        "customers.view", "inventory.products.view"
    ]


async def test_assign_role_to_member(db, organization, make_user, add_member, clerk_role):
    user = await make_user("newbie")
    await add_member(organization.id, user)
    admin = RoleAdministration(db)

    member = await admin.assign_role_to_member(organization.id, user.id, clerk_role.id)
    await db.commit()

    assert member.role_id == clerk_role.id
    check = await PermissionResolver(db).check_permission(user.id, organization.id, "customers.view")
    assert check.has_permission is True


async def test_permissions_grouped_by_module(db, catalog):
    grouped = await RoleAdministration(db).permissions_grouped_by_module()

    assert {p.code for p in grouped["organization"]} == {p.value for p in AdminPermission}
    assert all(p.module == "inventory" for p in grouped["inventory"])


async def test_roles_matrix_round_trip(db, organization, clerk_role):
    admin = RoleAdministration(db)
    matrix = await admin.export_roles_matrix(organization.id)

    assert matrix["Clerk"] == ["customers.view", "inventory.products.view"]
    owner_codes = matrix["Owner"]
    assert owner_codes

    matrix["Clerk"] = ["pos.sales.create"]
    matrix["Cashier"] = ["pos.sales.create", "pos.registers.manage"]
    matrix["Owner"] = []
    written = await admin.import_roles_matrix(matrix, organization.id)
    await db.commit()

    assert sorted(written) == ["Cashier", "Clerk"]
    updated = await admin.export_roles_matrix(organization.id)
    assert updated["Clerk"] == ["pos.sales.create"]
    assert updated["Cashier"] == ["pos.registers.manage", "pos.sales.create"]
    assert updated["Owner"] == owner_codes


async def test_unknown_codes_reject_matrix_import(db, organization):
    with pytest.raises(UnknownPermission):
        await RoleAdministration(db).import_roles_matrix({"X": ["nope.nope"]}, organization.id)


async def test_members_keep_single_role(db, organization, owner):
    result = await db.execute(
        select(OrganizationMember).where(
            OrganizationMember.organization_id == organization.id,
            OrganizationMember.user_id == owner.id,
        )
    )
    assert len(result.scalars().all()) == 1


async def test_database_errors_deny(db, organization, make_user, add_member, clerk_role):
    user = await make_user("clerk")
    await add_member(organization.id, user, role=clerk_role)
    user_id, organization_id = user.id, organization.id
    await EntitlementEngine(db).activate(organization_id, "inventory")
    resolver = PermissionResolver(db)
    assert await resolver.can_access_module(user_id, organization_id, "inventory") is True

    await db.execute(text("ALTER TABLE role_permissions RENAME TO role_permissions_archived"))
    await db.commit()

    assert (await resolver.check_permission(user_id, organization_id, "customers.view")).has_permission is False
    assert await resolver.check_multiple_permissions(user_id, organization_id, ["customers.view"]) == {
        "customers.view": False
    }
    assert await resolver.get_user_permission_codes(user_id, organization_id) == set()
    assert await resolver.can_access_module(user_id, organization_id, "inventory") is False


async def test_role_analytics(db, organization, make_user, add_member, clerk_role):
    for name in ("clerk-a", "clerk-b"):
        await add_member(organization.id, await make_user(name), role=clerk_role)
    await add_member(organization.id, await make_user("former"), role=clerk_role, is_active=False)

    analytics = await RoleAdministration(db).role_analytics(organization.id)

    assert analytics.total_roles == 4
    assert (analytics.system_roles, analytics.custom_roles) == (3, 1)
    assert analytics.total_members == 3
    assert [(r.role_name, r.member_count) for r in analytics.roles_by_member_count] == [
        ("Clerk", 2), ("Owner", 1), ("Admin", 0), ("Member", 0)
    ]
    counts = [m.permission_count for m in analytics.permissions_by_module]
    assert counts == sorted(counts, reverse=True)
    assert analytics.total_permissions == sum(counts)
    inventory = next(m for m in analytics.permissions_by_module if m.module == "inventory")
    assert inventory.permission_count == len(await ModuleCatalog(db).list_permissions_by_module("inventory"))
