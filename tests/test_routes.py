import pytest
from sqlalchemy import text


def as_user(user):
    return {"X-User-Id": user.id}


@pytest.fixture
async def org_id(client, owner):
    response = await client.post("/organizations/", json={"name": "Acme"}, headers=as_user(owner))
    assert response.status_code == 201, response.text
    return response.json()["id"]


async def test_requires_authentication(client):
    response = await client.get("/organizations/")

    assert response.status_code == 401


async def test_create_organization_onboards_owner(client, owner, org_id):
    response = await client.get(f"/organizations/{org_id}", headers=as_user(owner))
    assert response.status_code == 200
    assert response.json()["member_count"] == 1

    status = (await client.get(f"/organizations/{org_id}/modules", headers=as_user(owner))).json()
    assert status["plan"]["code"] == "free"
    assert status["active_modules"] == ["dashboard", "organization", "customers"]
    assert status["max_modules_allowed"] == 1

    mine = (await client.get("/organizations/", headers=as_user(owner))).json()
    assert [o["id"] for o in mine] == [org_id]


async def test_activation_endpoints_follow_result_codes(client, owner, org_id):
    headers = as_user(owner)
    base = f"/organizations/{org_id}/modules"

    ok = await client.post(f"{base}/inventory/activate", headers=headers)
    assert ok.status_code == 200
    assert ok.json()["success"] is True

    blocked = await client.post(f"{base}/pos/activate", headers=headers)
    assert blocked.status_code == 402
    assert blocked.json()["code"] == "quota_exceeded"
    assert "1" in blocked.json()["message"]

    protected = await client.post(f"{base}/dashboard/deactivate", headers=headers)
    assert protected.status_code == 403
    assert protected.json()["code"] == "core_module_protected"

    missing = await client.post(f"{base}/nope/activate", headers=headers)
    assert missing.status_code == 404

    active = (await client.get(f"{base}/active", headers=headers)).json()
    assert [m["code"] for m in active] == ["dashboard", "organization", "customers", "inventory"]

    access = (await client.get(f"{base}/inventory/access", headers=headers)).json()
    assert access == {"module_code": "inventory", "has_access": True}


async def test_non_members_are_forbidden(client, make_user, org_id):
    stranger = await make_user("stranger")

    assert (await client.get(f"/organizations/{org_id}", headers=as_user(stranger))).status_code == 403
    response = await client.post(f"/organizations/{org_id}/modules/crm/activate", headers=as_user(stranger))
    assert response.status_code == 403
    check = await client.get(
        f"/organizations/{org_id}/permissions/check", params={"code": "customers.view"}, headers=as_user(stranger)
    )
    assert check.status_code == 200
    assert check.json()["has_permission"] is False


async def test_member_role_drives_permissions(client, owner, make_user, org_id):
    clerk = await make_user("clerk")
    headers = as_user(owner)

    added = await client.post(f"/organizations/{org_id}/members", json={"user_id": clerk.id}, headers=headers)
    assert added.status_code == 201, added.text
    duplicate = await client.post(f"/organizations/{org_id}/members", json={"user_id": clerk.id}, headers=headers)
    assert duplicate.status_code == 409

    role = await client.post(f"/organizations/{org_id}/roles", json={"name": "Clerk"}, headers=headers)
    assert role.status_code == 201, role.text
    role_id = role.json()["id"]
    assert role.json()["organization_id"] == org_id

    permissions = (await client.get("/permissions", params={"module": "customers"}, headers=headers)).json()
    view = next(p for p in permissions if p["code"] == "customers.view")
    granted = await client.put(
        f"/organizations/{org_id}/roles/{role_id}/permissions",
        json={"permission_ids": [view["id"]]},
        headers=headers,
    )
    assert [p["code"] for p in granted.json()] == ["customers.view"]

    assigned = await client.put(
        f"/organizations/{org_id}/members/{clerk.id}/role", json={"role_id": role_id}, headers=headers
    )
    assert assigned.status_code == 200
    assert assigned.json()["role_name"] == "Clerk"

    batch = await client.post(
        f"/organizations/{org_id}/permissions/check",
        json={"codes": ["customers.view", "customers.manage"]},
        headers=as_user(clerk),
    )
    assert batch.json()["permissions"] == {"customers.view": True, "customers.manage": False}

    me = (await client.get(f"/organizations/{org_id}/permissions/me", headers=as_user(clerk))).json()
    assert me["permissions"] == ["customers.view"]
    assert me["role_name"] == "Clerk"

    # Clerk lacks organization.modules.manage
    forbidden = await client.post(f"/organizations/{org_id}/modules/crm/activate", headers=as_user(clerk))
    assert forbidden.status_code == 403


async def test_system_roles_cannot_be_edited_from_an_organization(client, owner, org_id):
    headers = as_user(owner)
    roles = (await client.get(f"/organizations/{org_id}/roles", headers=headers)).json()
    owner_role = next(r for r in roles if r["name"] == "Owner")

    response = await client.patch(
        f"/organizations/{org_id}/roles/{owner_role['id']}", json={"name": "Boss"}, headers=headers
    )

    assert response.status_code == 404

    matrix = (await client.get(f"/organizations/{org_id}/roles/matrix", headers=headers)).json()
    assert "Owner" in matrix["roles"]


async def test_change_subscription(client, owner, org_id):
    headers = as_user(owner)

    changed = await client.put(f"/organizations/{org_id}/subscription", json={"plan_code": "basic"}, headers=headers)
    assert changed.status_code == 200
    assert changed.json()["plan_code"] == "basic"

    current = (await client.get(f"/organizations/{org_id}/subscription", headers=headers)).json()
    assert current["plan_code"] == "basic"
    assert current["status"] == "active"

    unknown = await client.put(f"/organizations/{org_id}/subscription", json={"plan_code": "gold"}, headers=headers)
    assert unknown.status_code == 404


async def test_catalog_listing(client):
    core = (await client.get("/modules", params={"scope": "core"})).json()
    assert [m["code"] for m in core] == ["dashboard", "organization", "customers"]

    plans = (await client.get("/plans/")).json()
    assert [p["code"] for p in plans] == ["free", "basic", "pro"]

    invalid = await client.get("/modules", params={"scope": "everything"})
    assert invalid.status_code == 400


async def test_reconciliation_is_admin_only(client, owner, make_user, org_id):
    admin = await make_user("ops", is_admin=True)

    assert (await client.get("/admin/reconciliation/audit", headers=as_user(owner))).status_code == 403

    audit = await client.get("/admin/reconciliation/audit", headers=as_user(admin))
    assert audit.status_code == 200
    assert audit.json()["organizations_without_subscription"] == []

    repaired = await client.post(f"/admin/reconciliation/organizations/{org_id}/repair", headers=as_user(admin))
    assert repaired.status_code == 200
    assert repaired.json()["message"] == "No inconsistencies found"

    batch = await client.post("/admin/reconciliation/repair", json={}, headers=as_user(admin))
    assert batch.json() == {"results": {}, "repaired": 0, "failed": 0}


async def test_activation_database_error_is_reported_not_raised(client, db, owner, org_id):
    await db.execute(text(
        "CREATE TRIGGER block_module_inserts BEFORE INSERT ON organization_modules "
        "BEGIN SELECT RAISE(ABORT, 'module writes blocked'); END"
    ))
    await db.commit()

    response = await client.post(f"/organizations/{org_id}/modules/pos/activate", headers=as_user(owner))

    assert response.status_code == 500
    assert response.json()["success"] is False
    assert response.json()["code"] == "internal_error"
    active = (await client.get(f"/organizations/{org_id}/modules/active", headers=as_user(owner))).json()
    assert "pos" not in [m["code"] for m in active]


async def test_module_guard_requires_activation_and_permission(client, inventory_client, owner, make_user, org_id):
    headers = as_user(owner)
    path = f"/organizations/{org_id}/inventory/products"

    assert (await inventory_client.get(path, headers=headers)).status_code == 403

    await client.post(f"/organizations/{org_id}/modules/inventory/activate", headers=headers)
    allowed = await inventory_client.get(path, headers=headers)
    assert allowed.status_code == 200
    assert allowed.json()["user_id"] == owner.id

    clerk = await make_user("clerk")
    await client.post(f"/organizations/{org_id}/members", json={"user_id": clerk.id}, headers=headers)
    assert (await inventory_client.get(path, headers=as_user(clerk))).status_code == 403


async def test_role_analytics_and_member_counts(client, owner, org_id):
    headers = as_user(owner)

    roles = (await client.get(f"/organizations/{org_id}/roles", headers=headers)).json()
    assert {r["name"]: r["member_count"] for r in roles} == {"Owner": 1, "Admin": 0, "Member": 0}

    analytics = (await client.get(f"/organizations/{org_id}/roles/analytics", headers=headers)).json()
    assert analytics["total_roles"] == 3
    assert analytics["custom_roles"] == 0
    assert analytics["total_members"] == 1
    assert analytics["roles_by_member_count"][0] == {
        "role_id": next(r["id"] for r in roles if r["name"] == "Owner"),
        "role_name": "Owner",
        "member_count": 1,
    }
