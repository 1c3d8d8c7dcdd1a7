from datetime import datetime, timezone

from sqlalchemy import delete, select, text, update

from app.core.results import ResultCode
from app.features.modules.models import OrganizationModule
from app.features.modules.service import EntitlementEngine
from app.features.organizations.models import Organization
from app.features.permissions.models import AuditLog
from app.features.plans.models import Plan, Subscription, SubscriptionStatus
from app.features.plans.service import PlanResolver
from app.features.reconciliation.service import Reconciler


async def _activate_on_days(db, organization_id, codes):
    """Activate codes on a plan with room, then pin enabled_at to consecutive days."""
    await PlanResolver(db).change_plan(organization_id, "pro")
    await db.commit()
    engine = EntitlementEngine(db)
    for day, code in enumerate(codes, start=1):
        assert (await engine.activate(organization_id, code)).success
        row = await db.get(OrganizationModule, (organization_id, code))
        row.enabled_at = datetime(2024, 3, day, tzinfo=timezone.utc)
    await db.commit()


async def _downgrade(db, organization_id, max_modules):
    db.add(Plan(code=f"limit-{max_modules}", name=f"Limit {max_modules}", max_modules=max_modules))
    await db.commit()
    await PlanResolver(db).change_plan(organization_id, f"limit-{max_modules}")
    await db.commit()


async def test_consistent_organization_audits_clean(db, organization):
    report = await Reconciler(db).audit()

    assert report.is_clean
    assert report.organization_ids == []


async def test_repair_deactivates_newest_excess_module(db, organization):
    # A on day 1, B on day 2, C on day 3
    await _activate_on_days(db, organization.id, ["crm", "pos", "inventory"])
    await _downgrade(db, organization.id, 2)

    report = await Reconciler(db).audit()
    assert [(o.organization_id, o.current_modules, o.max_allowed) for o in report.organizations_exceeding_quota] == [
        (organization.id, 3, 2)
    ]

    result = await Reconciler(db).repair(organization.id)

    assert result.success
    assert result.message == "Inconsistencies fixed"
    assert result.data["modules_deactivated"] == ["inventory"]
    status = await EntitlementEngine(db).get_status(organization.id)
    assert {"crm", "pos"} <= set(status.active_modules)
    assert "inventory" not in status.active_modules
    assert status.paid_modules_count == 2


async def test_repair_is_a_fixed_point(db, organization):
    await _activate_on_days(db, organization.id, ["crm", "pos", "inventory", "gym"])
    await _downgrade(db, organization.id, 1)
    reconciler = Reconciler(db)

    await reconciler.repair(organization.id)
    first = await EntitlementEngine(db).get_status(organization.id)
    second_result = await reconciler.repair(organization.id)
    second = await EntitlementEngine(db).get_status(organization.id)

    assert first == second
    assert second_result.success
    assert second_result.message == "No inconsistencies found"
    assert first.paid_modules_count == 1
    assert "crm" in first.active_modules


async def test_repair_assigns_missing_subscription_and_core_rows(db, catalog):
    org = Organization(name="Drifted")
    db.add(org)
    await db.commit()

    report = await Reconciler(db).audit()
    assert org.id in report.organizations_without_subscription
    assert org.id in report.organizations_missing_core_modules

    result = await Reconciler(db).repair(org.id)

    assert result.success
    assert result.data["subscription_assigned"] == "free"
    assert sorted(result.data["core_modules_activated"]) == ["customers", "dashboard", "organization"]
    assert await PlanResolver(db).has_active_subscription(org.id)
    assert (await Reconciler(db).audit()).is_clean

    entries = await db.execute(select(AuditLog).where(AuditLog.action == "repair", AuditLog.organization_id == org.id))
    assert entries.scalars().first() is not None


async def test_deactivated_core_row_is_restored(db, organization):
    await db.execute(
        update(OrganizationModule)
        .where(OrganizationModule.organization_id == organization.id, OrganizationModule.module_code == "dashboard")
        .values(is_active=False)
    )
    await db.commit()

    report = await Reconciler(db).audit()
    assert report.organizations_missing_core_modules == [organization.id]

    result = await Reconciler(db).repair(organization.id)
    assert result.data == {"core_modules_activated": ["dashboard"]}


async def test_unsubscribed_organization_over_default_quota(db, organization):
    await _activate_on_days(db, organization.id, ["crm", "pos"])
    await db.execute(delete(Subscription).where(Subscription.organization_id == organization.id))
    await db.commit()

    report = await Reconciler(db).audit()
    assert report.organizations_without_subscription == [organization.id]
    assert report.organizations_exceeding_quota == []

    result = await Reconciler(db).repair(organization.id)

    assert result.data["subscription_assigned"] == "free"
    assert result.data["modules_deactivated"] == ["pos"]


async def test_repair_all_repairs_everything_reported(db, catalog, organization):
    drifted = Organization(name="Drifted")
    db.add(drifted)
    await db.commit()

    results = await Reconciler(db).repair_all()

    assert list(results) == [drifted.id]
    assert results[drifted.id].success
    assert (await Reconciler(db).audit()).is_clean


async def test_repair_all_continues_after_failure(db, catalog, organization, monkeypatch):
    broken = Organization(name="Broken")
    db.add(broken)
    await db.commit()
    # the failed unit of work rolls the session back and expires loaded objects
    broken_id, healthy_id = broken.id, organization.id
    reconciler = Reconciler(db)
    original = reconciler._repair

    async def failing_repair(organization_id):
        if organization_id == broken_id:
            raise RuntimeError("boom")
        return await original(organization_id)

    monkeypatch.setattr(reconciler, "_repair", failing_repair)

    results = await reconciler.repair_all([broken_id, healthy_id])

    assert results[broken_id].code == ResultCode.INTERNAL_ERROR
    assert results[healthy_id].success
    assert not (await reconciler.plans.has_active_subscription(broken_id))


async def test_change_plan_cancels_previous_subscription(db, organization):
    subscription = await PlanResolver(db).change_plan(organization.id, "basic")
    await db.commit()

    result = await db.execute(select(Subscription).where(Subscription.organization_id == organization.id))
    statuses = sorted(s.status.value for s in result.scalars().all())
    assert statuses == ["active", "cancelled"]
    assert subscription.plan.code == "basic"
    assert (await PlanResolver(db).get_current_plan(organization.id)).max_modules == 3


async def test_repair_all_isolates_database_failure(db, catalog):
    broken, healthy = Organization(name="Broken"), Organization(name="Healthy")
    db.add_all([broken, healthy])
    await db.commit()
    broken_id, healthy_id = broken.id, healthy.id
    await db.execute(text(
        "CREATE TRIGGER block_subscriptions BEFORE INSERT ON subscriptions "
        f"WHEN NEW.organization_id = '{broken_id}' "
        "BEGIN SELECT RAISE(ABORT, 'subscription writes blocked'); END"
    ))
    await db.commit()
    reconciler = Reconciler(db)

    results = await reconciler.repair_all([broken_id, healthy_id])

    assert results[broken_id].code == ResultCode.INTERNAL_ERROR
    assert results[healthy_id].success
    assert results[healthy_id].data["subscription_assigned"] == "free"
    # the failed unit of work left nothing half-written
    assert not await reconciler.plans.has_active_subscription(broken_id)
    assert (await reconciler.audit()).organization_ids == [broken_id]


async def test_duplicate_active_subscriptions_keep_newest(db, organization):
    organization_id = organization.id
    basic = await PlanResolver(db).get_plan_by_code("basic")
    db.add(Subscription(
        organization_id=organization_id,
        plan_id=basic.id,
        status=SubscriptionStatus.ACTIVE,
        started_at=datetime(2020, 1, 1, tzinfo=timezone.utc),
    ))
    await db.commit()

    report = await Reconciler(db).audit()
    assert report.organizations_with_duplicate_subscriptions == [organization_id]
    assert report.organization_ids == [organization_id]

    result = await Reconciler(db).repair(organization_id)

    assert len(result.data["subscriptions_cancelled"]) == 1
    assert (await PlanResolver(db).get_current_plan(organization_id)).code == "free"
    assert (await Reconciler(db).audit()).is_clean
