"""
Audit and repair of organization entitlement state.

The reconciler assumes nothing about prior consistency. audit() reports:

- organizations without an active subscription,
- organizations with more than one active subscription,
- organizations whose active paid modules exceed their plan's max_modules,
- organizations where a core module has no active activation row.

repair() restores one organization in a single per-organization unit of work:
assign the default plan or cancel all but the newest subscription, materialize
core module rows, then revoke excess paid modules, newest activation first.
Running it on a consistent organization changes nothing.
"""
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.locks import locked_organization
from app.core.results import OperationResult, ResultCode
from app.features.modules.models import Module, OrganizationModule
from app.features.modules.service import EntitlementEngine
from app.features.organizations.models import Organization
from app.features.permissions.dependencies import create_audit_log
from app.features.plans.models import Subscription, SubscriptionStatus
from app.features.plans.service import PlanResolver
from app.features.reconciliation.schemas import AuditReport, QuotaOverrun
from app.utils import get_logger


log = get_logger(__name__)


class Reconciler:
    def __init__(
        self,
        db: AsyncSession,
        engine: Optional[EntitlementEngine] = None,
        actor_id: Optional[str] = None,
    ):
        self.db = db
        self.engine = engine or EntitlementEngine(db)
        self.plans: PlanResolver = self.engine.plans
        self.actor_id = actor_id

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def _organizations_without_subscription(self) -> List[str]:
        has_active = (
            select(Subscription.id)
            .where(
                Subscription.organization_id == Organization.id,
                Subscription.status == SubscriptionStatus.ACTIVE,
            )
            .exists()
        )
        result = await self.db.execute(select(Organization.id).where(~has_active).order_by(Organization.id))
        return list(result.scalars().all())

    async def _organizations_with_duplicate_subscriptions(self) -> List[str]:
        stmt = (
            select(Subscription.organization_id)
            .where(Subscription.status == SubscriptionStatus.ACTIVE)
            .group_by(Subscription.organization_id)
            .having(func.count() > 1)
            .order_by(Subscription.organization_id)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def _paid_active_counts(self) -> Dict[str, int]:
        stmt = (
            select(OrganizationModule.organization_id, func.count())
            .join(Module, Module.code == OrganizationModule.module_code)
            .where(OrganizationModule.is_active.is_(True), Module.is_core.is_(False))
            .group_by(OrganizationModule.organization_id)
        )
        result = await self.db.execute(stmt)
        return {organization_id: count for organization_id, count in result.all()}

    async def _organizations_missing_core_modules(self) -> List[str]:
        core_codes = set(await self.engine.catalog.core_module_codes())
        if not core_codes:
            return []

        stmt = select(OrganizationModule.organization_id, OrganizationModule.module_code).where(
            OrganizationModule.is_active.is_(True),
            OrganizationModule.module_code.in_(core_codes),
        )
        materialized: Dict[str, set] = {}
        for organization_id, module_code in (await self.db.execute(stmt)).all():
            materialized.setdefault(organization_id, set()).add(module_code)

        result = await self.db.execute(select(Organization.id).order_by(Organization.id))
        return [
            organization_id
            for organization_id in result.scalars().all()
            if not core_codes <= materialized.get(organization_id, set())
        ]

    async def audit(self) -> AuditReport:
        without_subscription = await self._organizations_without_subscription()

        overruns = []
        unsubscribed = set(without_subscription)
        for organization_id, count in sorted((await self._paid_active_counts()).items()):
            if organization_id in unsubscribed:
                continue
            plan = await self.plans.get_current_plan(organization_id)
            max_allowed = plan.max_modules if plan else 0
            if count > max_allowed:
                overruns.append(QuotaOverrun(
                    organization_id=organization_id,
                    current_modules=count,
                    max_allowed=max_allowed,
                ))

        report = AuditReport(
            organizations_without_subscription=without_subscription,
            organizations_with_duplicate_subscriptions=await self._organizations_with_duplicate_subscriptions(),
            organizations_exceeding_quota=overruns,
            organizations_missing_core_modules=await self._organizations_missing_core_modules(),
        )
        log.info(
            "Audit: %d without subscription, %d with duplicate subscriptions, %d over quota, %d missing core modules",
            len(report.organizations_without_subscription),
            len(report.organizations_with_duplicate_subscriptions),
            len(report.organizations_exceeding_quota),
            len(report.organizations_missing_core_modules),
        )
        return report

    # ------------------------------------------------------------------
    # Repair
    # ------------------------------------------------------------------

    async def repair(self, organization_id: str) -> OperationResult:
        try:
            async with locked_organization(self.db, organization_id):
                fixed = await self._repair(organization_id)
        except SQLAlchemyError:
            log.exception("Error fixing inconsistencies for organization %s", organization_id)
            return OperationResult.fail(ResultCode.INTERNAL_ERROR, "Error while fixing inconsistencies")

        if not fixed:
            return OperationResult.ok("No inconsistencies found")
        return OperationResult.ok("Inconsistencies fixed", **fixed)

    async def _repair(self, organization_id: str) -> dict:
        fixed: dict = {}

        # 1. Subscription
        if not await self.plans.has_active_subscription(organization_id):
            subscription = await self.plans.assign_default_subscription(organization_id)
            if subscription is not None:
                fixed["subscription_assigned"] = subscription.plan.code
        else:
            cancelled = await self.plans.cancel_duplicate_subscriptions(organization_id)
            if cancelled:
                fixed["subscriptions_cancelled"] = cancelled

        # 2. Core modules
        core_codes = await self.engine.ensure_core_modules_activated(organization_id)
        if core_codes:
            fixed["core_modules_activated"] = core_codes

        # 3. Quota: keep the oldest activations, revoke the newest excess
        status = await self.engine.get_status(organization_id)
        if status.paid_modules_count > status.max_modules_allowed:
            rows = await self.engine.list_active_paid_rows(organization_id)
            revoked = []
            for row in rows[status.max_modules_allowed:]:
                result = await self.engine.deactivate(organization_id, row.module_code)
                if result.success:
                    revoked.append(row.module_code)
                else:
                    log.warning("Could not deactivate %s for organization %s: %s",
                                row.module_code, organization_id, result.message)
            if revoked:
                fixed["modules_deactivated"] = revoked

        if fixed:
            await create_audit_log(
                self.db,
                user_id=self.actor_id,
                action="repair",
                resource_type="organization",
                resource_id=organization_id,
                organization_id=organization_id,
                details=fixed,
            )
            log.info("Organization %s repaired: %s", organization_id, fixed)
        return fixed

    async def repair_all(self, organization_ids: Optional[Iterable[str]] = None) -> Dict[str, OperationResult]:
        """
        Repair several organizations; one failure never stops the batch.

        Without ids, every organization named by audit() is repaired.
        """
        if organization_ids is None:
            organization_ids = (await self.audit()).organization_ids

        results: Dict[str, OperationResult] = {}
        for organization_id in organization_ids:
            try:
                results[organization_id] = await self.repair(organization_id)
            except Exception:
                log.exception("Unexpected error repairing organization %s", organization_id)
                results[organization_id] = OperationResult.fail(
                    ResultCode.INTERNAL_ERROR, "Error while fixing inconsistencies"
                )
        return results
