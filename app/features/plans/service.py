"""
Plan resolution for organizations.

The current plan is the plan of the organization's most recent active
subscription. Organizations without one fall back to the default plan so
that their quota ceiling is still defined; the reconciler reports and fixes
the missing subscription separately.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.features.plans.models import Plan, Subscription, SubscriptionStatus
from app.utils import get_logger, utcnow


log = get_logger(__name__)


class PlanNotFound(Exception):
    def __init__(self, plan_code: str):
        super().__init__(f"Plan '{plan_code}' not found")
        self.plan_code = plan_code


@dataclass(frozen=True)
class PlanSnapshot:
    """Quota-relevant view of a plan, detached from the session."""
    id: int
    code: str
    name: str
    max_modules: int
    max_branches: int
    trial_days: int
    features: Dict[str, Any] = field(default_factory=dict)
    is_default_fallback: bool = False

    @classmethod
    def from_model(cls, plan: Plan, is_default_fallback: bool = False) -> "PlanSnapshot":
        return cls(
            id=plan.id,
            code=plan.code,
            name=plan.name,
            max_modules=plan.max_modules,
            max_branches=plan.max_branches,
            trial_days=plan.trial_days,
            features=dict(plan.features or {}),
            is_default_fallback=is_default_fallback,
        )


class PlanResolver:
    def __init__(self, db: AsyncSession, default_plan_code: Optional[str] = None):
        self.db = db
        self.default_plan_code = default_plan_code or config.DEFAULT_PLAN_CODE

    async def get_plan_by_code(self, plan_code: str) -> Optional[Plan]:
        result = await self.db.execute(select(Plan).where(Plan.code == plan_code))
        return result.scalar_one_or_none()

    async def get_default_plan(self) -> Optional[Plan]:
        return await self.get_plan_by_code(self.default_plan_code)

    async def list_plans(self, active_only: bool = True) -> List[Plan]:
        stmt = select(Plan).order_by(Plan.max_modules, Plan.id)
        if active_only:
            stmt = stmt.where(Plan.is_active.is_(True))
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_active_subscription(self, organization_id: str) -> Optional[Subscription]:
        stmt = (
            select(Subscription)
            .where(
                Subscription.organization_id == organization_id,
                Subscription.status == SubscriptionStatus.ACTIVE,
            )
            .order_by(Subscription.started_at.desc())
            .limit(1)
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def has_active_subscription(self, organization_id: str) -> bool:
        return await self.get_active_subscription(organization_id) is not None

    async def get_current_plan(self, organization_id: str) -> Optional[PlanSnapshot]:
        """
        Resolve the plan that bounds the organization's paid modules.

        Returns None only when the organization has no active subscription
        and no default plan exists; callers treat that as a ceiling of 0.
        """
        subscription = await self.get_active_subscription(organization_id)
        if subscription is not None:
            return PlanSnapshot.from_model(subscription.plan)

        default_plan = await self.get_default_plan()
        if default_plan is None:
            log.warning(
                "Organization %s has no active subscription and default plan %r does not exist",
                organization_id, self.default_plan_code,
            )
            return None
        return PlanSnapshot.from_model(default_plan, is_default_fallback=True)

    async def assign_default_subscription(self, organization_id: str) -> Optional[Subscription]:
        """Subscribe the organization to the default plan. Flushes, does not commit."""
        default_plan = await self.get_default_plan()
        if default_plan is None:
            log.error("Cannot assign default subscription: plan %r does not exist", self.default_plan_code)
            return None

        subscription = Subscription(
            organization_id=organization_id,
            plan_id=default_plan.id,
            status=SubscriptionStatus.ACTIVE,
            started_at=utcnow(),
        )
        self.db.add(subscription)
        await self.db.flush()
        await self.db.refresh(subscription, ["plan"])
        log.info("Assigned plan %r to organization %s", default_plan.code, organization_id)
        return subscription

    async def change_plan(self, organization_id: str, plan_code: str, now: Optional[datetime] = None) -> Subscription:
        """
        Move the organization to another plan.

        The previous active subscription is cancelled. A downgrade may leave
        more paid modules active than the new ceiling allows; that is left to
        the reconciler.
        """
        plan = await self.get_plan_by_code(plan_code)
        if plan is None or not plan.is_active:
            raise PlanNotFound(plan_code)

        now = now or utcnow()
        stmt = select(Subscription).where(
            Subscription.organization_id == organization_id,
            Subscription.status == SubscriptionStatus.ACTIVE,
        )
        result = await self.db.execute(stmt)
        for current in result.scalars().all():
            current.status = SubscriptionStatus.CANCELLED
            current.ended_at = now

        subscription = Subscription(
            organization_id=organization_id,
            plan_id=plan.id,
            status=SubscriptionStatus.ACTIVE,
            started_at=now,
        )
        self.db.add(subscription)
        await self.db.flush()
        await self.db.refresh(subscription, ["plan"])
        log.info("Organization %s moved to plan %r", organization_id, plan.code)
        return subscription

    async def cancel_duplicate_subscriptions(self, organization_id: str) -> List[str]:
        """
        Keep only the newest active subscription. Flushes, does not commit.

        Returns the ids of the subscriptions that were cancelled.
        """
        stmt = (
            select(Subscription)
            .where(
                Subscription.organization_id == organization_id,
                Subscription.status == SubscriptionStatus.ACTIVE,
            )
            .order_by(Subscription.started_at.desc())
        )
        result = await self.db.execute(stmt)
        now = utcnow()
        cancelled = []
        for duplicate in result.scalars().all()[1:]:
            duplicate.status = SubscriptionStatus.CANCELLED
            duplicate.ended_at = now
            cancelled.append(duplicate.id)
        if cancelled:
            await self.db.flush()
            log.info("Cancelled duplicate subscriptions %s of organization %s", cancelled, organization_id)
        return cancelled
