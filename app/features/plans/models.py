"""
Plan and subscription models.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict
import enum
from sqlalchemy import String, ForeignKey, Boolean, Integer, Numeric, JSON, DateTime, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database.base import Base, TimestampMixin, generate_ulid


class Plan(Base, TimestampMixin):
    """
    Subscription plan.

    max_modules bounds only the simultaneously active *paid* modules.
    """
    __tablename__ = "plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    price_usd_month: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0, nullable=False)
    price_usd_year: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0, nullable=False)
    trial_days: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    max_modules: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_branches: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    features: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Plan(id={self.id}, code={self.code!r}, max_modules={self.max_modules})>"


class SubscriptionStatus(str, enum.Enum):
    """Lifecycle of a subscription; only ACTIVE ones determine the current plan."""
    ACTIVE = "active"
    TRIALING = "trialing"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class Subscription(Base, TimestampMixin):
    """Links one organization to one plan for a period of time."""
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    organization_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    plan_id: Mapped[int] = mapped_column(Integer, ForeignKey("plans.id"), nullable=False, index=True)

    status: Mapped[SubscriptionStatus] = mapped_column(
        SQLEnum(SubscriptionStatus, values_callable=lambda e: [m.value for m in e]),
        default=SubscriptionStatus.ACTIVE,
        nullable=False,
        index=True
    )
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    plan: Mapped["Plan"] = relationship("Plan", lazy="selectin")

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, org_id={self.organization_id}, plan_id={self.plan_id}, status={self.status})>"
