"""
Module catalog and organization activation records.
"""
from datetime import datetime
from sqlalchemy import String, ForeignKey, Boolean, Integer, Text, DateTime
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database.base import Base, TimestampMixin


class Module(Base, TimestampMixin):
    """
    Functional module offered by the platform (e.g. "pos", "inventory").

    The set is managed by the platform, not by tenants. Core modules are
    active for every organization and never count against a plan quota.
    """
    __tablename__ = "modules"

    code: Mapped[str] = mapped_column(String(50), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    icon: Mapped[str | None] = mapped_column(String(50), nullable=True)

    is_core: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    rank: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Catalog-wide availability
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Module(code={self.code!r}, core={self.is_core})>"


class OrganizationModule(Base):
    """
    Activation record of a module for an organization.

    Created on first activation and flipped to inactive on deactivation; rows
    are never deleted. A core module without a row is still active.
    """
    __tablename__ = "organization_modules"

    organization_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("organizations.id", ondelete="CASCADE"), primary_key=True
    )
    module_code: Mapped[str] = mapped_column(
        String(50), ForeignKey("modules.code", ondelete="CASCADE"), primary_key=True
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    enabled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    disabled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    module: Mapped["Module"] = relationship("Module", lazy="selectin")

    def __repr__(self) -> str:
        return (
            f"<OrganizationModule(org_id={self.organization_id}, module={self.module_code!r}, "
            f"active={self.is_active})>"
        )
