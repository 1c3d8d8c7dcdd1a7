"""
Organization and membership models.

A user belongs to an organization through exactly one OrganizationMember row,
which carries the single role the user holds there and the super-admin flag.
"""
from sqlalchemy import String, ForeignKey, Boolean, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database.base import Base, TimestampMixin, generate_ulid


class Organization(Base, TimestampMixin):
    """Tenant whose module entitlements are bounded by its subscription plan."""
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    members: Mapped[list["OrganizationMember"]] = relationship(
        "OrganizationMember",
        back_populates="organization",
        cascade="all, delete-orphan",
        lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<Organization(id={self.id}, name={self.name!r})>"


class OrganizationMember(Base, TimestampMixin):
    """
    Membership of a user in an organization.

    Inactive memberships are kept for history but resolve to "no access".
    """
    __tablename__ = "organization_members"
    __table_args__ = (
        UniqueConstraint("user_id", "organization_id", name="uq_organization_members_user_org"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    user_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    organization_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role_id: Mapped[str | None] = mapped_column(
        String(26), ForeignKey("roles.id", ondelete="SET NULL"), nullable=True, index=True
    )

    is_super_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    organization: Mapped["Organization"] = relationship("Organization", back_populates="members", lazy="selectin")
    user: Mapped["User"] = relationship("User", back_populates="memberships", lazy="selectin")  # type: ignore
    role: Mapped["Role"] = relationship("Role", lazy="selectin")  # type: ignore

    def __repr__(self) -> str:
        return (
            f"<OrganizationMember(user_id={self.user_id}, org_id={self.organization_id}, "
            f"role_id={self.role_id}, super_admin={self.is_super_admin})>"
        )
