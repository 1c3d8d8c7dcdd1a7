"""
SQLAlchemy declarative base and shared column helpers.

Every model registers on Base.metadata; init_db() creates the tables from it.
"""
from datetime import datetime
from sqlalchemy import DateTime, MetaData, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
import ulid

from app.utils import utcnow


def generate_ulid() -> str:
    """Generate a new ULID string (26 chars, lexicographically sortable)."""
    return str(ulid.ULID())


class Base(DeclarativeBase):
    """
    Base class for all models.

    Constraint names follow a fixed convention so they stay stable across
    SQLite and PostgreSQL.
    """
    metadata = MetaData(naming_convention={
        "ix": "ix_%(column_0_label)s",
        "uq": "uq_%(table_name)s_%(column_0_name)s",
        "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
        "pk": "pk_%(table_name)s",
    })


class TimestampMixin:
    """
    created_at / updated_at timestamps.

    Values are set in Python so they are loaded right after a flush; the
    server defaults cover rows written outside the ORM.
    """
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )
