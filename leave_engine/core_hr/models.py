"""Organization-level ORM models: Company, EmployeeProfile."""

from __future__ import annotations

import uuid
from datetime import date
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from leave_engine.common.audit import TimestampMixin
from leave_engine.database import Base


class Company(Base, TimestampMixin):
    """One row per organization; ``effective_date`` anchors the leave year."""

    __tablename__ = "companies"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    org_id: Mapped[int] = mapped_column(sa.Integer, unique=True, nullable=False)
    name: Mapped[str] = mapped_column(sa.String(200), nullable=False)
    effective_date: Mapped[Optional[date]] = mapped_column(sa.Date)


class EmployeeProfile(Base, TimestampMixin):
    """What the application itself knows about an employee.

    Users live in an external directory; this row only anchors a known
    joining date so reconciliation can pro-rate without the roster feed.
    """

    __tablename__ = "employee_profiles"
    __table_args__ = (
        sa.UniqueConstraint("user_id", "org_id", name="uq_employee_profile_user_org"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    org_id: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    user_name: Mapped[Optional[str]] = mapped_column(sa.String(200))
    employee_number: Mapped[Optional[str]] = mapped_column(sa.String(50))
    date_of_joining: Mapped[Optional[date]] = mapped_column(sa.Date)
