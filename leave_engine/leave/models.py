"""Leave ORM models: configuration, balances, ledger and the three request kinds."""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from leave_engine.common.audit import TimestampMixin
from leave_engine.common.constants import (
    AssignmentType,
    GrantFrequency,
    GrantLeaves,
    ProRataCalculation,
    TransactionSubtype,
    TransactionType,
)
from leave_engine.database import Base
from leave_engine.workflow.models import WorkflowTrackedMixin, enum_column


# ═════════════════════════════════════════════════════════════════════
# Configuration
# ═════════════════════════════════════════════════════════════════════


class LeaveType(Base, TimestampMixin):
    __tablename__ = "leave_types"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    org_id: Mapped[int] = mapped_column(sa.Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(sa.Text)
    is_active: Mapped[bool] = mapped_column(sa.Boolean, default=True, nullable=False)

    # Relationships
    variants: Mapped[list[LeaveVariant]] = relationship(back_populates="leave_type")


class LeaveVariant(Base, TimestampMixin):
    """Accrual policy under a leave type.

    ``onboarding_slabs`` is a list of ``{"from_day", "to_day", "earn_days"}``
    keyed by the day of month an employee joined.
    """

    __tablename__ = "leave_variants"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    org_id: Mapped[int] = mapped_column(sa.Integer, nullable=False, index=True)
    leave_type_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("leave_types.id"), nullable=False
    )
    leave_type_name: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    leave_variant_name: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    paid_days_in_year: Mapped[Decimal] = mapped_column(
        sa.Numeric(10, 2), nullable=False, default=Decimal("0")
    )
    grant_leaves: Mapped[GrantLeaves] = mapped_column(
        enum_column(GrantLeaves, "grant_leaves"),
        default=GrantLeaves.after_earning,
        nullable=False,
    )
    grant_frequency: Mapped[GrantFrequency] = mapped_column(
        enum_column(GrantFrequency, "grant_frequency"),
        default=GrantFrequency.per_month,
        nullable=False,
    )
    pro_rata_calculation: Mapped[ProRataCalculation] = mapped_column(
        enum_column(ProRataCalculation, "pro_rata_calculation"),
        default=ProRataCalculation.full_month,
        nullable=False,
    )
    onboarding_slabs: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    leave_balance_deduction_before: Mapped[bool] = mapped_column(
        sa.Boolean, default=False, nullable=False
    )
    leave_balance_deduction_after: Mapped[bool] = mapped_column(
        sa.Boolean, default=True, nullable=False
    )
    leave_balance_deduction_not_allowed: Mapped[bool] = mapped_column(
        sa.Boolean, default=False, nullable=False
    )
    allow_withdrawal_before_approval: Mapped[bool] = mapped_column(
        sa.Boolean, default=True, nullable=False
    )
    allow_withdrawal_after_approval: Mapped[bool] = mapped_column(
        sa.Boolean, default=True, nullable=False
    )
    negative_leave_balance: Mapped[Decimal] = mapped_column(
        sa.Numeric(10, 2), nullable=False, default=Decimal("0")
    )
    carry_forward_limit: Mapped[Decimal] = mapped_column(
        sa.Numeric(10, 2), nullable=False, default=Decimal("0")
    )

    # Relationships
    leave_type: Mapped[LeaveType] = relationship(back_populates="variants")


class EmployeeAssignment(Base, TimestampMixin):
    __tablename__ = "employee_assignments"
    __table_args__ = (
        sa.UniqueConstraint(
            "user_id", "leave_variant_id", "assignment_type", "org_id",
            name="uq_employee_assignment",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    org_id: Mapped[int] = mapped_column(sa.Integer, nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    leave_variant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    assignment_type: Mapped[AssignmentType] = mapped_column(
        enum_column(AssignmentType, "assignment_type"),
        default=AssignmentType.leave_variant,
        nullable=False,
    )


# ═════════════════════════════════════════════════════════════════════
# Balance aggregate + ledger
# ═════════════════════════════════════════════════════════════════════


class EmployeeLeaveBalance(Base, TimestampMixin):
    __tablename__ = "employee_leave_balances"
    __table_args__ = (
        sa.UniqueConstraint(
            "user_id", "leave_variant_id", "year", "org_id",
            name="uq_employee_leave_balance",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    org_id: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    user_id: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    leave_variant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("leave_variants.id"), nullable=False
    )
    year: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    total_entitlement: Mapped[Decimal] = mapped_column(
        sa.Numeric(10, 2), nullable=False, default=Decimal("0")
    )
    current_balance: Mapped[Decimal] = mapped_column(
        sa.Numeric(10, 2), nullable=False, default=Decimal("0")
    )
    used_balance: Mapped[Decimal] = mapped_column(
        sa.Numeric(10, 2), nullable=False, default=Decimal("0")
    )
    carry_forward: Mapped[Decimal] = mapped_column(
        sa.Numeric(10, 2), nullable=False, default=Decimal("0")
    )

    # Relationships
    variant: Mapped[LeaveVariant] = relationship()


class LeaveBalanceTransaction(Base):
    """Append-only ledger row. Never updated; removed only by an org reset."""

    __tablename__ = "leave_balance_transactions"
    __table_args__ = (
        sa.Index(
            "ix_leave_txn_user_variant_year",
            "user_id", "leave_variant_id", "year", "org_id",
        ),
        sa.Index("ix_leave_txn_request", "leave_request_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    org_id: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    user_id: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    leave_variant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("leave_variants.id"), nullable=False
    )
    transaction_type: Mapped[TransactionType] = mapped_column(
        enum_column(TransactionType, "transaction_type"), nullable=False
    )
    transaction_subtype: Mapped[Optional[TransactionSubtype]] = mapped_column(
        enum_column(TransactionSubtype, "transaction_subtype")
    )
    amount: Mapped[Decimal] = mapped_column(sa.Numeric(10, 2), nullable=False)
    balance_after: Mapped[Optional[Decimal]] = mapped_column(sa.Numeric(10, 2))
    description: Mapped[Optional[str]] = mapped_column(sa.Text)
    leave_request_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    year: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    transaction_date: Mapped[date] = mapped_column(
        sa.Date, nullable=False, default=date.today
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now()
    )


# ═════════════════════════════════════════════════════════════════════
# Requests
# ═════════════════════════════════════════════════════════════════════


class LeaveRequest(Base, WorkflowTrackedMixin, TimestampMixin):
    __tablename__ = "leave_requests"
    __table_args__ = (
        sa.Index("ix_leave_requests_user", "user_id", "org_id"),
        sa.Index("ix_leave_requests_schedule", "status", "scheduled_auto_approval_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    org_id: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    user_id: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    leave_type_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("leave_types.id"), nullable=False
    )
    start_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    end_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    total_days: Mapped[Decimal] = mapped_column(sa.Numeric(10, 2), nullable=False)
    working_days: Mapped[Decimal] = mapped_column(sa.Numeric(10, 2), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(sa.Text)
    withdrawn_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))


class PTORequest(Base, WorkflowTrackedMixin, TimestampMixin):
    __tablename__ = "pto_requests"
    __table_args__ = (
        sa.Index("ix_pto_requests_schedule", "status", "scheduled_auto_approval_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    org_id: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    user_id: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    pto_variant_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    request_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    hours: Mapped[Decimal] = mapped_column(sa.Numeric(10, 2), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(sa.Text)


class CompOffRequest(Base, WorkflowTrackedMixin, TimestampMixin):
    __tablename__ = "comp_off_requests"
    __table_args__ = (
        sa.Index("ix_comp_off_requests_schedule", "status", "scheduled_auto_approval_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    org_id: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    user_id: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    work_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    days: Mapped[Decimal] = mapped_column(sa.Numeric(10, 2), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(sa.Text)
