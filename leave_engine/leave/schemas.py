"""Leave Pydantic v2 schemas — request / response validation.

Naming conventions:
  - *Create / *Update   → request bodies (write)
  - *Out                → response bodies (read)
  - *Result             → job summaries
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from leave_engine.common.constants import (
    GrantFrequency,
    GrantLeaves,
    ProRataCalculation,
    RequestStatus,
    TransactionSubtype,
    TransactionType,
    WorkflowStatus,
)
from leave_engine.core_hr.schemas import RosterEmployee


# ═════════════════════════════════════════════════════════════════════
# Leave Type / Variant
# ═════════════════════════════════════════════════════════════════════


class LeaveTypeCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    is_active: bool = True


class LeaveTypeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    org_id: int
    name: str
    description: Optional[str] = None
    is_active: bool


class OnboardingSlabIn(BaseModel):
    from_day: int = Field(..., ge=1, le=31)
    to_day: int = Field(..., ge=1, le=31)
    earn_days: Decimal = Field(..., ge=0)

    @model_validator(mode="after")
    def _ordered(self) -> "OnboardingSlabIn":
        if self.to_day < self.from_day:
            raise ValueError("to_day must not be before from_day")
        return self


class LeaveVariantCreate(BaseModel):
    leave_type_id: uuid.UUID
    leave_variant_name: str = Field(..., min_length=1, max_length=100)
    paid_days_in_year: Decimal = Field(..., ge=0)
    grant_leaves: GrantLeaves = GrantLeaves.after_earning
    grant_frequency: GrantFrequency = GrantFrequency.per_month
    pro_rata_calculation: ProRataCalculation = ProRataCalculation.full_month
    onboarding_slabs: list[OnboardingSlabIn] = Field(default_factory=list)
    leave_balance_deduction_before: bool = False
    leave_balance_deduction_after: bool = True
    leave_balance_deduction_not_allowed: bool = False
    allow_withdrawal_before_approval: bool = True
    allow_withdrawal_after_approval: bool = True
    negative_leave_balance: Decimal = Decimal("0")
    carry_forward_limit: Decimal = Field(default=Decimal("0"), ge=0)


class LeaveVariantOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    org_id: int
    leave_type_id: uuid.UUID
    leave_type_name: str
    leave_variant_name: str
    paid_days_in_year: Decimal
    grant_leaves: GrantLeaves
    grant_frequency: GrantFrequency
    pro_rata_calculation: ProRataCalculation
    onboarding_slabs: list[dict[str, Any]]
    leave_balance_deduction_before: bool
    leave_balance_deduction_after: bool
    leave_balance_deduction_not_allowed: bool
    allow_withdrawal_before_approval: bool
    allow_withdrawal_after_approval: bool
    negative_leave_balance: Decimal
    carry_forward_limit: Decimal


# ═════════════════════════════════════════════════════════════════════
# Balances / ledger
# ═════════════════════════════════════════════════════════════════════


class LeaveBalanceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: str
    leave_variant_id: uuid.UUID
    year: int
    total_entitlement: Decimal
    current_balance: Decimal
    used_balance: Decimal
    carry_forward: Decimal


class LeaveTransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: str
    leave_variant_id: uuid.UUID
    transaction_type: TransactionType
    transaction_subtype: Optional[TransactionSubtype] = None
    amount: Decimal
    balance_after: Optional[Decimal] = None
    description: Optional[str] = None
    leave_request_id: Optional[uuid.UUID] = None
    year: int
    transaction_date: date
    created_at: Optional[datetime] = None


# ═════════════════════════════════════════════════════════════════════
# Requests
# ═════════════════════════════════════════════════════════════════════


class WorkflowProgressOut(BaseModel):
    """Workflow columns shared by every request kind."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    org_id: int
    user_id: str
    status: RequestStatus
    workflow_id: Optional[uuid.UUID] = None
    current_step: Optional[int] = None
    workflow_status: Optional[WorkflowStatus] = None
    approval_history: list[dict[str, Any]] = Field(default_factory=list)
    scheduled_auto_approval_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_reason: Optional[str] = None


class LeaveRequestCreate(BaseModel):
    leave_type_id: uuid.UUID
    start_date: date
    end_date: date
    total_days: Optional[Decimal] = Field(None, gt=0)
    working_days: Decimal = Field(..., gt=0)
    reason: Optional[str] = Field(None, max_length=2000)

    @field_validator("working_days")
    @classmethod
    def _half_day_units(cls, v: Decimal) -> Decimal:
        if (v * 2) % 1 != 0:
            raise ValueError("working_days must be a multiple of 0.5")
        return v

    @model_validator(mode="after")
    def _dates_ordered(self) -> "LeaveRequestCreate":
        if self.end_date < self.start_date:
            raise ValueError("end_date must be on or after start_date")
        return self


class LeaveRequestOut(WorkflowProgressOut):
    leave_type_id: uuid.UUID
    start_date: date
    end_date: date
    total_days: Decimal
    working_days: Decimal
    reason: Optional[str] = None
    withdrawn_at: Optional[datetime] = None


class PTORequestCreate(BaseModel):
    pto_variant_id: Optional[uuid.UUID] = None
    request_date: date
    hours: Decimal = Field(..., gt=0, le=24)
    reason: Optional[str] = Field(None, max_length=2000)


class PTORequestUpdate(BaseModel):
    request_date: Optional[date] = None
    hours: Optional[Decimal] = Field(None, gt=0, le=24)
    reason: Optional[str] = Field(None, max_length=2000)


class PTORequestOut(WorkflowProgressOut):
    pto_variant_id: Optional[uuid.UUID] = None
    request_date: date
    hours: Decimal
    reason: Optional[str] = None


class CompOffRequestCreate(BaseModel):
    work_date: date
    days: Decimal = Field(..., gt=0)
    reason: Optional[str] = Field(None, max_length=2000)


class CompOffRequestOut(WorkflowProgressOut):
    work_date: date
    days: Decimal
    reason: Optional[str] = None


# ═════════════════════════════════════════════════════════════════════
# Jobs
# ═════════════════════════════════════════════════════════════════════


class ReconciliationRequest(BaseModel):
    external_employee_data: Optional[list[RosterEmployee]] = None


class ReconciliationResult(BaseModel):
    processed_employees: int = 0
    created_assignments: int = 0
    mid_year_joiners: int = 0
    leave_year_start: date
    errors: int = 0
    success: bool = True


class ProRataFixRequest(BaseModel):
    """Joining dates to correct against; omitted → roster feed, then profiles."""

    joining_dates: Optional[dict[str, date]] = None


class ProRataFixResult(BaseModel):
    users: int = 0
    corrected: int = 0
    errors: int = 0


class PendingSyncResult(BaseModel):
    users: int = 0
    created: int = 0


class OrgResetResult(BaseModel):
    transactions_deleted: int = 0
    requests_deleted: int = 0
    balances_reset: int = 0
