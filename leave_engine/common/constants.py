"""Enums and constants for the leave engine — matching PostgreSQL ENUM types."""

from __future__ import annotations

import enum


# ── Leave variant configuration ─────────────────────────────────────

class GrantLeaves(str, enum.Enum):
    in_advance = "in_advance"
    after_earning = "after_earning"


class GrantFrequency(str, enum.Enum):
    per_year = "per_year"
    per_quarter = "per_quarter"
    per_month = "per_month"


class ProRataCalculation(str, enum.Enum):
    full_month = "full_month"
    slab_system = "slab_system"
    rounding_off = "rounding_off"


class AssignmentType(str, enum.Enum):
    leave_variant = "leave_variant"
    pto_variant = "pto_variant"
    comp_off_variant = "comp_off_variant"


# ── Requests / workflow ─────────────────────────────────────────────

class RequestStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    withdrawn = "withdrawn"
    withdrawal_pending = "withdrawal_pending"
    withdrawal_approved = "withdrawal_approved"


class WorkflowStatus(str, enum.Enum):
    in_progress = "in_progress"
    completed = "completed"


class RequestKind(str, enum.Enum):
    leave = "leave"
    pto = "pto"
    comp_off = "comp_off"


class ApprovalAction(str, enum.Enum):
    submitted = "submitted"
    approved = "approved"
    auto_approved = "auto-approved"
    auto_approved_time_based = "auto-approved-time-based"
    rejected = "rejected"


# Workflow sub-process tags
SUBPROCESS_APPLY_LEAVE = "apply-leave"
SUBPROCESS_WITHDRAW_LEAVE = "withdraw-leave"
SUBPROCESS_APPLY_PTO = "apply-pto"
SUBPROCESS_APPLY_COMP_OFF = "apply-comp-off"

SYSTEM_APPROVER = "system"
TIME_BASED_APPROVER = "system-time-based"


# ── Ledger ──────────────────────────────────────────────────────────

class TransactionType(str, enum.Enum):
    grant = "grant"
    deduction = "deduction"
    pending_deduction = "pending_deduction"
    balance_restoration = "balance_restoration"
    carry_forward = "carry_forward"
    adjustment = "adjustment"
    credit = "credit"
    debit = "debit"


class TransactionSubtype(str, enum.Enum):
    opening_import = "opening_import"
    initial_grant = "initial_grant"
    configured_entitlement = "configured_entitlement"
    recalculation = "recalculation"
    approval_deduction = "approval_deduction"
    submission_deduction = "submission_deduction"
    rejection_restoration = "rejection_restoration"
    withdrawal_credit = "withdrawal_credit"
    pending_request = "pending_request"
    pro_rata_correction = "pro_rata_correction"
    lapsed = "lapsed"
    encashed = "encashed"
    manual = "manual"


# Rows written before transaction_subtype existed are classified by these
# description fragments (lower-cased substring match).
LEGACY_DESCRIPTION_SUBTYPES: tuple[tuple[str, TransactionSubtype], ...] = (
    ("imported from excel", TransactionSubtype.opening_import),
    ("opening balance imported", TransactionSubtype.opening_import),
    ("lapsed", TransactionSubtype.lapsed),
    ("encashed", TransactionSubtype.encashed),
    ("initial leave grant", TransactionSubtype.initial_grant),
    ("added configured", TransactionSubtype.configured_entitlement),
    ("leave approval deduction", TransactionSubtype.approval_deduction),
    ("deduct before workflow", TransactionSubtype.submission_deduction),
    ("balance restored", TransactionSubtype.rejection_restoration),
    ("withdrawal of leave", TransactionSubtype.withdrawal_credit),
    ("pending leave deduction", TransactionSubtype.pending_request),
    ("pro-rata balance correction", TransactionSubtype.pro_rata_correction),
)


# ── Misc constants ──────────────────────────────────────────────────

ROSTER_DATE_FORMAT = "%d-%b-%Y"   # roster feed format: 07-Apr-2025
MONEY_PLACES = 2
BALANCE_TOLERANCE = "0.01"
MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 50
