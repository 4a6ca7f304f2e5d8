"""Leave router — configuration, requests, withdrawal, balances, ledger and jobs.

Caller identity comes from the ``X-Org-Id`` / ``X-User-Id`` headers.
Organization-wide jobs carry a tighter rate limit.
"""


import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from leave_engine.common.constants import RequestKind, RequestStatus, TransactionType
from leave_engine.common.pagination import PaginatedResponse, PaginationParams, paginate
from leave_engine.common.rate_limit import HEAVY_JOB_LIMIT, limiter
from leave_engine.config import Settings
from leave_engine.core_hr.roster import RosterClient
from leave_engine.database import get_db
from leave_engine.dependencies import Caller, get_app_settings, get_caller
from leave_engine.leave.ledger import LedgerService
from leave_engine.leave.models import LeaveBalanceTransaction, LeaveRequest
from leave_engine.leave.reconciliation import ProRataService
from leave_engine.leave.schemas import (
    CompOffRequestCreate,
    CompOffRequestOut,
    LeaveBalanceOut,
    LeaveRequestCreate,
    LeaveRequestOut,
    LeaveTransactionOut,
    LeaveTypeCreate,
    LeaveTypeOut,
    LeaveVariantCreate,
    LeaveVariantOut,
    OrgResetResult,
    PendingSyncResult,
    ProRataFixRequest,
    ProRataFixResult,
    PTORequestCreate,
    PTORequestOut,
    PTORequestUpdate,
    ReconciliationRequest,
    ReconciliationResult,
)
from leave_engine.leave.service import LeaveService

router = APIRouter(prefix="", tags=["leave"])


# ── Leave types / variants ──────────────────────────────────────────

@router.post("/types", response_model=LeaveTypeOut, status_code=status.HTTP_201_CREATED)
async def create_leave_type(
    body: LeaveTypeCreate,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.create_leave_type(db, caller.org_id, body)


@router.get("/types", response_model=list[LeaveTypeOut])
async def list_leave_types(
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.get_leave_types(db, caller.org_id)


@router.post("/variants", response_model=LeaveVariantOut, status_code=status.HTTP_201_CREATED)
async def create_leave_variant(
    body: LeaveVariantCreate,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.create_leave_variant(db, caller.org_id, body)


@router.get("/variants", response_model=list[LeaveVariantOut])
async def list_leave_variants(
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.get_leave_variants(db, caller.org_id)


# ── Leave requests ──────────────────────────────────────────────────

@router.post("/requests", response_model=LeaveRequestOut, status_code=status.HTTP_201_CREATED)
async def submit_leave(
    body: LeaveRequestCreate,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    """Submit leave; the organization's apply-leave workflow takes over from here."""
    return await LeaveService.submit_leave_request(db, caller.org_id, caller.user_id, body)


@router.get("/requests", response_model=PaginatedResponse[LeaveRequestOut])
async def list_leave_requests(
    user_id: Optional[str] = Query(None, description="Filter by employee"),
    request_status: Optional[RequestStatus] = Query(None, alias="status"),
    params: PaginationParams = Depends(PaginationParams),
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    query = LeaveService.leave_requests_query(caller.org_id, user_id=user_id, status=request_status)
    return await paginate(db, query, params, model=LeaveRequest, schema=LeaveRequestOut)


@router.get("/requests/{request_id}", response_model=LeaveRequestOut)
async def get_leave_request(
    request_id: uuid.UUID,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.get_request(db, RequestKind.leave, request_id, caller.org_id)


@router.post("/requests/{request_id}/withdraw", response_model=LeaveRequestOut)
async def withdraw_leave(
    request_id: uuid.UUID,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    """Withdraw own leave. Approved leave may need the withdraw-leave workflow."""
    return await LeaveService.withdraw_leave_request(db, caller.org_id, caller.user_id, request_id)


# ── PTO ─────────────────────────────────────────────────────────────

@router.post("/pto", response_model=PTORequestOut, status_code=status.HTTP_201_CREATED)
async def submit_pto(
    body: PTORequestCreate,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.submit_pto_request(db, caller.org_id, caller.user_id, body)


@router.get("/pto", response_model=list[PTORequestOut])
async def list_pto(
    user_id: Optional[str] = Query(None),
    request_status: Optional[RequestStatus] = Query(None, alias="status"),
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.get_pto_requests(
        db, caller.org_id, user_id=user_id, status=request_status,
    )


@router.patch("/pto/{request_id}", response_model=PTORequestOut)
async def update_pto(
    request_id: uuid.UUID,
    body: PTORequestUpdate,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.update_pto_request(
        db, caller.org_id, caller.user_id, request_id, body,
    )


# ── Comp-off ────────────────────────────────────────────────────────

@router.post("/comp-off", response_model=CompOffRequestOut, status_code=status.HTTP_201_CREATED)
async def submit_comp_off(
    body: CompOffRequestCreate,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.submit_comp_off_request(db, caller.org_id, caller.user_id, body)


@router.get("/comp-off", response_model=list[CompOffRequestOut])
async def list_comp_off(
    user_id: Optional[str] = Query(None),
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.get_comp_off_requests(db, caller.org_id, user_id=user_id)


# ── Balances / ledger ───────────────────────────────────────────────

@router.get("/balances", response_model=list[LeaveBalanceOut])
async def list_balances(
    user_id: Optional[str] = Query(None, description="Defaults to the caller"),
    year: Optional[int] = Query(None, ge=2000, le=2100),
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await LedgerService.get_balances(db, user_id or caller.user_id, caller.org_id, year)


@router.get("/transactions", response_model=PaginatedResponse[LeaveTransactionOut])
async def list_transactions(
    user_id: Optional[str] = Query(None),
    leave_variant_id: Optional[uuid.UUID] = Query(None),
    year: Optional[int] = Query(None, ge=2000, le=2100),
    transaction_type: Optional[TransactionType] = Query(None),
    params: PaginationParams = Depends(PaginationParams),
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    query = LedgerService.transactions_query(
        caller.org_id,
        user_id=user_id,
        leave_variant_id=leave_variant_id,
        year=year,
        transaction_type=transaction_type,
    )
    return await paginate(
        db, query, params, model=LeaveBalanceTransaction, schema=LeaveTransactionOut,
    )


@router.post("/pending-deductions/sync", response_model=PendingSyncResult)
async def sync_my_pending_deductions(
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    created = await LedgerService.sync_pending_deductions_for_user(db, caller.user_id, caller.org_id)
    return PendingSyncResult(users=1, created=created)


@router.post("/pending-deductions/sync-org", response_model=PendingSyncResult)
@limiter.limit(HEAVY_JOB_LIMIT)
async def sync_org_pending_deductions(
    request: Request,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return PendingSyncResult(
        **await LedgerService.bulk_sync_pending_deductions_for_org(db, caller.org_id)
    )


# ── Jobs ────────────────────────────────────────────────────────────

@router.post("/reconciliation", response_model=ReconciliationResult)
@limiter.limit(HEAVY_JOB_LIMIT)
async def run_reconciliation(
    request: Request,
    body: ReconciliationRequest,
    caller: Caller = Depends(get_caller),
    settings: Settings = Depends(get_app_settings),
    db: AsyncSession = Depends(get_db),
):
    """Recompute every balance of the organization.

    Without roster data in the body the configured roster feed is tried;
    when that is unavailable too, fallback joining dates are used.
    """
    roster = body.external_employee_data
    if roster is None:
        client = RosterClient.from_settings(settings)
        if client is not None:
            roster = await run_in_threadpool(client.try_fetch_employees)
    return await ProRataService.auto_pro_rata_calculation(
        db, caller.org_id, external_employee_data=roster, actor_id=caller.user_id,
    )


@router.post("/pro-rata/fix", response_model=ProRataFixResult)
@limiter.limit(HEAVY_JOB_LIMIT)
async def fix_pro_rata(
    request: Request,
    body: ProRataFixRequest,
    caller: Caller = Depends(get_caller),
    settings: Settings = Depends(get_app_settings),
    db: AsyncSession = Depends(get_db),
):
    joining_dates = body.joining_dates
    if joining_dates is None:
        client = RosterClient.from_settings(settings)
        roster = await run_in_threadpool(client.try_fetch_employees) if client else None
        joining_dates = await ProRataService.known_joining_dates(db, caller.org_id, roster)
    return await ProRataService.fix_pro_rata_balances_for_org(db, caller.org_id, joining_dates)


@router.post("/reset", response_model=OrgResetResult)
@limiter.limit(HEAVY_JOB_LIMIT)
async def reset_org(
    request: Request,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    """Delete all leave requests and ledger rows and zero every balance."""
    return await LeaveService.reset_org(db, caller.org_id, caller.user_id)
