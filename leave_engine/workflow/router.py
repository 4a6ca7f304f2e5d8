"""Workflow router — definitions, step approval / rejection, time-based sweep."""


import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from leave_engine.common.constants import RequestKind
from leave_engine.common.rate_limit import HEAVY_JOB_LIMIT, limiter
from leave_engine.config import Settings
from leave_engine.database import get_db
from leave_engine.dependencies import Caller, get_app_settings, get_caller
from leave_engine.leave.schemas import CompOffRequestOut, LeaveRequestOut, PTORequestOut
from leave_engine.workflow.engine import WorkflowEngine
from leave_engine.workflow.schemas import (
    ApproveBody,
    RejectBody,
    SweepResult,
    WorkflowCreate,
    WorkflowOut,
)

router = APIRouter(prefix="", tags=["workflows"])

_OUT_SCHEMAS = {
    RequestKind.leave: LeaveRequestOut,
    RequestKind.pto: PTORequestOut,
    RequestKind.comp_off: CompOffRequestOut,
}


def _serialize(kind: RequestKind, request):
    return _OUT_SCHEMAS[kind].model_validate(request)


# ── Definitions ─────────────────────────────────────────────────────

@router.post("", response_model=WorkflowOut, status_code=status.HTTP_201_CREATED)
async def create_workflow(
    body: WorkflowCreate,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await WorkflowEngine.create_workflow(db, caller.org_id, body)


@router.get("", response_model=list[WorkflowOut])
async def list_workflows(
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await WorkflowEngine.list_workflows(db, caller.org_id)


# ── Transitions ─────────────────────────────────────────────────────

@router.post("/{kind}/{request_id}/approve")
async def approve_step(
    kind: RequestKind,
    request_id: uuid.UUID,
    body: Optional[ApproveBody] = None,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    """Approve the current step; following auto-approval steps cascade."""
    request = await WorkflowEngine.process_approval(
        db, kind, request_id, caller.user_id, caller.org_id,
        comment=body.comment if body else None,
    )
    return _serialize(kind, request)


@router.post("/{kind}/{request_id}/reject")
async def reject_step(
    kind: RequestKind,
    request_id: uuid.UUID,
    body: RejectBody,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    request = await WorkflowEngine.reject_request(
        db, kind, request_id, caller.user_id, body.reason, caller.org_id,
    )
    return _serialize(kind, request)


# ── Time-based sweep ────────────────────────────────────────────────

@router.post("/time-based/sweep", response_model=SweepResult)
@limiter.limit(HEAVY_JOB_LIMIT)
async def run_time_based_sweep(
    request: Request,
    caller: Caller = Depends(get_caller),
    settings: Settings = Depends(get_app_settings),
    db: AsyncSession = Depends(get_db),
):
    """Auto-approve every overdue delayed step of the caller's organization."""
    return await WorkflowEngine.process_pending_time_based_approvals(
        db, org_id=caller.org_id, batch_size=settings.SWEEP_BATCH_SIZE,
    )
