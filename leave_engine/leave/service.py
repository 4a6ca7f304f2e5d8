"""Leave service layer — configuration, request submission and withdrawal.

Business logic:
  - Leave type / variant configuration per organization
  - Leave submission with deduct-before-workflow charging
  - Withdrawal of pending or approved leave, optionally through a workflow
  - PTO and comp-off requests (one get / update path each)
  - Organization reset
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timezone
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from leave_engine.common.audit import create_audit_entry
from leave_engine.common.constants import (
    SUBPROCESS_WITHDRAW_LEAVE,
    ApprovalAction,
    RequestKind,
    RequestStatus,
    TransactionSubtype,
    WorkflowStatus,
)
from leave_engine.common.exceptions import (
    ConflictError,
    ForbiddenException,
    InvalidStateError,
    NotFoundException,
    ValidationException,
)
from leave_engine.leave.ledger import LedgerService, q2
from leave_engine.leave.models import (
    CompOffRequest,
    LeaveRequest,
    LeaveType,
    LeaveVariant,
    PTORequest,
)
from leave_engine.leave.schemas import (
    CompOffRequestCreate,
    LeaveRequestCreate,
    LeaveTypeCreate,
    LeaveVariantCreate,
    OrgResetResult,
    PTORequestCreate,
    PTORequestUpdate,
)
from leave_engine.workflow.engine import WorkflowEngine
from leave_engine.workflow.locks import request_locks

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════
# LeaveService
# ═════════════════════════════════════════════════════════════════════


class LeaveService:
    """Async leave operations: configuration, requests, withdrawal, PTO, comp-off."""

    # ─────────────────────────────────────────────────────────────────
    # Configuration
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def create_leave_type(
        db: AsyncSession, org_id: int, data: LeaveTypeCreate,
    ) -> LeaveType:
        existing = await db.execute(
            select(LeaveType.id).where(LeaveType.org_id == org_id, LeaveType.name == data.name)
        )
        if existing.first() is not None:
            raise ConflictError("name", data.name)
        leave_type = LeaveType(org_id=org_id, **data.model_dump())
        db.add(leave_type)
        await db.flush()
        return leave_type

    @staticmethod
    async def get_leave_types(db: AsyncSession, org_id: int) -> Sequence[LeaveType]:
        result = await db.execute(
            select(LeaveType).where(LeaveType.org_id == org_id).order_by(LeaveType.name)
        )
        return result.scalars().all()

    @staticmethod
    async def _get_leave_type(db: AsyncSession, leave_type_id: uuid.UUID, org_id: int) -> LeaveType:
        result = await db.execute(
            select(LeaveType).where(LeaveType.id == leave_type_id, LeaveType.org_id == org_id)
        )
        leave_type = result.scalars().first()
        if leave_type is None:
            raise NotFoundException("LeaveType", str(leave_type_id))
        return leave_type

    @staticmethod
    async def create_leave_variant(
        db: AsyncSession, org_id: int, data: LeaveVariantCreate,
    ) -> LeaveVariant:
        leave_type = await LeaveService._get_leave_type(db, data.leave_type_id, org_id)
        payload = data.model_dump()
        payload["onboarding_slabs"] = [
            {
                "from_day": slab.from_day,
                "to_day": slab.to_day,
                "earn_days": str(slab.earn_days),
            }
            for slab in data.onboarding_slabs
        ]
        variant = LeaveVariant(org_id=org_id, leave_type_name=leave_type.name, **payload)
        db.add(variant)
        await db.flush()
        return variant

    @staticmethod
    async def get_leave_variants(db: AsyncSession, org_id: int) -> Sequence[LeaveVariant]:
        result = await db.execute(
            select(LeaveVariant)
            .where(LeaveVariant.org_id == org_id)
            .order_by(LeaveVariant.created_at, LeaveVariant.id)
        )
        return result.scalars().all()

    # ─────────────────────────────────────────────────────────────────
    # Leave requests
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def submit_leave_request(
        db: AsyncSession,
        org_id: int,
        user_id: str,
        data: LeaveRequestCreate,
        *,
        now: Optional[datetime] = None,
    ) -> LeaveRequest:
        """Create a leave request and route it through its workflow.

        Variants that deduct before the workflow are charged here; without
        a governing workflow the request is approved on the spot.
        """
        now = now or _utcnow()
        leave_type = await LeaveService._get_leave_type(db, data.leave_type_id, org_id)
        if not leave_type.is_active:
            raise ValidationException({"leave_type_id": ["Leave type is inactive."]})

        request = LeaveRequest(
            org_id=org_id,
            user_id=user_id,
            leave_type_id=leave_type.id,
            start_date=data.start_date,
            end_date=data.end_date,
            total_days=data.total_days or data.working_days,
            working_days=data.working_days,
            reason=data.reason,
            status=RequestStatus.pending,
            approval_history=[],
        )
        db.add(request)
        await db.flush()

        variant = await LedgerService.resolve_variant(db, leave_type.id, org_id)
        if (
            variant is not None
            and variant.leave_balance_deduction_before
            and not variant.leave_balance_deduction_not_allowed
        ):
            await LedgerService.deduct_balance(
                db,
                user_id,
                leave_type.id,
                request.working_days,
                org_id,
                leave_request_id=request.id,
                description=(
                    f"Leave balance deducted for pending application #{request.id} "
                    f"({request.start_date} to {request.end_date}) - Deduct before workflow"
                ),
                subtype=TransactionSubtype.submission_deduction,
            )

        workflow = await WorkflowEngine.initialize_workflow(db, RequestKind.leave, request, now=now)
        if workflow is None:
            logger.info("No leave workflow for org %s; approving %s directly", org_id, request.id)
            await WorkflowEngine.approve_without_workflow(
                db, RequestKind.leave, request, user_id, now=now,
            )

        await create_audit_entry(
            db,
            org_id=org_id,
            action="create",
            entity_type="LeaveRequest",
            entity_id=request.id,
            actor_id=user_id,
            new_values={
                "status": request.status.value,
                "working_days": str(q2(request.working_days)),
                "workflow_id": str(workflow.id) if workflow else None,
            },
        )
        return request

    @staticmethod
    def leave_requests_query(
        org_id: int,
        *,
        user_id: Optional[str] = None,
        status: Optional[RequestStatus] = None,
    ):
        query = select(LeaveRequest).where(LeaveRequest.org_id == org_id)
        if user_id is not None:
            query = query.where(LeaveRequest.user_id == user_id)
        if status is not None:
            query = query.where(LeaveRequest.status == status)
        return query.order_by(LeaveRequest.created_at.desc())

    @staticmethod
    async def get_request(
        db: AsyncSession, kind: RequestKind, request_id: uuid.UUID, org_id: int,
    ):
        spec = WorkflowEngine.spec_for(kind)
        result = await db.execute(
            select(spec.model).where(spec.model.id == request_id, spec.model.org_id == org_id)
        )
        request = result.scalars().first()
        if request is None:
            raise NotFoundException(spec.entity_type, str(request_id))
        return request

    # ─────────────────────────────────────────────────────────────────
    # Withdrawal
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def withdraw_leave_request(
        db: AsyncSession,
        org_id: int,
        user_id: str,
        request_id: uuid.UUID,
        *,
        now: Optional[datetime] = None,
    ) -> LeaveRequest:
        """Withdraw own leave.

        Pending leave is withdrawn at once. Approved leave goes through the
        organization's ``withdraw-leave`` workflow when one exists, otherwise
        it is withdrawn at once; either way the days it still holds are
        credited back.
        """
        now = now or _utcnow()
        spec = WorkflowEngine.spec_for(RequestKind.leave)
        async with request_locks.hold(spec.kind, request_id):
            request = await WorkflowEngine.load_for_update(db, spec, request_id, org_id)
            if request.user_id != user_id:
                raise ForbiddenException("You can only withdraw your own leave requests.")

            variant = await LedgerService.resolve_variant(db, request.leave_type_id, org_id)
            old_status = request.status.value

            if request.status == RequestStatus.pending:
                if variant is not None and not variant.allow_withdrawal_before_approval:
                    raise InvalidStateError(
                        "LeaveRequest", request.id, "withdrawal before approval is not allowed",
                    )
                await LeaveService._withdraw_now(db, request, now)

            elif request.status == RequestStatus.approved:
                if variant is not None and not variant.allow_withdrawal_after_approval:
                    raise InvalidStateError(
                        "LeaveRequest", request.id, "withdrawal after approval is not allowed",
                    )
                workflow = await WorkflowEngine.find_workflow(db, org_id, SUBPROCESS_WITHDRAW_LEAVE)
                if workflow is None:
                    await LeaveService._withdraw_now(db, request, now)
                else:
                    request.status = RequestStatus.withdrawal_pending
                    request.approval_history = [
                        *(request.approval_history or []),
                        {
                            "step_index": None,
                            "step_title": "Withdrawal requested",
                            "requested_by": user_id,
                            "requested_at": now.isoformat(),
                            "action": ApprovalAction.submitted.value,
                        },
                    ]
                    await db.flush()
                    await WorkflowEngine.initialize_workflow(
                        db, RequestKind.leave, request,
                        sub_process=SUBPROCESS_WITHDRAW_LEAVE, workflow=workflow, now=now,
                    )
            else:
                raise InvalidStateError(
                    "LeaveRequest", request.id,
                    f"cannot withdraw a request that is {request.status.value}",
                )

            await create_audit_entry(
                db,
                org_id=org_id,
                action="withdraw",
                entity_type="LeaveRequest",
                entity_id=request.id,
                actor_id=user_id,
                old_values={"status": old_status},
                new_values={"status": request.status.value},
            )
            await db.flush()
            return request

    @staticmethod
    async def _withdraw_now(db: AsyncSession, request: LeaveRequest, now: datetime) -> None:
        request.status = RequestStatus.withdrawn
        request.withdrawn_at = now
        request.scheduled_auto_approval_at = None
        if request.workflow_status == WorkflowStatus.in_progress:
            request.workflow_status = WorkflowStatus.completed
        await db.flush()
        await WorkflowEngine.credit_withdrawal(db, request)
        logger.info("Leave request %s withdrawn", request.id)

    # ─────────────────────────────────────────────────────────────────
    # PTO
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def submit_pto_request(
        db: AsyncSession,
        org_id: int,
        user_id: str,
        data: PTORequestCreate,
        *,
        now: Optional[datetime] = None,
    ) -> PTORequest:
        request = PTORequest(
            org_id=org_id,
            user_id=user_id,
            status=RequestStatus.pending,
            approval_history=[],
            **data.model_dump(),
        )
        db.add(request)
        await db.flush()
        workflow = await WorkflowEngine.initialize_workflow(db, RequestKind.pto, request, now=now)
        if workflow is None:
            await WorkflowEngine.approve_without_workflow(
                db, RequestKind.pto, request, user_id, now=now,
            )
        return request

    @staticmethod
    async def get_pto_requests(
        db: AsyncSession,
        org_id: int,
        *,
        user_id: Optional[str] = None,
        status: Optional[RequestStatus] = None,
    ) -> Sequence[PTORequest]:
        query = select(PTORequest).where(PTORequest.org_id == org_id)
        if user_id is not None:
            query = query.where(PTORequest.user_id == user_id)
        if status is not None:
            query = query.where(PTORequest.status == status)
        result = await db.execute(query.order_by(PTORequest.request_date.desc()))
        return result.scalars().all()

    @staticmethod
    async def update_pto_request(
        db: AsyncSession,
        org_id: int,
        user_id: str,
        request_id: uuid.UUID,
        data: PTORequestUpdate,
    ) -> PTORequest:
        """Edit own PTO request while it is still pending."""
        spec = WorkflowEngine.spec_for(RequestKind.pto)
        async with request_locks.hold(spec.kind, request_id):
            request = await WorkflowEngine.load_for_update(db, spec, request_id, org_id)
            if request.user_id != user_id:
                raise ForbiddenException("You can only edit your own PTO requests.")
            if request.status != RequestStatus.pending:
                raise InvalidStateError(
                    "PTORequest", request.id, f"cannot edit a request that is {request.status.value}",
                )
            changes = data.model_dump(exclude_unset=True, exclude_none=True)
            for field, value in changes.items():
                setattr(request, field, value)
            await db.flush()
            return request

    # ─────────────────────────────────────────────────────────────────
    # Comp-off
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def submit_comp_off_request(
        db: AsyncSession,
        org_id: int,
        user_id: str,
        data: CompOffRequestCreate,
        *,
        now: Optional[datetime] = None,
    ) -> CompOffRequest:
        if data.work_date > date.today():
            raise ValidationException({"work_date": ["Comp-off can only be claimed for past work."]})
        request = CompOffRequest(
            org_id=org_id,
            user_id=user_id,
            status=RequestStatus.pending,
            approval_history=[],
            **data.model_dump(),
        )
        db.add(request)
        await db.flush()
        workflow = await WorkflowEngine.initialize_workflow(
            db, RequestKind.comp_off, request, now=now,
        )
        if workflow is None:
            await WorkflowEngine.approve_without_workflow(
                db, RequestKind.comp_off, request, user_id, now=now,
            )
        return request

    @staticmethod
    async def get_comp_off_requests(
        db: AsyncSession,
        org_id: int,
        *,
        user_id: Optional[str] = None,
    ) -> Sequence[CompOffRequest]:
        query = select(CompOffRequest).where(CompOffRequest.org_id == org_id)
        if user_id is not None:
            query = query.where(CompOffRequest.user_id == user_id)
        result = await db.execute(query.order_by(CompOffRequest.work_date.desc()))
        return result.scalars().all()

    # ─────────────────────────────────────────────────────────────────
    # Organization reset
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def reset_org(db: AsyncSession, org_id: int, actor_id: str) -> OrgResetResult:
        """Delete every ledger row and leave request and zero all balances."""
        result = OrgResetResult(
            transactions_deleted=await LedgerService.delete_all_transactions(db, org_id),
            requests_deleted=await LedgerService.delete_all_leave_requests(db, org_id),
            balances_reset=await LedgerService.reset_all_balances(db, org_id),
        )
        await create_audit_entry(
            db,
            org_id=org_id,
            action="reset",
            entity_type="Organization",
            entity_id=org_id,
            actor_id=actor_id,
            new_values=result.model_dump(),
        )
        logger.warning("Leave data reset for org %s by %s: %s", org_id, actor_id, result.model_dump())
        return result
