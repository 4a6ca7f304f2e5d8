"""Workflow engine — step-indexed approval state machine.

One engine drives leave, PTO and comp-off requests. A request enters its
workflow with a pinned copy of the workflow's steps; ``current_step`` is a
1-based index into that copy. Steps flagged ``auto_approval`` resolve
without a human, either in the same call (no delay) or through the
time-based sweep once ``scheduled_auto_approval_at`` has passed.

Every transition takes the in-process request lock and a row lock inside
the caller's transaction, so a request advances at most once per action.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from leave_engine.common.audit import create_audit_entry
from leave_engine.common.constants import (
    SUBPROCESS_APPLY_COMP_OFF,
    SUBPROCESS_APPLY_LEAVE,
    SUBPROCESS_APPLY_PTO,
    SYSTEM_APPROVER,
    TIME_BASED_APPROVER,
    ApprovalAction,
    RequestKind,
    RequestStatus,
    TransactionSubtype,
    TransactionType,
    WorkflowStatus,
)
from leave_engine.common.exceptions import (
    AppException,
    InvalidStateError,
    NotFoundException,
)
from leave_engine.leave.ledger import LedgerService, q2
from leave_engine.leave.models import CompOffRequest, LeaveRequest, PTORequest
from leave_engine.workflow.locks import request_locks
from leave_engine.workflow.models import Workflow
from leave_engine.workflow.schemas import (
    SweepError,
    SweepResult,
    WorkflowCreate,
    WorkflowStep,
    parse_steps,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestKindSpec:
    kind: RequestKind
    model: type
    entity_type: str
    sub_process: str


REQUEST_KINDS: dict[RequestKind, RequestKindSpec] = {
    RequestKind.leave: RequestKindSpec(
        RequestKind.leave, LeaveRequest, "LeaveRequest", SUBPROCESS_APPLY_LEAVE,
    ),
    RequestKind.pto: RequestKindSpec(
        RequestKind.pto, PTORequest, "PTORequest", SUBPROCESS_APPLY_PTO,
    ),
    RequestKind.comp_off: RequestKindSpec(
        RequestKind.comp_off, CompOffRequest, "CompOffRequest", SUBPROCESS_APPLY_COMP_OFF,
    ),
}

# Statuses in which a workflow step is awaiting action
_OPEN_STATUSES = (RequestStatus.pending, RequestStatus.withdrawal_pending)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


# ═════════════════════════════════════════════════════════════════════
# WorkflowEngine
# ═════════════════════════════════════════════════════════════════════


class WorkflowEngine:
    """Async workflow transitions for every request kind."""

    # ─────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    def spec_for(kind: RequestKind) -> RequestKindSpec:
        return REQUEST_KINDS[RequestKind(kind)]

    @staticmethod
    async def find_workflow(
        db: AsyncSession,
        org_id: int,
        sub_process: str,
    ) -> Optional[Workflow]:
        """Oldest active workflow of *org_id* tagged with *sub_process*."""
        result = await db.execute(
            select(Workflow)
            .where(Workflow.org_id == org_id, Workflow.is_active.is_(True))
            .order_by(Workflow.created_at, Workflow.id)
        )
        for workflow in result.scalars().all():
            if sub_process in (workflow.sub_processes or []):
                return workflow
        return None

    @staticmethod
    async def load_for_update(
        db: AsyncSession,
        spec: RequestKindSpec,
        request_id: uuid.UUID,
        org_id: Optional[int],
    ):
        model = spec.model
        query = (
            select(model)
            .where(model.id == request_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if org_id is not None:
            query = query.where(model.org_id == org_id)
        result = await db.execute(query)
        request = result.scalars().first()
        if request is None:
            raise NotFoundException(spec.entity_type, str(request_id))
        return request

    @staticmethod
    async def _steps_of(db: AsyncSession, spec: RequestKindSpec, request) -> list[WorkflowStep]:
        if request.workflow_steps is not None:
            return parse_steps(request.workflow_steps)
        if request.workflow_id is None:
            raise InvalidStateError(spec.entity_type, request.id, "request has no workflow")
        workflow = await db.get(Workflow, request.workflow_id)
        if workflow is None:
            raise NotFoundException("Workflow", str(request.workflow_id))
        return parse_steps(workflow.steps)

    @staticmethod
    def _step_at(spec: RequestKindSpec, request, steps: list[WorkflowStep]) -> tuple[int, WorkflowStep]:
        index = (request.current_step or 0) - 1
        if index < 0 or index >= len(steps):
            logger.error(
                "Invalid workflow step for %s %s: current_step=%s, steps=%d",
                spec.entity_type, request.id, request.current_step, len(steps),
            )
            raise InvalidStateError(
                spec.entity_type,
                request.id,
                f"current step {request.current_step} is outside a {len(steps)}-step workflow",
            )
        return index, steps[index]

    @staticmethod
    def _append_history(request, record: dict[str, Any]) -> None:
        request.approval_history = [*(request.approval_history or []), record]

    # ─────────────────────────────────────────────────────────────────
    # Definitions
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def create_workflow(db: AsyncSession, org_id: int, data: WorkflowCreate) -> Workflow:
        workflow = Workflow(
            org_id=org_id,
            name=data.name,
            process=data.process,
            sub_processes=list(data.sub_processes),
            steps=[step.model_dump() for step in data.steps],
            is_active=data.is_active,
        )
        db.add(workflow)
        await db.flush()
        return workflow

    @staticmethod
    async def list_workflows(db: AsyncSession, org_id: int) -> Sequence[Workflow]:
        result = await db.execute(
            select(Workflow)
            .where(Workflow.org_id == org_id)
            .order_by(Workflow.created_at, Workflow.id)
        )
        return result.scalars().all()

    # ─────────────────────────────────────────────────────────────────
    # Entering a workflow
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def initialize_workflow(
        db: AsyncSession,
        kind: RequestKind,
        request,
        *,
        sub_process: Optional[str] = None,
        workflow: Optional[Workflow] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Workflow]:
        """Attach the governing workflow to *request* and run any leading
        auto-approval steps. Returns ``None`` when no workflow applies."""
        spec = WorkflowEngine.spec_for(kind)
        tag = sub_process or spec.sub_process
        if workflow is None:
            workflow = await WorkflowEngine.find_workflow(db, request.org_id, tag)
        if workflow is None:
            return None
        steps = parse_steps(workflow.steps)
        if not steps:
            logger.warning("Workflow %s (%s) has no steps; ignoring it", workflow.id, tag)
            return None

        request.workflow_id = workflow.id
        request.workflow_steps = [step.model_dump() for step in steps]
        request.current_step = 1
        request.workflow_status = WorkflowStatus.in_progress
        request.scheduled_auto_approval_at = None
        await db.flush()
        logger.info(
            "%s %s entered workflow %s (%d steps)",
            spec.entity_type, request.id, workflow.id, len(steps),
        )

        await WorkflowEngine._run_auto_steps(db, spec, request, steps, now or _utcnow())
        return workflow

    @staticmethod
    async def approve_without_workflow(
        db: AsyncSession,
        kind: RequestKind,
        request,
        approved_by: str,
        *,
        now: Optional[datetime] = None,
    ) -> None:
        """Approve a freshly submitted request that no workflow governs."""
        spec = WorkflowEngine.spec_for(kind)
        await WorkflowEngine._complete(db, spec, request, approved_by, now or _utcnow())
        request.workflow_status = None
        await db.flush()

    # ─────────────────────────────────────────────────────────────────
    # Transitions
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def process_approval(
        db: AsyncSession,
        kind: RequestKind,
        request_id: uuid.UUID,
        approved_by: str,
        org_id: int,
        *,
        comment: Optional[str] = None,
        now: Optional[datetime] = None,
    ):
        """Approve the current step of a request.

        The last step completes the request; otherwise the request moves on
        and any following auto-approval steps are processed.
        """
        spec = WorkflowEngine.spec_for(kind)
        now = now or _utcnow()
        async with request_locks.hold(spec.kind, request_id):
            request = await WorkflowEngine.load_for_update(db, spec, request_id, org_id)
            if request.status not in _OPEN_STATUSES:
                raise InvalidStateError(
                    spec.entity_type, request.id,
                    f"cannot approve a request that is {request.status.value}",
                )
            steps = await WorkflowEngine._steps_of(db, spec, request)
            index, step = WorkflowEngine._step_at(spec, request, steps)
            old_status = request.status.value

            record = {
                "approved_by": approved_by,
                "approved_at": now.isoformat(),
                "action": ApprovalAction.approved.value,
            }
            if comment:
                record["comment"] = comment
            completed = await WorkflowEngine._approve_step(
                db, spec, request, steps, index, step, record, approved_by, now,
            )
            if not completed:
                await WorkflowEngine._run_auto_steps(db, spec, request, steps, now)

            await create_audit_entry(
                db,
                org_id=request.org_id,
                action="approve",
                entity_type=spec.entity_type,
                entity_id=request.id,
                actor_id=approved_by,
                old_values={"status": old_status, "current_step": index + 1},
                new_values={"status": request.status.value, "current_step": request.current_step},
            )
            await db.flush()
            return request

    @staticmethod
    async def reject_request(
        db: AsyncSession,
        kind: RequestKind,
        request_id: uuid.UUID,
        rejected_by: str,
        reason: str,
        org_id: int,
        *,
        now: Optional[datetime] = None,
    ):
        """Reject the current step.

        A pending request ends ``rejected`` (restoring days taken at
        submission); a pending withdrawal is refused and the leave stays
        ``approved``.
        """
        spec = WorkflowEngine.spec_for(kind)
        now = now or _utcnow()
        async with request_locks.hold(spec.kind, request_id):
            request = await WorkflowEngine.load_for_update(db, spec, request_id, org_id)
            if request.status not in _OPEN_STATUSES:
                raise InvalidStateError(
                    spec.entity_type, request.id,
                    f"cannot reject a request that is {request.status.value}",
                )
            steps = await WorkflowEngine._steps_of(db, spec, request)
            index, step = WorkflowEngine._step_at(spec, request, steps)
            old_status = request.status.value

            WorkflowEngine._append_history(request, {
                "step_index": index,
                "step_title": step.title,
                "rejected_by": rejected_by,
                "rejected_at": now.isoformat(),
                "reason": reason,
                "action": ApprovalAction.rejected.value,
            })
            request.workflow_status = WorkflowStatus.completed
            request.scheduled_auto_approval_at = None
            request.rejected_reason = reason

            if request.status == RequestStatus.withdrawal_pending:
                request.status = RequestStatus.approved
                logger.info("Withdrawal of %s %s refused by %s", spec.entity_type, request.id, rejected_by)
            else:
                request.status = RequestStatus.rejected
                if spec.kind == RequestKind.leave:
                    await WorkflowEngine._restore_on_rejection(db, request)
                logger.info("%s %s rejected by %s", spec.entity_type, request.id, rejected_by)

            await create_audit_entry(
                db,
                org_id=request.org_id,
                action="reject",
                entity_type=spec.entity_type,
                entity_id=request.id,
                actor_id=rejected_by,
                old_values={"status": old_status},
                new_values={"status": request.status.value, "reason": reason},
            )
            await db.flush()
            return request

    @staticmethod
    async def _approve_step(
        db: AsyncSession,
        spec: RequestKindSpec,
        request,
        steps: list[WorkflowStep],
        index: int,
        step: WorkflowStep,
        record: dict[str, Any],
        approved_by: str,
        now: datetime,
    ) -> bool:
        """Record approval of step *index*; returns True when the request completed."""
        WorkflowEngine._append_history(
            request, {"step_index": index, "step_title": step.title, **record},
        )
        request.scheduled_auto_approval_at = None
        if index == len(steps) - 1:
            await WorkflowEngine._complete(db, spec, request, approved_by, now)
            return True
        request.current_step = index + 2
        await db.flush()
        return False

    @staticmethod
    async def _run_auto_steps(
        db: AsyncSession,
        spec: RequestKindSpec,
        request,
        steps: list[WorkflowStep],
        now: datetime,
    ) -> None:
        """Resolve consecutive auto-approval steps starting at the current one.

        Stops at the first manual step, at a delayed step (which gets its
        schedule stamped) or when the request completes.
        """
        while True:
            index, step = WorkflowEngine._step_at(spec, request, steps)
            if not step.auto_approval:
                return
            if step.is_delayed:
                request.scheduled_auto_approval_at = now + step.delay
                await db.flush()
                logger.info(
                    "%s %s step %d scheduled for auto-approval at %s",
                    spec.entity_type, request.id, index + 1,
                    request.scheduled_auto_approval_at.isoformat(),
                )
                return
            completed = await WorkflowEngine._approve_step(
                db, spec, request, steps, index, step,
                {"approved_by": SYSTEM_APPROVER, "approved_at": now.isoformat(),
                 "action": ApprovalAction.auto_approved.value},
                SYSTEM_APPROVER, now,
            )
            if completed:
                return

    # ─────────────────────────────────────────────────────────────────
    # Completion hooks
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def _complete(
        db: AsyncSession,
        spec: RequestKindSpec,
        request,
        approved_by: str,
        now: datetime,
    ) -> None:
        request.workflow_status = WorkflowStatus.completed
        request.scheduled_auto_approval_at = None

        if request.status == RequestStatus.withdrawal_pending:
            request.status = RequestStatus.withdrawal_approved
            request.withdrawn_at = now
            await db.flush()
            await WorkflowEngine.credit_withdrawal(db, request)
            logger.info("Withdrawal of %s %s approved", spec.entity_type, request.id)
            return

        request.status = RequestStatus.approved
        request.approved_by = approved_by
        request.approved_at = now
        await db.flush()
        if spec.kind == RequestKind.leave:
            await WorkflowEngine._deduct_on_approval(db, request)
        logger.info("%s %s approved (final approver %s)", spec.entity_type, request.id, approved_by)

    @staticmethod
    async def _deduct_on_approval(db: AsyncSession, request: LeaveRequest) -> None:
        variant = await LedgerService.resolve_variant(db, request.leave_type_id, request.org_id)
        if variant is None:
            logger.warning("Approved leave %s has no variant; nothing deducted", request.id)
            return
        # Deduct-before variants were charged at submission.
        if variant.leave_balance_deduction_before or variant.leave_balance_deduction_not_allowed:
            return
        await LedgerService.deduct_balance(
            db,
            request.user_id,
            request.leave_type_id,
            request.working_days,
            request.org_id,
            leave_request_id=request.id,
            description=(
                f"Leave deduction for approved application #{request.id} "
                f"({q2(request.working_days)} days)"
            ),
        )

    @staticmethod
    async def _restore_on_rejection(db: AsyncSession, request: LeaveRequest) -> None:
        # Only what the ledger shows as charged goes back.
        charged = await LedgerService.net_request_charge(db, request.id)
        if charged <= 0:
            return
        await LedgerService.restore_balance(
            db,
            request.user_id,
            request.leave_type_id,
            charged,
            request.org_id,
            description=f"Balance restored for rejected request {request.id}",
            release_used=True,
            leave_request_id=request.id,
        )

    @staticmethod
    async def credit_withdrawal(db: AsyncSession, request: LeaveRequest) -> None:
        """Give back whatever the ledger shows this request still holds."""
        charged = await LedgerService.net_request_charge(db, request.id)
        if charged <= 0:
            logger.info("Withdrawn leave %s held no balance; nothing to credit", request.id)
            return
        await LedgerService.restore_balance(
            db,
            request.user_id,
            request.leave_type_id,
            charged,
            request.org_id,
            description=f"Withdrawal of leave request #{request.id}",
            transaction_type=TransactionType.credit,
            subtype=TransactionSubtype.withdrawal_credit,
            release_used=True,
            leave_request_id=request.id,
        )

    # ─────────────────────────────────────────────────────────────────
    # Time-based sweep
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def process_pending_time_based_approvals(
        db: AsyncSession,
        *,
        org_id: Optional[int] = None,
        now: Optional[datetime] = None,
        batch_size: int = 200,
    ) -> SweepResult:
        """Approve every overdue delayed step as ``system-time-based``.

        A row is claimed by clearing its schedule with a conditional
        UPDATE; a row whose schedule is already cleared is skipped, so
        repeated or concurrent sweeps advance each request once.
        """
        now = now or _utcnow()
        summary = SweepResult()

        for spec in REQUEST_KINDS.values():
            model = spec.model
            query = (
                select(model.id)
                .where(
                    model.status.in_(_OPEN_STATUSES),
                    model.scheduled_auto_approval_at.is_not(None),
                    model.scheduled_auto_approval_at <= now,
                )
                .order_by(model.scheduled_auto_approval_at)
                .limit(batch_size)
            )
            if org_id is not None:
                query = query.where(model.org_id == org_id)
            due_ids = [row[0] for row in (await db.execute(query)).all()]

            for request_id in due_ids:
                try:
                    if await WorkflowEngine._sweep_one(db, spec, request_id, now):
                        summary.processed += 1
                except AppException as exc:
                    logger.error(
                        "Time-based approval failed for %s %s: %s",
                        spec.entity_type, request_id, exc.detail,
                    )
                    summary.errors.append(
                        SweepError(kind=spec.kind, request_id=request_id, error=exc.detail)
                    )

        logger.info(
            "Time-based sweep: %d processed, %d errors", summary.processed, len(summary.errors),
        )
        return summary

    @staticmethod
    async def _sweep_one(
        db: AsyncSession,
        spec: RequestKindSpec,
        request_id: uuid.UUID,
        now: datetime,
    ) -> bool:
        model = spec.model
        async with request_locks.hold(spec.kind, request_id):
            request = await WorkflowEngine.load_for_update(db, spec, request_id, None)
            if request.status not in _OPEN_STATUSES:
                return False
            steps = await WorkflowEngine._steps_of(db, spec, request)
            index, step = WorkflowEngine._step_at(spec, request, steps)
            scheduled_at = request.scheduled_auto_approval_at

            claim = await db.execute(
                update(model)
                .where(
                    model.id == request_id,
                    model.scheduled_auto_approval_at.is_not(None),
                    model.scheduled_auto_approval_at <= now,
                )
                .values(scheduled_auto_approval_at=None)
                .execution_options(synchronize_session=False)
            )
            if claim.rowcount != 1:
                logger.info("%s %s already claimed by another sweep", spec.entity_type, request_id)
                return False

            completed = await WorkflowEngine._approve_step(
                db, spec, request, steps, index, step,
                {"approved_by": TIME_BASED_APPROVER, "approved_at": now.isoformat(),
                 "action": ApprovalAction.auto_approved_time_based.value,
                 "scheduled_at": _iso(scheduled_at), "processed_at": now.isoformat()},
                TIME_BASED_APPROVER, now,
            )
            if not completed:
                await WorkflowEngine._run_auto_steps(db, spec, request, steps, now)
            await db.flush()
            logger.info(
                "Time-based auto-approval of %s %s step %d", spec.entity_type, request_id, index + 1,
            )
            return True
