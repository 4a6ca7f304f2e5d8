"""Ledger and balance-aggregate operations.

Every change to ``EmployeeLeaveBalance.current_balance`` is written in the
same session as the ``LeaveBalanceTransaction`` describing it; the session
is committed (or rolled back) by the caller, so the two stores move
together. ``pending_deduction`` rows are a display projection of pending
requests and never touch the aggregate.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional, Sequence

from sqlalchemy import delete, func, or_, select, true, update
from sqlalchemy.ext.asyncio import AsyncSession

from leave_engine.common.constants import (
    LEGACY_DESCRIPTION_SUBTYPES,
    MONEY_PLACES,
    RequestStatus,
    TransactionSubtype,
    TransactionType,
)
from leave_engine.leave.models import (
    EmployeeLeaveBalance,
    LeaveBalanceTransaction,
    LeaveRequest,
    LeaveVariant,
)

logger = logging.getLogger(__name__)

CENT = Decimal(1).scaleb(-MONEY_PLACES)


def q2(value: Any) -> Decimal:
    """Quantize to 2 decimal places (half-up)."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def _as_finite_decimal(value: Any) -> Optional[Decimal]:
    try:
        number = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return None
    return number if number.is_finite() else None


def classify_legacy_description(description: Optional[str]) -> Optional[TransactionSubtype]:
    """Sub-type of a row written before ``transaction_subtype`` existed."""
    if not description:
        return None
    lowered = description.lower()
    for fragment, subtype in LEGACY_DESCRIPTION_SUBTYPES:
        if fragment in lowered:
            return subtype
    return None


def effective_subtype(txn: LeaveBalanceTransaction) -> Optional[TransactionSubtype]:
    return txn.transaction_subtype or classify_legacy_description(txn.description)


def pending_deduction_description(request: LeaveRequest, deduct_before: bool) -> str:
    timing = "Before Workflow" if deduct_before else "After Workflow"
    return (
        f"Pending leave deduction: {q2(request.working_days)} days "
        f"({timing}) - Request {request.id}"
    )


# ═════════════════════════════════════════════════════════════════════
# LedgerService
# ═════════════════════════════════════════════════════════════════════


class LedgerService:
    """Async balance / ledger operations shared by the workflow engine and jobs."""

    # ─────────────────────────────────────────────────────────────────
    # Lookups
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def resolve_variant(
        db: AsyncSession,
        leave_type_id: uuid.UUID,
        org_id: int,
    ) -> Optional[LeaveVariant]:
        """The variant governing *leave_type_id* in *org_id* (oldest first)."""
        result = await db.execute(
            select(LeaveVariant)
            .where(
                LeaveVariant.leave_type_id == leave_type_id,
                LeaveVariant.org_id == org_id,
            )
            .order_by(LeaveVariant.created_at, LeaveVariant.id)
            .limit(1)
        )
        return result.scalars().first()

    @staticmethod
    async def get_balance_row(
        db: AsyncSession,
        user_id: str,
        leave_variant_id: uuid.UUID,
        year: int,
        org_id: int,
        *,
        for_update: bool = False,
    ) -> Optional[EmployeeLeaveBalance]:
        query = select(EmployeeLeaveBalance).where(
            EmployeeLeaveBalance.user_id == user_id,
            EmployeeLeaveBalance.leave_variant_id == leave_variant_id,
            EmployeeLeaveBalance.year == year,
            EmployeeLeaveBalance.org_id == org_id,
        )
        if for_update:
            query = query.with_for_update()
        result = await db.execute(query)
        return result.scalars().first()

    @staticmethod
    async def get_balances(
        db: AsyncSession,
        user_id: str,
        org_id: int,
        year: Optional[int] = None,
    ) -> Sequence[EmployeeLeaveBalance]:
        query = select(EmployeeLeaveBalance).where(
            EmployeeLeaveBalance.user_id == user_id,
            EmployeeLeaveBalance.org_id == org_id,
        )
        if year is not None:
            query = query.where(EmployeeLeaveBalance.year == year)
        result = await db.execute(query.order_by(EmployeeLeaveBalance.year))
        return result.scalars().all()

    @staticmethod
    def transactions_query(
        org_id: int,
        *,
        user_id: Optional[str] = None,
        leave_variant_id: Optional[uuid.UUID] = None,
        year: Optional[int] = None,
        transaction_type: Optional[TransactionType] = None,
    ):
        query = select(LeaveBalanceTransaction).where(
            LeaveBalanceTransaction.org_id == org_id
        )
        if user_id is not None:
            query = query.where(LeaveBalanceTransaction.user_id == user_id)
        if leave_variant_id is not None:
            query = query.where(LeaveBalanceTransaction.leave_variant_id == leave_variant_id)
        if year is not None:
            query = query.where(LeaveBalanceTransaction.year == year)
        if transaction_type is not None:
            query = query.where(LeaveBalanceTransaction.transaction_type == transaction_type)
        return query.order_by(LeaveBalanceTransaction.created_at.desc())

    @staticmethod
    async def reconstruct_balance(
        db: AsyncSession,
        user_id: str,
        leave_variant_id: uuid.UUID,
        year: int,
        org_id: int,
    ) -> Decimal:
        """Signed sum of the ledger for one balance, pending projections excluded."""
        result = await db.execute(
            select(func.coalesce(func.sum(LeaveBalanceTransaction.amount), 0)).where(
                LeaveBalanceTransaction.user_id == user_id,
                LeaveBalanceTransaction.leave_variant_id == leave_variant_id,
                LeaveBalanceTransaction.year == year,
                LeaveBalanceTransaction.org_id == org_id,
                LeaveBalanceTransaction.transaction_type != TransactionType.pending_deduction,
            )
        )
        return q2(result.scalar_one())

    @staticmethod
    async def rows_of_subtype(
        db: AsyncSession,
        user_id: str,
        leave_variant_id: uuid.UUID,
        year: int,
        org_id: int,
        subtype: TransactionSubtype,
    ) -> list[LeaveBalanceTransaction]:
        """Ledger rows of one balance that are *subtype*.

        Rows without a sub-type are classified from their description.
        """
        result = await db.execute(
            select(LeaveBalanceTransaction)
            .where(
                LeaveBalanceTransaction.user_id == user_id,
                LeaveBalanceTransaction.leave_variant_id == leave_variant_id,
                LeaveBalanceTransaction.year == year,
                LeaveBalanceTransaction.org_id == org_id,
                or_(
                    LeaveBalanceTransaction.transaction_subtype == subtype,
                    LeaveBalanceTransaction.transaction_subtype.is_(None),
                ),
            )
            .order_by(LeaveBalanceTransaction.created_at)
        )
        return [txn for txn in result.scalars().all() if effective_subtype(txn) == subtype]

    @staticmethod
    async def has_imported_opening_balance(
        db: AsyncSession,
        user_id: str,
        leave_variant_id: uuid.UUID,
        year: int,
        org_id: int,
    ) -> bool:
        """True when the balance was seeded by a bulk opening-balance import."""
        rows = await LedgerService.rows_of_subtype(
            db, user_id, leave_variant_id, year, org_id, TransactionSubtype.opening_import,
        )
        return bool(rows)

    @staticmethod
    async def sum_by_subtype(
        db: AsyncSession,
        user_id: str,
        leave_variant_id: uuid.UUID,
        year: int,
        org_id: int,
        subtype: TransactionSubtype,
    ) -> tuple[int, Decimal]:
        """(row count, signed sum) of ledger rows that are *subtype*."""
        rows = await LedgerService.rows_of_subtype(
            db, user_id, leave_variant_id, year, org_id, subtype,
        )
        total = sum((Decimal(txn.amount) for txn in rows), Decimal("0"))
        return len(rows), q2(total)

    @staticmethod
    async def net_request_charge(db: AsyncSession, leave_request_id: uuid.UUID) -> Decimal:
        """Days currently charged against the balance by one request."""
        result = await db.execute(
            select(func.coalesce(func.sum(LeaveBalanceTransaction.amount), 0)).where(
                LeaveBalanceTransaction.leave_request_id == leave_request_id,
                LeaveBalanceTransaction.transaction_type.in_((
                    TransactionType.deduction,
                    TransactionType.balance_restoration,
                    TransactionType.credit,
                    TransactionType.debit,
                )),
            )
        )
        return q2(-Decimal(str(result.scalar_one())))

    # ─────────────────────────────────────────────────────────────────
    # Writes
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def record_transaction(
        db: AsyncSession,
        *,
        org_id: int,
        user_id: str,
        leave_variant_id: uuid.UUID,
        transaction_type: TransactionType,
        amount: Decimal,
        balance_after: Optional[Decimal],
        description: str,
        year: int,
        subtype: Optional[TransactionSubtype] = None,
        leave_request_id: Optional[uuid.UUID] = None,
        transaction_date: Optional[date] = None,
    ) -> LeaveBalanceTransaction:
        txn = LeaveBalanceTransaction(
            org_id=org_id,
            user_id=user_id,
            leave_variant_id=leave_variant_id,
            transaction_type=transaction_type,
            transaction_subtype=subtype,
            amount=q2(amount),
            balance_after=q2(balance_after) if balance_after is not None else None,
            description=description,
            year=year,
            leave_request_id=leave_request_id,
            transaction_date=transaction_date or date.today(),
        )
        db.add(txn)
        await db.flush()
        return txn

    @staticmethod
    async def deduct_balance(
        db: AsyncSession,
        user_id: str,
        leave_type_id: uuid.UUID,
        amount: Any,
        org_id: int,
        *,
        leave_request_id: Optional[uuid.UUID] = None,
        description: str = "Leave approval deduction",
        subtype: TransactionSubtype = TransactionSubtype.approval_deduction,
        today: Optional[date] = None,
    ) -> Optional[LeaveBalanceTransaction]:
        """Take *amount* days off the current-year balance for a leave type.

        Negative results are allowed through; the variant's negative-balance
        policy is enforced at submission, not here. Missing variant / balance
        and non-numeric inputs are logged and leave everything untouched.
        """
        days = _as_finite_decimal(amount)
        if days is None:
            logger.error(
                "Invalid working days value %r for user=%s leave_type=%s",
                amount, user_id, leave_type_id,
            )
            return None

        variant = await LedgerService.resolve_variant(db, leave_type_id, org_id)
        if variant is None:
            logger.warning("No leave variant found for leave type %s (org %s)", leave_type_id, org_id)
            return None

        year = (today or date.today()).year
        balance = await LedgerService.get_balance_row(
            db, user_id, variant.id, year, org_id, for_update=True,
        )
        if balance is None:
            logger.error(
                "No balance found for user=%s variant=%s year=%s; leave charged nothing",
                user_id, variant.id, year,
            )
            return None

        current = _as_finite_decimal(balance.current_balance)
        used = _as_finite_decimal(balance.used_balance)
        if current is None or used is None:
            logger.error(
                "Invalid balance values on %s: current=%r used=%r",
                balance.id, balance.current_balance, balance.used_balance,
            )
            return None

        balance.current_balance = q2(current - days)
        balance.used_balance = q2(used + days)
        txn = await LedgerService.record_transaction(
            db,
            org_id=org_id,
            user_id=user_id,
            leave_variant_id=variant.id,
            transaction_type=TransactionType.deduction,
            subtype=subtype,
            amount=-days,
            balance_after=balance.current_balance,
            description=description,
            year=year,
            leave_request_id=leave_request_id,
        )
        logger.info(
            "Deducted %s days for user=%s variant=%s: balance now %s",
            days, user_id, variant.id, balance.current_balance,
        )
        return txn

    @staticmethod
    async def restore_balance(
        db: AsyncSession,
        user_id: str,
        leave_type_id: uuid.UUID,
        amount: Any,
        org_id: int,
        *,
        description: str,
        transaction_type: TransactionType = TransactionType.balance_restoration,
        subtype: TransactionSubtype = TransactionSubtype.rejection_restoration,
        release_used: bool = False,
        leave_request_id: Optional[uuid.UUID] = None,
        today: Optional[date] = None,
    ) -> Optional[LeaveBalanceTransaction]:
        """Give *amount* days back to the current-year balance.

        With ``release_used`` the used counter is reduced too (floored at 0),
        as when approved leave is withdrawn.
        """
        days = _as_finite_decimal(amount)
        if days is None:
            logger.error("Invalid restoration amount %r for user=%s", amount, user_id)
            return None

        variant = await LedgerService.resolve_variant(db, leave_type_id, org_id)
        if variant is None:
            logger.warning("No leave variant found for leave type %s (org %s)", leave_type_id, org_id)
            return None

        year = (today or date.today()).year
        balance = await LedgerService.get_balance_row(
            db, user_id, variant.id, year, org_id, for_update=True,
        )
        if balance is None:
            logger.error(
                "No balance found for user=%s variant=%s year=%s; nothing restored",
                user_id, variant.id, year,
            )
            return None

        balance.current_balance = q2(Decimal(balance.current_balance) + days)
        if release_used:
            balance.used_balance = q2(max(Decimal("0"), Decimal(balance.used_balance) - days))

        return await LedgerService.record_transaction(
            db,
            org_id=org_id,
            user_id=user_id,
            leave_variant_id=variant.id,
            transaction_type=transaction_type,
            subtype=subtype,
            amount=days,
            balance_after=balance.current_balance,
            description=description,
            year=year,
            leave_request_id=leave_request_id,
        )

    # ─────────────────────────────────────────────────────────────────
    # Pending-deduction projection
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def sync_pending_deductions_for_user(
        db: AsyncSession,
        user_id: str,
        org_id: int,
        *,
        today: Optional[date] = None,
    ) -> int:
        """Make sure each pending leave request has exactly one keyed
        ``pending_deduction`` row. Returns the number of rows created.

        Un-keyed rows (legacy) and rows for requests that are no longer
        pending are purged first. ``current_balance`` is not touched.
        """
        year = (today or date.today()).year

        pending_result = await db.execute(
            select(LeaveRequest).where(
                LeaveRequest.user_id == user_id,
                LeaveRequest.org_id == org_id,
                LeaveRequest.status == RequestStatus.pending,
            )
        )
        pending = pending_result.scalars().all()
        pending_ids = [r.id for r in pending]

        if pending_ids:
            stale = or_(
                LeaveBalanceTransaction.leave_request_id.is_(None),
                LeaveBalanceTransaction.leave_request_id.not_in(pending_ids),
            )
        else:
            stale = true()
        purge = await db.execute(
            delete(LeaveBalanceTransaction)
            .where(
                LeaveBalanceTransaction.user_id == user_id,
                LeaveBalanceTransaction.org_id == org_id,
                LeaveBalanceTransaction.transaction_type == TransactionType.pending_deduction,
                stale,
            )
            .execution_options(synchronize_session=False)
        )
        if purge.rowcount:
            logger.info("Purged %d stale pending-deduction rows for user=%s", purge.rowcount, user_id)

        existing_result = await db.execute(
            select(LeaveBalanceTransaction.leave_request_id).where(
                LeaveBalanceTransaction.user_id == user_id,
                LeaveBalanceTransaction.org_id == org_id,
                LeaveBalanceTransaction.transaction_type == TransactionType.pending_deduction,
            )
        )
        already_keyed = {row[0] for row in existing_result.all()}

        created = 0
        for request in pending:
            if request.id in already_keyed:
                continue
            variant = await LedgerService.resolve_variant(db, request.leave_type_id, org_id)
            if variant is None:
                logger.warning(
                    "Pending request %s has no variant for leave type %s",
                    request.id, request.leave_type_id,
                )
                continue
            balance = await LedgerService.get_balance_row(
                db, user_id, variant.id, year, org_id,
            )
            current = Decimal(balance.current_balance) if balance else Decimal("0")
            days = Decimal(request.working_days)
            await LedgerService.record_transaction(
                db,
                org_id=org_id,
                user_id=user_id,
                leave_variant_id=variant.id,
                transaction_type=TransactionType.pending_deduction,
                subtype=TransactionSubtype.pending_request,
                amount=-days,
                balance_after=current - days,
                description=pending_deduction_description(
                    request, variant.leave_balance_deduction_before,
                ),
                year=year,
                leave_request_id=request.id,
            )
            created += 1
        return created

    @staticmethod
    async def bulk_sync_pending_deductions_for_org(
        db: AsyncSession,
        org_id: int,
        *,
        today: Optional[date] = None,
    ) -> dict[str, int]:
        """Run the per-user sync for everyone with a pending leave request."""
        result = await db.execute(
            select(LeaveRequest.user_id)
            .where(
                LeaveRequest.org_id == org_id,
                LeaveRequest.status == RequestStatus.pending,
            )
            .distinct()
        )
        user_ids = [row[0] for row in result.all()]
        created = 0
        for user_id in user_ids:
            created += await LedgerService.sync_pending_deductions_for_user(
                db, user_id, org_id, today=today,
            )
        logger.info(
            "Pending-deduction sync for org %s: %d users, %d rows created",
            org_id, len(user_ids), created,
        )
        return {"users": len(user_ids), "created": created}

    # ─────────────────────────────────────────────────────────────────
    # Org cleanup
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def delete_all_transactions(db: AsyncSession, org_id: int) -> int:
        result = await db.execute(
            delete(LeaveBalanceTransaction)
            .where(LeaveBalanceTransaction.org_id == org_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    @staticmethod
    async def delete_all_leave_requests(db: AsyncSession, org_id: int) -> int:
        result = await db.execute(
            delete(LeaveRequest)
            .where(LeaveRequest.org_id == org_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    @staticmethod
    async def reset_all_balances(db: AsyncSession, org_id: int) -> int:
        result = await db.execute(
            update(EmployeeLeaveBalance)
            .where(EmployeeLeaveBalance.org_id == org_id)
            .values(
                total_entitlement=Decimal("0"),
                current_balance=Decimal("0"),
                used_balance=Decimal("0"),
                carry_forward=Decimal("0"),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
