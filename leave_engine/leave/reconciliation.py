"""Pro-rata reconciliation — keep every employee's balances in line with policy.

The job creates missing variant assignments, works out each employee's
joining date (roster feed → employee profile → leave-year start), runs the
entitlement calculator and writes the difference to the balance through
the ledger. Balances seeded by an opening-balance import keep the imported
figure; the configured entitlement is added on top, once.

All writes for one employee happen after that employee's figures have been
computed and inside one savepoint, so a bad record or a failed write is
skipped without half-written balances.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from leave_engine.common.audit import create_audit_entry
from leave_engine.common.constants import (
    BALANCE_TOLERANCE,
    AssignmentType,
    ProRataCalculation,
    TransactionSubtype,
    TransactionType,
)
from leave_engine.common.exceptions import AppException
from leave_engine.core_hr.models import Company, EmployeeProfile
from leave_engine.core_hr.roster import parse_joining_date
from leave_engine.core_hr.schemas import RosterEmployee
from leave_engine.leave.entitlement import Entitlement, calculate_entitlement
from leave_engine.leave.ledger import LedgerService, q2
from leave_engine.leave.models import (
    EmployeeAssignment,
    EmployeeLeaveBalance,
    LeaveVariant,
)
from leave_engine.leave.schemas import ProRataFixResult, ReconciliationResult

logger = logging.getLogger(__name__)

TOLERANCE = Decimal(BALANCE_TOLERANCE)


@dataclass
class EmployeeJoining:
    user_id: str
    joining_date: date
    user_name: Optional[str] = None

    def is_mid_year_joiner(self, leave_year_start: date) -> bool:
        return self.joining_date > leave_year_start


# ═════════════════════════════════════════════════════════════════════
# Session gate
# ═════════════════════════════════════════════════════════════════════


class ReconciliationGate:
    """Remembers which organizations were reconciled in this process.

    The job is idempotent, only expensive; callers that run it on every
    page load use the gate to run it once per organization per session.
    """

    def __init__(self) -> None:
        self._done: set[int] = set()

    def should_run(self, org_id: int) -> bool:
        return org_id not in self._done

    def mark_done(self, org_id: int) -> None:
        self._done.add(org_id)

    def reset(self, org_id: Optional[int] = None) -> None:
        if org_id is None:
            self._done.clear()
        else:
            self._done.discard(org_id)


reconciliation_gate = ReconciliationGate()


# ═════════════════════════════════════════════════════════════════════
# ProRataService
# ═════════════════════════════════════════════════════════════════════


class ProRataService:
    """Reconciliation and pro-rata correction jobs."""

    # ─────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def leave_year_start(db: AsyncSession, org_id: int, today: date) -> date:
        result = await db.execute(select(Company).where(Company.org_id == org_id))
        company = result.scalars().first()
        if company is not None and company.effective_date is not None:
            return company.effective_date
        return date(today.year, 1, 1)

    @staticmethod
    async def _profiles(db: AsyncSession, org_id: int) -> dict[str, EmployeeProfile]:
        result = await db.execute(
            select(EmployeeProfile).where(EmployeeProfile.org_id == org_id)
        )
        return {p.user_id: p for p in result.scalars().all()}

    @staticmethod
    async def _assigned_pairs(db: AsyncSession, org_id: int) -> set[tuple[str, object]]:
        result = await db.execute(
            select(EmployeeAssignment.user_id, EmployeeAssignment.leave_variant_id).where(
                EmployeeAssignment.org_id == org_id,
                EmployeeAssignment.assignment_type == AssignmentType.leave_variant,
            )
        )
        return {(row[0], row[1]) for row in result.all()}

    @staticmethod
    async def resolve_employees(
        db: AsyncSession,
        org_id: int,
        leave_year_start: date,
        roster: Optional[Sequence[RosterEmployee]],
    ) -> list[EmployeeJoining]:
        """Employees to reconcile and the joining date to use for each.

        With a roster, its employees are the population and an unparseable
        roster date falls back to the profile, then to the leave-year start.
        Without one, everyone already assigned or profiled is reconciled.
        """
        profiles = await ProRataService._profiles(db, org_id)

        def fallback(user_id: str) -> date:
            profile = profiles.get(user_id)
            if profile is not None and profile.date_of_joining is not None:
                return profile.date_of_joining
            return leave_year_start

        if roster:
            employees: dict[str, EmployeeJoining] = {}
            for record in roster:
                user_id = str(record.user_id).strip()
                if not user_id:
                    continue
                joined = parse_joining_date(record.date_of_joining)
                if joined is None and record.date_of_joining:
                    logger.warning(
                        "Unparseable joining date %r for user %s", record.date_of_joining, user_id,
                    )
                employees[user_id] = EmployeeJoining(
                    user_id, joined or fallback(user_id), record.user_name,
                )
            return list(employees.values())

        pairs = await ProRataService._assigned_pairs(db, org_id)
        user_ids = sorted({user_id for user_id, _ in pairs} | set(profiles))
        return [
            EmployeeJoining(
                user_id,
                fallback(user_id),
                profiles[user_id].user_name if user_id in profiles else None,
            )
            for user_id in user_ids
        ]

    # ─────────────────────────────────────────────────────────────────
    # Reconciliation
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def auto_pro_rata_calculation(
        db: AsyncSession,
        org_id: int,
        *,
        external_employee_data: Optional[Sequence[RosterEmployee]] = None,
        today: Optional[date] = None,
        actor_id: Optional[str] = None,
    ) -> ReconciliationResult:
        """Create missing assignments and bring every balance up to date."""
        today = today or date.today()
        year = today.year
        leave_year_start = await ProRataService.leave_year_start(db, org_id, today)

        variants_result = await db.execute(
            select(LeaveVariant)
            .where(LeaveVariant.org_id == org_id)
            .order_by(LeaveVariant.created_at, LeaveVariant.id)
        )
        variants = variants_result.scalars().all()
        employees = await ProRataService.resolve_employees(
            db, org_id, leave_year_start, external_employee_data,
        )
        assigned = await ProRataService._assigned_pairs(db, org_id)

        summary = ReconciliationResult(leave_year_start=leave_year_start)
        for employee in employees:
            try:
                entitlements = [
                    (variant, calculate_entitlement(variant, employee.joining_date, today, year))
                    for variant in variants
                ]
            except (AppException, ArithmeticError, LookupError, TypeError, ValueError) as e:
                summary.errors += 1
                logger.error(
                    "Reconciliation skipped user %s (org %s): %s", employee.user_id, org_id, e,
                )
                continue

            new_pairs = set()
            try:
                # A failed write rolls back this employee only.
                async with db.begin_nested():
                    for variant, entitlement in entitlements:
                        if (employee.user_id, variant.id) not in assigned:
                            db.add(EmployeeAssignment(
                                org_id=org_id,
                                user_id=employee.user_id,
                                leave_variant_id=variant.id,
                                assignment_type=AssignmentType.leave_variant,
                            ))
                            new_pairs.add((employee.user_id, variant.id))
                        await ProRataService._apply_entitlement(
                            db, org_id, employee, variant, entitlement, year, today,
                        )
            except SQLAlchemyError as e:
                summary.errors += 1
                logger.error(
                    "Reconciliation write failed for user %s (org %s): %s",
                    employee.user_id, org_id, e,
                )
                continue

            assigned |= new_pairs
            summary.created_assignments += len(new_pairs)
            summary.processed_employees += 1
            if employee.is_mid_year_joiner(leave_year_start):
                summary.mid_year_joiners += 1

        await db.flush()
        summary.success = summary.errors == 0
        await create_audit_entry(
            db,
            org_id=org_id,
            action="reconcile",
            entity_type="Organization",
            entity_id=org_id,
            actor_id=actor_id,
            new_values=summary.model_dump(mode="json"),
        )
        logger.info(
            "Reconciliation for org %s: %d employees, %d new assignments, %d mid-year, %d errors",
            org_id, summary.processed_employees, summary.created_assignments,
            summary.mid_year_joiners, summary.errors,
        )
        return summary

    @staticmethod
    async def _apply_entitlement(
        db: AsyncSession,
        org_id: int,
        employee: EmployeeJoining,
        variant: LeaveVariant,
        entitlement: Entitlement,
        year: int,
        today: date,
    ) -> None:
        balance = await LedgerService.get_balance_row(
            db, employee.user_id, variant.id, year, org_id, for_update=True,
        )

        if balance is None:
            balance = EmployeeLeaveBalance(
                org_id=org_id,
                user_id=employee.user_id,
                leave_variant_id=variant.id,
                year=year,
                total_entitlement=q2(entitlement.total_entitlement),
                current_balance=q2(entitlement.current_balance),
                used_balance=Decimal("0"),
                carry_forward=Decimal("0"),
            )
            db.add(balance)
            await db.flush()
            if entitlement.current_balance != 0:
                await LedgerService.record_transaction(
                    db,
                    org_id=org_id,
                    user_id=employee.user_id,
                    leave_variant_id=variant.id,
                    transaction_type=TransactionType.grant,
                    subtype=TransactionSubtype.initial_grant,
                    amount=entitlement.current_balance,
                    balance_after=balance.current_balance,
                    description=f"Initial leave grant for {year}",
                    year=year,
                    transaction_date=today,
                )
            return

        current = Decimal(balance.current_balance)
        imported = await LedgerService.has_imported_opening_balance(
            db, employee.user_id, variant.id, year, org_id,
        )
        if imported:
            merged, configured = await LedgerService.sum_by_subtype(
                db, employee.user_id, variant.id, year, org_id,
                TransactionSubtype.configured_entitlement,
            )
            first_merge = merged == 0
            delta = q2(entitlement.current_balance - configured)
            subtype = TransactionSubtype.configured_entitlement
            description = (
                f"Added configured entitlement of {q2(entitlement.current_balance)} days "
                f"on top of imported opening balance"
            )
        else:
            target = (
                entitlement.current_balance
                + Decimal(balance.carry_forward)
                - Decimal(balance.used_balance)
            )
            delta = q2(target - current)
            subtype = TransactionSubtype.recalculation
            description = f"Pro-rata recalculation for {year} (joined {employee.joining_date})"
            balance.total_entitlement = q2(entitlement.total_entitlement)
            first_merge = False

        if abs(delta) <= TOLERANCE:
            return
        balance.current_balance = q2(current + delta)
        if first_merge:
            balance.total_entitlement = q2(
                Decimal(balance.total_entitlement) + entitlement.total_entitlement
            )
        await LedgerService.record_transaction(
            db,
            org_id=org_id,
            user_id=employee.user_id,
            leave_variant_id=variant.id,
            transaction_type=TransactionType.grant if delta > 0 else TransactionType.adjustment,
            subtype=subtype,
            amount=delta,
            balance_after=balance.current_balance,
            description=description,
            year=year,
            transaction_date=today,
        )
        logger.info(
            "Balance %s for user=%s variant=%s moved by %s to %s",
            subtype.value, employee.user_id, variant.id, delta, balance.current_balance,
        )

    # ─────────────────────────────────────────────────────────────────
    # Pro-rata correction
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def fix_pro_rata_balances_for_user(
        db: AsyncSession,
        org_id: int,
        user_id: str,
        joining_date: date,
        *,
        today: Optional[date] = None,
    ) -> int:
        """Correct slab-system balances against the real joining date.

        Returns the number of balances corrected.
        """
        today = today or date.today()
        result = await db.execute(
            select(EmployeeLeaveBalance).where(
                EmployeeLeaveBalance.user_id == user_id,
                EmployeeLeaveBalance.org_id == org_id,
                EmployeeLeaveBalance.year == today.year,
            )
        )
        corrected = 0
        for balance in result.scalars().all():
            variant = await db.get(LeaveVariant, balance.leave_variant_id)
            if variant is None:
                logger.warning("Balance %s points at a missing variant", balance.id)
                continue
            if variant.pro_rata_calculation != ProRataCalculation.slab_system:
                continue

            entitlement = calculate_entitlement(variant, joining_date, today, today.year)
            target = (
                entitlement.current_balance
                + Decimal(balance.carry_forward)
                - Decimal(balance.used_balance)
            )
            current = Decimal(balance.current_balance)
            difference = q2(target - current)
            if abs(difference) <= TOLERANCE:
                continue

            balance.current_balance = q2(target)
            await LedgerService.record_transaction(
                db,
                org_id=org_id,
                user_id=user_id,
                leave_variant_id=variant.id,
                transaction_type=TransactionType.credit if difference > 0 else TransactionType.debit,
                subtype=TransactionSubtype.pro_rata_correction,
                amount=difference,
                balance_after=balance.current_balance,
                description=f"Pro-rata balance correction based on actual joining date ({joining_date})",
                year=today.year,
                transaction_date=today,
            )
            corrected += 1
            logger.info(
                "Pro-rata correction for user=%s variant=%s: %s -> %s",
                user_id, variant.id, current, balance.current_balance,
            )
        return corrected

    @staticmethod
    async def fix_pro_rata_balances_for_org(
        db: AsyncSession,
        org_id: int,
        joining_dates: dict[str, date],
        *,
        today: Optional[date] = None,
    ) -> ProRataFixResult:
        """Run the per-user correction for every assigned employee with a known joining date."""
        pairs = await ProRataService._assigned_pairs(db, org_id)
        summary = ProRataFixResult()
        for user_id in sorted({user_id for user_id, _ in pairs}):
            joined = joining_dates.get(user_id)
            if joined is None:
                logger.info("No joining date for user %s; pro-rata fix skipped", user_id)
                continue
            try:
                summary.corrected += await ProRataService.fix_pro_rata_balances_for_user(
                    db, org_id, user_id, joined, today=today,
                )
                summary.users += 1
            except (AppException, ArithmeticError, LookupError, TypeError, ValueError) as e:
                summary.errors += 1
                logger.error("Pro-rata fix failed for user %s: %s", user_id, e)
        return summary

    @staticmethod
    async def known_joining_dates(
        db: AsyncSession,
        org_id: int,
        roster: Optional[Iterable[RosterEmployee]] = None,
    ) -> dict[str, date]:
        """Joining dates from employee profiles, overridden by the roster."""
        profiles = await ProRataService._profiles(db, org_id)
        dates = {
            user_id: profile.date_of_joining
            for user_id, profile in profiles.items()
            if profile.date_of_joining is not None
        }
        for record in roster or ():
            joined = parse_joining_date(record.date_of_joining)
            if joined is not None:
                dates[str(record.user_id)] = joined
        return dates
