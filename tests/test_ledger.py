"""Ledger test suite — deductions, restorations, ledger/aggregate consistency,
the pending-deduction projection and the legacy description shim.

Tests run against SQLite via the shared conftest.py fixtures.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from leave_engine.common.constants import (
    RequestStatus,
    TransactionSubtype,
    TransactionType,
)
from leave_engine.leave.ledger import (
    LedgerService,
    classify_legacy_description,
    q2,
)
from leave_engine.leave.models import LeaveBalanceTransaction, LeaveRequest, LeaveType
from leave_engine.leave.service import LeaveService
from tests.conftest import (
    EMPLOYEE_ID,
    ORG_ID,
    seed_balance,
    seed_leave_type,
    seed_variant,
)


# ═════════════════════════════════════════════════════════════════════
# Helpers
# ═════════════════════════════════════════════════════════════════════


async def _seed_request(
    db: AsyncSession,
    leave_type: LeaveType,
    *,
    user_id: str = EMPLOYEE_ID,
    working_days: Decimal = Decimal("2"),
    status: RequestStatus = RequestStatus.pending,
) -> LeaveRequest:
    start = date.today() + timedelta(days=7)
    request = LeaveRequest(
        id=uuid.uuid4(),
        org_id=leave_type.org_id,
        user_id=user_id,
        leave_type_id=leave_type.id,
        start_date=start,
        end_date=start + timedelta(days=1),
        total_days=working_days,
        working_days=working_days,
        status=status,
        approval_history=[],
    )
    db.add(request)
    await db.flush()
    return request


async def _ledger_rows(
    db: AsyncSession,
    *,
    transaction_type: TransactionType,
    user_id: str = EMPLOYEE_ID,
) -> list[LeaveBalanceTransaction]:
    result = await db.execute(
        select(LeaveBalanceTransaction).where(
            LeaveBalanceTransaction.user_id == user_id,
            LeaveBalanceTransaction.org_id == ORG_ID,
            LeaveBalanceTransaction.transaction_type == transaction_type,
        )
    )
    return list(result.scalars().all())


# ═════════════════════════════════════════════════════════════════════
# Deduction / restoration
# ═════════════════════════════════════════════════════════════════════


class TestDeductBalance:
    async def test_deduction_moves_balance_and_writes_ledger_row(self, db: AsyncSession):
        leave_type = await seed_leave_type(db)
        variant = await seed_variant(db, leave_type)
        balance = await seed_balance(db, variant, current=Decimal("12"))

        txn = await LedgerService.deduct_balance(
            db, EMPLOYEE_ID, leave_type.id, Decimal("2.5"), ORG_ID,
            description="Leave approval deduction",
        )

        assert txn is not None
        assert txn.amount == Decimal("-2.5")
        assert txn.balance_after == Decimal("9.5")
        assert txn.transaction_type == TransactionType.deduction
        assert txn.transaction_subtype == TransactionSubtype.approval_deduction
        assert balance.current_balance == Decimal("9.5")
        assert balance.used_balance == Decimal("2.5")

    async def test_balance_may_go_negative(self, db: AsyncSession):
        leave_type = await seed_leave_type(db)
        variant = await seed_variant(db, leave_type)
        balance = await seed_balance(db, variant, current=Decimal("1"))

        await LedgerService.deduct_balance(db, EMPLOYEE_ID, leave_type.id, 3, ORG_ID)

        assert balance.current_balance == Decimal("-2")
        assert balance.used_balance == Decimal("3")

    async def test_non_numeric_amounts_are_ignored(self, db: AsyncSession):
        leave_type = await seed_leave_type(db)
        variant = await seed_variant(db, leave_type)
        balance = await seed_balance(db, variant, current=Decimal("12"))

        for bad in ("abc", Decimal("NaN"), float("inf"), None):
            assert await LedgerService.deduct_balance(
                db, EMPLOYEE_ID, leave_type.id, bad, ORG_ID,
            ) is None

        assert balance.current_balance == Decimal("12")
        assert await _ledger_rows(db, transaction_type=TransactionType.deduction) == []

    async def test_missing_balance_row_is_a_no_op(self, db: AsyncSession, caplog):
        leave_type = await seed_leave_type(db)
        await seed_variant(db, leave_type)

        with caplog.at_level(logging.ERROR, logger="leave_engine.leave.ledger"):
            txn = await LedgerService.deduct_balance(db, EMPLOYEE_ID, leave_type.id, 1, ORG_ID)

        assert txn is None
        assert await _ledger_rows(db, transaction_type=TransactionType.deduction) == []
        assert any(
            r.levelno == logging.ERROR and "leave charged nothing" in r.getMessage()
            for r in caplog.records
        )

    async def test_missing_variant_is_a_no_op(self, db: AsyncSession):
        leave_type = await seed_leave_type(db)
        assert await LedgerService.deduct_balance(db, EMPLOYEE_ID, leave_type.id, 1, ORG_ID) is None


class TestRestoreBalance:
    async def test_restore_adds_back_without_touching_used(self, db: AsyncSession):
        leave_type = await seed_leave_type(db)
        variant = await seed_variant(db, leave_type)
        balance = await seed_balance(db, variant, current=Decimal("8"), used=Decimal("4"))

        txn = await LedgerService.restore_balance(
            db, EMPLOYEE_ID, leave_type.id, 2, ORG_ID, description="Balance restored",
        )

        assert txn.transaction_type == TransactionType.balance_restoration
        assert txn.amount == Decimal("2")
        assert balance.current_balance == Decimal("10")
        assert balance.used_balance == Decimal("4")

    async def test_release_used_is_floored_at_zero(self, db: AsyncSession):
        leave_type = await seed_leave_type(db)
        variant = await seed_variant(db, leave_type)
        balance = await seed_balance(db, variant, current=Decimal("8"), used=Decimal("2"))

        await LedgerService.restore_balance(
            db, EMPLOYEE_ID, leave_type.id, 3, ORG_ID,
            description="Withdrawal of leave request",
            transaction_type=TransactionType.credit,
            subtype=TransactionSubtype.withdrawal_credit,
            release_used=True,
        )

        assert balance.current_balance == Decimal("11")
        assert balance.used_balance == Decimal("0")


# ═════════════════════════════════════════════════════════════════════
# Ledger / aggregate consistency
# ═════════════════════════════════════════════════════════════════════


class TestReconstructBalance:
    async def test_ledger_sum_matches_aggregate(self, db: AsyncSession):
        leave_type = await seed_leave_type(db)
        variant = await seed_variant(db, leave_type)
        balance = await seed_balance(db, variant, current=Decimal("10"))
        year = balance.year
        await LedgerService.record_transaction(
            db,
            org_id=ORG_ID,
            user_id=EMPLOYEE_ID,
            leave_variant_id=variant.id,
            transaction_type=TransactionType.grant,
            subtype=TransactionSubtype.initial_grant,
            amount=Decimal("10"),
            balance_after=Decimal("10"),
            description=f"Initial leave grant for {year}",
            year=year,
        )

        await LedgerService.deduct_balance(db, EMPLOYEE_ID, leave_type.id, 3, ORG_ID)
        await LedgerService.restore_balance(
            db, EMPLOYEE_ID, leave_type.id, 1, ORG_ID, description="Balance restored",
        )
        await LedgerService.deduct_balance(db, EMPLOYEE_ID, leave_type.id, "0.5", ORG_ID)

        # Pending projections never count towards the balance
        await _seed_request(db, leave_type)
        assert await LedgerService.sync_pending_deductions_for_user(db, EMPLOYEE_ID, ORG_ID) == 1

        reconstructed = await LedgerService.reconstruct_balance(
            db, EMPLOYEE_ID, variant.id, year, ORG_ID,
        )
        assert reconstructed == Decimal("7.5")
        assert reconstructed == balance.current_balance

    async def test_net_request_charge(self, db: AsyncSession):
        leave_type = await seed_leave_type(db)
        variant = await seed_variant(db, leave_type)
        await seed_balance(db, variant)
        request = await _seed_request(db, leave_type, status=RequestStatus.approved)

        assert await LedgerService.net_request_charge(db, request.id) == Decimal("0")

        await LedgerService.deduct_balance(
            db, EMPLOYEE_ID, leave_type.id, request.working_days, ORG_ID,
            leave_request_id=request.id,
        )
        assert await LedgerService.net_request_charge(db, request.id) == Decimal("2")


# ═════════════════════════════════════════════════════════════════════
# Pending-deduction projection
# ═════════════════════════════════════════════════════════════════════


class TestPendingDeductionSync:
    async def test_sync_is_idempotent_and_leaves_balance_alone(self, db: AsyncSession):
        leave_type = await seed_leave_type(db)
        variant = await seed_variant(db, leave_type)
        balance = await seed_balance(db, variant, current=Decimal("12"))
        request = await _seed_request(db, leave_type)

        assert await LedgerService.sync_pending_deductions_for_user(db, EMPLOYEE_ID, ORG_ID) == 1
        assert await LedgerService.sync_pending_deductions_for_user(db, EMPLOYEE_ID, ORG_ID) == 0

        rows = await _ledger_rows(db, transaction_type=TransactionType.pending_deduction)
        assert len(rows) == 1
        assert rows[0].leave_request_id == request.id
        assert rows[0].amount == Decimal("-2")
        assert rows[0].balance_after == Decimal("10")
        assert "After Workflow" in rows[0].description
        assert balance.current_balance == Decimal("12")

    async def test_legacy_unkeyed_rows_are_purged(self, db: AsyncSession):
        leave_type = await seed_leave_type(db)
        variant = await seed_variant(db, leave_type)
        await seed_balance(db, variant)
        await _seed_request(db, leave_type)
        await LedgerService.record_transaction(
            db,
            org_id=ORG_ID,
            user_id=EMPLOYEE_ID,
            leave_variant_id=variant.id,
            transaction_type=TransactionType.pending_deduction,
            amount=Decimal("-2"),
            balance_after=Decimal("10"),
            description="Pending leave deduction: 2 days",
            year=date.today().year,
        )

        created = await LedgerService.sync_pending_deductions_for_user(db, EMPLOYEE_ID, ORG_ID)

        assert created == 1
        rows = await _ledger_rows(db, transaction_type=TransactionType.pending_deduction)
        assert len(rows) == 1
        assert rows[0].leave_request_id is not None

    async def test_rows_of_decided_requests_are_purged(self, db: AsyncSession):
        leave_type = await seed_leave_type(db)
        variant = await seed_variant(db, leave_type)
        await seed_balance(db, variant)
        request = await _seed_request(db, leave_type)
        await LedgerService.sync_pending_deductions_for_user(db, EMPLOYEE_ID, ORG_ID)

        request.status = RequestStatus.approved
        await db.flush()
        await LedgerService.sync_pending_deductions_for_user(db, EMPLOYEE_ID, ORG_ID)

        assert await _ledger_rows(db, transaction_type=TransactionType.pending_deduction) == []

    async def test_org_sync_covers_every_user_with_pending_leave(self, db: AsyncSession):
        leave_type = await seed_leave_type(db)
        variant = await seed_variant(db, leave_type, deduct_before=True)
        await seed_balance(db, variant, user_id="1001")
        await seed_balance(db, variant, user_id="1002")
        await _seed_request(db, leave_type, user_id="1001")
        await _seed_request(db, leave_type, user_id="1002")
        await _seed_request(db, leave_type, user_id="1003", status=RequestStatus.rejected)

        summary = await LedgerService.bulk_sync_pending_deductions_for_org(db, ORG_ID)

        assert summary == {"users": 2, "created": 2}
        rows = await _ledger_rows(db, transaction_type=TransactionType.pending_deduction, user_id="1002")
        assert "Before Workflow" in rows[0].description


# ═════════════════════════════════════════════════════════════════════
# Legacy sub-type shim
# ═════════════════════════════════════════════════════════════════════


class TestLegacySubtypes:
    def test_description_fragments_map_to_subtypes(self):
        assert classify_legacy_description("Leave lapsed at year end") == TransactionSubtype.lapsed
        assert classify_legacy_description("5 days ENCASHED") == TransactionSubtype.encashed
        assert (
            classify_legacy_description("Opening balance imported from Excel")
            == TransactionSubtype.opening_import
        )
        assert classify_legacy_description("Manual top-up") is None
        assert classify_legacy_description(None) is None

    async def test_imported_balance_detected_by_subtype_or_description(self, db: AsyncSession):
        leave_type = await seed_leave_type(db)
        variant = await seed_variant(db, leave_type)
        year = date.today().year
        assert not await LedgerService.has_imported_opening_balance(
            db, EMPLOYEE_ID, variant.id, year, ORG_ID,
        )

        await LedgerService.record_transaction(
            db,
            org_id=ORG_ID,
            user_id=EMPLOYEE_ID,
            leave_variant_id=variant.id,
            transaction_type=TransactionType.grant,
            amount=Decimal("7"),
            balance_after=Decimal("7"),
            description="Opening balance imported from Excel",
            year=year,
        )
        assert await LedgerService.has_imported_opening_balance(
            db, EMPLOYEE_ID, variant.id, year, ORG_ID,
        )

        await LedgerService.record_transaction(
            db,
            org_id=ORG_ID,
            user_id="1002",
            leave_variant_id=variant.id,
            transaction_type=TransactionType.grant,
            subtype=TransactionSubtype.opening_import,
            amount=Decimal("4"),
            balance_after=Decimal("4"),
            description="Bulk upload",
            year=year,
        )
        assert await LedgerService.has_imported_opening_balance(
            db, "1002", variant.id, year, ORG_ID,
        )


# ═════════════════════════════════════════════════════════════════════
# Organization reset
# ═════════════════════════════════════════════════════════════════════


class TestOrgReset:
    async def test_reset_clears_ledger_requests_and_balances(self, db: AsyncSession):
        leave_type = await seed_leave_type(db)
        variant = await seed_variant(db, leave_type)
        balance = await seed_balance(db, variant, current=Decimal("12"))
        await _seed_request(db, leave_type)
        await LedgerService.deduct_balance(db, EMPLOYEE_ID, leave_type.id, 1, ORG_ID)

        other_type = await seed_leave_type(db, org_id=ORG_ID + 1)
        await _seed_request(db, other_type)

        result = await LeaveService.reset_org(db, ORG_ID, "admin")

        assert result.transactions_deleted == 1
        assert result.requests_deleted == 1
        assert result.balances_reset == 1
        await db.refresh(balance)
        assert balance.current_balance == Decimal("0")
        assert q2(balance.used_balance) == Decimal("0.00")

        remaining = await db.execute(select(func.count()).select_from(LeaveRequest))
        assert remaining.scalar_one() == 1
