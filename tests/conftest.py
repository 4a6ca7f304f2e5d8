"""Shared test fixtures — async DB, client, caller headers, factories.

Reusable across all test modules (entitlement, ledger, workflow, reconciliation, API).
Uses SQLite + aiosqlite for fast isolated tests without PostgreSQL.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import AsyncGenerator, Iterable, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from leave_engine.common.constants import (
    SUBPROCESS_APPLY_LEAVE,
    GrantFrequency,
    GrantLeaves,
    ProRataCalculation,
)
from leave_engine.config import Settings
from leave_engine.database import Base, get_db
from leave_engine.main import create_app

# Import ALL model modules so SQLAlchemy can resolve cross-module relationships
import leave_engine.common.audit  # noqa: F401
import leave_engine.core_hr.models  # noqa: F401
import leave_engine.leave.models  # noqa: F401
import leave_engine.workflow.models  # noqa: F401

from leave_engine.leave.models import (
    EmployeeLeaveBalance,
    LeaveType,
    LeaveVariant,
)
from leave_engine.workflow.models import Workflow

# ── SQLite compat: compile PG-specific types to TEXT/CHAR ───────────

from sqlalchemy.dialects.postgresql import JSONB, UUID as PG_UUID
from sqlalchemy.ext.compiler import compiles


@compiles(JSONB, "sqlite")
def _jsonb_sqlite(element, compiler, **kw):
    return "TEXT"


@compiles(PG_UUID, "sqlite")
def _uuid_sqlite(element, compiler, **kw):
    return "CHAR(36)"


# ── Test database (SQLite in-memory) ────────────────────────────────

TEST_DATABASE_URL = "sqlite+aiosqlite://"

engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


# Register PG-compatible functions for SQLite
@event.listens_for(engine.sync_engine, "connect")
def _register_sqlite_functions(dbapi_conn, connection_record):
    """Register NOW() as a SQLite custom function."""
    dbapi_conn.create_function(
        "NOW", 0, lambda: datetime.now(timezone.utc).isoformat(),
    )

TestSessionFactory = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False,
)

TEST_SETTINGS = Settings(
    DATABASE_URL=TEST_DATABASE_URL,
    ENVIRONMENT="test",
    LOG_LEVEL="warning",
    RATE_LIMIT_ENABLED=False,
)

ORG_ID = 60
EMPLOYEE_ID = "1001"
MANAGER_ID = "2001"


@pytest.fixture(autouse=True)
async def _setup_db():
    """Create all tables before each test, drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def _override_get_db() -> AsyncGenerator[AsyncSession, None]:
    async with TestSessionFactory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


# ── FastAPI test client ─────────────────────────────────────────────

@pytest.fixture
async def app():
    """Create a fresh app instance with DB dependency overridden."""
    application = create_app(TEST_SETTINGS)
    application.dependency_overrides[get_db] = _override_get_db
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client wired to the test app."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


def caller_headers(user_id: str = EMPLOYEE_ID, org_id: int = ORG_ID) -> dict[str, str]:
    """Identity headers the fronting gateway would add."""
    return {"X-Org-Id": str(org_id), "X-User-Id": user_id}


# ── Database session (for direct DB operations in tests) ────────────

@pytest.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    async with TestSessionFactory() as session:
        yield session
        await session.commit()


# ── Model factories ─────────────────────────────────────────────────

async def seed_leave_type(
    db: AsyncSession,
    *,
    org_id: int = ORG_ID,
    name: str = "Casual Leave",
    is_active: bool = True,
) -> LeaveType:
    leave_type = LeaveType(
        id=uuid.uuid4(),
        org_id=org_id,
        name=name,
        is_active=is_active,
    )
    db.add(leave_type)
    await db.flush()
    return leave_type


async def seed_variant(
    db: AsyncSession,
    leave_type: LeaveType,
    *,
    paid_days_in_year: Decimal = Decimal("12"),
    grant_leaves: GrantLeaves = GrantLeaves.after_earning,
    grant_frequency: GrantFrequency = GrantFrequency.per_month,
    pro_rata_calculation: ProRataCalculation = ProRataCalculation.full_month,
    onboarding_slabs: Optional[list[dict]] = None,
    deduct_before: bool = False,
    deduction_not_allowed: bool = False,
    allow_withdrawal_before_approval: bool = True,
    allow_withdrawal_after_approval: bool = True,
) -> LeaveVariant:
    variant = LeaveVariant(
        id=uuid.uuid4(),
        org_id=leave_type.org_id,
        leave_type_id=leave_type.id,
        leave_type_name=leave_type.name,
        leave_variant_name=f"{leave_type.name} - Standard",
        paid_days_in_year=paid_days_in_year,
        grant_leaves=grant_leaves,
        grant_frequency=grant_frequency,
        pro_rata_calculation=pro_rata_calculation,
        onboarding_slabs=onboarding_slabs or [],
        leave_balance_deduction_before=deduct_before,
        leave_balance_deduction_after=not deduct_before,
        leave_balance_deduction_not_allowed=deduction_not_allowed,
        allow_withdrawal_before_approval=allow_withdrawal_before_approval,
        allow_withdrawal_after_approval=allow_withdrawal_after_approval,
        negative_leave_balance=Decimal("0"),
        carry_forward_limit=Decimal("0"),
    )
    db.add(variant)
    await db.flush()
    return variant


async def seed_balance(
    db: AsyncSession,
    variant: LeaveVariant,
    *,
    user_id: str = EMPLOYEE_ID,
    year: Optional[int] = None,
    current: Decimal = Decimal("12"),
    used: Decimal = Decimal("0"),
    carry_forward: Decimal = Decimal("0"),
) -> EmployeeLeaveBalance:
    balance = EmployeeLeaveBalance(
        id=uuid.uuid4(),
        org_id=variant.org_id,
        user_id=user_id,
        leave_variant_id=variant.id,
        year=year or date.today().year,
        total_entitlement=variant.paid_days_in_year,
        current_balance=current,
        used_balance=used,
        carry_forward=carry_forward,
    )
    db.add(balance)
    await db.flush()
    return balance


async def seed_workflow(
    db: AsyncSession,
    steps: list[dict],
    *,
    org_id: int = ORG_ID,
    sub_processes: Iterable[str] = (SUBPROCESS_APPLY_LEAVE,),
    name: str = "Leave approval",
    created_at: Optional[datetime] = None,
) -> Workflow:
    workflow = Workflow(
        id=uuid.uuid4(),
        org_id=org_id,
        name=name,
        process="application",
        sub_processes=list(sub_processes),
        steps=steps,
        is_active=True,
        created_at=created_at or datetime.now(timezone.utc),
    )
    db.add(workflow)
    await db.flush()
    return workflow


def manual_step(title: str = "Manager approval") -> dict:
    return {"title": title, "role_ids": [], "auto_approval": False, "days": 0, "hours": 0}


def auto_step(title: str = "Auto approval", *, days: int = 0, hours: int = 0) -> dict:
    return {"title": title, "role_ids": [], "auto_approval": True, "days": days, "hours": hours}
