"""Core HR router — company leave-year anchor and employee profiles.

Routes:
    /company    — Get, set the organization (``effective_date`` = leave-year start)
    /profiles   — List, bulk upsert locally known joining dates
"""


from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from leave_engine.core_hr.schemas import (
    CompanyOut,
    CompanyUpdate,
    EmployeeProfileIn,
    EmployeeProfileOut,
)
from leave_engine.core_hr.service import CoreHRService
from leave_engine.database import get_db
from leave_engine.dependencies import Caller, get_caller

router = APIRouter(prefix="", tags=["core-hr"])


@router.get("/company", response_model=CompanyOut)
async def get_company(
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await CoreHRService.get_company(db, caller.org_id)


@router.put("/company", response_model=CompanyOut)
async def put_company(
    body: CompanyUpdate,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await CoreHRService.upsert_company(db, caller.org_id, body, caller.user_id)


@router.get("/profiles", response_model=list[EmployeeProfileOut])
async def list_profiles(
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    return await CoreHRService.get_profiles(db, caller.org_id)


@router.put("/profiles", response_model=list[EmployeeProfileOut])
async def put_profiles(
    body: list[EmployeeProfileIn],
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    """Bulk upsert by ``user_id``; reconciliation uses these dates when the roster is unavailable."""
    return await CoreHRService.upsert_profiles(db, caller.org_id, body)
