"""Core HR service — company leave-year anchor and employee profiles."""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from leave_engine.common.audit import create_audit_entry
from leave_engine.common.exceptions import NotFoundException
from leave_engine.core_hr.models import Company, EmployeeProfile
from leave_engine.core_hr.schemas import CompanyUpdate, EmployeeProfileIn

logger = logging.getLogger(__name__)


class CoreHRService:
    """Organization records the leave engine reads during reconciliation."""

    @staticmethod
    async def get_company(db: AsyncSession, org_id: int) -> Company:
        result = await db.execute(select(Company).where(Company.org_id == org_id))
        company = result.scalars().first()
        if company is None:
            raise NotFoundException("Company", org_id)
        return company

    @staticmethod
    async def upsert_company(
        db: AsyncSession, org_id: int, data: CompanyUpdate, actor_id: str,
    ) -> Company:
        """Create or update the organization row.

        Moving ``effective_date`` shifts the leave-year start used by the
        next reconciliation run; existing balances are not touched here.
        """
        result = await db.execute(select(Company).where(Company.org_id == org_id))
        company = result.scalars().first()
        old_values: Optional[dict] = None
        if company is None:
            company = Company(org_id=org_id, name=data.name, effective_date=data.effective_date)
            db.add(company)
        else:
            old_values = {
                "name": company.name,
                "effective_date": company.effective_date.isoformat() if company.effective_date else None,
            }
            company.name = data.name
            company.effective_date = data.effective_date
        await db.flush()

        await create_audit_entry(
            db,
            org_id=org_id,
            action="update" if old_values else "create",
            entity_type="Company",
            entity_id=org_id,
            actor_id=actor_id,
            old_values=old_values,
            new_values={
                "name": company.name,
                "effective_date": company.effective_date.isoformat() if company.effective_date else None,
            },
        )
        return company

    @staticmethod
    async def get_profiles(db: AsyncSession, org_id: int) -> Sequence[EmployeeProfile]:
        result = await db.execute(
            select(EmployeeProfile)
            .where(EmployeeProfile.org_id == org_id)
            .order_by(EmployeeProfile.user_id)
        )
        return result.scalars().all()

    @staticmethod
    async def upsert_profiles(
        db: AsyncSession, org_id: int, profiles: Sequence[EmployeeProfileIn],
    ) -> Sequence[EmployeeProfile]:
        """Insert or update profiles by ``user_id``; the last duplicate wins."""
        result = await db.execute(
            select(EmployeeProfile).where(EmployeeProfile.org_id == org_id)
        )
        existing = {p.user_id: p for p in result.scalars().all()}

        touched: dict[str, EmployeeProfile] = {}
        for item in profiles:
            user_id = item.user_id.strip()
            profile = existing.get(user_id)
            if profile is None:
                profile = EmployeeProfile(org_id=org_id, user_id=user_id)
                db.add(profile)
                existing[user_id] = profile
            profile.user_name = item.user_name
            profile.employee_number = item.employee_number
            profile.date_of_joining = item.date_of_joining
            touched[user_id] = profile
        await db.flush()
        logger.info("Upserted %d employee profiles for org %s", len(touched), org_id)
        return list(touched.values())
