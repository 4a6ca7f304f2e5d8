"""Roster / company Pydantic v2 schemas."""

from __future__ import annotations

from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RosterEmployee(BaseModel):
    """One record of the organization's employee directory feed.

    ``date_of_joining`` stays textual (``DD-MMM-YYYY``); parsing happens in
    the reconciliation job so one bad record cannot reject the whole payload.
    """

    model_config = ConfigDict(extra="ignore")

    user_id: str
    user_name: Optional[str] = None
    date_of_joining: Optional[str] = None
    employee_number: Optional[str] = None

    @field_validator("user_id", "employee_number", mode="before")
    @classmethod
    def ids_as_text(cls, v):
        # The feed sends numeric ids
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v


class CompanyUpdate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    effective_date: Optional[date] = None


class CompanyOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    org_id: int
    name: str
    effective_date: Optional[date] = None


class EmployeeProfileIn(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=100)
    user_name: Optional[str] = None
    employee_number: Optional[str] = None
    date_of_joining: Optional[date] = None


class EmployeeProfileOut(EmployeeProfileIn):
    model_config = ConfigDict(from_attributes=True)

    org_id: int
