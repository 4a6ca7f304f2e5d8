"""Workflow Pydantic v2 schemas — step configuration and transition bodies."""

from __future__ import annotations

import uuid
from datetime import timedelta
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from leave_engine.common.constants import RequestKind


# ═════════════════════════════════════════════════════════════════════
# Steps
# ═════════════════════════════════════════════════════════════════════


class WorkflowStep(BaseModel):
    """One approval stage.

    Accepts the camelCase keys stored by older workflow editors
    (``autoApproval``, ``roleIds``).
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: str = ""
    role_ids: list[Any] = Field(
        default_factory=list, validation_alias=AliasChoices("role_ids", "roleIds"),
    )
    auto_approval: bool = Field(
        default=False, validation_alias=AliasChoices("auto_approval", "autoApproval"),
    )
    days: int = Field(default=0, ge=0)
    hours: int = Field(default=0, ge=0)

    @property
    def delay(self) -> timedelta:
        return timedelta(days=self.days, hours=self.hours)

    @property
    def is_delayed(self) -> bool:
        return self.days > 0 or self.hours > 0


def parse_steps(raw: Optional[list]) -> list[WorkflowStep]:
    return [WorkflowStep.model_validate(step) for step in (raw or [])]


# ═════════════════════════════════════════════════════════════════════
# Workflow definitions
# ═════════════════════════════════════════════════════════════════════


class WorkflowCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    process: str = "application"
    sub_processes: list[str] = Field(default_factory=list)
    steps: list[WorkflowStep] = Field(..., min_length=1)
    is_active: bool = True


class WorkflowOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    org_id: int
    name: str
    process: str
    sub_processes: list[str]
    steps: list[WorkflowStep]
    is_active: bool


# ═════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════


class ApproveBody(BaseModel):
    comment: Optional[str] = Field(None, max_length=1000)


class RejectBody(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class SweepError(BaseModel):
    kind: RequestKind
    request_id: uuid.UUID
    error: str


class SweepResult(BaseModel):
    processed: int = 0
    errors: list[SweepError] = Field(default_factory=list)
