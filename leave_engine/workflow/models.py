"""Workflow ORM model and the column set shared by workflow-driven requests."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, declared_attr, mapped_column

from leave_engine.common.audit import TimestampMixin
from leave_engine.common.constants import RequestStatus, WorkflowStatus
from leave_engine.database import Base


def enum_column(enum_cls, name: str) -> sa.Enum:
    """String-backed enum type storing member values (portable to SQLite)."""
    return sa.Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=40,
        values_callable=lambda members: [m.value for m in members],
    )


class Workflow(Base, TimestampMixin):
    __tablename__ = "workflows"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    org_id: Mapped[int] = mapped_column(sa.Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(sa.String(200), nullable=False)
    process: Mapped[str] = mapped_column(sa.String(50), nullable=False)
    sub_processes: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    # [{"title", "role_ids", "auto_approval", "days", "hours"}, ...]
    steps: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(sa.Boolean, default=True, nullable=False)


class WorkflowTrackedMixin:
    """Status and workflow-progress columns for leave / PTO / comp-off requests.

    ``workflow_steps`` is a copy of the workflow's steps taken when the
    request entered its workflow; later edits to the workflow do not move
    an in-flight request's ``current_step`` out of range.
    """

    status: Mapped[RequestStatus] = mapped_column(
        enum_column(RequestStatus, "request_status"),
        default=RequestStatus.pending,
        nullable=False,
    )

    @declared_attr
    def workflow_id(cls) -> Mapped[Optional[uuid.UUID]]:
        return mapped_column(UUID(as_uuid=True), sa.ForeignKey("workflows.id"))

    workflow_steps: Mapped[Optional[list]] = mapped_column(JSONB)
    current_step: Mapped[Optional[int]] = mapped_column(sa.Integer)
    workflow_status: Mapped[Optional[WorkflowStatus]] = mapped_column(
        enum_column(WorkflowStatus, "workflow_status"),
    )
    approval_history: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    scheduled_auto_approval_at: Mapped[Optional[datetime]] = mapped_column(
        sa.DateTime(timezone=True)
    )
    approved_by: Mapped[Optional[str]] = mapped_column(sa.String(100))
    approved_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    rejected_reason: Mapped[Optional[str]] = mapped_column(sa.Text)
