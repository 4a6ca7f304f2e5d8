"""Common module — shared utilities for the leave engine."""

from leave_engine.common.audit import AuditTrail, TimestampMixin, create_audit_entry
from leave_engine.common.constants import (
    ApprovalAction,
    AssignmentType,
    GrantFrequency,
    GrantLeaves,
    ProRataCalculation,
    RequestKind,
    RequestStatus,
    TransactionSubtype,
    TransactionType,
    WorkflowStatus,
)
from leave_engine.common.exceptions import (
    AppException,
    ConflictError,
    ForbiddenException,
    InvalidStateError,
    NotFoundException,
    RosterUnavailableError,
    ValidationException,
    register_exception_handlers,
)
from leave_engine.common.pagination import (
    PaginatedResponse,
    PaginationMeta,
    PaginationParams,
    paginate,
)

__all__ = [
    # Audit
    "AuditTrail",
    "TimestampMixin",
    "create_audit_entry",
    # Constants / Enums
    "ApprovalAction",
    "AssignmentType",
    "GrantFrequency",
    "GrantLeaves",
    "ProRataCalculation",
    "RequestKind",
    "RequestStatus",
    "TransactionSubtype",
    "TransactionType",
    "WorkflowStatus",
    # Exceptions
    "AppException",
    "ConflictError",
    "ForbiddenException",
    "InvalidStateError",
    "NotFoundException",
    "RosterUnavailableError",
    "ValidationException",
    "register_exception_handlers",
    # Pagination
    "PaginatedResponse",
    "PaginationMeta",
    "PaginationParams",
    "paginate",
]
