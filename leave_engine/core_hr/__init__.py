"""Core HR module — company calendar anchor, employee profiles and the roster feed."""

from leave_engine.core_hr.models import Company, EmployeeProfile

__all__ = ["Company", "EmployeeProfile"]
