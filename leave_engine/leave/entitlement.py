"""Entitlement calculator — pure functions, no database access.

Given a variant's accrual policy, an employee's joining date and "today",
work out the annual entitlement and how much of it has been granted so far.

Month arithmetic uses 0-based month indexes (January = 0) so that the
"remaining months" of a year read as ``12 - month_index``.

Rules:
  - joined after ``year``             → nothing granted yet
  - joined before ``year``            → frequency rules anchored at Jan 1
  - joined in ``year``, after_earning → frequency rules anchored at joining date
  - joined in ``year``, in_advance    → slab lookup (slab_system) or month pro-ration

Every granted figure is rounded to half-day granularity with
``round_half`` (half-up: 7.25 → 7.5, 7.33 → 7.5, 7.1 → 7.0).
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Optional

from leave_engine.common.constants import GrantFrequency, GrantLeaves, ProRataCalculation

ZERO = Decimal("0")
TWO = Decimal("2")


# ═════════════════════════════════════════════════════════════════════
# Value objects
# ═════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class OnboardingSlab:
    """Day-of-month band → monthly earning for a mid-year joiner."""

    from_day: int
    to_day: int
    earn_days: Decimal

    def contains(self, day: int) -> bool:
        return self.from_day <= day <= self.to_day

    @classmethod
    def from_json(cls, raw: dict[str, Any]) -> "OnboardingSlab":
        # Older variant rows stored camelCase keys
        return cls(
            from_day=int(raw.get("from_day", raw.get("fromDay"))),
            to_day=int(raw.get("to_day", raw.get("toDay"))),
            earn_days=Decimal(str(raw.get("earn_days", raw.get("earnDays")))),
        )


@dataclass(frozen=True)
class AccrualPolicy:
    """The subset of a leave variant the calculator reads."""

    paid_days_in_year: Decimal
    grant_leaves: GrantLeaves
    grant_frequency: GrantFrequency
    pro_rata_calculation: ProRataCalculation = ProRataCalculation.full_month
    onboarding_slabs: tuple[OnboardingSlab, ...] = field(default_factory=tuple)

    @classmethod
    def coerce(cls, variant: Any) -> "AccrualPolicy":
        """Build from a ``LeaveVariant`` row (or anything shaped like one)."""
        if isinstance(variant, cls):
            return variant
        slabs = tuple(
            s if isinstance(s, OnboardingSlab) else OnboardingSlab.from_json(s)
            for s in (variant.onboarding_slabs or [])
        )
        return cls(
            paid_days_in_year=Decimal(str(variant.paid_days_in_year)),
            grant_leaves=GrantLeaves(variant.grant_leaves),
            grant_frequency=GrantFrequency(variant.grant_frequency),
            pro_rata_calculation=ProRataCalculation(
                variant.pro_rata_calculation or ProRataCalculation.full_month
            ),
            onboarding_slabs=slabs,
        )

    @property
    def monthly_rate(self) -> Decimal:
        return self.paid_days_in_year / 12


@dataclass(frozen=True)
class Entitlement:
    total_entitlement: Decimal
    current_balance: Decimal


# ═════════════════════════════════════════════════════════════════════
# Small helpers
# ═════════════════════════════════════════════════════════════════════


def round_half(value: Decimal) -> Decimal:
    """Round to the nearest 0.5 day, halves away from zero for positives."""
    doubled = (Decimal(value) * TWO).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return (doubled / TWO).quantize(Decimal("0.1"))


def is_last_day_of_month(day: date) -> bool:
    return day.day == calendar.monthrange(day.year, day.month)[1]


def _month_index(day: date) -> int:
    return day.month - 1


def _quarter_end(year: int, quarter: int) -> date:
    last_month = quarter * 3 + 3
    return date(year, last_month, calendar.monthrange(year, last_month)[1])


def completed_months_since(joining_date: date, current_date: date) -> int:
    """Completed months of service for slab / pro-rata after-earning accrual.

    The month in progress counts only on its last calendar day; the
    joining month itself is not a completed month.
    """
    last_day = is_last_day_of_month(current_date)
    join_month = _month_index(joining_date)
    cur_month = _month_index(current_date)
    if current_date.year == joining_date.year:
        elapsed = max(0, cur_month - join_month)
        return max(0, elapsed if last_day else elapsed - 1)
    in_joining_year = 12 - join_month
    in_current_year = cur_month if last_day else max(0, cur_month - 1)
    return in_joining_year + in_current_year


def remaining_months_in_year(joining_date: date, current_date: date) -> int:
    """Months from the joining month to December, inclusive."""
    if current_date.year == joining_date.year:
        return 12 - _month_index(joining_date)
    return 12


def find_onboarding_slab(
    slabs: Iterable[OnboardingSlab], joining_day: int,
) -> Optional[OnboardingSlab]:
    for slab in slabs:
        if slab.contains(joining_day):
            return slab
    return None


# ═════════════════════════════════════════════════════════════════════
# Frequency rules
# ═════════════════════════════════════════════════════════════════════


def balance_by_frequency(
    annual: Decimal,
    frequency: GrantFrequency,
    timing: GrantLeaves,
    start_date: date,
    current_date: date,
) -> Decimal:
    """Unrounded amount granted between *start_date* and *current_date*."""
    if current_date < start_date:
        return ZERO

    if frequency == GrantFrequency.per_year:
        if timing == GrantLeaves.in_advance:
            return annual
        return annual if current_date >= date(start_date.year, 12, 31) else ZERO

    if frequency == GrantFrequency.per_quarter:
        quarterly = annual / 4
        granted = ZERO
        for quarter in range(4):
            if timing == GrantLeaves.in_advance:
                reached = current_date >= date(start_date.year, quarter * 3 + 1, 1)
            else:
                reached = current_date >= _quarter_end(start_date.year, quarter)
            if reached:
                granted += quarterly
        return granted

    if frequency == GrantFrequency.per_month:
        monthly = annual / 12
        start_month = _month_index(start_date)
        cur_month = _month_index(current_date)
        same_year = current_date.year == start_date.year

        if timing == GrantLeaves.in_advance:
            # Current month is granted once it has started
            if same_year:
                months = max(0, cur_month - start_month + 1)
            else:
                months = (12 - start_month) + (cur_month + 1)
        else:
            # Current month counts only on its last calendar day
            last_day = is_last_day_of_month(current_date)
            if same_year:
                months = max(0, cur_month - start_month + (1 if last_day else 0))
            else:
                in_current_year = cur_month + 1 if (last_day and cur_month > 0) else cur_month
                months = (12 - start_month) + in_current_year
        return monthly * months

    return ZERO


# ═════════════════════════════════════════════════════════════════════
# Mid-year joiners
# ═════════════════════════════════════════════════════════════════════


def slab_balance(policy: AccrualPolicy, joining_date: date, current_date: date) -> Decimal:
    """Unrounded slab-based amount for a mid-year joiner.

    No slabs configured → month pro-ration over the rest of the year.
    No slab covering the joining day → 0.
    """
    if not policy.onboarding_slabs:
        return remaining_months_in_year(joining_date, current_date) * policy.monthly_rate

    slab = find_onboarding_slab(policy.onboarding_slabs, joining_date.day)
    if slab is None:
        return ZERO

    if policy.grant_leaves == GrantLeaves.after_earning:
        return completed_months_since(joining_date, current_date) * slab.earn_days
    return remaining_months_in_year(joining_date, current_date) * slab.earn_days


def pro_rata_balance(policy: AccrualPolicy, joining_date: date, current_date: date) -> Decimal:
    """Unrounded in-advance amount for an employee who joined this year."""
    if policy.pro_rata_calculation == ProRataCalculation.slab_system:
        return slab_balance(policy, joining_date, current_date)

    if policy.grant_frequency == GrantFrequency.per_month:
        # Every month from the joining month through the current one
        return balance_by_frequency(
            policy.paid_days_in_year,
            policy.grant_frequency,
            policy.grant_leaves,
            joining_date,
            current_date,
        )
    return remaining_months_in_year(joining_date, current_date) * policy.monthly_rate


# ═════════════════════════════════════════════════════════════════════
# Entry point
# ═════════════════════════════════════════════════════════════════════


def calculate_entitlement(
    variant: Any,
    joining_date: date,
    current_date: date,
    year: int,
) -> Entitlement:
    """Annual entitlement and the balance granted as of *current_date*."""
    policy = AccrualPolicy.coerce(variant)
    total = policy.paid_days_in_year

    if joining_date.year > year:
        return Entitlement(total, ZERO)

    if joining_date.year < year:
        raw = balance_by_frequency(
            total, policy.grant_frequency, policy.grant_leaves,
            date(year, 1, 1), current_date,
        )
    elif policy.grant_leaves == GrantLeaves.after_earning:
        raw = balance_by_frequency(
            total, policy.grant_frequency, policy.grant_leaves,
            joining_date, current_date,
        )
    else:
        raw = pro_rata_balance(policy, joining_date, current_date)

    return Entitlement(total, round_half(raw))
