"""Entitlement calculator tests — pure functions, no database.

Covers half-day rounding, month-boundary accrual for after-earning
variants, slab lookup for mid-year joiners and the frequency rules.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest

from leave_engine.common.constants import GrantFrequency, GrantLeaves, ProRataCalculation
from leave_engine.leave.entitlement import (
    AccrualPolicy,
    OnboardingSlab,
    balance_by_frequency,
    calculate_entitlement,
    completed_months_since,
    find_onboarding_slab,
    is_last_day_of_month,
    remaining_months_in_year,
    round_half,
)


def _policy(
    paid_days: str = "12",
    *,
    grant_leaves: GrantLeaves = GrantLeaves.after_earning,
    grant_frequency: GrantFrequency = GrantFrequency.per_month,
    pro_rata: ProRataCalculation = ProRataCalculation.full_month,
    slabs: tuple[OnboardingSlab, ...] = (),
) -> AccrualPolicy:
    return AccrualPolicy(
        paid_days_in_year=Decimal(paid_days),
        grant_leaves=grant_leaves,
        grant_frequency=grant_frequency,
        pro_rata_calculation=pro_rata,
        onboarding_slabs=slabs,
    )


# ═════════════════════════════════════════════════════════════════════
# Helpers
# ═════════════════════════════════════════════════════════════════════


class TestRoundHalf:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("7.33", "7.5"),
            ("7.1", "7.0"),
            ("7.25", "7.5"),
            ("7.74", "7.5"),
            ("7.75", "8.0"),
            ("0", "0.0"),
        ],
    )
    def test_rounds_to_nearest_half_day(self, raw, expected):
        assert round_half(Decimal(raw)) == Decimal(expected)


class TestMonthHelpers:
    def test_last_day_of_month(self):
        assert is_last_day_of_month(date(2025, 6, 30))
        assert is_last_day_of_month(date(2024, 2, 29))
        assert not is_last_day_of_month(date(2025, 2, 27))

    def test_completed_months_same_year(self):
        assert completed_months_since(date(2025, 1, 1), date(2025, 6, 15)) == 4
        assert completed_months_since(date(2025, 1, 1), date(2025, 6, 30)) == 5

    def test_completed_months_never_negative(self):
        assert completed_months_since(date(2025, 6, 10), date(2025, 6, 12)) == 0

    def test_completed_months_across_years(self):
        # Joined Nov 2024: Nov + Dec, then only Jan of 2025 is complete by mid-March
        assert completed_months_since(date(2024, 11, 5), date(2025, 3, 15)) == 3

    def test_remaining_months(self):
        assert remaining_months_in_year(date(2025, 7, 20), date(2025, 8, 1)) == 6
        assert remaining_months_in_year(date(2024, 7, 20), date(2025, 8, 1)) == 12

    def test_find_slab_by_joining_day(self):
        slabs = (
            OnboardingSlab(1, 15, Decimal("1.5")),
            OnboardingSlab(16, 31, Decimal("1.0")),
        )
        assert find_onboarding_slab(slabs, 20).earn_days == Decimal("1.0")
        assert find_onboarding_slab(slabs, 15).earn_days == Decimal("1.5")
        assert find_onboarding_slab(slabs[:1], 20) is None


class TestOnboardingSlabParsing:
    def test_accepts_camel_case_keys_and_string_amounts(self):
        slab = OnboardingSlab.from_json({"fromDay": 16, "toDay": 31, "earnDays": "1.0"})
        assert slab == OnboardingSlab(16, 31, Decimal("1.0"))

    def test_policy_coerces_variant_row(self):
        variant = SimpleNamespace(
            paid_days_in_year=Decimal("24"),
            grant_leaves="in_advance",
            grant_frequency="per_month",
            pro_rata_calculation=None,
            onboarding_slabs=[{"from_day": 1, "to_day": 31, "earn_days": 2}],
        )
        policy = AccrualPolicy.coerce(variant)
        assert policy.grant_leaves == GrantLeaves.in_advance
        assert policy.pro_rata_calculation == ProRataCalculation.full_month
        assert policy.onboarding_slabs[0].earn_days == Decimal("2")
        assert policy.monthly_rate == Decimal("2")


# ═════════════════════════════════════════════════════════════════════
# Frequency rules
# ═════════════════════════════════════════════════════════════════════


class TestBalanceByFrequency:
    def test_per_year_in_advance_grants_everything(self):
        assert balance_by_frequency(
            Decimal("12"), GrantFrequency.per_year, GrantLeaves.in_advance,
            date(2025, 1, 1), date(2025, 2, 1),
        ) == Decimal("12")

    def test_per_year_after_earning_waits_for_year_end(self):
        args = (Decimal("12"), GrantFrequency.per_year, GrantLeaves.after_earning, date(2025, 1, 1))
        assert balance_by_frequency(*args, date(2025, 12, 30)) == 0
        assert balance_by_frequency(*args, date(2025, 12, 31)) == Decimal("12")

    def test_per_quarter_in_advance_counts_started_quarters(self):
        assert balance_by_frequency(
            Decimal("12"), GrantFrequency.per_quarter, GrantLeaves.in_advance,
            date(2025, 1, 1), date(2025, 5, 10),
        ) == Decimal("6")

    def test_per_quarter_after_earning_counts_finished_quarters(self):
        args = (Decimal("12"), GrantFrequency.per_quarter, GrantLeaves.after_earning, date(2025, 1, 1))
        assert balance_by_frequency(*args, date(2025, 6, 29)) == Decimal("3")
        assert balance_by_frequency(*args, date(2025, 6, 30)) == Decimal("6")

    def test_before_start_grants_nothing(self):
        assert balance_by_frequency(
            Decimal("12"), GrantFrequency.per_month, GrantLeaves.in_advance,
            date(2025, 5, 1), date(2025, 4, 30),
        ) == 0


# ═════════════════════════════════════════════════════════════════════
# calculate_entitlement
# ═════════════════════════════════════════════════════════════════════


class TestCalculateEntitlement:
    def test_after_earning_excludes_month_in_progress(self):
        policy = _policy("18")
        result = calculate_entitlement(policy, date(2025, 1, 1), date(2025, 6, 15), 2025)
        assert result.total_entitlement == Decimal("18")
        assert result.current_balance == Decimal("7.5")

    def test_after_earning_counts_month_on_its_last_day(self):
        policy = _policy("18")
        result = calculate_entitlement(policy, date(2025, 1, 1), date(2025, 6, 30), 2025)
        assert result.current_balance == Decimal("9.0")

    def test_in_advance_monthly_mid_year_joiner(self):
        # March through June inclusive at 2.0 per month
        policy = _policy("24", grant_leaves=GrantLeaves.in_advance)
        result = calculate_entitlement(policy, date(2025, 3, 10), date(2025, 6, 15), 2025)
        assert result.current_balance == Decimal("8.0")

    def test_slab_system_in_advance(self):
        policy = _policy(
            "12",
            grant_leaves=GrantLeaves.in_advance,
            pro_rata=ProRataCalculation.slab_system,
            slabs=(
                OnboardingSlab(1, 15, Decimal("1.5")),
                OnboardingSlab(16, 31, Decimal("1.0")),
            ),
        )
        result = calculate_entitlement(policy, date(2025, 7, 20), date(2025, 8, 5), 2025)
        assert result.current_balance == Decimal("6.0")

    def test_slab_system_without_slabs_prorates_remaining_months(self):
        policy = _policy(
            "12", grant_leaves=GrantLeaves.in_advance, pro_rata=ProRataCalculation.slab_system,
        )
        result = calculate_entitlement(policy, date(2025, 7, 20), date(2025, 8, 5), 2025)
        assert result.current_balance == Decimal("6.0")

    def test_slab_system_without_matching_slab_grants_nothing(self):
        policy = _policy(
            "12",
            grant_leaves=GrantLeaves.in_advance,
            pro_rata=ProRataCalculation.slab_system,
            slabs=(OnboardingSlab(1, 15, Decimal("1.5")),),
        )
        result = calculate_entitlement(policy, date(2025, 7, 20), date(2025, 8, 5), 2025)
        assert result.current_balance == Decimal("0")

    def test_in_advance_quarterly_joiner_prorates_remaining_months(self):
        policy = _policy(
            "12", grant_leaves=GrantLeaves.in_advance, grant_frequency=GrantFrequency.per_quarter,
        )
        result = calculate_entitlement(policy, date(2025, 10, 3), date(2025, 10, 10), 2025)
        assert result.current_balance == Decimal("3.0")

    def test_earlier_joiner_accrues_from_january(self):
        policy = _policy("12")
        result = calculate_entitlement(policy, date(2023, 5, 1), date(2025, 3, 15), 2025)
        assert result.current_balance == Decimal("2.0")

    def test_future_joiner_has_nothing_yet(self):
        policy = _policy("12", grant_leaves=GrantLeaves.in_advance)
        result = calculate_entitlement(policy, date(2026, 2, 1), date(2025, 12, 1), 2025)
        assert result.total_entitlement == Decimal("12")
        assert result.current_balance == Decimal("0")

    def test_rounds_fractional_accrual(self):
        # 11 days a year over 8 completed months = 7.33 → 7.5
        policy = _policy("11")
        result = calculate_entitlement(policy, date(2025, 1, 1), date(2025, 8, 31), 2025)
        assert result.current_balance == Decimal("7.5")
