"""
Payroll Recon - Payroll Calculator Tests

Tests for the tax, travel, attendance and per-identity formulas.
"""

import uuid
from datetime import date
from decimal import Decimal

import pytest

from payroll_recon.models.payroll import AttendanceStatus
from payroll_recon.models.payroll_settings import SalaryHeadType, TransportMode
from payroll_recon.services.payroll_calculators import (
    IdentityInputs,
    PeriodContext,
    SalaryHeadRule,
    TaxBracket,
    TravelTier,
    compute_identity,
    default_travel_tiers,
    monthly_tax,
    present_days,
    prorate,
    resolve_travel_tier,
    statutory_monthly_tax,
    validate_brackets,
    working_days,
)
from payroll_recon.services.payroll_calculators.tax_brackets import (
    LEGACY_SCHEDULE,
    UPDATED_SCHEDULE,
    TaxBracketGapError,
    schedule_for_date,
)
from payroll_recon.services.payroll_components import PayrollMetric
from payroll_recon.utils.error_handling import ComputationError
from payroll_recon.utils.normalizers import to_money


def _ctx(**overrides):
    values = dict(
        period_key="02/2026",
        period_start=date(2026, 2, 1),
        period_end=date(2026, 2, 28),
        working_days=20,
        tolerance=Decimal("1.00"),
    )
    values.update(overrides)
    return PeriodContext(**values)


def _inputs(components, **overrides):
    values = dict(
        payroll_name="Ali Raza",
        normalized_name="ali raza",
        components={k: Decimal(v) for k, v in components.items()},
    )
    values.update(overrides)
    return IdentityInputs(**values)


# ===========================================
# TAX BRACKETS
# ===========================================

class TestIncomeTax:
    """Tests for progressive income tax."""

    def test_legacy_second_band(self):
        # 1,000,000 a year sits in the 1% band starting at 600,000
        tax = monthly_tax(Decimal(1000000) / 12, LEGACY_SCHEDULE)
        assert to_money(tax) == Decimal("333.33")

    def test_zero_band(self):
        assert monthly_tax(Decimal("40000"), UPDATED_SCHEDULE) == Decimal("0")

    def test_negative_taxable_is_zero(self):
        assert monthly_tax(Decimal("-5000"), UPDATED_SCHEDULE) == Decimal("0")

    def test_band_edge_uses_upper_band(self):
        # 1,200,000 exactly belongs to the band that starts there
        tax = monthly_tax(Decimal("100000"), UPDATED_SCHEDULE)
        assert tax == Decimal("15000") / 12

    @pytest.mark.parametrize("schedule", [LEGACY_SCHEDULE, UPDATED_SCHEDULE])
    def test_monotonic(self, schedule):
        previous = Decimal("-1")
        for monthly in range(0, 1_200_001, 12_500):
            tax = monthly_tax(Decimal(monthly), schedule)
            assert tax >= previous
            previous = tax

    def test_statutory_cutover(self):
        assert schedule_for_date(date(2024, 6, 30)).name == "LEGACY"
        assert schedule_for_date(date(2024, 7, 1)).name == "UPDATED"
        legacy = statutory_monthly_tax(date(2024, 6, 1), Decimal("150000"))
        updated = statutory_monthly_tax(date(2024, 7, 1), Decimal("150000"))
        assert legacy != updated

    def test_gap_raises(self):
        gapped = [
            TaxBracket(Decimal("0"), Decimal("600000"), Decimal("0"), Decimal("0")),
            TaxBracket(Decimal("700000"), None, Decimal("0"), Decimal("0.1")),
        ]
        with pytest.raises(TaxBracketGapError):
            monthly_tax(Decimal("55000"), gapped)


class TestValidateBrackets:
    """Tests for bracket table validation."""

    def test_statutory_tables_are_valid(self):
        assert validate_brackets(LEGACY_SCHEDULE) == []
        assert validate_brackets(UPDATED_SCHEDULE) == []

    def test_empty_table(self):
        assert validate_brackets([]) == ["At least one bracket is required"]

    def test_problems_listed(self):
        problems = validate_brackets([
            TaxBracket(Decimal("100"), None, Decimal("0"), Decimal("0")),
            TaxBracket(Decimal("600000"), Decimal("500000"), Decimal("-1"), Decimal("1.5")),
        ])
        assert "First bracket must start at 0" in problems
        assert "Bracket 1: only the last bracket may be open-ended" in problems
        assert "Bracket 2: rate must be between 0 and 1" in problems
        assert "Bracket 2: fixed tax cannot be negative" in problems
        assert "Bracket 2: upper bound must exceed lower bound" in problems


# ===========================================
# TRAVEL AND ATTENDANCE
# ===========================================

class TestTravelTiers:
    """Tests for travel tier resolution."""

    def test_resolves_band(self):
        tiers = default_travel_tiers(date(2020, 1, 1))
        tier = resolve_travel_tier(tiers, TransportMode.CAR, Decimal("8"), date(2026, 2, 1))
        assert tier.monthly_rate == Decimal("18500")

    def test_band_bounds_inclusive(self):
        tiers = default_travel_tiers(date(2020, 1, 1))
        tier = resolve_travel_tier(tiers, TransportMode.BIKE, Decimal("5"), date(2026, 2, 1))
        assert tier.monthly_rate == Decimal("7500")

    @pytest.mark.parametrize(
        "distance, rate",
        [("5.5", "12000"), ("10", "12000"), ("10.25", "18000"), ("25.9", "24000"), ("40", "32000")],
    )
    def test_fractional_distances_have_a_band(self, distance, rate):
        tiers = default_travel_tiers(date(2020, 1, 1))
        tier = resolve_travel_tier(tiers, TransportMode.BIKE, Decimal(distance), date(2026, 2, 1))
        assert tier.monthly_rate == Decimal(rate)

    def test_default_bands_are_contiguous(self):
        bike = sorted(
            (t for t in default_travel_tiers(date(2020, 1, 1)) if t.transport_mode == TransportMode.BIKE),
            key=lambda t: t.min_km,
        )
        assert bike[0].min_km == 0
        assert all(lower.max_km == upper.min_km for lower, upper in zip(bike, bike[1:]))

    def test_outside_any_band(self):
        tiers = default_travel_tiers(date(2020, 1, 1))
        assert resolve_travel_tier(tiers, TransportMode.BIKE, Decimal("55"), date(2026, 2, 1)) is None

    def test_effective_window(self):
        tiers = default_travel_tiers(date(2027, 1, 1))
        assert resolve_travel_tier(tiers, TransportMode.BIKE, Decimal("3"), date(2026, 2, 1)) is None

    def test_missing_mode_or_distance(self):
        tiers = default_travel_tiers(date(2020, 1, 1))
        assert resolve_travel_tier(tiers, None, Decimal("3"), date(2026, 2, 1)) is None
        assert resolve_travel_tier(tiers, TransportMode.CAR, None, date(2026, 2, 1)) is None


class TestAttendance:
    """Tests for working days and proration."""

    def test_working_days_excludes_weekend_and_holidays(self):
        # February 2026 has 20 weekdays
        assert working_days(date(2026, 2, 1), date(2026, 2, 28)) == 20
        assert working_days(date(2026, 2, 1), date(2026, 2, 28), [date(2026, 2, 5)]) == 19

    def test_weekend_holiday_not_double_counted(self):
        assert working_days(date(2026, 2, 1), date(2026, 2, 28), [date(2026, 2, 7)]) == 20

    def test_present_days_only_inside_range(self):
        entries = [
            (date(2026, 2, 2), AttendanceStatus.PRESENT),
            (date(2026, 2, 3), AttendanceStatus.ABSENT),
            (date(2026, 3, 2), AttendanceStatus.PRESENT),
        ]
        assert present_days(entries, date(2026, 2, 1), date(2026, 2, 28)) == 1

    def test_prorate(self):
        assert prorate(Decimal("18500"), 15, 20) == Decimal("13875.00")
        assert prorate(Decimal("10000"), 1, 3) == Decimal("3333.33")
        assert prorate(Decimal("10000"), 5, 0) is None


# ===========================================
# IDENTITY FORMULAS
# ===========================================

class TestComputeIdentity:
    """Tests for one identity's metrics."""

    def test_basic_metrics(self):
        result = compute_identity(_inputs({
            "BASIC_SALARY": "100000",
            "MEDICAL_ALLOWANCE": "5000",
            "PAID": "100000",
        }), _ctx())

        metrics = result.metrics
        # Medical exemption defaults to minus the allowance
        assert metrics[PayrollMetric.TOTAL_TAXABLE_SALARY.value] == Decimal("95000.00")
        assert metrics[PayrollMetric.TOTAL_EARNINGS.value] == Decimal("100000.00")
        # 1,200,000 a year under the updated schedule
        assert metrics[PayrollMetric.TOTAL_DEDUCTIONS.value] == Decimal("1250.00")
        assert metrics[PayrollMetric.NET_SALARY.value] == Decimal("98750.00")
        assert metrics[PayrollMetric.BALANCE.value] == Decimal("-1250.00")
        assert result.lineage["tax_source"] == "STATUTORY_SCHEDULE"
        assert result.mismatch is not None
        assert result.mismatch.severity.value == "critical"

    def test_income_tax_input_wins(self):
        result = compute_identity(_inputs({"BASIC_SALARY": "100000", "INCOME_TAX": "900"}), _ctx())
        assert result.metrics[PayrollMetric.TOTAL_DEDUCTIONS.value] == Decimal("900.00")
        assert result.lineage["tax_source"] == "INPUT"

    def test_financial_year_brackets(self):
        brackets = [
            TaxBracket(Decimal("0"), Decimal("600000"), Decimal("0"), Decimal("0")),
            TaxBracket(Decimal("600000"), None, Decimal("0"), Decimal("0.10")),
        ]
        ctx = _ctx(financial_year_id=uuid.uuid4(), financial_year_brackets=brackets)
        result = compute_identity(_inputs({"BASIC_SALARY": "100000"}), ctx)
        # (1,200,000 - 600,000) * 10% / 12
        assert result.metrics[PayrollMetric.TOTAL_DEDUCTIONS.value] == Decimal("5000.00")
        assert result.lineage["tax_source"] == "FINANCIAL_YEAR"

    def test_bracket_gap_is_computation_error(self):
        brackets = [TaxBracket(Decimal("0"), Decimal("600000"), Decimal("0"), Decimal("0"))]
        with pytest.raises(ComputationError) as exc_info:
            compute_identity(_inputs({"BASIC_SALARY": "100000"}), _ctx(financial_year_brackets=brackets))
        assert exc_info.value.payroll_name == "Ali Raza"

    def test_no_paid_means_no_reconciliation(self):
        result = compute_identity(_inputs({"BASIC_SALARY": "30000"}), _ctx())
        assert result.mismatch is None

    def test_within_tolerance(self):
        result = compute_identity(_inputs({"BASIC_SALARY": "30000", "PAID": "29999.50"}), _ctx())
        assert result.mismatch is None

    def test_previous_balance_carried(self):
        ctx = _ctx(previous_balances={"ali raza": Decimal("500")})
        result = compute_identity(_inputs({"BASIC_SALARY": "30000", "PAID": "30000"}), ctx)
        assert result.metrics[PayrollMetric.BALANCE.value] == Decimal("500.00")

    def test_custom_salary_heads(self):
        ctx = _ctx(salary_heads={
            "FUEL": SalaryHeadRule(SalaryHeadType.EARNING, False),
            "SHIFT": SalaryHeadRule(SalaryHeadType.EARNING, True),
            "PENSION": SalaryHeadRule(SalaryHeadType.DEDUCTION, False),
        })
        result = compute_identity(
            _inputs({"BASIC_SALARY": "30000", "FUEL": "2000", "SHIFT": "1000", "PENSION": "700"}),
            ctx,
        )
        assert result.metrics[PayrollMetric.TOTAL_TAXABLE_SALARY.value] == Decimal("31000.00")
        assert result.metrics[PayrollMetric.TOTAL_EARNINGS.value] == Decimal("33000.00")
        assert result.metrics[PayrollMetric.TOTAL_DEDUCTIONS.value] == Decimal("700.00")

    def test_salary_structure_fills_missing_components(self):
        result = compute_identity(
            _inputs({"MEDICAL_ALLOWANCE": "0"}, salary_structure={"BASIC_SALARY": Decimal("40000")}),
            _ctx(),
        )
        assert result.receipt["earnings"]["basic_salary"] == "40000.00"

    def test_attendance_travel(self):
        tiers = [TravelTier(TransportMode.CAR, Decimal("6"), Decimal("10"), Decimal("18500"), date(2020, 1, 1))]
        attendance = [(date(2026, 2, d), AttendanceStatus.PRESENT) for d in (2, 3, 4, 5, 6, 9, 10, 11, 12, 13)]
        inputs = _inputs(
            {"BASIC_SALARY": "30000", "TRAVEL_REIMBURSEMENT": "1"},
            employee_id=uuid.uuid4(),
            transport_mode=TransportMode.CAR,
            distance_km=Decimal("8"),
            attendance=attendance,
        )
        result = compute_identity(inputs, _ctx(travel_tiers=tiers))
        assert result.auto_travel == Decimal("9250.00")
        assert result.receipt["earnings"]["travel_reimbursement"] == "9250.00"
        assert result.lineage["travel_source"] == "ATTENDANCE"

    def test_travel_override_is_kept(self):
        tiers = [TravelTier(TransportMode.CAR, Decimal("6"), Decimal("10"), Decimal("18500"), date(2020, 1, 1))]
        inputs = _inputs(
            {"BASIC_SALARY": "30000", "TRAVEL_REIMBURSEMENT": "4000"},
            overrides={"TRAVEL_REIMBURSEMENT"},
            employee_id=uuid.uuid4(),
            transport_mode=TransportMode.CAR,
            distance_km=Decimal("8"),
        )
        result = compute_identity(inputs, _ctx(travel_tiers=tiers))
        assert result.auto_travel is None
        assert result.receipt["earnings"]["travel_reimbursement"] == "4000.00"
