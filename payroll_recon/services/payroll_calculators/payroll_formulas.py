"""
Payroll Recon - Per-Identity Payroll Formulas

Pure computation of one identity's metrics from its component amounts and
the period's master data. Nothing here touches the database, so identities
can be computed in any order or in parallel.

    medical exemption = input value, else -medical allowance
    taxable           = basic + medical exemption + bonus + additional taxable
    income tax        = INCOME_TAX input
                        else financial-year brackets on basic + bonus + additional taxable
                        else statutory schedule on basic + bonus
    earnings          = taxable + medical + travel + utility + meals + mobile
                        + expense + advance loan + additional non-taxable
    deductions        = income tax + adjustment + loan repayment + additional deductions
    net               = earnings - deductions
    balance           = previous balance + net - paid
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple
import uuid

from payroll_recon.models.payroll import AttendanceStatus
from payroll_recon.models.payroll_settings import SalaryHeadType, TransportMode
from payroll_recon.services.payroll_calculators.attendance import present_days, prorate
from payroll_recon.services.payroll_calculators.tax_brackets import (
    TaxBracket,
    TaxBracketGapError,
    monthly_tax,
    statutory_monthly_tax,
)
from payroll_recon.services.payroll_calculators.travel_allowance import TravelTier, resolve_travel_tier
from payroll_recon.services.payroll_components import (
    FORMULA_VERSION,
    KNOWN_DEDUCTION_KEYS,
    KNOWN_EARNING_KEYS,
    PayrollComponent as C,
    PayrollMetric,
)
from payroll_recon.services.payroll_reconciliation import ReconciliationMismatch, reconcile_net_vs_paid
from payroll_recon.utils.error_handling import ComputationError
from payroll_recon.utils.normalizers import to_money


ZERO = Decimal("0")


@dataclass(frozen=True)
class SalaryHeadRule:
    head_type: SalaryHeadType
    is_taxable: bool


@dataclass
class PeriodContext:
    """Master data shared by every identity of a period."""
    period_key: str
    period_start: date
    period_end: date
    working_days: int
    tolerance: Decimal
    financial_year_id: Optional[uuid.UUID] = None
    financial_year_brackets: Sequence[TaxBracket] = ()
    salary_heads: Dict[str, SalaryHeadRule] = field(default_factory=dict)
    travel_tiers: Sequence[TravelTier] = ()
    previous_balances: Dict[str, Decimal] = field(default_factory=dict)


@dataclass
class IdentityInputs:
    """Everything known about one identity for one period."""
    payroll_name: str
    normalized_name: str
    components: Dict[str, Decimal]
    overrides: Set[str] = field(default_factory=set)
    employee_id: Optional[uuid.UUID] = None
    transport_mode: Optional[TransportMode] = None
    distance_km: Optional[Decimal] = None
    attendance: List[Tuple[date, AttendanceStatus]] = field(default_factory=list)
    salary_structure: Dict[str, Decimal] = field(default_factory=dict)


@dataclass
class IdentityResult:
    payroll_name: str
    normalized_name: str
    employee_id: Optional[uuid.UUID]
    metrics: Dict[str, Decimal]
    receipt: Dict[str, Any]
    lineage: Dict[str, Any]
    auto_travel: Optional[Decimal] = None
    mismatch: Optional[ReconciliationMismatch] = None


def _amount(bucket: Dict[str, Decimal], key: C) -> Decimal:
    return bucket.get(key.value, ZERO)


def _additional_totals(
    bucket: Dict[str, Decimal],
    heads: Dict[str, SalaryHeadRule],
) -> Tuple[Decimal, Decimal, Decimal]:
    """(taxable earnings, non-taxable earnings, deductions) from custom heads."""
    taxable = non_taxable = deductions = ZERO
    for code, amount in bucket.items():
        rule = heads.get(code.upper())
        if rule is None:
            continue
        if rule.head_type == SalaryHeadType.EARNING and code.upper() not in KNOWN_EARNING_KEYS:
            if rule.is_taxable:
                taxable += amount
            else:
                non_taxable += amount
        elif rule.head_type == SalaryHeadType.DEDUCTION and code.upper() not in KNOWN_DEDUCTION_KEYS:
            deductions += amount
    return taxable, non_taxable, deductions


def _income_tax(
    bucket: Dict[str, Decimal],
    ctx: PeriodContext,
    basic: Decimal,
    bonus: Decimal,
    additional_taxable: Decimal,
) -> Tuple[Decimal, str]:
    if C.INCOME_TAX.value in bucket:
        return bucket[C.INCOME_TAX.value], "INPUT"
    if ctx.financial_year_brackets:
        return to_money(monthly_tax(basic + bonus + additional_taxable, ctx.financial_year_brackets)), "FINANCIAL_YEAR"
    return to_money(statutory_monthly_tax(ctx.period_start, basic + bonus)), "STATUTORY_SCHEDULE"


def _travel(inputs: IdentityInputs, ctx: PeriodContext) -> Optional[Decimal]:
    """Attendance-prorated travel from the employee's tier, or None to keep the input."""
    if C.TRAVEL_REIMBURSEMENT.value in inputs.overrides or inputs.employee_id is None:
        return None
    tier = resolve_travel_tier(ctx.travel_tiers, inputs.transport_mode, inputs.distance_km, ctx.period_start)
    if tier is None:
        return None
    present = (
        present_days(inputs.attendance, ctx.period_start, ctx.period_end)
        if inputs.attendance
        else ctx.working_days
    )
    return prorate(tier.monthly_rate, present, ctx.working_days)


def compute_identity(inputs: IdentityInputs, ctx: PeriodContext) -> IdentityResult:
    """
    Compute one identity's metrics.

    Raises ComputationError when master data cannot produce a figure,
    for instance a bracket table with a gap.
    """
    bucket = dict(inputs.components)
    for code, amount in inputs.salary_structure.items():
        bucket.setdefault(code.upper(), amount)

    additional_taxable, additional_non_taxable, additional_deductions = _additional_totals(
        bucket, ctx.salary_heads
    )

    basic = _amount(bucket, C.BASIC_SALARY)
    bonus = _amount(bucket, C.BONUS)
    medical = _amount(bucket, C.MEDICAL_ALLOWANCE)
    medical_exemption = bucket.get(C.MEDICAL_TAX_EXEMPTION.value, -medical)

    total_taxable = basic + medical_exemption + bonus + additional_taxable

    try:
        income_tax, tax_source = _income_tax(bucket, ctx, basic, bonus, additional_taxable)
    except TaxBracketGapError as e:
        raise ComputationError(inputs.payroll_name, str(e))

    auto_travel = _travel(inputs, ctx)
    travel = auto_travel if auto_travel is not None else _amount(bucket, C.TRAVEL_REIMBURSEMENT)

    utility = _amount(bucket, C.UTILITY_REIMBURSEMENT)
    meals = _amount(bucket, C.MEALS_REIMBURSEMENT)
    mobile = _amount(bucket, C.MOBILE_REIMBURSEMENT)
    expense = _amount(bucket, C.EXPENSE_REIMBURSEMENT)
    advance_loan = _amount(bucket, C.ADVANCE_LOAN)
    adjustment = _amount(bucket, C.ADJUSTMENT)
    loan_repayment = _amount(bucket, C.LOAN_REPAYMENT)

    total_earnings = (
        total_taxable + medical + travel + utility + meals + mobile
        + expense + advance_loan + additional_non_taxable
    )
    total_deductions = income_tax + adjustment + loan_repayment + additional_deductions
    net_salary = total_earnings - total_deductions
    paid = _amount(bucket, C.PAID)
    previous_balance = ctx.previous_balances.get(inputs.normalized_name, ZERO)
    balance = previous_balance + net_salary - paid

    metrics = {
        PayrollMetric.TOTAL_TAXABLE_SALARY.value: to_money(total_taxable),
        PayrollMetric.TOTAL_EARNINGS.value: to_money(total_earnings),
        PayrollMetric.TOTAL_DEDUCTIONS.value: to_money(total_deductions),
        PayrollMetric.NET_SALARY.value: to_money(net_salary),
        PayrollMetric.BALANCE.value: to_money(balance),
    }

    mismatch = None
    if C.PAID.value in bucket:
        mismatch = reconcile_net_vs_paid(
            inputs.payroll_name,
            ctx.period_key,
            metrics[PayrollMetric.NET_SALARY.value],
            to_money(paid),
            ctx.tolerance,
        )

    def m(value: Decimal) -> str:
        return str(to_money(value))

    receipt = {
        "period_key": ctx.period_key,
        "payroll_name": inputs.payroll_name,
        "earnings": {
            "basic_salary": m(basic),
            "medical_tax_exemption": m(medical_exemption),
            "bonus": m(bonus),
            "additional_taxable": m(additional_taxable),
            "total_taxable_salary": m(total_taxable),
            "medical_allowance": m(medical),
            "travel_reimbursement": m(travel),
            "utility_reimbursement": m(utility),
            "meals_reimbursement": m(meals),
            "mobile_reimbursement": m(mobile),
            "expense_reimbursement": m(expense),
            "advance_loan": m(advance_loan),
            "additional_non_taxable": m(additional_non_taxable),
            "total_earnings": m(total_earnings),
        },
        "deductions": {
            "income_tax": m(income_tax),
            "adjustment": m(adjustment),
            "loan_repayment": m(loan_repayment),
            "additional_deductions": m(additional_deductions),
            "total_deductions": m(total_deductions),
        },
        "net": {
            "net_salary": m(net_salary),
            "paid": m(paid),
            "previous_balance": m(previous_balance),
            "balance": m(balance),
        },
    }

    lineage = {
        "period_key": ctx.period_key,
        "formula_version": FORMULA_VERSION,
        "financial_year_id": str(ctx.financial_year_id) if ctx.financial_year_id else None,
        "tax_source": tax_source,
        "working_days": ctx.working_days,
        "travel_source": "ATTENDANCE" if auto_travel is not None else "INPUT",
    }

    return IdentityResult(
        payroll_name=inputs.payroll_name,
        normalized_name=inputs.normalized_name,
        employee_id=inputs.employee_id,
        metrics=metrics,
        receipt=receipt,
        lineage=lineage,
        auto_travel=auto_travel,
        mismatch=mismatch,
    )
