"""
Payroll Recon - Component and Metric Vocabulary

Component keys name raw payroll line items carried by input values.
Metric keys name derived quantities written as computed values.
Salary heads may add further component codes at runtime.
"""

from enum import Enum


FORMULA_VERSION = "payroll-v1"


class PayrollComponent(str, Enum):
    """Known payroll input components."""
    BASIC_SALARY = "BASIC_SALARY"
    MEDICAL_TAX_EXEMPTION = "MEDICAL_TAX_EXEMPTION"
    BONUS = "BONUS"
    MEDICAL_ALLOWANCE = "MEDICAL_ALLOWANCE"
    TRAVEL_REIMBURSEMENT = "TRAVEL_REIMBURSEMENT"
    UTILITY_REIMBURSEMENT = "UTILITY_REIMBURSEMENT"
    MEALS_REIMBURSEMENT = "MEALS_REIMBURSEMENT"
    MOBILE_REIMBURSEMENT = "MOBILE_REIMBURSEMENT"
    EXPENSE_REIMBURSEMENT = "EXPENSE_REIMBURSEMENT"
    ADVANCE_LOAN = "ADVANCE_LOAN"
    INCOME_TAX = "INCOME_TAX"
    ADJUSTMENT = "ADJUSTMENT"
    LOAN_REPAYMENT = "LOAN_REPAYMENT"
    PAID = "PAID"


class PayrollMetric(str, Enum):
    """Derived per-identity metrics."""
    TOTAL_TAXABLE_SALARY = "TOTAL_TAXABLE_SALARY"
    TOTAL_EARNINGS = "TOTAL_EARNINGS"
    TOTAL_DEDUCTIONS = "TOTAL_DEDUCTIONS"
    NET_SALARY = "NET_SALARY"
    BALANCE = "BALANCE"


KNOWN_EARNING_KEYS = frozenset({
    PayrollComponent.BASIC_SALARY.value,
    PayrollComponent.MEDICAL_TAX_EXEMPTION.value,
    PayrollComponent.BONUS.value,
    PayrollComponent.MEDICAL_ALLOWANCE.value,
    PayrollComponent.TRAVEL_REIMBURSEMENT.value,
    PayrollComponent.UTILITY_REIMBURSEMENT.value,
    PayrollComponent.MEALS_REIMBURSEMENT.value,
    PayrollComponent.MOBILE_REIMBURSEMENT.value,
    PayrollComponent.EXPENSE_REIMBURSEMENT.value,
    PayrollComponent.ADVANCE_LOAN.value,
})

# PAID is the externally reported payout, not a deduction, but it is
# excluded from "additional" deductions all the same.
KNOWN_DEDUCTION_KEYS = frozenset({
    PayrollComponent.INCOME_TAX.value,
    PayrollComponent.ADJUSTMENT.value,
    PayrollComponent.LOAN_REPAYMENT.value,
    PayrollComponent.PAID.value,
})

KNOWN_COMPONENT_KEYS = frozenset(c.value for c in PayrollComponent)

# Components scaled by present/working days when derived from master data
PRORATED_COMPONENTS = frozenset({PayrollComponent.TRAVEL_REIMBURSEMENT.value})

# Provenance tag for travel values written back by recalculation
ATTENDANCE_TRAVEL_GENERATOR = "ATTENDANCE_TRAVEL"
