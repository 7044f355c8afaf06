"""
Payroll Recon - Workbook Sheet Adapters

Static configuration describing how each legacy payroll sheet is read:
whether it is live or historical, which component it feeds, how it is laid
out and how strongly its values win when two sheets report the same
(period, identity, component). Supporting a new sheet format is a change to
these tables, not to the parser.
"""

from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

from payroll_recon.services.payroll_components import PayrollComponent


DEFAULT_SHEET_PRIORITY = 50
DEFAULT_NAME_COLUMN = 2


class SheetKind(str, Enum):
    ACTIVE = "ACTIVE"
    HISTORY = "HISTORY"
    IGNORED = "IGNORED"


class SheetLayout(str, Enum):
    """How typed component values are laid out on a sheet."""
    # One row per person, one column per period (header dates)
    PERIOD_COLUMNS = "PERIOD_COLUMNS"
    # One row per claim with its own period cell and amount cell
    ROW_PERIOD = "ROW_PERIOD"
    # Blocks per person; only rows whose label cell matches carry values
    LABELLED_BLOCK = "LABELLED_BLOCK"


ACTIVE_EDITABLE_SHEETS = frozenset({
    "Final Payments",
    "Payment Receipt",
    "Petty Cash Summary",
    "Petty Cash",
    "Reimbursements (Approved)",
    "Reimbursements",
    "Basic Salaries",
    "Gross Salaries",
    "Medical",
    "Salaries",
    "Utility Bills",
    "Meals",
    "Mobile",
    "Travel",
    "Interns",
    "Bonus",
    "Loan",
    "Loan Deduct",
    "WHT Calculations",
    "WHT Reconciliation",
    "Deductions",
    "Bonuses",
    "Tax Slab",
    "Updated Tax Slabs",
    "Banking Details",
    "Salary Payments",
    "Weekly Timesheet",
    "Time Sheet",
})

READ_ONLY_HISTORY_SHEETS = frozenset({
    "Petty Cash - Old",
    "Petty Cash OLD",
    "Reimbursements OLD",
    "Tax Slabs old",
    "2023 Tax slabs",
    "Form Responses 11",
    "Form Responses 6",
    "Jan payment",
    "Sheet2",
})

SHEET_TO_COMPONENT: Dict[str, PayrollComponent] = {
    "Salaries": PayrollComponent.BASIC_SALARY,
    "Basic Salaries": PayrollComponent.BASIC_SALARY,
    "Interns": PayrollComponent.BASIC_SALARY,
    "Medical": PayrollComponent.MEDICAL_ALLOWANCE,
    "Bonus": PayrollComponent.BONUS,
    "Bonuses": PayrollComponent.BONUS,
    "Travel": PayrollComponent.TRAVEL_REIMBURSEMENT,
    "Utility Bills": PayrollComponent.UTILITY_REIMBURSEMENT,
    "Meals": PayrollComponent.MEALS_REIMBURSEMENT,
    "Mobile": PayrollComponent.MOBILE_REIMBURSEMENT,
    "Loan": PayrollComponent.ADVANCE_LOAN,
    "Loan Deduct": PayrollComponent.LOAN_REPAYMENT,
    "Deductions": PayrollComponent.ADJUSTMENT,
    "Final Payments": PayrollComponent.PAID,
    "Reimbursements (Approved)": PayrollComponent.EXPENSE_REIMBURSEMENT,
    "WHT Calculations": PayrollComponent.INCOME_TAX,
}

SHEET_PRIORITY: Dict[str, int] = {
    "Salaries": 100,
    "Basic Salaries": 90,
    "Interns": 80,
    "Medical": 100,
    "Bonus": 100,
    "Bonuses": 95,
    "Travel": 100,
    "Utility Bills": 100,
    "Meals": 100,
    "Mobile": 100,
    "Loan": 100,
    "Loan Deduct": 100,
    "Deductions": 100,
    "Final Payments": 100,
}

EXPENSE_SHEETS = frozenset({
    "Reimbursements (Approved)",
    "Reimbursements",
    "Petty Cash",
    "Petty Cash Summary",
    "Petty Cash - Old",
    "Petty Cash OLD",
})


@dataclass(frozen=True)
class SheetAdapter:
    """Resolved reading rules for one sheet name."""
    sheet_name: str
    kind: SheetKind
    component: Optional[PayrollComponent] = None
    priority: int = DEFAULT_SHEET_PRIORITY
    layout: SheetLayout = SheetLayout.PERIOD_COLUMNS
    name_column: int = DEFAULT_NAME_COLUMN
    period_column: Optional[int] = None
    amount_column: Optional[int] = None
    label_column: Optional[int] = None
    label_match: Optional[str] = None
    emits_expenses: bool = False

    @property
    def contributes_values(self) -> bool:
        return self.kind == SheetKind.ACTIVE and self.component is not None


# Sheets that deviate from the PERIOD_COLUMNS defaults
_LAYOUT_OVERRIDES = {
    "Reimbursements (Approved)": dict(
        layout=SheetLayout.ROW_PERIOD,
        name_column=4,
        period_column=1,
        amount_column=7,
    ),
    "WHT Calculations": dict(
        layout=SheetLayout.LABELLED_BLOCK,
        label_column=3,
        label_match="tax withholding",
    ),
}


def get_sheet_adapter(sheet_name: str) -> SheetAdapter:
    """Reading rules for a sheet; unknown sheets are IGNORED."""
    if sheet_name in ACTIVE_EDITABLE_SHEETS:
        kind = SheetKind.ACTIVE
    elif sheet_name in READ_ONLY_HISTORY_SHEETS:
        kind = SheetKind.HISTORY
    else:
        return SheetAdapter(sheet_name=sheet_name, kind=SheetKind.IGNORED)

    return SheetAdapter(
        sheet_name=sheet_name,
        kind=kind,
        component=SHEET_TO_COMPONENT.get(sheet_name),
        priority=SHEET_PRIORITY.get(sheet_name, DEFAULT_SHEET_PRIORITY),
        emits_expenses=kind == SheetKind.ACTIVE and sheet_name in EXPENSE_SHEETS,
        **_LAYOUT_OVERRIDES.get(sheet_name, {}),
    )


def find_priority_collisions() -> Dict[Tuple[str, int], List[str]]:
    """
    Component sheets sharing one priority for the same component.

    Ties between sheets cannot be ordered deterministically by the data
    alone, so the table is expected to return an empty mapping.
    """
    grouped: Dict[Tuple[str, int], List[str]] = defaultdict(list)
    for sheet_name, component in SHEET_TO_COMPONENT.items():
        adapter = get_sheet_adapter(sheet_name)
        if adapter.kind != SheetKind.ACTIVE:
            continue
        grouped[(component.value, adapter.priority)].append(sheet_name)
    return {key: sorted(names) for key, names in grouped.items() if len(names) > 1}
