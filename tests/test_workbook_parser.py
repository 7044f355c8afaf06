"""
Payroll Recon - Workbook Parser Tests

Tests for sheet adapters, period detection and priority deduplication.
"""

from datetime import datetime
from decimal import Decimal

import pytest

from payroll_recon.services.payroll_components import PayrollComponent
from payroll_recon.services.sheet_adapters import (
    SheetKind,
    SheetLayout,
    find_priority_collisions,
    get_sheet_adapter,
)
from payroll_recon.services.workbook_parser import (
    ParsedInputValue,
    parse_payroll_workbook,
    resolve_by_priority,
)
from payroll_recon.utils.error_handling import InvalidWorkbookException


FEB = datetime(2026, 2, 1)
MAR = datetime(2026, 3, 1)


def _value(sheet, priority, amount, row=2, column=3):
    return ParsedInputValue(
        period_key="02/2026",
        payroll_name="Ali Raza",
        normalized_name="ali raza",
        component_key=PayrollComponent.BASIC_SALARY.value,
        amount=Decimal(amount),
        source_sheet=sheet,
        source_row=row,
        source_column=column,
        source_priority=priority,
    )


# ===========================================
# SHEET ADAPTERS
# ===========================================

class TestSheetAdapters:
    """Tests for sheet classification."""

    def test_active_sheet(self):
        adapter = get_sheet_adapter("Salaries")
        assert adapter.kind == SheetKind.ACTIVE
        assert adapter.component == PayrollComponent.BASIC_SALARY
        assert adapter.priority == 100
        assert adapter.name_column == 2

    def test_history_sheet_contributes_nothing(self):
        adapter = get_sheet_adapter("Reimbursements OLD")
        assert adapter.kind == SheetKind.HISTORY
        assert not adapter.contributes_values
        assert not adapter.emits_expenses

    def test_unknown_sheet_is_ignored(self):
        assert get_sheet_adapter("Notes").kind == SheetKind.IGNORED

    def test_reimbursements_layout(self):
        adapter = get_sheet_adapter("Reimbursements (Approved)")
        assert adapter.layout == SheetLayout.ROW_PERIOD
        assert (adapter.name_column, adapter.period_column, adapter.amount_column) == (4, 1, 7)
        assert adapter.emits_expenses

    def test_no_equal_priority_collisions(self):
        assert find_priority_collisions() == {}


# ===========================================
# PRIORITY
# ===========================================

class TestResolveByPriority:
    """Tests for per-key deduplication."""

    def test_higher_priority_wins(self):
        kept, ties = resolve_by_priority([
            _value("Basic Salaries", 90, 50000),
            _value("Salaries", 100, 52000),
        ])
        assert len(kept) == 1
        assert kept[0].amount == Decimal("52000")
        assert ties == []

    def test_order_independent(self):
        values = [
            _value("Basic Salaries", 90, 50000),
            _value("Salaries", 100, 52000),
            _value("Interns", 80, 40000),
        ]
        forward, _ = resolve_by_priority(values)
        backward, _ = resolve_by_priority(list(reversed(values)))
        assert forward[0].source_sheet == backward[0].source_sheet == "Salaries"

    def test_equal_priority_tie_reported(self):
        kept, ties = resolve_by_priority([
            _value("Salaries", 100, 52000, row=5),
            _value("Salaries", 100, 51000, row=3),
        ])
        assert kept[0].source_row == 3
        assert len(ties) == 1
        assert ties[0].kept == "Salaries!C3"
        assert ties[0].contenders == [{"source": "Salaries!C5", "amount": "52000"}]

    def test_equal_amounts_are_not_ties(self):
        _, ties = resolve_by_priority([
            _value("Salaries", 100, 52000, row=5),
            _value("Salaries", 100, 52000, row=3),
        ])
        assert ties == []


# ===========================================
# PARSING
# ===========================================

class TestParsePayrollWorkbook:
    """Tests for full workbook parsing."""

    def test_priority_between_sheets(self, payroll_workbook):
        result = parse_payroll_workbook(payroll_workbook)

        basic = {
            (v.period_key, v.normalized_name): v
            for v in result.input_values
            if v.component_key == PayrollComponent.BASIC_SALARY.value
        }
        feb = basic[("02/2026", "ali raza")]
        assert feb.amount == Decimal("52000")
        assert feb.source_sheet == "Salaries"
        assert feb.source_cell == "D2"
        assert result.ties == []

    def test_sheet_order_does_not_change_outcome(self, make_workbook):
        salaries = [["#", "Name", FEB], [1, "Ali Raza", 52000]]
        basic = [["#", "Name", FEB], [1, "Ali Raza", 50000]]
        first = parse_payroll_workbook(make_workbook({"Salaries": salaries, "Basic Salaries": basic}))
        second = parse_payroll_workbook(make_workbook({"Basic Salaries": basic, "Salaries": salaries}))
        assert [v.amount for v in first.input_values] == [v.amount for v in second.input_values] == [Decimal("52000")]

    def test_period_and_name_sets(self, payroll_workbook):
        result = parse_payroll_workbook(payroll_workbook)
        assert result.period_keys == ["01/2026", "02/2026"]
        assert result.value_period_keys == ["01/2026", "02/2026"]
        assert result.payroll_names == ["Ali Raza", "Sara Ahmed"]
        assert result.sheets["Scratch"] == SheetKind.IGNORED.value

    def test_header_rows_have_no_name(self, payroll_workbook):
        result = parse_payroll_workbook(payroll_workbook)
        header = next(r for r in result.import_rows if r.sheet_name == "Salaries" and r.row_number == 1)
        assert header.payroll_name is None
        assert header.row_json["C1"] == "2026-01-01T00:00:00"

    def test_blank_and_text_cells_skipped(self, make_workbook):
        content = make_workbook({
            "Medical": [
                ["#", "Name", FEB, MAR],
                [1, "Ali Raza", None, "n/a"],
                [2, "Sara Ahmed", "Rs. 3,000", None],
            ],
        })
        result = parse_payroll_workbook(content)
        assert [(v.normalized_name, v.period_key, v.amount) for v in result.input_values] == [
            ("sara ahmed", "02/2026", Decimal("3000")),
        ]

    def test_formula_cells_snapshotted(self, make_workbook):
        content = make_workbook({
            "Bonus": [
                ["#", "Name", FEB],
                [1, "Ali Raza", "=1000*2"],
            ],
        })
        result = parse_payroll_workbook(content)
        row = next(r for r in result.import_rows if r.row_number == 2)
        assert row.row_json["C2"]["formula"] == "=1000*2"
        # No cached result was saved with the file, so no value is produced
        assert result.input_values == []

    def test_history_sheet_snapshot_only(self, make_workbook):
        content = make_workbook({
            "Reimbursements OLD": [
                ["#", "Name", FEB],
                [1, "Ali Raza", 900],
            ],
        })
        result = parse_payroll_workbook(content)
        assert result.input_values == []
        assert result.expense_entries == []
        assert all(r.is_history for r in result.import_rows)
        assert result.value_period_keys == []

    def test_reimbursement_rows(self, make_workbook):
        content = make_workbook({
            "Reimbursements (Approved)": [
                ["Month", "Ref", "Category", "Name", "Notes", "Status", "Amount"],
                [FEB, "R-1", "Fuel", "Ali Raza", "Client visit", "Approved", 2500],
            ],
        })
        result = parse_payroll_workbook(content)
        assert len(result.input_values) == 1
        value = result.input_values[0]
        assert value.component_key == PayrollComponent.EXPENSE_REIMBURSEMENT.value
        assert value.amount == Decimal("2500")
        assert value.source_cell == "G2"

        assert len(result.expense_entries) == 1
        entry = result.expense_entries[0]
        assert entry.period_key == "02/2026"
        assert entry.normalized_name == "ali raza"
        assert entry.category_key == "REIMBURSEMENTS_(APPROVED)"

    def test_empty_content_rejected(self):
        with pytest.raises(InvalidWorkbookException):
            parse_payroll_workbook(b"")

    def test_garbage_content_rejected(self):
        with pytest.raises(InvalidWorkbookException):
            parse_payroll_workbook(b"not a workbook")
