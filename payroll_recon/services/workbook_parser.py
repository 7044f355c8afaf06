"""
Payroll Recon - Workbook Parser

Turns an uploaded payroll workbook (xlsx bytes) into:
- per-row cell snapshots for audit (formula text and cached result kept apart)
- typed component input values, deduplicated by sheet priority
- free-form expense entries
- the period keys and payroll names discovered

Parsing is pure: no database access, no mutation of shared state.
Which sheets are read, and how, comes from sheet_adapters.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from io import BytesIO
from typing import Any, Dict, List, Optional, Tuple
from zipfile import BadZipFile

from openpyxl import load_workbook
from openpyxl.utils import get_column_letter
from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.worksheet.formula import ArrayFormula

from payroll_recon.services.sheet_adapters import (
    SheetAdapter,
    SheetKind,
    SheetLayout,
    get_sheet_adapter,
)
from payroll_recon.utils.error_handling import InvalidWorkbookException
from payroll_recon.utils.normalizers import (
    is_truthy_string,
    normalize_payroll_name,
    parse_cell_number,
    parse_period_key,
    sort_period_keys,
)

logger = logging.getLogger(__name__)


HEADER_SCAN_ROWS = 8
HEADER_SCAN_MIN_COLUMNS = 80
EXPENSE_AMOUNT_COLUMNS = (7, 6, 5, 4, 3, 2)
EXPENSE_PERIOD_COLUMNS = (1, 2)
EXPENSE_NAME_COLUMNS = (4, 2)


# ===========================================
# RESULT TYPES
# ===========================================

@dataclass
class ParsedImportRow:
    sheet_name: str
    row_number: int
    row_json: Dict[str, Any]
    is_history: bool = False
    payroll_name: Optional[str] = None
    normalized_name: Optional[str] = None


@dataclass
class ParsedInputValue:
    period_key: str
    payroll_name: str
    normalized_name: str
    component_key: str
    amount: Decimal
    source_sheet: str
    source_row: int
    source_column: int
    source_priority: int

    @property
    def source_cell(self) -> str:
        return f"{get_column_letter(self.source_column)}{self.source_row}"

    @property
    def natural_key(self) -> Tuple[str, str, str]:
        return (self.period_key, self.normalized_name, self.component_key)

    @property
    def source_order(self) -> Tuple[str, int, int]:
        return (self.source_sheet, self.source_row, self.source_column)


@dataclass
class ParsedExpenseEntry:
    category_key: str
    amount: Decimal
    sheet_name: str
    row_ref: str
    period_key: Optional[str] = None
    payroll_name: Optional[str] = None
    normalized_name: Optional[str] = None
    description: Optional[str] = None


@dataclass
class PriorityTie:
    """Same-priority sources that disagree on one (period, identity, component)."""
    period_key: str
    normalized_name: str
    component_key: str
    kept: str
    kept_amount: Decimal
    contenders: List[Dict[str, Any]]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period_key": self.period_key,
            "normalized_name": self.normalized_name,
            "component_key": self.component_key,
            "kept": self.kept,
            "kept_amount": str(self.kept_amount),
            "contenders": self.contenders,
        }


@dataclass
class WorkbookParseResult:
    import_rows: List[ParsedImportRow] = field(default_factory=list)
    input_values: List[ParsedInputValue] = field(default_factory=list)
    expense_entries: List[ParsedExpenseEntry] = field(default_factory=list)
    period_keys: List[str] = field(default_factory=list)
    payroll_names: List[str] = field(default_factory=list)
    ties: List[PriorityTie] = field(default_factory=list)
    sheets: Dict[str, str] = field(default_factory=dict)

    @property
    def value_period_keys(self) -> List[str]:
        """Period keys that carry at least one value or expense."""
        keys = {v.period_key for v in self.input_values}
        keys.update(e.period_key for e in self.expense_entries if e.period_key)
        return sort_period_keys(keys)


# ===========================================
# CELL HELPERS
# ===========================================

def _json_safe(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, float):
        return value if value == value and value not in (float("inf"), float("-inf")) else None
    if isinstance(value, (str, int, bool)):
        return value
    return str(value)


def _formula_text(raw: Any) -> Optional[str]:
    if isinstance(raw, ArrayFormula):
        return raw.text
    if isinstance(raw, str) and raw.startswith("="):
        return raw
    return None


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, dict):
        value = value.get("result")
        if value is None:
            return ""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value).strip()


class _SheetReader:
    """
    Random access to a sheet's values.

    Formula cells are exposed as ``{"formula": text, "result": cached}``;
    everything else is the literal value.
    """

    def __init__(self, formulas_ws, values_ws):
        self.formulas_ws = formulas_ws
        self.values_ws = values_ws
        self.max_row = formulas_ws.max_row or 0
        self.max_column = formulas_ws.max_column or 0

    def value(self, row: int, column: int) -> Any:
        raw = self.formulas_ws.cell(row=row, column=column).value
        formula = _formula_text(raw)
        if formula is None:
            return raw
        cached = self.values_ws.cell(row=row, column=column).value
        return {"formula": formula, "result": cached}

    def text(self, row: int, column: int) -> str:
        return _cell_text(self.value(row, column))

    def row_cells(self, row: int) -> List[Tuple[int, Any]]:
        """Non-empty (column, value) pairs of a row."""
        cells = []
        for column in range(1, self.max_column + 1):
            value = self.value(row, column)
            if value is None or (isinstance(value, str) and value == ""):
                continue
            cells.append((column, value))
        return cells


def _snapshot(row: int, cells: List[Tuple[int, Any]]) -> Dict[str, Any]:
    snapshot = {}
    for column, value in cells:
        ref = f"{get_column_letter(column)}{row}"
        if isinstance(value, dict):
            snapshot[ref] = {"formula": value["formula"], "result": _json_safe(value["result"])}
        else:
            snapshot[ref] = _json_safe(value)
    return snapshot


def detect_period_columns(reader: _SheetReader) -> Tuple[Dict[int, str], set]:
    """
    Scan the header rows for date-like cells.

    Returns the column -> period key map and the row numbers that held
    period headers.
    """
    columns: Dict[int, str] = {}
    header_rows = set()
    row_limit = min(HEADER_SCAN_ROWS, reader.max_row)
    column_limit = max(reader.max_column, HEADER_SCAN_MIN_COLUMNS)
    for row in range(1, row_limit + 1):
        for column in range(1, column_limit + 1):
            key = parse_period_key(reader.value(row, column))
            if key:
                columns[column] = key
                header_rows.add(row)
    return columns, header_rows


# ===========================================
# LAYOUT HANDLERS
# ===========================================

def _emit_period_columns(
    adapter: SheetAdapter,
    reader: _SheetReader,
    row: int,
    payroll_name: str,
    period_columns: Dict[int, str],
) -> List[ParsedInputValue]:
    values = []
    normalized = normalize_payroll_name(payroll_name)
    for column, period_key in sorted(period_columns.items()):
        amount = parse_cell_number(reader.value(row, column))
        if amount is None:
            continue
        values.append(ParsedInputValue(
            period_key=period_key,
            payroll_name=payroll_name,
            normalized_name=normalized,
            component_key=adapter.component.value,
            amount=amount,
            source_sheet=adapter.sheet_name,
            source_row=row,
            source_column=column,
            source_priority=adapter.priority,
        ))
    return values


def _read_period_columns(adapter, reader, row, period_columns):
    payroll_name = reader.text(row, adapter.name_column)
    if not payroll_name:
        return None, []
    return payroll_name, _emit_period_columns(adapter, reader, row, payroll_name, period_columns)


def _read_row_period(adapter, reader, row, period_columns):
    payroll_name = reader.text(row, adapter.name_column)
    if not payroll_name:
        return None, []
    period_key = parse_period_key(reader.value(row, adapter.period_column))
    amount = parse_cell_number(reader.value(row, adapter.amount_column))
    if not period_key or amount is None:
        return payroll_name, []
    return payroll_name, [ParsedInputValue(
        period_key=period_key,
        payroll_name=payroll_name,
        normalized_name=normalize_payroll_name(payroll_name),
        component_key=adapter.component.value,
        amount=amount,
        source_sheet=adapter.sheet_name,
        source_row=row,
        source_column=adapter.amount_column,
        source_priority=adapter.priority,
    )]


def _read_labelled_block(adapter, reader, row, period_columns):
    payroll_name = reader.text(row, adapter.name_column)
    label = reader.text(row, adapter.label_column).lower()
    if not payroll_name or adapter.label_match not in label:
        return None, []
    return payroll_name, _emit_period_columns(adapter, reader, row, payroll_name, period_columns)


_LAYOUT_READERS = {
    SheetLayout.PERIOD_COLUMNS: _read_period_columns,
    SheetLayout.ROW_PERIOD: _read_row_period,
    SheetLayout.LABELLED_BLOCK: _read_labelled_block,
}


def _read_expense(
    adapter: SheetAdapter,
    reader: _SheetReader,
    row: int,
    cells: List[Tuple[int, Any]],
) -> Optional[ParsedExpenseEntry]:
    amount_column = None
    amount = None
    for column in EXPENSE_AMOUNT_COLUMNS:
        amount = parse_cell_number(reader.value(row, column))
        if amount is not None:
            amount_column = column
            break
    if amount_column is None:
        return None

    period_key = None
    for column in EXPENSE_PERIOD_COLUMNS:
        period_key = parse_period_key(reader.value(row, column))
        if period_key:
            break

    payroll_name = None
    for column in EXPENSE_NAME_COLUMNS:
        text = reader.text(row, column)
        if is_truthy_string(text):
            payroll_name = text
            break

    # First non-empty cell after the leading one, within the first six
    texts = [_cell_text(value) for _, value in cells]
    description = next((t for i, t in enumerate(texts) if 0 < i < 6 and t), None)

    return ParsedExpenseEntry(
        category_key=adapter.sheet_name.upper().replace(" ", "_"),
        amount=amount,
        sheet_name=adapter.sheet_name,
        row_ref=f"{get_column_letter(amount_column)}{row}",
        period_key=period_key,
        payroll_name=payroll_name,
        normalized_name=normalize_payroll_name(payroll_name) if payroll_name else None,
        description=description,
    )


# ===========================================
# DEDUPLICATION
# ===========================================

def resolve_by_priority(values: List[ParsedInputValue]) -> Tuple[List[ParsedInputValue], List[PriorityTie]]:
    """
    Keep one value per (period, identity, component).

    The highest sheet priority wins. Equal priorities fall back to the
    smallest (sheet, row, column) source and, when their amounts differ,
    are reported as ties for manual review. The outcome does not depend
    on the order values were read in.
    """
    grouped: Dict[Tuple[str, str, str], List[ParsedInputValue]] = defaultdict(list)
    for value in values:
        grouped[value.natural_key].append(value)

    kept: List[ParsedInputValue] = []
    ties: List[PriorityTie] = []
    for key in sorted(grouped):
        candidates = sorted(grouped[key], key=lambda v: (-v.source_priority, v.source_order))
        winner = candidates[0]
        kept.append(winner)
        rivals = [
            c for c in candidates[1:]
            if c.source_priority == winner.source_priority and c.amount != winner.amount
        ]
        if rivals:
            ties.append(PriorityTie(
                period_key=key[0],
                normalized_name=key[1],
                component_key=key[2],
                kept=f"{winner.source_sheet}!{winner.source_cell}",
                kept_amount=winner.amount,
                contenders=[
                    {"source": f"{c.source_sheet}!{c.source_cell}", "amount": str(c.amount)}
                    for c in rivals
                ],
            ))
    return kept, ties


# ===========================================
# ENTRY POINT
# ===========================================

def _load(content: bytes):
    try:
        formulas_wb = load_workbook(BytesIO(content), data_only=False)
        values_wb = load_workbook(BytesIO(content), data_only=True)
    except (InvalidFileException, BadZipFile, KeyError, ValueError, OSError) as e:
        raise InvalidWorkbookException(f"Unable to read workbook: {e}")
    return formulas_wb, values_wb


def parse_payroll_workbook(content: bytes) -> WorkbookParseResult:
    """Parse workbook bytes into rows, values, expenses and key sets."""
    if not content:
        raise InvalidWorkbookException("Workbook file is empty")

    formulas_wb, values_wb = _load(content)
    result = WorkbookParseResult()
    raw_values: List[ParsedInputValue] = []
    period_keys = set()
    payroll_names = set()

    for sheet_name in formulas_wb.sheetnames:
        adapter = get_sheet_adapter(sheet_name)
        result.sheets[sheet_name] = adapter.kind.value
        if adapter.kind == SheetKind.IGNORED:
            logger.debug(f"Skipping unconfigured sheet '{sheet_name}'")
            continue

        reader = _SheetReader(formulas_wb[sheet_name], values_wb[sheet_name])
        period_columns, header_rows = detect_period_columns(reader)
        uses_header_periods = adapter.layout != SheetLayout.ROW_PERIOD
        layout_reader = _LAYOUT_READERS[adapter.layout]

        for row in range(1, reader.max_row + 1):
            cells = reader.row_cells(row)
            if not cells:
                continue

            for _, value in cells:
                key = parse_period_key(value)
                if key:
                    period_keys.add(key)

            is_header = uses_header_periods and row in header_rows
            payroll_name = None
            if not is_header:
                payroll_name = reader.text(row, adapter.name_column) or None

            result.import_rows.append(ParsedImportRow(
                sheet_name=sheet_name,
                row_number=row,
                row_json=_snapshot(row, cells),
                is_history=adapter.kind == SheetKind.HISTORY,
                payroll_name=payroll_name,
                normalized_name=normalize_payroll_name(payroll_name) if payroll_name else None,
            ))

            if adapter.kind != SheetKind.ACTIVE or is_header:
                continue

            if adapter.contributes_values:
                value_name, values = layout_reader(adapter, reader, row, period_columns)
                if value_name and values:
                    payroll_names.add(value_name)
                raw_values.extend(values)

            if adapter.emits_expenses:
                entry = _read_expense(adapter, reader, row, cells)
                if entry is not None:
                    result.expense_entries.append(entry)
                    if entry.payroll_name:
                        payroll_names.add(entry.payroll_name)
                    if entry.period_key:
                        period_keys.add(entry.period_key)

    result.input_values, result.ties = resolve_by_priority(raw_values)
    period_keys.update(v.period_key for v in result.input_values)
    result.period_keys = sort_period_keys(period_keys)
    result.payroll_names = sorted(payroll_names, key=lambda n: (n.lower(), n))

    logger.info(
        f"Parsed workbook: {len(result.import_rows)} rows, {len(result.input_values)} values, "
        f"{len(result.expense_entries)} expenses, {len(result.period_keys)} periods, "
        f"{len(result.ties)} priority ties"
    )
    return result
