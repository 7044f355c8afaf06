"""
Payroll Recon - Progressive Income Tax Calculator

Annual progressive tax on a monthly taxable figure:

    annual  = max(0, monthly) * 12
    bracket = the one with income_from <= annual < income_to (open top)
    tax     = fixed_tax + (annual - income_from) * rate
    monthly = tax / 12

Statutory schedules are kept as an ordered, date-keyed table so a change
in law is a new row of data. Two schedules are in force historically:
LEGACY until 30 June 2024 and UPDATED from 1 July 2024.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Tuple

from payroll_recon.config import settings


MONTHS_PER_YEAR = Decimal("12")


class TaxBracketGapError(ValueError):
    """No bracket covers an income figure."""


@dataclass(frozen=True)
class TaxBracket:
    """Annual income band."""
    income_from: Decimal
    income_to: Optional[Decimal]
    fixed_tax: Decimal
    rate: Decimal

    def contains(self, annual_income: Decimal) -> bool:
        if annual_income < self.income_from:
            return False
        return self.income_to is None or annual_income < self.income_to

    def annual_tax(self, annual_income: Decimal) -> Decimal:
        return self.fixed_tax + max(Decimal("0"), annual_income - self.income_from) * self.rate


def _b(lower: int, upper: Optional[int], fixed: int, rate: str) -> TaxBracket:
    return TaxBracket(
        income_from=Decimal(lower),
        income_to=Decimal(upper) if upper is not None else None,
        fixed_tax=Decimal(fixed),
        rate=Decimal(rate),
    )


LEGACY_SCHEDULE: Tuple[TaxBracket, ...] = (
    _b(0, 600_000, 0, "0"),
    _b(600_000, 1_200_000, 0, "0.01"),
    _b(1_200_000, 2_200_000, 6_000, "0.11"),
    _b(2_200_000, 3_200_000, 116_000, "0.23"),
    _b(3_200_000, 4_100_000, 346_000, "0.30"),
    _b(4_100_000, None, 616_000, "0.35"),
)

UPDATED_SCHEDULE: Tuple[TaxBracket, ...] = (
    _b(0, 600_000, 0, "0"),
    _b(600_000, 1_200_000, 0, "0.025"),
    _b(1_200_000, 2_400_000, 15_000, "0.125"),
    _b(2_400_000, 3_600_000, 165_000, "0.20"),
    _b(3_600_000, 6_000_000, 405_000, "0.25"),
    _b(6_000_000, 12_000_000, 1_005_000, "0.325"),
    _b(12_000_000, None, 2_955_000, "0.35"),
)


@dataclass(frozen=True)
class TaxScheduleVersion:
    name: str
    effective_from: date
    brackets: Tuple[TaxBracket, ...]


def statutory_schedule_versions() -> List[TaxScheduleVersion]:
    """Schedule versions ordered by effective date."""
    return [
        TaxScheduleVersion("LEGACY", date.min, LEGACY_SCHEDULE),
        TaxScheduleVersion("UPDATED", settings.payroll_tax_cutover_date, UPDATED_SCHEDULE),
    ]


def schedule_for_date(
    on_date: date,
    versions: Optional[Sequence[TaxScheduleVersion]] = None,
) -> TaxScheduleVersion:
    """Latest schedule version whose effective date is on or before the date."""
    chosen = None
    for version in versions or statutory_schedule_versions():
        if version.effective_from <= on_date:
            chosen = version
    if chosen is None:
        raise TaxBracketGapError(f"No tax schedule in force on {on_date.isoformat()}")
    return chosen


def validate_brackets(brackets: Sequence[TaxBracket]) -> List[str]:
    """
    Problems with a bracket table, empty when it is usable.

    A usable table starts at zero, is contiguous and ordered, has only its
    last band open-ended and uses rates in [0, 1] with non-negative fixed tax.
    """
    problems = []
    if not brackets:
        return ["At least one bracket is required"]
    if brackets[0].income_from != 0:
        problems.append("First bracket must start at 0")
    for index, bracket in enumerate(brackets):
        position = index + 1
        if not Decimal("0") <= bracket.rate <= Decimal("1"):
            problems.append(f"Bracket {position}: rate must be between 0 and 1")
        if bracket.fixed_tax < 0:
            problems.append(f"Bracket {position}: fixed tax cannot be negative")
        is_last = index == len(brackets) - 1
        if bracket.income_to is None:
            if not is_last:
                problems.append(f"Bracket {position}: only the last bracket may be open-ended")
            continue
        if bracket.income_to <= bracket.income_from:
            problems.append(f"Bracket {position}: upper bound must exceed lower bound")
        if not is_last and brackets[index + 1].income_from != bracket.income_to:
            problems.append(f"Bracket {position + 1}: must start where bracket {position} ends")
    return problems


def find_bracket(brackets: Iterable[TaxBracket], annual_income: Decimal) -> TaxBracket:
    for bracket in brackets:
        if bracket.contains(annual_income):
            return bracket
    raise TaxBracketGapError(f"No tax bracket covers annual income {annual_income}")


def annual_progressive_tax(annual_income: Decimal, brackets: Sequence[TaxBracket]) -> Decimal:
    taxable = max(Decimal("0"), annual_income)
    return max(Decimal("0"), find_bracket(brackets, taxable).annual_tax(taxable))


def monthly_tax(monthly_taxable: Decimal, brackets: Sequence[TaxBracket]) -> Decimal:
    """Monthly share of the annual tax on a monthly taxable figure (unrounded)."""
    annual_income = max(Decimal("0"), monthly_taxable) * MONTHS_PER_YEAR
    return annual_progressive_tax(annual_income, brackets) / MONTHS_PER_YEAR


def statutory_monthly_tax(on_date: date, monthly_taxable: Decimal) -> Decimal:
    """Monthly tax under the statutory schedule in force on a date."""
    return monthly_tax(monthly_taxable, schedule_for_date(on_date).brackets)
