"""
Payroll Recon - Working Day and Attendance Calculations
"""

from datetime import date, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Iterator, Optional, Sequence, Tuple

from payroll_recon.models.payroll import AttendanceStatus


DEFAULT_WEEKEND_DAYS = (5, 6)


def each_day(start: date, end: date) -> Iterator[date]:
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def working_days(
    period_start: date,
    period_end: date,
    holidays: Iterable[date] = (),
    weekend_days: Sequence[int] = DEFAULT_WEEKEND_DAYS,
) -> int:
    """Calendar days in range minus weekend days and public holidays."""
    holiday_set = set(holidays)
    return sum(
        1
        for day in each_day(period_start, period_end)
        if day.weekday() not in weekend_days and day not in holiday_set
    )


def present_days(
    entries: Iterable[Tuple[date, AttendanceStatus]],
    period_start: date,
    period_end: date,
) -> int:
    """PRESENT entries dated inside the range."""
    return sum(
        1
        for attendance_date, status in entries
        if period_start <= attendance_date <= period_end and status == AttendanceStatus.PRESENT
    )


def prorate(
    monthly_amount: Decimal,
    present: int,
    working: int,
) -> Optional[Decimal]:
    """
    Scale a monthly amount by present/working days, rounded to 2 places.

    Returns None when there are no working days to prorate against.
    """
    if working <= 0:
        return None
    payable = max(Decimal("0"), monthly_amount * Decimal(present) / Decimal(working))
    return payable.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
