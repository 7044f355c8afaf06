"""
Payroll Recon - Net vs Paid Reconciliation

Compares computed net salary with the paid figure reported by the
workbook. Mismatches are advisory: they are recorded on the period
summary for the approver and never block a transition.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


NET_VS_PAID_CHECK = "NET_VS_PAID"
CRITICAL_MULTIPLIER = Decimal("5")


class MismatchSeverity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class ReconciliationMismatch:
    payroll_name: str
    period_key: str
    check: str
    expected: Decimal
    actual: Decimal
    delta: Decimal
    severity: MismatchSeverity
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payroll_name": self.payroll_name,
            "period_key": self.period_key,
            "check": self.check,
            "expected": str(self.expected),
            "actual": str(self.actual),
            "delta": str(self.delta),
            "severity": self.severity.value,
            "reason": self.reason,
        }


def classify_delta(delta: Decimal, tolerance: Decimal) -> Optional[MismatchSeverity]:
    """None within tolerance; critical beyond five times the tolerance."""
    magnitude = abs(delta)
    if magnitude <= tolerance:
        return None
    if magnitude > tolerance * CRITICAL_MULTIPLIER:
        return MismatchSeverity.CRITICAL
    return MismatchSeverity.WARNING


def reconcile_net_vs_paid(
    payroll_name: str,
    period_key: str,
    net_salary: Decimal,
    paid: Decimal,
    tolerance: Decimal,
) -> Optional[ReconciliationMismatch]:
    delta = net_salary - paid
    severity = classify_delta(delta, tolerance)
    if severity is None:
        return None
    return ReconciliationMismatch(
        payroll_name=payroll_name,
        period_key=period_key,
        check=NET_VS_PAID_CHECK,
        expected=net_salary,
        actual=paid,
        delta=delta,
        severity=severity,
        reason="Workbook paid amount deviates from computed net salary beyond tolerance.",
    )
