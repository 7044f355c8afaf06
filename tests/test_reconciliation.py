"""
Payroll Recon - Reconciliation Tests
"""

from decimal import Decimal

from payroll_recon.services.payroll_reconciliation import (
    NET_VS_PAID_CHECK,
    MismatchSeverity,
    classify_delta,
    reconcile_net_vs_paid,
)


TOLERANCE = Decimal("1.00")


class TestClassifyDelta:
    """Tests for mismatch severity."""

    def test_within_tolerance(self):
        assert classify_delta(Decimal("0"), TOLERANCE) is None
        assert classify_delta(Decimal("1.00"), TOLERANCE) is None
        assert classify_delta(Decimal("-1.00"), TOLERANCE) is None

    def test_warning_band(self):
        assert classify_delta(Decimal("1.01"), TOLERANCE) == MismatchSeverity.WARNING
        assert classify_delta(Decimal("-5.00"), TOLERANCE) == MismatchSeverity.WARNING

    def test_critical_beyond_five_times(self):
        assert classify_delta(Decimal("5.01"), TOLERANCE) == MismatchSeverity.CRITICAL
        assert classify_delta(Decimal("-2000"), TOLERANCE) == MismatchSeverity.CRITICAL

    def test_zero_tolerance(self):
        assert classify_delta(Decimal("0.00"), Decimal("0")) is None
        assert classify_delta(Decimal("0.01"), Decimal("0")) == MismatchSeverity.CRITICAL


class TestReconcileNetVsPaid:
    """Tests for the net vs paid check."""

    def test_match_returns_none(self):
        assert reconcile_net_vs_paid("Ali Raza", "02/2026", Decimal("50000"), Decimal("50000.50"), TOLERANCE) is None

    def test_mismatch_details(self):
        mismatch = reconcile_net_vs_paid("Ali Raza", "02/2026", Decimal("50000"), Decimal("49997"), TOLERANCE)
        assert mismatch.check == NET_VS_PAID_CHECK
        assert mismatch.delta == Decimal("3")
        assert mismatch.severity == MismatchSeverity.WARNING

        data = mismatch.to_dict()
        assert data["payroll_name"] == "Ali Raza"
        assert data["expected"] == "50000"
        assert data["actual"] == "49997"
        assert data["severity"] == "warning"
