"""
Payroll Recon - SQLAlchemy Models Package

This package contains all database models for the application.
"""

from payroll_recon.models.base import BaseModel, TimestampMixin, AuditMixin
from payroll_recon.models.payroll_settings import (
    TransportMode,
    SalaryHeadType,
    Employee,
    PayrollSalaryHead,
    PayrollSalaryRevision,
    PayrollSalaryRevisionLine,
    PayrollFinancialYear,
    PayrollTaxBracket,
    PayrollTravelAllowanceTier,
    PayrollPublicHoliday,
    PayrollConfig,
)
from payroll_recon.models.payroll import (
    PayrollPeriodStatus,
    PeriodSourceType,
    InputSourceMethod,
    IdentityMappingStatus,
    AttendanceStatus,
    ReceiptStatus,
    EDIT_BLOCKED_STATUSES,
    RECALCULABLE_STATUSES,
    LOCKABLE_STATUSES,
    PayrollPeriod,
    PayrollApprovalEvent,
    PayrollImportBatch,
    PayrollImportRow,
    PayrollInputValue,
    PayrollExpenseEntry,
    PayrollComputedValue,
    PayrollIdentityMapping,
    PayrollAttendanceEntry,
    PayrollReceipt,
    PayrollSignatureEnvelope,
)

__all__ = [
    "BaseModel",
    "TimestampMixin",
    "AuditMixin",
    "TransportMode",
    "SalaryHeadType",
    "Employee",
    "PayrollSalaryHead",
    "PayrollSalaryRevision",
    "PayrollSalaryRevisionLine",
    "PayrollFinancialYear",
    "PayrollTaxBracket",
    "PayrollTravelAllowanceTier",
    "PayrollPublicHoliday",
    "PayrollConfig",
    "PayrollPeriodStatus",
    "PeriodSourceType",
    "InputSourceMethod",
    "IdentityMappingStatus",
    "AttendanceStatus",
    "ReceiptStatus",
    "EDIT_BLOCKED_STATUSES",
    "RECALCULABLE_STATUSES",
    "LOCKABLE_STATUSES",
    "PayrollPeriod",
    "PayrollApprovalEvent",
    "PayrollImportBatch",
    "PayrollImportRow",
    "PayrollInputValue",
    "PayrollExpenseEntry",
    "PayrollComputedValue",
    "PayrollIdentityMapping",
    "PayrollAttendanceEntry",
    "PayrollReceipt",
    "PayrollSignatureEnvelope",
]
