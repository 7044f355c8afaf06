"""
Payroll Recon - Payroll Period Models

Period lifecycle, imported inputs, computed metrics, identity mappings,
attendance, receipts and signature envelopes.

Period state machine:
    DRAFT -> CALCULATED -> APPROVED -> SENDING -> SENT | PARTIAL | FAILED
    LOCKED is reachable from any post-calculation state and is terminal.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import (
    Boolean, Date, DateTime, ForeignKey, Integer, Numeric, String, Text, Uuid,
    Enum as SQLEnum, JSON, UniqueConstraint, CheckConstraint, func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payroll_recon.database import Base
from payroll_recon.models.base import BaseModel, AuditMixin

if TYPE_CHECKING:
    from payroll_recon.models.payroll_settings import Employee


# ===========================================
# ENUMS
# ===========================================

class PayrollPeriodStatus(str, Enum):
    """Payroll period lifecycle status."""
    DRAFT = "DRAFT"
    CALCULATED = "CALCULATED"
    APPROVED = "APPROVED"
    SENDING = "SENDING"
    SENT = "SENT"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"
    LOCKED = "LOCKED"


class PeriodSourceType(str, Enum):
    """How a period's inputs were produced."""
    WORKBOOK = "WORKBOOK"
    MANUAL = "MANUAL"
    CARRY_FORWARD = "CARRY_FORWARD"


class InputSourceMethod(str, Enum):
    """Provenance of a single input value."""
    WORKBOOK = "WORKBOOK"
    MANUAL = "MANUAL"
    CARRY_FORWARD = "CARRY_FORWARD"
    SYSTEM = "SYSTEM"


class IdentityMappingStatus(str, Enum):
    """Outcome of matching a payroll name to an employee."""
    AUTO_MATCHED = "AUTO_MATCHED"
    AMBIGUOUS = "AMBIGUOUS"
    UNRESOLVED = "UNRESOLVED"
    MANUAL_MATCHED = "MANUAL_MATCHED"


class AttendanceStatus(str, Enum):
    """Daily attendance status."""
    PRESENT = "PRESENT"
    ABSENT = "ABSENT"
    PUBLIC_HOLIDAY = "PUBLIC_HOLIDAY"


class ReceiptStatus(str, Enum):
    """Payment receipt dispatch status."""
    READY = "READY"
    ENVELOPE_CREATED = "ENVELOPE_CREATED"
    SENT = "SENT"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# Statuses in which inputs, expenses and attendance cannot be edited
EDIT_BLOCKED_STATUSES = frozenset({
    PayrollPeriodStatus.APPROVED,
    PayrollPeriodStatus.SENDING,
    PayrollPeriodStatus.SENT,
    PayrollPeriodStatus.LOCKED,
})

RECALCULABLE_STATUSES = frozenset({
    PayrollPeriodStatus.DRAFT,
    PayrollPeriodStatus.CALCULATED,
    PayrollPeriodStatus.PARTIAL,
    PayrollPeriodStatus.FAILED,
})

LOCKABLE_STATUSES = frozenset({
    PayrollPeriodStatus.CALCULATED,
    PayrollPeriodStatus.APPROVED,
    PayrollPeriodStatus.SENDING,
    PayrollPeriodStatus.SENT,
    PayrollPeriodStatus.PARTIAL,
    PayrollPeriodStatus.FAILED,
})


# ===========================================
# PERIOD
# ===========================================

class PayrollPeriod(BaseModel, AuditMixin):
    """A bounded payroll cycle with its own lifecycle status."""

    __tablename__ = "payroll_periods"

    label: Mapped[str] = mapped_column(String(100), nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[PayrollPeriodStatus] = mapped_column(
        SQLEnum(PayrollPeriodStatus),
        default=PayrollPeriodStatus.DRAFT,
        nullable=False,
    )
    source_type: Mapped[PeriodSourceType] = mapped_column(
        SQLEnum(PeriodSourceType),
        default=PeriodSourceType.MANUAL,
        nullable=False,
    )

    approved_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    locked_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    summary_json: Mapped[Optional[dict]] = mapped_column(
        JSON, nullable=True,
        comment="Last import/recalculation/dispatch summary",
    )

    approval_events: Mapped[List["PayrollApprovalEvent"]] = relationship(
        "PayrollApprovalEvent",
        back_populates="period",
        cascade="all, delete-orphan",
        order_by="PayrollApprovalEvent.created_at",
    )

    __table_args__ = (
        CheckConstraint("period_end >= period_start", name="period_dates"),
    )

    @property
    def period_key(self) -> str:
        """MM/YYYY key of the month the period starts in."""
        return f"{self.period_start.month:02d}/{self.period_start.year}"

    @property
    def is_editable(self) -> bool:
        return self.status not in EDIT_BLOCKED_STATUSES


class PayrollApprovalEvent(Base):
    """Append-only record of approve/lock actions on a period."""

    __tablename__ = "payroll_approval_events"
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    period_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("payroll_periods.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    actor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    from_status: Mapped[PayrollPeriodStatus] = mapped_column(SQLEnum(PayrollPeriodStatus), nullable=False)
    to_status: Mapped[PayrollPeriodStatus] = mapped_column(SQLEnum(PayrollPeriodStatus), nullable=False)
    comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    period: Mapped["PayrollPeriod"] = relationship("PayrollPeriod", back_populates="approval_events")


# ===========================================
# IMPORT AUDIT
# ===========================================

class PayrollImportBatch(BaseModel, AuditMixin):
    """One uploaded workbook and what it produced."""

    __tablename__ = "payroll_import_batches"

    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    checksum: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    row_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    input_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    expense_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    period_keys: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    summary_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)


class PayrollImportRow(BaseModel):
    """Raw per-cell snapshot of a workbook row, kept for audit."""

    __tablename__ = "payroll_import_rows"

    batch_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("payroll_import_batches.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sheet_name: Mapped[str] = mapped_column(String(100), nullable=False)
    row_number: Mapped[int] = mapped_column(Integer, nullable=False)
    is_history: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    payroll_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    normalized_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    row_json: Mapped[dict] = mapped_column(JSON, nullable=False)


# ===========================================
# INPUTS AND OUTPUTS
# ===========================================

class PayrollInputValue(BaseModel, AuditMixin):
    """
    A raw payroll component amount for one identity in one period.

    Unique per (period, normalized name, component). Override rows are
    authoritative and survive re-import and travel auto-calculation.
    """

    __tablename__ = "payroll_input_values"

    period_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("payroll_periods.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    payroll_name: Mapped[str] = mapped_column(String(255), nullable=False)
    normalized_name: Mapped[str] = mapped_column(String(255), nullable=False)
    employee_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("employees.id", ondelete="SET NULL"),
        nullable=True,
    )
    component_key: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False)

    source_method: Mapped[InputSourceMethod] = mapped_column(
        SQLEnum(InputSourceMethod),
        default=InputSourceMethod.WORKBOOK,
        nullable=False,
    )
    source_sheet: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    source_cell: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    source_priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_override: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    provenance_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "period_id", "normalized_name", "component_key",
            name="uq_payroll_input_period_name_component",
        ),
    )


class PayrollExpenseEntry(BaseModel, AuditMixin):
    """Free-form expense line (petty cash, reimbursements)."""

    __tablename__ = "payroll_expense_entries"

    period_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("payroll_periods.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    import_batch_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("payroll_import_batches.id", ondelete="SET NULL"),
        nullable=True,
    )
    payroll_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    normalized_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    employee_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("employees.id", ondelete="SET NULL"),
        nullable=True,
    )
    category_key: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False)
    sheet_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    row_ref: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)


class PayrollComputedValue(BaseModel):
    """Derived metric for one identity; replaced wholesale on recalculation."""

    __tablename__ = "payroll_computed_values"

    period_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("payroll_periods.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    payroll_name: Mapped[str] = mapped_column(String(255), nullable=False)
    normalized_name: Mapped[str] = mapped_column(String(255), nullable=False)
    employee_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("employees.id", ondelete="SET NULL"),
        nullable=True,
    )
    metric_key: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False)
    formula_version: Mapped[str] = mapped_column(String(30), nullable=False)
    lineage_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "period_id", "normalized_name", "metric_key",
            name="uq_payroll_computed_period_name_metric",
        ),
    )


# ===========================================
# IDENTITY AND ATTENDANCE
# ===========================================

class PayrollIdentityMapping(BaseModel):
    """Free-text payroll name bound (or not) to a canonical employee."""

    __tablename__ = "payroll_identity_mappings"

    normalized_name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    employee_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("employees.id", ondelete="SET NULL"),
        nullable=True,
    )
    status: Mapped[IdentityMappingStatus] = mapped_column(
        SQLEnum(IdentityMappingStatus),
        default=IdentityMappingStatus.UNRESOLVED,
        nullable=False,
    )
    candidate_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_matched_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    employee: Mapped[Optional["Employee"]] = relationship("Employee", lazy="selectin")


class PayrollAttendanceEntry(BaseModel, AuditMixin):
    """One employee's attendance on one calendar date."""

    __tablename__ = "payroll_attendance_entries"

    period_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("payroll_periods.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
    )
    attendance_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[AttendanceStatus] = mapped_column(SQLEnum(AttendanceStatus), nullable=False)

    __table_args__ = (
        UniqueConstraint("employee_id", "attendance_date", name="uq_payroll_attendance_employee_date"),
    )


# ===========================================
# RECEIPTS AND ENVELOPES
# ===========================================

class PayrollReceipt(BaseModel):
    """Payment receipt for one identity in one period."""

    __tablename__ = "payroll_receipts"

    period_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("payroll_periods.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    payroll_name: Mapped[str] = mapped_column(String(255), nullable=False)
    normalized_name: Mapped[str] = mapped_column(String(255), nullable=False)
    employee_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("employees.id", ondelete="SET NULL"),
        nullable=True,
    )
    status: Mapped[ReceiptStatus] = mapped_column(
        SQLEnum(ReceiptStatus),
        default=ReceiptStatus.READY,
        nullable=False,
    )
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    receipt_json: Mapped[dict] = mapped_column(JSON, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    envelopes: Mapped[List["PayrollSignatureEnvelope"]] = relationship(
        "PayrollSignatureEnvelope",
        back_populates="receipt",
        cascade="all, delete-orphan",
        order_by="PayrollSignatureEnvelope.created_at",
        lazy="selectin",
    )
    employee: Mapped[Optional["Employee"]] = relationship("Employee", lazy="selectin")

    __table_args__ = (
        UniqueConstraint("period_id", "normalized_name", name="uq_payroll_receipt_period_name"),
    )

    @property
    def latest_envelope(self) -> Optional["PayrollSignatureEnvelope"]:
        return self.envelopes[-1] if self.envelopes else None


class PayrollSignatureEnvelope(BaseModel):
    """Provider-side signature request bound to one receipt."""

    __tablename__ = "payroll_signature_envelopes"

    receipt_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("payroll_receipts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    envelope_id: Mapped[Optional[str]] = mapped_column(
        String(100), nullable=True, index=True,
        comment="Provider signature request id; empty for failed attempts",
    )
    provider_status: Mapped[str] = mapped_column(String(50), nullable=False)
    receipt_status: Mapped[ReceiptStatus] = mapped_column(SQLEnum(ReceiptStatus), nullable=False)
    recipient_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_event_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
        comment="Provider time of the latest applied event",
    )
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    receipt: Mapped["PayrollReceipt"] = relationship("PayrollReceipt", back_populates="envelopes")
