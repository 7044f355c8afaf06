"""
Payroll Recon - Payroll Schemas

Pydantic schemas for period lifecycle, import, mapping and dispatch
requests and responses.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional, List, Dict, Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from payroll_recon.models.payroll import (
    AttendanceStatus,
    IdentityMappingStatus,
    InputSourceMethod,
    PayrollPeriodStatus,
    PeriodSourceType,
    ReceiptStatus,
)


# ===========================================
# PERIOD SCHEMAS
# ===========================================

class PeriodCreate(BaseModel):
    """Create period request."""
    period_start: date
    period_end: date
    label: Optional[str] = Field(None, max_length=100)

    @model_validator(mode="after")
    def validate_dates(self):
        if self.period_end < self.period_start:
            raise ValueError("period_end must not be before period_start")
        return self


class PeriodResponse(BaseModel):
    """Period response."""
    id: UUID
    label: str
    period_start: date
    period_end: date
    status: PayrollPeriodStatus
    source_type: PeriodSourceType
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    locked_by: Optional[str] = None
    locked_at: Optional[datetime] = None
    summary_json: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PeriodListResponse(BaseModel):
    items: List[PeriodResponse]
    total: int
    skip: int
    limit: int


class PeriodActionRequest(BaseModel):
    """Approve / lock request."""
    comment: Optional[str] = Field(None, max_length=1000)


class RecalculateRequest(BaseModel):
    tolerance: Optional[Decimal] = Field(None, ge=0)


class CarryForwardRequest(BaseModel):
    base_period_id: Optional[UUID] = None


class ApprovalEventResponse(BaseModel):
    id: UUID
    actor_id: str
    action: str
    from_status: PayrollPeriodStatus
    to_status: PayrollPeriodStatus
    comment: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ===========================================
# INPUT / EXPENSE / ATTENDANCE SCHEMAS
# ===========================================

class InputOverrideRequest(BaseModel):
    """Manual input value for one identity and component."""
    payroll_name: str = Field(..., min_length=1, max_length=255)
    component_key: str = Field(..., min_length=1, max_length=64)
    amount: Decimal
    note: Optional[str] = None

    @field_validator("component_key")
    @classmethod
    def upper_component(cls, v: str) -> str:
        return v.strip().upper()


class InputValueResponse(BaseModel):
    id: UUID
    period_id: UUID
    payroll_name: str
    normalized_name: str
    employee_id: Optional[UUID] = None
    component_key: str
    amount: Decimal
    source_method: InputSourceMethod
    source_sheet: Optional[str] = None
    source_cell: Optional[str] = None
    source_priority: int
    is_override: bool
    note: Optional[str] = None
    provenance_json: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(from_attributes=True)


class ExpenseCreate(BaseModel):
    category_key: str = Field(..., min_length=1, max_length=100)
    amount: Decimal
    description: Optional[str] = None
    payroll_name: Optional[str] = Field(None, max_length=255)


class ExpenseResponse(BaseModel):
    id: UUID
    period_id: UUID
    import_batch_id: Optional[UUID] = None
    payroll_name: Optional[str] = None
    category_key: str
    description: Optional[str] = None
    amount: Decimal
    sheet_name: Optional[str] = None
    row_ref: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class AttendanceDay(BaseModel):
    attendance_date: date
    status: AttendanceStatus


class AttendanceUpsertRequest(BaseModel):
    employee_id: UUID
    entries: List[AttendanceDay] = Field(..., min_length=1)


class AttendanceResponse(BaseModel):
    id: UUID
    period_id: Optional[UUID] = None
    employee_id: UUID
    attendance_date: date
    status: AttendanceStatus

    model_config = ConfigDict(from_attributes=True)


# ===========================================
# IMPORT SCHEMAS
# ===========================================

class ImportBatchResponse(BaseModel):
    id: UUID
    file_name: str
    checksum: str
    row_count: int
    input_count: int
    expense_count: int
    period_keys: List[str]
    summary_json: Optional[Dict[str, Any]] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ===========================================
# MAPPING SCHEMAS
# ===========================================

class MappingResponse(BaseModel):
    id: UUID
    normalized_name: str
    display_name: str
    employee_id: Optional[UUID] = None
    status: IdentityMappingStatus
    candidate_count: int
    last_matched_at: Optional[datetime] = None
    notes: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class MappingResolveRequest(BaseModel):
    """Names to resolve; empty re-runs resolution for every known mapping."""
    names: List[str] = Field(default_factory=list)


class MappingUpdateRequest(BaseModel):
    employee_id: UUID
    notes: Optional[str] = None


# ===========================================
# RECEIPT SCHEMAS
# ===========================================

class EnvelopeResponse(BaseModel):
    id: UUID
    envelope_id: Optional[str] = None
    provider_status: str
    receipt_status: ReceiptStatus
    recipient_email: Optional[str] = None
    error_message: Optional[str] = None
    sent_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_event_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ReceiptResponse(BaseModel):
    id: UUID
    period_id: UUID
    payroll_name: str
    normalized_name: str
    employee_id: Optional[UUID] = None
    status: ReceiptStatus
    version: int
    receipt_json: Dict[str, Any]
    last_error: Optional[str] = None
    envelopes: List[EnvelopeResponse] = []

    model_config = ConfigDict(from_attributes=True)


class SendReceiptsRequest(BaseModel):
    receipt_ids: Optional[List[UUID]] = None
    resend_failed: bool = False


# ===========================================
# OTHER
# ===========================================

class MessageResponse(BaseModel):
    message: str
    success: bool = True
