"""
Payroll Recon - Payroll Master Data Schemas
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional, List
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator

from payroll_recon.models.payroll_settings import SalaryHeadType, TransportMode


# ===========================================
# FINANCIAL YEARS
# ===========================================

class TaxBracketIn(BaseModel):
    income_from: Decimal = Field(..., ge=0)
    income_to: Optional[Decimal] = None
    fixed_tax: Decimal = Field(Decimal("0"), ge=0)
    tax_rate: Decimal = Field(..., ge=0, le=1)


class TaxBracketResponse(TaxBracketIn):
    id: UUID
    order_index: int

    model_config = ConfigDict(from_attributes=True)


class FinancialYearCreate(BaseModel):
    label: str = Field(..., min_length=1, max_length=50)
    start_date: date
    end_date: date
    is_active: bool = False
    brackets: List[TaxBracketIn] = Field(default_factory=list)


class BracketsReplaceRequest(BaseModel):
    brackets: List[TaxBracketIn] = Field(..., min_length=1)


class FinancialYearResponse(BaseModel):
    id: UUID
    label: str
    start_date: date
    end_date: date
    is_active: bool
    brackets: List[TaxBracketResponse] = []

    model_config = ConfigDict(from_attributes=True)


# ===========================================
# TRAVEL TIERS
# ===========================================

class TravelTierCreate(BaseModel):
    transport_mode: TransportMode
    min_km: Decimal = Field(..., ge=0)
    max_km: Optional[Decimal] = None
    monthly_rate: Decimal = Field(..., ge=0)
    effective_from: date
    effective_to: Optional[date] = None
    is_active: bool = True


class TravelTierUpdate(BaseModel):
    min_km: Optional[Decimal] = Field(None, ge=0)
    max_km: Optional[Decimal] = None
    monthly_rate: Optional[Decimal] = Field(None, ge=0)
    effective_from: Optional[date] = None
    effective_to: Optional[date] = None
    is_active: Optional[bool] = None


class TravelTierResponse(TravelTierCreate):
    id: UUID

    model_config = ConfigDict(from_attributes=True)


class TravelTierSeedRequest(BaseModel):
    effective_from: Optional[date] = None


# ===========================================
# HOLIDAYS AND SALARY HEADS
# ===========================================

class PublicHolidayCreate(BaseModel):
    holiday_date: date
    name: str = Field(..., min_length=1, max_length=150)


class PublicHolidayResponse(PublicHolidayCreate):
    id: UUID

    model_config = ConfigDict(from_attributes=True)


class SalaryHeadCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=150)
    head_type: SalaryHeadType
    is_taxable: bool = False
    is_active: bool = True


class SalaryHeadUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=150)
    head_type: Optional[SalaryHeadType] = None
    is_taxable: Optional[bool] = None
    is_active: Optional[bool] = None


class SalaryHeadResponse(BaseModel):
    id: UUID
    code: str
    name: str
    head_type: SalaryHeadType
    is_taxable: bool
    is_system: bool
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


# ===========================================
# EMPLOYEES
# ===========================================

class EmployeeCreate(BaseModel):
    full_name: str = Field(..., min_length=1, max_length=255)
    email: Optional[EmailStr] = None
    department: Optional[str] = Field(None, max_length=100)
    transport_mode: Optional[TransportMode] = None
    distance_km: Optional[Decimal] = Field(None, ge=0)
    is_active: bool = True


class EmployeeUpdate(BaseModel):
    full_name: Optional[str] = Field(None, min_length=1, max_length=255)
    email: Optional[EmailStr] = None
    department: Optional[str] = Field(None, max_length=100)
    transport_mode: Optional[TransportMode] = None
    distance_km: Optional[Decimal] = Field(None, ge=0)
    is_active: Optional[bool] = None


class EmployeeResponse(BaseModel):
    id: UUID
    full_name: str
    email: Optional[str] = None
    department: Optional[str] = None
    transport_mode: Optional[TransportMode] = None
    distance_km: Optional[Decimal] = None
    is_active: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RevisionLineIn(BaseModel):
    salary_head_id: Optional[UUID] = None
    code: Optional[str] = None
    amount: Decimal = Field(..., ge=0)

    @model_validator(mode="after")
    def validate_head(self):
        if not self.salary_head_id and not self.code:
            raise ValueError("Either salary_head_id or code is required")
        return self


class SalaryRevisionCreate(BaseModel):
    effective_from: date
    note: Optional[str] = None
    lines: List[RevisionLineIn] = Field(..., min_length=1)


class RevisionLineResponse(BaseModel):
    id: UUID
    salary_head_id: UUID
    amount: Decimal
    salary_head: SalaryHeadResponse

    model_config = ConfigDict(from_attributes=True)


class SalaryRevisionResponse(BaseModel):
    id: UUID
    employee_id: UUID
    effective_from: date
    note: Optional[str] = None
    lines: List[RevisionLineResponse] = []

    model_config = ConfigDict(from_attributes=True)


# ===========================================
# DISPATCH CONFIG
# ===========================================

class PayrollConfigUpdate(BaseModel):
    template_id: str = Field(..., min_length=1, max_length=100)
    template_role_name: str = Field("Employee", min_length=1, max_length=100)
    email_subject: Optional[str] = Field(None, max_length=255)


class PayrollConfigResponse(PayrollConfigUpdate):
    id: UUID
    is_active: bool
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)
