"""
Payroll Recon - Payroll Master Data Models

Employees and the reference tables the computation engine reads:
salary heads, salary revisions, financial years with tax brackets,
travel allowance tiers, public holidays and the dispatch configuration.
"""

import uuid
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    Boolean, Date, ForeignKey, Integer, Numeric, String, Text, Uuid,
    Enum as SQLEnum, UniqueConstraint, CheckConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payroll_recon.models.base import BaseModel, AuditMixin


# ===========================================
# ENUMS
# ===========================================

class TransportMode(str, Enum):
    """Commute mode used for travel allowance tiers."""
    BIKE = "BIKE"
    CAR = "CAR"
    PUBLIC_TRANSPORT = "PUBLIC_TRANSPORT"


class SalaryHeadType(str, Enum):
    """Whether a salary head adds to earnings or deductions."""
    EARNING = "EARNING"
    DEDUCTION = "DEDUCTION"


# ===========================================
# EMPLOYEE
# ===========================================

class Employee(BaseModel, AuditMixin):
    """Canonical employee record that payroll names resolve to."""

    __tablename__ = "employees"

    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    department: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    transport_mode: Mapped[Optional[TransportMode]] = mapped_column(SQLEnum(TransportMode), nullable=True)
    distance_km: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(precision=7, scale=2), nullable=True,
        comment="One-way commute distance",
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    salary_revisions: Mapped[List["PayrollSalaryRevision"]] = relationship(
        "PayrollSalaryRevision",
        back_populates="employee",
        cascade="all, delete-orphan",
        order_by="PayrollSalaryRevision.effective_from.desc()",
    )


class PayrollSalaryHead(BaseModel):
    """Named salary component; custom heads extend the computation."""

    __tablename__ = "payroll_salary_heads"

    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(150), nullable=False)
    head_type: Mapped[SalaryHeadType] = mapped_column(SQLEnum(SalaryHeadType), nullable=False)
    is_taxable: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_system: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class PayrollSalaryRevision(BaseModel, AuditMixin):
    """Standing salary structure effective from a date."""

    __tablename__ = "payroll_salary_revisions"

    employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    employee: Mapped["Employee"] = relationship("Employee", back_populates="salary_revisions")
    lines: Mapped[List["PayrollSalaryRevisionLine"]] = relationship(
        "PayrollSalaryRevisionLine",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint("employee_id", "effective_from", name="uq_payroll_revision_employee_date"),
    )


class PayrollSalaryRevisionLine(BaseModel):
    """Amount for one salary head within a revision."""

    __tablename__ = "payroll_salary_revision_lines"

    revision_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("payroll_salary_revisions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    salary_head_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("payroll_salary_heads.id", ondelete="CASCADE"),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False)

    salary_head: Mapped["PayrollSalaryHead"] = relationship("PayrollSalaryHead", lazy="selectin")


# ===========================================
# TAX
# ===========================================

class PayrollFinancialYear(BaseModel, AuditMixin):
    """Financial year owning a progressive tax bracket table."""

    __tablename__ = "payroll_financial_years"

    label: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    brackets: Mapped[List["PayrollTaxBracket"]] = relationship(
        "PayrollTaxBracket",
        back_populates="financial_year",
        cascade="all, delete-orphan",
        order_by="PayrollTaxBracket.order_index",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint("end_date >= start_date", name="financial_year_dates"),
    )


class PayrollTaxBracket(BaseModel):
    """Annual income band: tax = fixed_tax + (income - income_from) * tax_rate."""

    __tablename__ = "payroll_tax_brackets"

    financial_year_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("payroll_financial_years.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    order_index: Mapped[int] = mapped_column(Integer, nullable=False)
    income_from: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False)
    income_to: Mapped[Optional[Decimal]] = mapped_column(Numeric(precision=15, scale=2), nullable=True)
    fixed_tax: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), default=Decimal("0"), nullable=False)
    tax_rate: Mapped[Decimal] = mapped_column(
        Numeric(precision=7, scale=5), nullable=False,
        comment="Marginal rate as a fraction, 0.025 = 2.5%",
    )

    financial_year: Mapped["PayrollFinancialYear"] = relationship("PayrollFinancialYear", back_populates="brackets")

    __table_args__ = (
        UniqueConstraint("financial_year_id", "order_index", name="uq_payroll_bracket_year_order"),
    )


# ===========================================
# ALLOWANCES AND CALENDAR
# ===========================================

class PayrollTravelAllowanceTier(BaseModel, AuditMixin):
    """Monthly travel rate for a transport mode and distance band."""

    __tablename__ = "payroll_travel_allowance_tiers"

    transport_mode: Mapped[TransportMode] = mapped_column(SQLEnum(TransportMode), nullable=False)
    min_km: Mapped[Decimal] = mapped_column(Numeric(precision=7, scale=2), nullable=False)
    max_km: Mapped[Optional[Decimal]] = mapped_column(Numeric(precision=7, scale=2), nullable=True)
    monthly_rate: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False)
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class PayrollPublicHoliday(BaseModel):
    """Non-working calendar date."""

    __tablename__ = "payroll_public_holidays"

    holiday_date: Mapped[date] = mapped_column(Date, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(150), nullable=False)


class PayrollConfig(BaseModel, AuditMixin):
    """E-signature template used when dispatching receipts."""

    __tablename__ = "payroll_configs"

    template_id: Mapped[str] = mapped_column(String(100), nullable=False)
    template_role_name: Mapped[str] = mapped_column(String(100), default="Employee", nullable=False)
    email_subject: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
