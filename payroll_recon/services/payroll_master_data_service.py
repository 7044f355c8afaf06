"""
Payroll Recon - Payroll Master Data Service

Reference data the computation engine reads: financial years with tax
brackets, travel allowance tiers, public holidays, salary heads,
employees with salary revisions, and the dispatch template config.
"""

import logging
import uuid
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_recon.models.payroll_settings import (
    Employee,
    PayrollConfig,
    PayrollFinancialYear,
    PayrollPublicHoliday,
    PayrollSalaryHead,
    PayrollSalaryRevision,
    PayrollSalaryRevisionLine,
    PayrollTaxBracket,
    PayrollTravelAllowanceTier,
    SalaryHeadType,
)
from payroll_recon.services.payroll_calculators import TaxBracket, TravelTier, default_travel_tiers, validate_brackets
from payroll_recon.services.payroll_calculators.travel_allowance import validate_tier
from payroll_recon.services.payroll_components import PayrollComponent
from payroll_recon.utils.error_handling import (
    BusinessRuleException,
    ConflictException,
    ErrorCode,
    InvalidDateRangeException,
    NotFoundException,
    ValidationException,
)

logger = logging.getLogger(__name__)


# (code, name, type, taxable)
SYSTEM_SALARY_HEADS = (
    (PayrollComponent.BASIC_SALARY.value, "Basic Salary", SalaryHeadType.EARNING, True),
    (PayrollComponent.MEDICAL_ALLOWANCE.value, "Medical Allowance", SalaryHeadType.EARNING, False),
    (PayrollComponent.MOBILE_REIMBURSEMENT.value, "Mobile Reimbursement", SalaryHeadType.EARNING, False),
)

DEFAULT_TIERS_EFFECTIVE_FROM = date(2020, 1, 1)


class PayrollMasterDataService:
    """Service for payroll master data."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ===========================================
    # FINANCIAL YEARS AND BRACKETS
    # ===========================================

    def _bracket_rows(self, brackets: List[Dict[str, Any]]) -> List[PayrollTaxBracket]:
        ordered = sorted(brackets, key=lambda b: Decimal(b["income_from"]))
        candidate = [
            TaxBracket(
                income_from=Decimal(b["income_from"]),
                income_to=Decimal(b["income_to"]) if b.get("income_to") is not None else None,
                fixed_tax=Decimal(b.get("fixed_tax") or 0),
                rate=Decimal(b["tax_rate"]),
            )
            for b in ordered
        ]
        problems = validate_brackets(candidate)
        if problems:
            raise ValidationException(
                "Tax brackets are invalid",
                field="brackets",
                details={"problems": problems},
                code=ErrorCode.INVALID_BRACKETS,
            )
        return [
            PayrollTaxBracket(
                order_index=index,
                income_from=b.income_from,
                income_to=b.income_to,
                fixed_tax=b.fixed_tax,
                tax_rate=b.rate,
            )
            for index, b in enumerate(candidate)
        ]

    async def create_financial_year(self, data: Dict[str, Any], actor_id: Optional[str] = None) -> PayrollFinancialYear:
        if data["end_date"] < data["start_date"]:
            raise InvalidDateRangeException(data["start_date"].isoformat(), data["end_date"].isoformat())
        existing = await self.db.execute(
            select(PayrollFinancialYear).where(PayrollFinancialYear.label == data["label"])
        )
        if existing.scalar_one_or_none():
            raise ConflictException(f"Financial year '{data['label']}' already exists", resource_type="Financial year")

        year = PayrollFinancialYear(
            label=data["label"],
            start_date=data["start_date"],
            end_date=data["end_date"],
            is_active=False,
            brackets=self._bracket_rows(data.get("brackets") or []),
            created_by=actor_id,
            updated_by=actor_id,
        )
        self.db.add(year)
        await self.db.flush()
        if data.get("is_active"):
            await self._activate(year)
        await self.db.commit()
        await self.db.refresh(year)
        logger.info(f"Created financial year {year.label} with {len(year.brackets)} brackets")
        return year

    async def get_financial_year(self, year_id: uuid.UUID) -> PayrollFinancialYear:
        year = await self.db.get(PayrollFinancialYear, year_id)
        if year is None:
            raise NotFoundException("Financial year", year_id)
        return year

    async def list_financial_years(self) -> List[PayrollFinancialYear]:
        result = await self.db.execute(
            select(PayrollFinancialYear).order_by(PayrollFinancialYear.start_date.desc())
        )
        return list(result.scalars().all())

    async def replace_brackets(
        self,
        year_id: uuid.UUID,
        brackets: List[Dict[str, Any]],
        actor_id: Optional[str] = None,
    ) -> PayrollFinancialYear:
        year = await self.get_financial_year(year_id)
        rows = self._bracket_rows(brackets)
        year.brackets.clear()
        await self.db.flush()
        year.brackets.extend(rows)
        year.updated_by = actor_id
        await self.db.commit()
        await self.db.refresh(year)
        return year

    async def _activate(self, year: PayrollFinancialYear) -> None:
        await self.db.execute(
            update(PayrollFinancialYear)
            .where(PayrollFinancialYear.id != year.id)
            .values(is_active=False)
        )
        year.is_active = True

    async def activate_financial_year(self, year_id: uuid.UUID, actor_id: Optional[str] = None) -> PayrollFinancialYear:
        """Make one year active; all others are deactivated."""
        year = await self.get_financial_year(year_id)
        await self._activate(year)
        year.updated_by = actor_id
        await self.db.commit()
        await self.db.refresh(year)
        logger.info(f"Financial year {year.label} activated")
        return year

    async def delete_financial_year(self, year_id: uuid.UUID) -> None:
        year = await self.get_financial_year(year_id)
        await self.db.delete(year)
        await self.db.commit()

    # ===========================================
    # TRAVEL TIERS
    # ===========================================

    def _check_tier(self, data: Dict[str, Any]) -> None:
        problems = validate_tier(TravelTier(
            transport_mode=data["transport_mode"],
            min_km=Decimal(data["min_km"]),
            max_km=Decimal(data["max_km"]) if data.get("max_km") is not None else None,
            monthly_rate=Decimal(data["monthly_rate"]),
            effective_from=data["effective_from"],
            effective_to=data.get("effective_to"),
        ))
        if problems:
            raise ValidationException("Travel tier is invalid", field="travel_tier", details={"problems": problems})

    async def list_travel_tiers(self, active_only: bool = False) -> List[PayrollTravelAllowanceTier]:
        query = select(PayrollTravelAllowanceTier)
        if active_only:
            query = query.where(PayrollTravelAllowanceTier.is_active.is_(True))
        result = await self.db.execute(query.order_by(
            PayrollTravelAllowanceTier.transport_mode,
            PayrollTravelAllowanceTier.min_km,
            PayrollTravelAllowanceTier.effective_from,
        ))
        return list(result.scalars().all())

    async def create_travel_tier(self, data: Dict[str, Any], actor_id: Optional[str] = None) -> PayrollTravelAllowanceTier:
        self._check_tier(data)
        tier = PayrollTravelAllowanceTier(**data, created_by=actor_id, updated_by=actor_id)
        self.db.add(tier)
        await self.db.commit()
        await self.db.refresh(tier)
        return tier

    async def update_travel_tier(
        self,
        tier_id: uuid.UUID,
        data: Dict[str, Any],
        actor_id: Optional[str] = None,
    ) -> PayrollTravelAllowanceTier:
        tier = await self.db.get(PayrollTravelAllowanceTier, tier_id)
        if tier is None:
            raise NotFoundException("Travel tier", tier_id)
        merged = {
            "transport_mode": tier.transport_mode,
            "min_km": tier.min_km,
            "max_km": tier.max_km,
            "monthly_rate": tier.monthly_rate,
            "effective_from": tier.effective_from,
            "effective_to": tier.effective_to,
        }
        merged.update(data)
        self._check_tier(merged)
        for key, value in data.items():
            setattr(tier, key, value)
        tier.updated_by = actor_id
        await self.db.commit()
        await self.db.refresh(tier)
        return tier

    async def delete_travel_tier(self, tier_id: uuid.UUID) -> None:
        tier = await self.db.get(PayrollTravelAllowanceTier, tier_id)
        if tier is None:
            raise NotFoundException("Travel tier", tier_id)
        await self.db.delete(tier)
        await self.db.commit()

    async def seed_travel_tiers(
        self,
        effective_from: date = DEFAULT_TIERS_EFFECTIVE_FROM,
        actor_id: Optional[str] = None,
        commit: bool = True,
    ) -> int:
        """Insert the standard tier table; tiers already present are left alone."""
        existing = {
            (t.transport_mode, Decimal(t.min_km), t.effective_from)
            for t in await self.list_travel_tiers()
        }
        created = 0
        for tier in default_travel_tiers(effective_from):
            if (tier.transport_mode, tier.min_km, tier.effective_from) in existing:
                continue
            self.db.add(PayrollTravelAllowanceTier(
                transport_mode=tier.transport_mode,
                min_km=tier.min_km,
                max_km=tier.max_km,
                monthly_rate=tier.monthly_rate,
                effective_from=tier.effective_from,
                is_active=True,
                created_by=actor_id,
            ))
            created += 1
        if commit:
            await self.db.commit()
        logger.info(f"Seeded {created} travel allowance tiers")
        return created

    # ===========================================
    # PUBLIC HOLIDAYS
    # ===========================================

    async def list_holidays(self, year: Optional[int] = None) -> List[PayrollPublicHoliday]:
        query = select(PayrollPublicHoliday)
        if year:
            query = query.where(
                PayrollPublicHoliday.holiday_date >= date(year, 1, 1),
                PayrollPublicHoliday.holiday_date <= date(year, 12, 31),
            )
        result = await self.db.execute(query.order_by(PayrollPublicHoliday.holiday_date))
        return list(result.scalars().all())

    async def create_holiday(self, holiday_date: date, name: str) -> PayrollPublicHoliday:
        existing = await self.db.execute(
            select(PayrollPublicHoliday).where(PayrollPublicHoliday.holiday_date == holiday_date)
        )
        if existing.scalar_one_or_none():
            raise ConflictException(f"A public holiday already exists on {holiday_date.isoformat()}", resource_type="Public holiday")
        holiday = PayrollPublicHoliday(holiday_date=holiday_date, name=name)
        self.db.add(holiday)
        await self.db.commit()
        await self.db.refresh(holiday)
        return holiday

    async def delete_holiday(self, holiday_id: uuid.UUID) -> None:
        holiday = await self.db.get(PayrollPublicHoliday, holiday_id)
        if holiday is None:
            raise NotFoundException("Public holiday", holiday_id)
        await self.db.delete(holiday)
        await self.db.commit()

    # ===========================================
    # SALARY HEADS
    # ===========================================

    async def seed_salary_heads(self, commit: bool = True) -> int:
        existing = {h.code for h in await self.list_salary_heads()}
        created = 0
        for code, name, head_type, taxable in SYSTEM_SALARY_HEADS:
            if code in existing:
                continue
            self.db.add(PayrollSalaryHead(
                code=code,
                name=name,
                head_type=head_type,
                is_taxable=taxable,
                is_system=True,
                is_active=True,
            ))
            created += 1
        if commit:
            await self.db.commit()
        return created

    async def list_salary_heads(self, active_only: bool = False) -> List[PayrollSalaryHead]:
        query = select(PayrollSalaryHead)
        if active_only:
            query = query.where(PayrollSalaryHead.is_active.is_(True))
        result = await self.db.execute(query.order_by(PayrollSalaryHead.code))
        return list(result.scalars().all())

    async def create_salary_head(self, data: Dict[str, Any]) -> PayrollSalaryHead:
        code = data["code"].strip().upper()
        existing = await self.db.execute(select(PayrollSalaryHead).where(PayrollSalaryHead.code == code))
        if existing.scalar_one_or_none():
            raise ConflictException(f"Salary head '{code}' already exists", resource_type="Salary head")
        head = PayrollSalaryHead(
            code=code,
            name=data["name"],
            head_type=data["head_type"],
            is_taxable=data.get("is_taxable", False),
            is_system=False,
            is_active=data.get("is_active", True),
        )
        self.db.add(head)
        await self.db.commit()
        await self.db.refresh(head)
        logger.info(f"Created salary head {code}")
        return head

    async def update_salary_head(self, head_id: uuid.UUID, data: Dict[str, Any]) -> PayrollSalaryHead:
        head = await self.db.get(PayrollSalaryHead, head_id)
        if head is None:
            raise NotFoundException("Salary head", head_id)
        if head.is_system and ("head_type" in data or "is_taxable" in data):
            raise BusinessRuleException(
                f"System salary head {head.code} cannot change type or taxability",
                rule="system_salary_head",
            )
        for key in ("name", "head_type", "is_taxable", "is_active"):
            if key in data:
                setattr(head, key, data[key])
        await self.db.commit()
        await self.db.refresh(head)
        return head

    # ===========================================
    # EMPLOYEES AND SALARY REVISIONS
    # ===========================================

    async def create_employee(self, data: Dict[str, Any], actor_id: Optional[str] = None) -> Employee:
        employee = Employee(**data, created_by=actor_id, updated_by=actor_id)
        self.db.add(employee)
        await self.db.commit()
        await self.db.refresh(employee)
        logger.info(f"Created employee {employee.full_name} ({employee.id})")
        return employee

    async def get_employee(self, employee_id: uuid.UUID) -> Employee:
        employee = await self.db.get(Employee, employee_id)
        if employee is None:
            raise NotFoundException("Employee", employee_id)
        return employee

    async def list_employees(self, active_only: bool = False, search: Optional[str] = None) -> List[Employee]:
        query = select(Employee)
        if active_only:
            query = query.where(Employee.is_active.is_(True))
        if search:
            query = query.where(Employee.full_name.ilike(f"%{search}%"))
        result = await self.db.execute(query.order_by(Employee.full_name))
        return list(result.scalars().all())

    async def update_employee(
        self,
        employee_id: uuid.UUID,
        data: Dict[str, Any],
        actor_id: Optional[str] = None,
    ) -> Employee:
        employee = await self.get_employee(employee_id)
        for key, value in data.items():
            setattr(employee, key, value)
        employee.updated_by = actor_id
        await self.db.commit()
        await self.db.refresh(employee)
        return employee

    async def create_salary_revision(
        self,
        employee_id: uuid.UUID,
        effective_from: date,
        lines: List[Dict[str, Any]],
        note: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> PayrollSalaryRevision:
        """
        Record a salary structure effective from a date.

        Lines name a head by ``salary_head_id`` or ``code``.
        """
        employee = await self.get_employee(employee_id)
        existing = await self.db.execute(
            select(PayrollSalaryRevision).where(
                PayrollSalaryRevision.employee_id == employee.id,
                PayrollSalaryRevision.effective_from == effective_from,
            )
        )
        if existing.scalar_one_or_none():
            raise ConflictException(
                f"A salary revision effective {effective_from.isoformat()} already exists",
                resource_type="Salary revision",
            )

        heads = {h.code: h for h in await self.list_salary_heads()}
        heads_by_id = {h.id: h for h in heads.values()}
        revision_lines = []
        for line in lines:
            head = None
            if line.get("salary_head_id"):
                head = heads_by_id.get(line["salary_head_id"])
            elif line.get("code"):
                head = heads.get(line["code"].strip().upper())
            if head is None:
                raise ValidationException("Unknown salary head in revision line", field="lines", details={"line": str(line)})
            if Decimal(line["amount"]) < 0:
                raise ValidationException("Revision amounts cannot be negative", field="lines")
            revision_lines.append(PayrollSalaryRevisionLine(salary_head_id=head.id, amount=Decimal(line["amount"])))

        revision = PayrollSalaryRevision(
            employee_id=employee.id,
            effective_from=effective_from,
            note=note,
            lines=revision_lines,
            created_by=actor_id,
            updated_by=actor_id,
        )
        self.db.add(revision)
        await self.db.commit()
        await self.db.refresh(revision)
        logger.info(f"Salary revision effective {effective_from} recorded for employee {employee.id}")
        return revision

    async def list_salary_revisions(self, employee_id: uuid.UUID) -> List[PayrollSalaryRevision]:
        await self.get_employee(employee_id)
        result = await self.db.execute(
            select(PayrollSalaryRevision)
            .where(PayrollSalaryRevision.employee_id == employee_id)
            .order_by(PayrollSalaryRevision.effective_from.desc())
        )
        return list(result.scalars().all())

    # ===========================================
    # DISPATCH CONFIG
    # ===========================================

    async def get_active_config(self) -> Optional[PayrollConfig]:
        result = await self.db.execute(
            select(PayrollConfig)
            .where(PayrollConfig.is_active.is_(True))
            .order_by(PayrollConfig.updated_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def save_config(self, data: Dict[str, Any], actor_id: Optional[str] = None) -> PayrollConfig:
        """Store a new active template config; earlier rows are deactivated."""
        await self.db.execute(update(PayrollConfig).values(is_active=False))
        config = PayrollConfig(
            template_id=data["template_id"],
            template_role_name=data.get("template_role_name") or "Employee",
            email_subject=data.get("email_subject"),
            is_active=True,
            created_by=actor_id,
            updated_by=actor_id,
        )
        self.db.add(config)
        await self.db.commit()
        await self.db.refresh(config)
        logger.info(f"Payroll dispatch template set to {config.template_id}")
        return config

    # ===========================================
    # SEEDING
    # ===========================================

    async def seed_defaults(self, actor_id: Optional[str] = None) -> Dict[str, int]:
        heads = await self.seed_salary_heads(commit=False)
        tiers = await self.seed_travel_tiers(actor_id=actor_id, commit=False)
        await self.db.commit()
        return {"salary_heads": heads, "travel_tiers": tiers}
