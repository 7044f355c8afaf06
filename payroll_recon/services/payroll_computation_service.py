"""
Payroll Recon - Payroll Computation Service

Recalculates a period: loads inputs and master data, computes every
identity, reconciles net against paid, and replaces the period's
computed values and ready receipts. One identity failing does not stop
the others; the period ends CALCULATED, PARTIAL or FAILED accordingly.
"""

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_recon.config import settings
from payroll_recon.models.payroll import (
    RECALCULABLE_STATUSES,
    InputSourceMethod,
    PayrollAttendanceEntry,
    PayrollComputedValue,
    PayrollInputValue,
    PayrollPeriod,
    PayrollPeriodStatus,
    PayrollReceipt,
    ReceiptStatus,
)
from payroll_recon.models.payroll_settings import (
    Employee,
    PayrollFinancialYear,
    PayrollPublicHoliday,
    PayrollSalaryHead,
    PayrollSalaryRevision,
    PayrollTravelAllowanceTier,
)
from payroll_recon.services.identity_resolution_service import IdentityResolutionService
from payroll_recon.services.payroll_calculators import (
    IdentityInputs,
    IdentityResult,
    PeriodContext,
    SalaryHeadRule,
    TaxBracket,
    TravelTier,
    compute_identity,
    working_days,
)
from payroll_recon.services.payroll_components import (
    ATTENDANCE_TRAVEL_GENERATOR,
    FORMULA_VERSION,
    PayrollComponent,
    PayrollMetric,
)
from payroll_recon.services.payroll_period_service import PayrollPeriodService
from payroll_recon.utils.error_handling import ComputationError, ValidationException
from payroll_recon.utils.normalizers import to_money

logger = logging.getLogger(__name__)


# Receipts already handed to the provider keep their content
DISPATCHED_RECEIPT_STATUSES = frozenset({
    ReceiptStatus.ENVELOPE_CREATED,
    ReceiptStatus.SENT,
    ReceiptStatus.COMPLETED,
})


@dataclass
class RecalculationSummary:
    period_id: uuid.UUID
    period_key: str
    status: PayrollPeriodStatus
    identities: int = 0
    succeeded: int = 0
    failures: List[Dict[str, str]] = field(default_factory=list)
    mismatches: List[Dict[str, Any]] = field(default_factory=list)
    working_days: int = 0
    tolerance: Decimal = Decimal("0")
    travel_auto_calculated: int = 0
    receipts_refreshed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period_id": str(self.period_id),
            "period_key": self.period_key,
            "status": self.status.value,
            "identities": self.identities,
            "succeeded": self.succeeded,
            "failed": len(self.failures),
            "failures": self.failures,
            "mismatches": self.mismatches,
            "working_days": self.working_days,
            "tolerance": str(self.tolerance),
            "travel_auto_calculated": self.travel_auto_calculated,
            "receipts_refreshed": self.receipts_refreshed,
        }


def aggregate_status(succeeded: int, failed: int) -> PayrollPeriodStatus:
    """Period status from per-identity outcomes. An empty period counts as calculated."""
    if failed == 0:
        return PayrollPeriodStatus.CALCULATED
    if succeeded == 0:
        return PayrollPeriodStatus.FAILED
    return PayrollPeriodStatus.PARTIAL


class PayrollComputationService:
    """Service for recalculating payroll periods."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.periods = PayrollPeriodService(db)

    # ===========================================
    # CONTEXT LOADING
    # ===========================================

    async def _financial_year(self, period: PayrollPeriod) -> Optional[PayrollFinancialYear]:
        result = await self.db.execute(
            select(PayrollFinancialYear)
            .where(
                PayrollFinancialYear.start_date <= period.period_start,
                PayrollFinancialYear.end_date >= period.period_start,
            )
            .order_by(PayrollFinancialYear.is_active.desc(), PayrollFinancialYear.start_date.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _previous_balances(self, period: PayrollPeriod) -> Dict[str, Decimal]:
        previous = await self.periods.get_previous_period(period)
        if previous is None:
            return {}
        result = await self.db.execute(
            select(PayrollComputedValue.normalized_name, PayrollComputedValue.amount).where(
                PayrollComputedValue.period_id == previous.id,
                PayrollComputedValue.metric_key == PayrollMetric.BALANCE.value,
            )
        )
        return {name: Decimal(amount) for name, amount in result.all()}

    async def build_context(self, period: PayrollPeriod, tolerance: Decimal) -> PeriodContext:
        holidays = (await self.db.execute(
            select(PayrollPublicHoliday.holiday_date).where(
                PayrollPublicHoliday.holiday_date >= period.period_start,
                PayrollPublicHoliday.holiday_date <= period.period_end,
            )
        )).scalars().all()

        year = await self._financial_year(period)
        brackets = [
            TaxBracket(
                income_from=Decimal(b.income_from),
                income_to=Decimal(b.income_to) if b.income_to is not None else None,
                fixed_tax=Decimal(b.fixed_tax),
                rate=Decimal(b.tax_rate),
            )
            for b in (year.brackets if year else [])
        ]

        heads = (await self.db.execute(
            select(PayrollSalaryHead).where(PayrollSalaryHead.is_active.is_(True))
        )).scalars().all()

        tiers = (await self.db.execute(select(PayrollTravelAllowanceTier))).scalars().all()

        return PeriodContext(
            period_key=period.period_key,
            period_start=period.period_start,
            period_end=period.period_end,
            working_days=working_days(
                period.period_start,
                period.period_end,
                holidays,
                settings.payroll_weekend_days,
            ),
            tolerance=tolerance,
            financial_year_id=year.id if year else None,
            financial_year_brackets=brackets,
            salary_heads={
                h.code.upper(): SalaryHeadRule(head_type=h.head_type, is_taxable=h.is_taxable)
                for h in heads
            },
            travel_tiers=[
                TravelTier(
                    transport_mode=t.transport_mode,
                    min_km=Decimal(t.min_km),
                    max_km=Decimal(t.max_km) if t.max_km is not None else None,
                    monthly_rate=Decimal(t.monthly_rate),
                    effective_from=t.effective_from,
                    effective_to=t.effective_to,
                    is_active=t.is_active,
                )
                for t in tiers
            ],
            previous_balances=await self._previous_balances(period),
        )

    async def _salary_structures(self, employee_ids, period: PayrollPeriod) -> Dict[uuid.UUID, Dict[str, Decimal]]:
        """Latest revision on or before the period start, per employee."""
        if not employee_ids:
            return {}
        result = await self.db.execute(
            select(PayrollSalaryRevision)
            .where(
                PayrollSalaryRevision.employee_id.in_(employee_ids),
                PayrollSalaryRevision.effective_from <= period.period_start,
            )
            .order_by(PayrollSalaryRevision.effective_from.desc())
        )
        structures: Dict[uuid.UUID, Dict[str, Decimal]] = {}
        for revision in result.scalars().all():
            if revision.employee_id in structures:
                continue
            structures[revision.employee_id] = {
                line.salary_head.code.upper(): Decimal(line.amount)
                for line in revision.lines
                if line.salary_head is not None and line.salary_head.is_active
            }
        return structures

    async def load_identities(self, period: PayrollPeriod) -> List[IdentityInputs]:
        rows = (await self.db.execute(
            select(PayrollInputValue).where(PayrollInputValue.period_id == period.id)
        )).scalars().all()

        grouped: Dict[str, List[PayrollInputValue]] = defaultdict(list)
        for row in rows:
            grouped[row.normalized_name].append(row)

        # Re-read bindings so manual matches made after import apply
        bound = await IdentityResolutionService(self.db).employee_ids_for(grouped)
        employee_ids = {eid for eid in bound.values() if eid is not None}
        employee_ids.update(r.employee_id for r in rows if r.employee_id is not None)

        employees: Dict[uuid.UUID, Employee] = {}
        attendance: Dict[uuid.UUID, list] = defaultdict(list)
        if employee_ids:
            for employee in (await self.db.execute(
                select(Employee).where(Employee.id.in_(employee_ids))
            )).scalars().all():
                employees[employee.id] = employee
            for entry in (await self.db.execute(
                select(PayrollAttendanceEntry).where(
                    PayrollAttendanceEntry.employee_id.in_(employee_ids),
                    PayrollAttendanceEntry.attendance_date >= period.period_start,
                    PayrollAttendanceEntry.attendance_date <= period.period_end,
                )
            )).scalars().all():
                attendance[entry.employee_id].append((entry.attendance_date, entry.status))
        structures = await self._salary_structures(employee_ids, period)

        identities = []
        for normalized in sorted(grouped):
            values = grouped[normalized]
            employee_id = bound.get(normalized) or next((v.employee_id for v in values if v.employee_id), None)
            employee = employees.get(employee_id) if employee_id else None
            identities.append(IdentityInputs(
                payroll_name=values[0].payroll_name,
                normalized_name=normalized,
                components={v.component_key.upper(): Decimal(v.amount) for v in values},
                overrides={v.component_key.upper() for v in values if v.is_override},
                employee_id=employee_id,
                transport_mode=employee.transport_mode if employee else None,
                distance_km=Decimal(employee.distance_km) if employee and employee.distance_km is not None else None,
                attendance=attendance.get(employee_id, []),
                salary_structure=structures.get(employee_id, {}),
            ))
        return identities

    # ===========================================
    # RECALCULATION
    # ===========================================

    async def recalculate(
        self,
        period_id: uuid.UUID,
        tolerance: Optional[Decimal] = None,
        actor_id: Optional[str] = None,
    ) -> RecalculationSummary:
        """
        Recompute every identity of a period.

        Allowed from DRAFT, CALCULATED, PARTIAL and FAILED. Computed values
        are replaced wholesale; the status claim and all writes commit together.
        """
        if tolerance is None:
            tolerance = settings.payroll_reconciliation_tolerance
        tolerance = Decimal(tolerance)
        if tolerance < 0:
            raise ValidationException("Tolerance cannot be negative", field="tolerance")

        period, _ = await self.periods.transition(
            period_id, RECALCULABLE_STATUSES, PayrollPeriodStatus.DRAFT, "recalculate",
        )

        ctx = await self.build_context(period, tolerance)
        identities = await self.load_identities(period)

        results: List[IdentityResult] = []
        failures: List[Dict[str, str]] = []
        for inputs in identities:
            try:
                results.append(compute_identity(inputs, ctx))
            except ComputationError as e:
                logger.warning(f"Computation failed for '{e.payroll_name}' in {period.label}: {e.reason}")
                failures.append({"payroll_name": e.payroll_name, "reason": e.reason})
            except (ArithmeticError, ValueError, KeyError) as e:
                logger.error(
                    f"Unexpected computation error for '{inputs.payroll_name}' in {period.label}: {e!r}",
                    exc_info=True,
                )
                failures.append({"payroll_name": inputs.payroll_name, "reason": f"Unexpected error: {e!r}"})

        travel_written = await self._write_auto_travel(period, results, ctx, actor_id)
        await self._replace_computed_values(period, results, ctx)
        receipts_refreshed = await self._upsert_receipts(period, results)

        status = aggregate_status(len(results), len(failures))
        summary = RecalculationSummary(
            period_id=period.id,
            period_key=period.period_key,
            status=status,
            identities=len(identities),
            succeeded=len(results),
            failures=failures,
            mismatches=[r.mismatch.to_dict() for r in results if r.mismatch is not None],
            working_days=ctx.working_days,
            tolerance=tolerance,
            travel_auto_calculated=travel_written,
            receipts_refreshed=receipts_refreshed,
        )

        period_summary = dict(period.summary_json or {})
        period_summary["calculation"] = {
            **summary.to_dict(),
            "calculated_at": datetime.now(timezone.utc).isoformat(),
            "calculated_by": actor_id,
        }
        period.summary_json = period_summary
        period.status = status
        period.updated_by = actor_id
        await self.db.commit()

        logger.info(
            f"Recalculated {period.label}: {summary.succeeded}/{summary.identities} identities, "
            f"{len(summary.mismatches)} mismatches, status {status.value}"
        )
        return summary

    async def _write_auto_travel(
        self,
        period: PayrollPeriod,
        results: List[IdentityResult],
        ctx: PeriodContext,
        actor_id: Optional[str],
    ) -> int:
        """Persist attendance-derived travel as a non-override input."""
        derived = {r.normalized_name: r for r in results if r.auto_travel is not None}
        if not derived:
            return 0

        existing = {
            row.normalized_name: row
            for row in (await self.db.execute(
                select(PayrollInputValue).where(
                    PayrollInputValue.period_id == period.id,
                    PayrollInputValue.component_key == PayrollComponent.TRAVEL_REIMBURSEMENT.value,
                    PayrollInputValue.normalized_name.in_(list(derived)),
                )
            )).scalars().all()
        }

        written = 0
        for normalized, result in derived.items():
            row = existing.get(normalized)
            if row is not None and row.is_override:
                continue
            if row is None:
                row = PayrollInputValue(
                    period_id=period.id,
                    normalized_name=normalized,
                    component_key=PayrollComponent.TRAVEL_REIMBURSEMENT.value,
                    created_by=actor_id,
                )
                self.db.add(row)
            row.payroll_name = result.payroll_name
            row.employee_id = result.employee_id
            row.amount = to_money(result.auto_travel)
            row.source_method = InputSourceMethod.SYSTEM
            row.source_sheet = None
            row.source_cell = None
            row.source_priority = 0
            row.is_override = False
            row.provenance_json = {
                "generator": ATTENDANCE_TRAVEL_GENERATOR,
                "working_days": ctx.working_days,
            }
            row.updated_by = actor_id
            written += 1
        return written

    async def _replace_computed_values(
        self,
        period: PayrollPeriod,
        results: List[IdentityResult],
        ctx: PeriodContext,
    ) -> None:
        await self.db.execute(delete(PayrollComputedValue).where(PayrollComputedValue.period_id == period.id))
        for result in results:
            lineage = dict(result.lineage)
            if result.mismatch is not None:
                lineage["mismatch"] = result.mismatch.to_dict()
            for metric_key, amount in result.metrics.items():
                self.db.add(PayrollComputedValue(
                    period_id=period.id,
                    payroll_name=result.payroll_name,
                    normalized_name=result.normalized_name,
                    employee_id=result.employee_id,
                    metric_key=metric_key,
                    amount=amount,
                    formula_version=FORMULA_VERSION,
                    lineage_json=lineage,
                ))
        await self.db.flush()

    async def _upsert_receipts(self, period: PayrollPeriod, results: List[IdentityResult]) -> int:
        """
        One receipt per computed identity.

        READY and FAILED receipts take the new figures; dispatched ones are
        left as sent. READY receipts whose identity dropped out are removed.
        """
        existing = {
            r.normalized_name: r
            for r in (await self.db.execute(
                select(PayrollReceipt).where(PayrollReceipt.period_id == period.id)
            )).scalars().all()
        }

        refreshed = 0
        computed_names = set()
        for result in results:
            computed_names.add(result.normalized_name)
            document = dict(result.receipt)
            document["currency"] = settings.payroll_default_currency
            document["period_label"] = period.label

            receipt = existing.get(result.normalized_name)
            if receipt is None:
                self.db.add(PayrollReceipt(
                    period_id=period.id,
                    payroll_name=result.payroll_name,
                    normalized_name=result.normalized_name,
                    employee_id=result.employee_id,
                    status=ReceiptStatus.READY,
                    version=1,
                    receipt_json=document,
                    envelopes=[],
                ))
                refreshed += 1
            elif receipt.status not in DISPATCHED_RECEIPT_STATUSES:
                receipt.payroll_name = result.payroll_name
                receipt.employee_id = result.employee_id
                receipt.receipt_json = document
                receipt.version += 1
                refreshed += 1

        for normalized, receipt in existing.items():
            if normalized not in computed_names and receipt.status == ReceiptStatus.READY:
                await self.db.delete(receipt)

        await self.db.flush()
        return refreshed
