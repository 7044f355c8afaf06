"""
Payroll Recon - Payroll Period Service

Owns the period state machine and every edit that flows through it.

Status checks are re-validated at write time: each transition is a
conditional UPDATE that only matches the row while it still holds the
status that was checked, inside the same transaction as the dependent
writes. A concurrent action that changed the status first turns the
update into a no-op, which is reported as an invalid transition.
"""

import logging
import uuid
from collections import defaultdict
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, update, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_recon.models.payroll import (
    EDIT_BLOCKED_STATUSES,
    LOCKABLE_STATUSES,
    AttendanceStatus,
    IdentityMappingStatus,
    InputSourceMethod,
    PayrollApprovalEvent,
    PayrollAttendanceEntry,
    PayrollComputedValue,
    PayrollExpenseEntry,
    PayrollInputValue,
    PayrollPeriod,
    PayrollPeriodStatus,
    PayrollReceipt,
    PeriodSourceType,
)
from payroll_recon.models.payroll_settings import Employee
from payroll_recon.services.identity_resolution_service import IdentityResolutionService
from payroll_recon.utils.error_handling import (
    InvalidDateRangeException,
    InvalidTransitionException,
    NotFoundException,
    PeriodLockedException,
    PeriodNotFoundException,
    ValidationException,
)
from payroll_recon.utils.normalizers import (
    normalize_payroll_name,
    period_bounds,
    period_label_from_key,
    to_money,
)

logger = logging.getLogger(__name__)


CARRY_FORWARD_SHEET = "carry-forward"


class PayrollPeriodService:
    """Service for payroll period lifecycle and input edits."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ===========================================
    # PERIODS
    # ===========================================

    async def create_period(
        self,
        period_start: date,
        period_end: date,
        source_type: PeriodSourceType = PeriodSourceType.MANUAL,
        label: Optional[str] = None,
        actor_id: Optional[str] = None,
        commit: bool = True,
    ) -> PayrollPeriod:
        """Create a DRAFT period. End must not precede start."""
        if period_start is None or period_end is None:
            raise ValidationException("Both period_start and period_end are required", field="period_start")
        if period_end < period_start:
            raise InvalidDateRangeException(period_start.isoformat(), period_end.isoformat())

        if not label:
            label = (
                period_label_from_key(f"{period_start.month:02d}/{period_start.year}")
                if (period_start.year, period_start.month) == (period_end.year, period_end.month)
                else f"Payroll {period_start.isoformat()} - {period_end.isoformat()}"
            )

        period = PayrollPeriod(
            label=label,
            period_start=period_start,
            period_end=period_end,
            status=PayrollPeriodStatus.DRAFT,
            source_type=source_type,
            created_by=actor_id,
            updated_by=actor_id,
        )
        self.db.add(period)
        await self.db.flush()
        if commit:
            await self.db.commit()
            await self.db.refresh(period)

        logger.info(f"Created payroll period {period.label} ({period.id})")
        return period

    async def get_period(self, period_id: uuid.UUID) -> PayrollPeriod:
        period = await self.db.get(PayrollPeriod, period_id)
        if period is None:
            raise PeriodNotFoundException(period_id)
        return period

    async def list_periods(
        self,
        status: Optional[PayrollPeriodStatus] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> Tuple[List[PayrollPeriod], int]:
        query = select(PayrollPeriod)
        count_query = select(func.count()).select_from(PayrollPeriod)
        if status:
            query = query.where(PayrollPeriod.status == status)
            count_query = count_query.where(PayrollPeriod.status == status)

        total = (await self.db.execute(count_query)).scalar() or 0
        result = await self.db.execute(
            query.order_by(PayrollPeriod.period_start.desc()).offset(skip).limit(limit)
        )
        return list(result.scalars().all()), total

    async def find_month_period(self, period_key: str) -> Optional[PayrollPeriod]:
        bounds = period_bounds(period_key)
        if bounds is None:
            return None
        result = await self.db.execute(
            select(PayrollPeriod)
            .where(PayrollPeriod.period_start == bounds[0], PayrollPeriod.period_end == bounds[1])
            .order_by(PayrollPeriod.created_at)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def ensure_month_period(
        self,
        period_key: str,
        actor_id: Optional[str] = None,
    ) -> Tuple[PayrollPeriod, bool]:
        """Existing month period for a key, or a new WORKBOOK one. Returns (period, created)."""
        existing = await self.find_month_period(period_key)
        if existing is not None:
            return existing, False
        bounds = period_bounds(period_key)
        if bounds is None:
            raise ValidationException(f"Invalid period key '{period_key}'", field="period_key")
        period = await self.create_period(
            bounds[0],
            bounds[1],
            source_type=PeriodSourceType.WORKBOOK,
            label=period_label_from_key(period_key),
            actor_id=actor_id,
            commit=False,
        )
        return period, True

    async def get_previous_period(self, period: PayrollPeriod) -> Optional[PayrollPeriod]:
        """Chronologically nearest period starting before this one."""
        result = await self.db.execute(
            select(PayrollPeriod)
            .where(PayrollPeriod.period_start < period.period_start, PayrollPeriod.id != period.id)
            .order_by(PayrollPeriod.period_start.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    # ===========================================
    # TRANSITIONS
    # ===========================================

    async def transition(
        self,
        period_id: uuid.UUID,
        allowed: Iterable[PayrollPeriodStatus],
        new_status: PayrollPeriodStatus,
        action: str,
        **values: Any,
    ) -> Tuple[PayrollPeriod, PayrollPeriodStatus]:
        """
        Move a period to ``new_status`` if its current status is allowed.

        The UPDATE is conditioned on the status that was read, so a
        concurrent change makes it match no row. Does not commit.
        Returns (period, previous status).
        """
        allowed = frozenset(allowed)
        period = await self.get_period(period_id)
        current = period.status
        if current not in allowed:
            raise InvalidTransitionException(action, current, allowed)

        result = await self.db.execute(
            update(PayrollPeriod)
            .where(PayrollPeriod.id == period_id, PayrollPeriod.status == current)
            .values(status=new_status, **values)
        )
        if result.rowcount != 1:
            await self.db.refresh(period)
            logger.warning(f"Concurrent status change on period {period_id} during {action}")
            raise InvalidTransitionException(action, period.status, allowed)

        await self.db.refresh(period)
        return period, current

    async def claim_for_edit(self, period_id: uuid.UUID, action: str = "edit") -> PayrollPeriod:
        """
        Reset an editable period to DRAFT ahead of an input change.

        Raises PeriodLockedException for APPROVED, SENDING, SENT and LOCKED
        periods. Does not commit; the caller's edit shares the transaction.
        """
        period = await self.get_period(period_id)
        if period.status in EDIT_BLOCKED_STATUSES:
            raise PeriodLockedException(period.status, action)

        result = await self.db.execute(
            update(PayrollPeriod)
            .where(PayrollPeriod.id == period_id, PayrollPeriod.status.notin_(EDIT_BLOCKED_STATUSES))
            .values(status=PayrollPeriodStatus.DRAFT)
        )
        if result.rowcount != 1:
            await self.db.refresh(period)
            raise PeriodLockedException(period.status, action)

        await self.db.refresh(period)
        return period

    def _record_event(
        self,
        period: PayrollPeriod,
        actor_id: str,
        action: str,
        from_status: PayrollPeriodStatus,
        to_status: PayrollPeriodStatus,
        comment: Optional[str],
    ) -> PayrollApprovalEvent:
        event = PayrollApprovalEvent(
            period_id=period.id,
            actor_id=actor_id,
            action=action,
            from_status=from_status,
            to_status=to_status,
            comment=comment,
            created_at=datetime.now(timezone.utc),
        )
        self.db.add(event)
        return event

    async def approve(
        self,
        period_id: uuid.UUID,
        actor_id: str,
        comment: Optional[str] = None,
    ) -> PayrollPeriod:
        """Approve a CALCULATED period and record the approval event."""
        now = datetime.now(timezone.utc)
        period, previous = await self.transition(
            period_id,
            {PayrollPeriodStatus.CALCULATED},
            PayrollPeriodStatus.APPROVED,
            "approve",
            approved_by=actor_id,
            approved_at=now,
            updated_by=actor_id,
        )
        self._record_event(period, actor_id, "APPROVE", previous, PayrollPeriodStatus.APPROVED, comment)
        await self.db.commit()
        await self.db.refresh(period)

        logger.info(f"Payroll period {period.label} approved by {actor_id}")
        return period

    async def lock(
        self,
        period_id: uuid.UUID,
        actor_id: str,
        comment: Optional[str] = None,
    ) -> PayrollPeriod:
        """Lock a calculated period. LOCKED is terminal."""
        now = datetime.now(timezone.utc)
        period, previous = await self.transition(
            period_id,
            LOCKABLE_STATUSES,
            PayrollPeriodStatus.LOCKED,
            "lock",
            locked_by=actor_id,
            locked_at=now,
            updated_by=actor_id,
        )
        self._record_event(period, actor_id, "LOCK", previous, PayrollPeriodStatus.LOCKED, comment)
        await self.db.commit()
        await self.db.refresh(period)

        logger.info(f"Payroll period {period.label} locked by {actor_id}")
        return period

    async def list_events(self, period_id: uuid.UUID) -> List[PayrollApprovalEvent]:
        result = await self.db.execute(
            select(PayrollApprovalEvent)
            .where(PayrollApprovalEvent.period_id == period_id)
            .order_by(PayrollApprovalEvent.created_at)
        )
        return list(result.scalars().all())

    # ===========================================
    # CARRY FORWARD
    # ===========================================

    async def carry_forward(
        self,
        target_period_id: uuid.UUID,
        base_period_id: Optional[uuid.UUID] = None,
        actor_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Copy a prior period's inputs and expenses into a target period.

        The base defaults to the nearest earlier period. Override rows in
        the target are kept; other rows for the same key are replaced.
        """
        target = await self.get_period(target_period_id)
        if target.status in EDIT_BLOCKED_STATUSES:
            raise PeriodLockedException(target.status, "carry forward")

        if base_period_id is not None:
            if base_period_id == target.id:
                raise ValidationException("A period cannot carry forward into itself", field="base_period_id")
            base = await self.get_period(base_period_id)
        else:
            base = await self.get_previous_period(target)
            if base is None:
                raise NotFoundException("Previous payroll period", message="No earlier payroll period to carry forward from")

        target = await self.claim_for_edit(target.id, "carry forward")

        base_inputs = (await self.db.execute(
            select(PayrollInputValue).where(PayrollInputValue.period_id == base.id)
        )).scalars().all()
        existing = {
            (row.normalized_name, row.component_key): row
            for row in (await self.db.execute(
                select(PayrollInputValue).where(PayrollInputValue.period_id == target.id)
            )).scalars().all()
        }

        copied = skipped = 0
        for source in base_inputs:
            provenance = {
                "carried_from_period_id": str(base.id),
                "carried_from_period": base.label,
                "source_sheet": source.source_sheet,
                "source_cell": source.source_cell,
            }
            row = existing.get((source.normalized_name, source.component_key))
            if row is not None and row.is_override:
                skipped += 1
                continue
            if row is None:
                row = PayrollInputValue(
                    period_id=target.id,
                    normalized_name=source.normalized_name,
                    component_key=source.component_key,
                    created_by=actor_id,
                )
                self.db.add(row)
            row.payroll_name = source.payroll_name
            row.employee_id = source.employee_id
            row.amount = source.amount
            row.source_method = InputSourceMethod.CARRY_FORWARD
            row.source_sheet = source.source_sheet
            row.source_cell = source.source_cell
            row.source_priority = source.source_priority
            row.is_override = False
            row.note = "Carried forward"
            row.provenance_json = provenance
            row.updated_by = actor_id
            copied += 1

        await self.db.execute(
            delete(PayrollExpenseEntry).where(
                PayrollExpenseEntry.period_id == target.id,
                PayrollExpenseEntry.sheet_name == CARRY_FORWARD_SHEET,
            )
        )
        base_expenses = (await self.db.execute(
            select(PayrollExpenseEntry).where(PayrollExpenseEntry.period_id == base.id)
        )).scalars().all()
        for expense in base_expenses:
            self.db.add(PayrollExpenseEntry(
                period_id=target.id,
                payroll_name=expense.payroll_name,
                normalized_name=expense.normalized_name,
                employee_id=expense.employee_id,
                category_key=expense.category_key,
                description=expense.description,
                amount=expense.amount,
                sheet_name=CARRY_FORWARD_SHEET,
                row_ref=expense.row_ref,
                created_by=actor_id,
            ))

        if target.source_type == PeriodSourceType.MANUAL:
            target.source_type = PeriodSourceType.CARRY_FORWARD
        target.updated_by = actor_id
        await self.db.commit()

        logger.info(
            f"Carried forward {copied} inputs and {len(base_expenses)} expenses "
            f"from {base.label} into {target.label}"
        )
        return {
            "period_id": target.id,
            "base_period_id": base.id,
            "inputs_copied": copied,
            "overrides_kept": skipped,
            "expenses_copied": len(base_expenses),
        }

    # ===========================================
    # INPUT EDITS
    # ===========================================

    async def _employee_for_name(self, normalized_name: str) -> Optional[uuid.UUID]:
        ids = await IdentityResolutionService(self.db).employee_ids_for([normalized_name])
        return ids.get(normalized_name)

    async def upsert_input_override(
        self,
        period_id: uuid.UUID,
        payroll_name: str,
        component_key: str,
        amount: Decimal,
        note: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> PayrollInputValue:
        """Set one input value by hand. Manual values are overrides."""
        normalized = normalize_payroll_name(payroll_name)
        if not normalized:
            raise ValidationException("Payroll name is empty after normalization", field="payroll_name")
        key = (component_key or "").strip().upper()
        if not key:
            raise ValidationException("Component key is required", field="component_key")

        period = await self.claim_for_edit(period_id)
        result = await self.db.execute(
            select(PayrollInputValue).where(
                PayrollInputValue.period_id == period.id,
                PayrollInputValue.normalized_name == normalized,
                PayrollInputValue.component_key == key,
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            row = PayrollInputValue(
                period_id=period.id,
                normalized_name=normalized,
                component_key=key,
                created_by=actor_id,
            )
            self.db.add(row)

        row.payroll_name = payroll_name.strip()
        row.employee_id = await self._employee_for_name(normalized)
        row.amount = to_money(amount)
        row.source_method = InputSourceMethod.MANUAL
        row.source_sheet = None
        row.source_cell = None
        row.source_priority = 0
        row.is_override = True
        row.note = note
        row.provenance_json = {"edited_by": actor_id}
        row.updated_by = actor_id

        await self.db.commit()
        await self.db.refresh(row)
        logger.info(f"Input override {key} for '{normalized}' set in period {period.label}")
        return row

    async def delete_input(self, period_id: uuid.UUID, input_id: uuid.UUID) -> None:
        period = await self.claim_for_edit(period_id)
        row = await self.db.get(PayrollInputValue, input_id)
        if row is None or row.period_id != period.id:
            raise NotFoundException("Input value", input_id)
        await self.db.delete(row)
        await self.db.commit()

    async def list_inputs(self, period_id: uuid.UUID) -> List[PayrollInputValue]:
        result = await self.db.execute(
            select(PayrollInputValue)
            .where(PayrollInputValue.period_id == period_id)
            .order_by(PayrollInputValue.normalized_name, PayrollInputValue.component_key)
        )
        return list(result.scalars().all())

    # ===========================================
    # EXPENSES
    # ===========================================

    async def add_expense(
        self,
        period_id: uuid.UUID,
        category_key: str,
        amount: Decimal,
        description: Optional[str] = None,
        payroll_name: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> PayrollExpenseEntry:
        period = await self.claim_for_edit(period_id)
        normalized = normalize_payroll_name(payroll_name) if payroll_name else None
        expense = PayrollExpenseEntry(
            period_id=period.id,
            payroll_name=payroll_name.strip() if payroll_name else None,
            normalized_name=normalized or None,
            employee_id=await self._employee_for_name(normalized) if normalized else None,
            category_key=category_key.strip().upper(),
            description=description,
            amount=to_money(amount),
            created_by=actor_id,
            updated_by=actor_id,
        )
        self.db.add(expense)
        await self.db.commit()
        await self.db.refresh(expense)
        return expense

    async def delete_expense(self, period_id: uuid.UUID, expense_id: uuid.UUID) -> None:
        period = await self.claim_for_edit(period_id)
        expense = await self.db.get(PayrollExpenseEntry, expense_id)
        if expense is None or expense.period_id != period.id:
            raise NotFoundException("Expense entry", expense_id)
        await self.db.delete(expense)
        await self.db.commit()

    async def list_expenses(self, period_id: uuid.UUID) -> List[PayrollExpenseEntry]:
        result = await self.db.execute(
            select(PayrollExpenseEntry)
            .where(PayrollExpenseEntry.period_id == period_id)
            .order_by(PayrollExpenseEntry.category_key, PayrollExpenseEntry.created_at)
        )
        return list(result.scalars().all())

    # ===========================================
    # ATTENDANCE
    # ===========================================

    async def upsert_attendance(
        self,
        period_id: uuid.UUID,
        employee_id: uuid.UUID,
        entries: List[Tuple[date, AttendanceStatus]],
        actor_id: Optional[str] = None,
    ) -> List[PayrollAttendanceEntry]:
        """Record daily attendance for one employee inside a period."""
        period = await self.get_period(period_id)
        employee = await self.db.get(Employee, employee_id)
        if employee is None:
            raise NotFoundException("Employee", employee_id)

        outside = [d.isoformat() for d, _ in entries if not period.period_start <= d <= period.period_end]
        if outside:
            raise ValidationException(
                "Attendance dates must lie inside the payroll period",
                field="entries",
                details={"dates": outside},
            )

        period = await self.claim_for_edit(period_id, "attendance")
        dates = [d for d, _ in entries]
        existing = {
            row.attendance_date: row
            for row in (await self.db.execute(
                select(PayrollAttendanceEntry).where(
                    PayrollAttendanceEntry.employee_id == employee.id,
                    PayrollAttendanceEntry.attendance_date.in_(dates),
                )
            )).scalars().all()
        }

        saved = []
        for attendance_date, status in entries:
            row = existing.get(attendance_date)
            if row is None:
                row = PayrollAttendanceEntry(
                    employee_id=employee.id,
                    attendance_date=attendance_date,
                    created_by=actor_id,
                )
                self.db.add(row)
                existing[attendance_date] = row
            row.period_id = period.id
            row.status = status
            row.updated_by = actor_id
            saved.append(row)

        await self.db.commit()
        logger.info(f"Recorded {len(saved)} attendance days for employee {employee.id} in {period.label}")
        return saved

    # ===========================================
    # COMPARISON AND DASHBOARD
    # ===========================================

    async def _period_snapshot(self, period_id: uuid.UUID) -> Dict[str, Dict[str, Any]]:
        grouped: Dict[str, Dict[str, Any]] = defaultdict(lambda: {"payroll_name": None, "inputs": {}, "computed": {}})
        for row in await self.list_inputs(period_id):
            entry = grouped[row.normalized_name]
            entry["payroll_name"] = entry["payroll_name"] or row.payroll_name
            entry["inputs"][row.component_key] = str(row.amount)
        result = await self.db.execute(
            select(PayrollComputedValue).where(PayrollComputedValue.period_id == period_id)
        )
        for row in result.scalars().all():
            entry = grouped[row.normalized_name]
            entry["payroll_name"] = entry["payroll_name"] or row.payroll_name
            entry["computed"][row.metric_key] = str(row.amount)
        return grouped

    async def compare_with_previous(self, period_id: uuid.UUID) -> Dict[str, Any]:
        """Inputs and computed values side by side with the previous period."""
        period = await self.get_period(period_id)
        previous = await self.get_previous_period(period)

        current = await self._period_snapshot(period.id)
        prior = await self._period_snapshot(previous.id) if previous else {}

        identities = []
        for normalized in sorted(set(current) | set(prior)):
            now_entry = current.get(normalized, {})
            prior_entry = prior.get(normalized, {})
            identities.append({
                "normalized_name": normalized,
                "payroll_name": now_entry.get("payroll_name") or prior_entry.get("payroll_name"),
                "current": {"inputs": now_entry.get("inputs", {}), "computed": now_entry.get("computed", {})},
                "previous": {"inputs": prior_entry.get("inputs", {}), "computed": prior_entry.get("computed", {})},
            })

        return {
            "period_id": period.id,
            "period_label": period.label,
            "previous_period_id": previous.id if previous else None,
            "previous_period_label": previous.label if previous else None,
            "identities": identities,
        }

    async def get_dashboard(self) -> Dict[str, Any]:
        result = await self.db.execute(
            select(PayrollPeriod.status, func.count()).group_by(PayrollPeriod.status)
        )
        periods_by_status = {s.value: 0 for s in PayrollPeriodStatus}
        for status, count in result.all():
            periods_by_status[status.value] = count

        mappings = await IdentityResolutionService(self.db).count_by_status()

        receipts = await self.db.execute(
            select(PayrollReceipt.status, func.count()).group_by(PayrollReceipt.status)
        )
        receipts_by_status = {status.value: count for status, count in receipts.all()}

        return {
            "periods_by_status": periods_by_status,
            "unresolved_mappings": mappings[IdentityMappingStatus.UNRESOLVED.value],
            "ambiguous_mappings": mappings[IdentityMappingStatus.AMBIGUOUS.value],
            "receipts_by_status": receipts_by_status,
        }
