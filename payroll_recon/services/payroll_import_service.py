"""
Payroll Recon - Payroll Import Service

Persists a parsed workbook: audit batch and row snapshots, identity
resolution of discovered names, month periods for every period key that
carries data, and input values upserted by natural key.

Override rows are never replaced by an import. Periods that no longer
accept edits are skipped and reported.
"""

import hashlib
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_recon.models.payroll import (
    EDIT_BLOCKED_STATUSES,
    InputSourceMethod,
    PayrollExpenseEntry,
    PayrollImportBatch,
    PayrollImportRow,
    PayrollInputValue,
    PayrollPeriod,
    PayrollPeriodStatus,
)
from payroll_recon.services.identity_resolution_service import IdentityResolutionService
from payroll_recon.services.payroll_computation_service import PayrollComputationService
from payroll_recon.services.payroll_period_service import PayrollPeriodService
from payroll_recon.services.workbook_parser import WorkbookParseResult, parse_payroll_workbook
from payroll_recon.utils.error_handling import AppException, ValidationException
from payroll_recon.utils.normalizers import sort_period_keys, to_money

logger = logging.getLogger(__name__)


MAX_BACKFILL_MONTHS = 120


@dataclass
class ImportSummary:
    batch_id: uuid.UUID
    file_name: str
    checksum: str
    row_count: int = 0
    input_count: int = 0
    expense_count: int = 0
    period_keys: List[str] = field(default_factory=list)
    imported_period_keys: List[str] = field(default_factory=list)
    created_period_keys: List[str] = field(default_factory=list)
    skipped_period_keys: List[str] = field(default_factory=list)
    period_ids: Dict[str, uuid.UUID] = field(default_factory=dict)
    values_upserted: int = 0
    overrides_kept: int = 0
    mappings: Dict[str, int] = field(default_factory=dict)
    ties: List[Dict[str, Any]] = field(default_factory=list)
    sheets: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": str(self.batch_id),
            "file_name": self.file_name,
            "checksum": self.checksum,
            "row_count": self.row_count,
            "input_count": self.input_count,
            "expense_count": self.expense_count,
            "period_keys": self.period_keys,
            "imported_period_keys": self.imported_period_keys,
            "created_period_keys": self.created_period_keys,
            "skipped_period_keys": self.skipped_period_keys,
            "period_ids": {k: str(v) for k, v in self.period_ids.items()},
            "values_upserted": self.values_upserted,
            "overrides_kept": self.overrides_kept,
            "mappings": self.mappings,
            "ties": self.ties,
            "sheets": self.sheets,
        }


class PayrollImportService:
    """Service for importing payroll workbooks."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.periods = PayrollPeriodService(db)
        self.identities = IdentityResolutionService(db)

    # ===========================================
    # IMPORT
    # ===========================================

    async def import_workbook(
        self,
        content: bytes,
        file_name: str,
        actor_id: Optional[str] = None,
        only_period_keys: Optional[Sequence[str]] = None,
    ) -> ImportSummary:
        parsed = parse_payroll_workbook(content)
        return await self.import_parsed(parsed, content, file_name, actor_id, only_period_keys)

    async def import_parsed(
        self,
        parsed: WorkbookParseResult,
        content: bytes,
        file_name: str,
        actor_id: Optional[str] = None,
        only_period_keys: Optional[Sequence[str]] = None,
    ) -> ImportSummary:
        """
        Persist a parsed workbook in one transaction.

        When ``only_period_keys`` is given, values for other periods are
        not written; row snapshots are always kept.
        """
        checksum = hashlib.sha256(content).hexdigest()
        target_keys = parsed.value_period_keys
        if only_period_keys is not None:
            wanted = set(only_period_keys)
            target_keys = [k for k in target_keys if k in wanted]

        batch = PayrollImportBatch(
            file_name=file_name,
            checksum=checksum,
            row_count=len(parsed.import_rows),
            input_count=len(parsed.input_values),
            expense_count=len(parsed.expense_entries),
            period_keys=list(parsed.period_keys),
            created_by=actor_id,
            updated_by=actor_id,
        )
        self.db.add(batch)
        await self.db.flush()

        for row in parsed.import_rows:
            self.db.add(PayrollImportRow(
                batch_id=batch.id,
                sheet_name=row.sheet_name,
                row_number=row.row_number,
                is_history=row.is_history,
                payroll_name=row.payroll_name,
                normalized_name=row.normalized_name,
                row_json=row.row_json,
            ))

        mapping_summary = await self.identities.resolve_names(parsed.payroll_names, commit=False)
        names = {v.normalized_name for v in parsed.input_values}
        names.update(e.normalized_name for e in parsed.expense_entries if e.normalized_name)
        employee_ids = await self.identities.employee_ids_for(names)

        summary = ImportSummary(
            batch_id=batch.id,
            file_name=file_name,
            checksum=checksum,
            row_count=batch.row_count,
            input_count=batch.input_count,
            expense_count=batch.expense_count,
            period_keys=list(parsed.period_keys),
            mappings=mapping_summary.to_dict(),
            ties=[t.to_dict() for t in parsed.ties],
            sheets=dict(parsed.sheets),
        )

        for period_key in target_keys:
            period, created = await self.periods.ensure_month_period(period_key, actor_id)
            if created:
                summary.created_period_keys.append(period_key)
            elif period.status in EDIT_BLOCKED_STATUSES:
                logger.warning(f"Import skipped period {period.label} in status {period.status.value}")
                summary.skipped_period_keys.append(period_key)
                continue
            else:
                period = await self.periods.claim_for_edit(period.id, "import")

            upserted, kept = await self._upsert_inputs(period, period_key, parsed, employee_ids, batch, actor_id)
            expenses = await self._replace_expenses(period, period_key, parsed, employee_ids, batch, actor_id)
            summary.values_upserted += upserted
            summary.overrides_kept += kept
            summary.imported_period_keys.append(period_key)
            summary.period_ids[period_key] = period.id

            period_summary = dict(period.summary_json or {})
            period_summary["import"] = {
                "batch_id": str(batch.id),
                "file_name": file_name,
                "values_upserted": upserted,
                "overrides_kept": kept,
                "expenses": expenses,
                "imported_at": datetime.now(timezone.utc).isoformat(),
            }
            period.summary_json = period_summary

        batch.summary_json = summary.to_dict()
        await self.db.commit()

        logger.info(
            f"Imported workbook '{file_name}' ({checksum[:12]}): "
            f"{len(summary.imported_period_keys)} periods, {summary.values_upserted} values, "
            f"{len(summary.skipped_period_keys)} skipped"
        )
        return summary

    async def _upsert_inputs(
        self,
        period: PayrollPeriod,
        period_key: str,
        parsed: WorkbookParseResult,
        employee_ids: Dict[str, Optional[uuid.UUID]],
        batch: PayrollImportBatch,
        actor_id: Optional[str],
    ):
        """
        Write one period's values. Returns (upserted, overrides kept).

        An existing workbook value is replaced only by a source of equal
        or higher priority, so overlapping imports settle on the same row.
        """
        incoming = [v for v in parsed.input_values if v.period_key == period_key]
        existing = {
            (row.normalized_name, row.component_key): row
            for row in (await self.db.execute(
                select(PayrollInputValue).where(PayrollInputValue.period_id == period.id)
            )).scalars().all()
        }

        upserted = kept = 0
        for value in incoming:
            row = existing.get((value.normalized_name, value.component_key))
            if row is not None:
                if row.is_override:
                    kept += 1
                    continue
                if row.source_method == InputSourceMethod.WORKBOOK and row.source_priority > value.source_priority:
                    continue
            else:
                row = PayrollInputValue(
                    period_id=period.id,
                    normalized_name=value.normalized_name,
                    component_key=value.component_key,
                    created_by=actor_id,
                )
                self.db.add(row)
                existing[(value.normalized_name, value.component_key)] = row

            row.payroll_name = value.payroll_name
            row.employee_id = employee_ids.get(value.normalized_name)
            row.amount = to_money(value.amount)
            row.source_method = InputSourceMethod.WORKBOOK
            row.source_sheet = value.source_sheet
            row.source_cell = value.source_cell
            row.source_priority = value.source_priority
            row.is_override = False
            row.note = None
            row.provenance_json = {
                "batch_id": str(batch.id),
                "sheet": value.source_sheet,
                "cell": value.source_cell,
                "priority": value.source_priority,
            }
            row.updated_by = actor_id
            upserted += 1

        await self.db.flush()
        return upserted, kept

    async def _replace_expenses(
        self,
        period: PayrollPeriod,
        period_key: str,
        parsed: WorkbookParseResult,
        employee_ids: Dict[str, Optional[uuid.UUID]],
        batch: PayrollImportBatch,
        actor_id: Optional[str],
    ) -> int:
        """Workbook expenses of a period are replaced by the latest import."""
        await self.db.execute(
            delete(PayrollExpenseEntry).where(
                PayrollExpenseEntry.period_id == period.id,
                PayrollExpenseEntry.import_batch_id.is_not(None),
            )
        )
        count = 0
        for entry in parsed.expense_entries:
            if entry.period_key != period_key:
                continue
            self.db.add(PayrollExpenseEntry(
                period_id=period.id,
                import_batch_id=batch.id,
                payroll_name=entry.payroll_name,
                normalized_name=entry.normalized_name,
                employee_id=employee_ids.get(entry.normalized_name) if entry.normalized_name else None,
                category_key=entry.category_key,
                description=entry.description,
                amount=to_money(entry.amount),
                sheet_name=entry.sheet_name,
                row_ref=entry.row_ref,
                created_by=actor_id,
                updated_by=actor_id,
            ))
            count += 1
        return count

    async def list_batches(self, limit: int = 50) -> List[PayrollImportBatch]:
        result = await self.db.execute(
            select(PayrollImportBatch).order_by(PayrollImportBatch.created_at.desc()).limit(limit)
        )
        return list(result.scalars().all())

    # ===========================================
    # BACKFILL
    # ===========================================

    async def backfill(
        self,
        content: bytes,
        file_name: str,
        months: int = 12,
        lock: bool = False,
        tolerance: Optional[Decimal] = None,
        actor_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Import and recalculate the latest ``months`` periods of a workbook.

        With ``lock``, each period that ends CALCULATED is locked. A period
        that cannot be recalculated is reported and the rest continue.
        """
        if not 1 <= months <= MAX_BACKFILL_MONTHS:
            raise ValidationException(
                f"months must be between 1 and {MAX_BACKFILL_MONTHS}", field="months",
            )

        parsed = parse_payroll_workbook(content)
        selected = sort_period_keys(parsed.value_period_keys)[-months:]
        summary = await self.import_parsed(parsed, content, file_name, actor_id, only_period_keys=selected)

        computation = PayrollComputationService(self.db)
        periods = []
        for period_key in summary.imported_period_keys:
            period_id = summary.period_ids[period_key]
            outcome: Dict[str, Any] = {"period_key": period_key, "period_id": str(period_id), "locked": False}
            try:
                result = await computation.recalculate(period_id, tolerance, actor_id)
                outcome["status"] = result.status.value
                outcome["mismatches"] = len(result.mismatches)
                outcome["failed"] = len(result.failures)
                if lock and result.status == PayrollPeriodStatus.CALCULATED:
                    locked = await self.periods.lock(period_id, actor_id or "system", comment="Backfill")
                    outcome["status"] = locked.status.value
                    outcome["locked"] = True
            except AppException as e:
                await self.db.rollback()
                logger.warning(f"Backfill could not finish {period_key}: {e.message}")
                outcome["status"] = "ERROR"
                outcome["error"] = e.message
            periods.append(outcome)

        logger.info(f"Backfill of '{file_name}' processed {len(periods)} periods (lock={lock})")
        return {
            "months_requested": months,
            "selected_period_keys": selected,
            "skipped_period_keys": summary.skipped_period_keys,
            "import": summary.to_dict(),
            "periods": periods,
        }
