"""
Payroll Recon - Identity Resolution Service

Maps free-text payroll names to canonical employees.

Each distinct normalized name ends in exactly one state:
- AUTO_MATCHED: one employee shares the normalized name
- AMBIGUOUS: several employees share it, none is bound
- UNRESOLVED: nobody shares it
- MANUAL_MATCHED: an operator bound it; automatic runs leave it alone

Mappings are keyed by normalized name, so re-running resolution updates
rows instead of adding them.
"""

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_recon.models.payroll import IdentityMappingStatus, PayrollIdentityMapping
from payroll_recon.models.payroll_settings import Employee
from payroll_recon.utils.error_handling import NotFoundException, ValidationException
from payroll_recon.utils.normalizers import normalize_payroll_name

logger = logging.getLogger(__name__)


@dataclass
class MappingSyncSummary:
    total: int = 0
    auto_matched: int = 0
    ambiguous: int = 0
    unresolved: int = 0
    manual_kept: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def classify_candidates(candidates: List[uuid.UUID]):
    """Status and bound employee for a list of matching employee ids."""
    if len(candidates) == 1:
        return IdentityMappingStatus.AUTO_MATCHED, candidates[0]
    if len(candidates) > 1:
        return IdentityMappingStatus.AMBIGUOUS, None
    return IdentityMappingStatus.UNRESOLVED, None


class IdentityResolutionService:
    """Service for matching payroll names to employees."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _employee_index(self) -> Dict[str, List[uuid.UUID]]:
        result = await self.db.execute(
            select(Employee.id, Employee.full_name).where(Employee.is_active.is_(True))
        )
        index: Dict[str, List[uuid.UUID]] = defaultdict(list)
        for employee_id, full_name in result.all():
            index[normalize_payroll_name(full_name)].append(employee_id)
        return index

    async def _get_by_normalized(self, normalized_names: Iterable[str]) -> Dict[str, PayrollIdentityMapping]:
        names = list(normalized_names)
        if not names:
            return {}
        result = await self.db.execute(
            select(PayrollIdentityMapping).where(PayrollIdentityMapping.normalized_name.in_(names))
        )
        return {m.normalized_name: m for m in result.scalars().all()}

    async def resolve_names(self, names: Iterable[str], commit: bool = True) -> MappingSyncSummary:
        """
        Run automatic matching for a batch of payroll names.

        Manual bindings are kept as they are and counted in ``manual_kept``.
        """
        display_by_normalized: Dict[str, str] = {}
        for name in names:
            if not name or not name.strip():
                continue
            normalized = normalize_payroll_name(name)
            if normalized:
                display_by_normalized.setdefault(normalized, name.strip())

        summary = MappingSyncSummary(total=len(display_by_normalized))
        if not display_by_normalized:
            return summary

        index = await self._employee_index()
        existing = await self._get_by_normalized(display_by_normalized)
        now = datetime.now(timezone.utc)

        for normalized in sorted(display_by_normalized):
            mapping = existing.get(normalized)
            if mapping is not None and mapping.status == IdentityMappingStatus.MANUAL_MATCHED:
                summary.manual_kept += 1
                continue

            candidates = index.get(normalized, [])
            status, employee_id = classify_candidates(candidates)
            if status == IdentityMappingStatus.AUTO_MATCHED:
                summary.auto_matched += 1
            elif status == IdentityMappingStatus.AMBIGUOUS:
                summary.ambiguous += 1
            else:
                summary.unresolved += 1

            values = dict(
                display_name=display_by_normalized[normalized],
                employee_id=employee_id,
                status=status,
                candidate_count=len(candidates),
                last_matched_at=now if employee_id else None,
            )
            if mapping is None:
                await self._insert_mapping(normalized, values)
            else:
                for key, value in values.items():
                    setattr(mapping, key, value)

        await self.db.flush()
        if commit:
            await self.db.commit()

        logger.info(
            f"Identity resolution: {summary.total} names, {summary.auto_matched} matched, "
            f"{summary.ambiguous} ambiguous, {summary.unresolved} unresolved, {summary.manual_kept} manual"
        )
        return summary

    async def _insert_mapping(self, normalized: str, values: Dict) -> None:
        """Insert a mapping; a concurrent insert of the same name becomes an update."""
        try:
            async with self.db.begin_nested():
                self.db.add(PayrollIdentityMapping(normalized_name=normalized, **values))
        except IntegrityError:
            result = await self.db.execute(
                select(PayrollIdentityMapping).where(PayrollIdentityMapping.normalized_name == normalized)
            )
            mapping = result.scalar_one()
            if mapping.status != IdentityMappingStatus.MANUAL_MATCHED:
                for key, value in values.items():
                    setattr(mapping, key, value)

    async def resolve_manually(
        self,
        mapping_id: uuid.UUID,
        employee_id: uuid.UUID,
        notes: Optional[str] = None,
    ) -> PayrollIdentityMapping:
        """Bind a mapping to an operator-chosen employee."""
        mapping = await self.db.get(PayrollIdentityMapping, mapping_id)
        if mapping is None:
            raise NotFoundException("Identity mapping", mapping_id)
        employee = await self.db.get(Employee, employee_id)
        if employee is None:
            raise ValidationException(f"Employee {employee_id} does not exist", field="employee_id")

        mapping.employee_id = employee.id
        mapping.status = IdentityMappingStatus.MANUAL_MATCHED
        mapping.notes = notes
        mapping.last_matched_at = datetime.now(timezone.utc)
        await self.db.commit()
        await self.db.refresh(mapping)

        logger.info(f"Mapping '{mapping.normalized_name}' manually bound to employee {employee.id}")
        return mapping

    async def list_mappings(
        self,
        status: Optional[IdentityMappingStatus] = None,
        search: Optional[str] = None,
    ) -> List[PayrollIdentityMapping]:
        query = select(PayrollIdentityMapping)
        if status:
            query = query.where(PayrollIdentityMapping.status == status)
        if search:
            query = query.where(PayrollIdentityMapping.normalized_name.contains(normalize_payroll_name(search)))
        result = await self.db.execute(query.order_by(PayrollIdentityMapping.normalized_name))
        return list(result.scalars().all())

    async def count_by_status(self) -> Dict[str, int]:
        result = await self.db.execute(
            select(PayrollIdentityMapping.status, func.count()).group_by(PayrollIdentityMapping.status)
        )
        counts = {s.value: 0 for s in IdentityMappingStatus}
        for status, count in result.all():
            counts[status.value] = count
        return counts

    async def employee_ids_for(self, normalized_names: Iterable[str]) -> Dict[str, Optional[uuid.UUID]]:
        """Bound employee per normalized name (missing names are absent)."""
        mappings = await self._get_by_normalized(set(normalized_names))
        return {name: m.employee_id for name, m in mappings.items()}
