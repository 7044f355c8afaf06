"""
Payroll Recon - Identity Mapping Router

Review and resolve payroll name to employee mappings.
"""

import uuid
from typing import Optional, List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_recon.database import get_async_session
from payroll_recon.dependencies import Actor, require_payroll_manager
from payroll_recon.models.payroll import IdentityMappingStatus
from payroll_recon.schemas.payroll import MappingResponse, MappingResolveRequest, MappingUpdateRequest
from payroll_recon.services.identity_resolution_service import IdentityResolutionService


router = APIRouter()


@router.get(
    "/mappings",
    response_model=List[MappingResponse],
    summary="List identity mappings",
)
async def list_mappings(
    status_filter: Optional[IdentityMappingStatus] = Query(None, alias="status"),
    search: Optional[str] = Query(None, max_length=255),
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    return await IdentityResolutionService(db).list_mappings(status=status_filter, search=search)


@router.post(
    "/mappings/resolve",
    summary="Run automatic identity resolution",
)
async def resolve_mappings(
    data: Optional[MappingResolveRequest] = None,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    """
    Match names against active employees by exact normalized name.

    Without names, every known mapping is re-evaluated. Manual bindings
    are kept as they are.
    """
    service = IdentityResolutionService(db)
    names = data.names if data and data.names else [m.display_name for m in await service.list_mappings()]
    summary = await service.resolve_names(names)
    return summary.to_dict()


@router.put(
    "/mappings/{mapping_id}",
    response_model=MappingResponse,
    summary="Bind a mapping to an employee",
)
async def update_mapping(
    mapping_id: uuid.UUID,
    data: MappingUpdateRequest,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    service = IdentityResolutionService(db)
    return await service.resolve_manually(mapping_id, data.employee_id, notes=data.notes)
