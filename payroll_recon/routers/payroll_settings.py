"""
Payroll Recon - Payroll Master Data Router

Financial years and tax brackets, travel tiers, public holidays, salary
heads, employees with salary revisions and the dispatch template.

Read endpoints need "payroll:manage"; writes need "payroll:master-data".
"""

import uuid
from typing import Optional, List

from fastapi import APIRouter, Depends, status, Query
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_recon.database import get_async_session
from payroll_recon.dependencies import Actor, require_master_data_editor, require_payroll_manager
from payroll_recon.services.payroll_master_data_service import PayrollMasterDataService
from payroll_recon.schemas.payroll import MessageResponse
from payroll_recon.schemas.payroll_settings import (
    FinancialYearCreate,
    FinancialYearResponse,
    BracketsReplaceRequest,
    TravelTierCreate,
    TravelTierUpdate,
    TravelTierResponse,
    TravelTierSeedRequest,
    PublicHolidayCreate,
    PublicHolidayResponse,
    SalaryHeadCreate,
    SalaryHeadUpdate,
    SalaryHeadResponse,
    EmployeeCreate,
    EmployeeUpdate,
    EmployeeResponse,
    SalaryRevisionCreate,
    SalaryRevisionResponse,
    PayrollConfigUpdate,
    PayrollConfigResponse,
)
from payroll_recon.utils.error_handling import NotFoundException


router = APIRouter()


# ===========================================
# FINANCIAL YEARS
# ===========================================

@router.get("/financial-years", response_model=List[FinancialYearResponse])
async def list_financial_years(
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    return await PayrollMasterDataService(db).list_financial_years()


@router.post(
    "/financial-years",
    response_model=FinancialYearResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a financial year with its tax brackets",
)
async def create_financial_year(
    data: FinancialYearCreate,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_master_data_editor),
):
    service = PayrollMasterDataService(db)
    return await service.create_financial_year(data.model_dump(), actor_id=actor.actor_id)


@router.get("/financial-years/{year_id}", response_model=FinancialYearResponse)
async def get_financial_year(
    year_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    return await PayrollMasterDataService(db).get_financial_year(year_id)


@router.put(
    "/financial-years/{year_id}/brackets",
    response_model=FinancialYearResponse,
    summary="Replace the bracket table of a year",
)
async def replace_brackets(
    year_id: uuid.UUID,
    data: BracketsReplaceRequest,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_master_data_editor),
):
    service = PayrollMasterDataService(db)
    return await service.replace_brackets(
        year_id,
        [b.model_dump() for b in data.brackets],
        actor_id=actor.actor_id,
    )


@router.post(
    "/financial-years/{year_id}/activate",
    response_model=FinancialYearResponse,
    summary="Make a financial year the active one",
)
async def activate_financial_year(
    year_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_master_data_editor),
):
    return await PayrollMasterDataService(db).activate_financial_year(year_id, actor_id=actor.actor_id)


@router.delete("/financial-years/{year_id}", response_model=MessageResponse)
async def delete_financial_year(
    year_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_master_data_editor),
):
    await PayrollMasterDataService(db).delete_financial_year(year_id)
    return MessageResponse(message="Financial year deleted")


# ===========================================
# TRAVEL TIERS
# ===========================================

@router.get("/travel-tiers", response_model=List[TravelTierResponse])
async def list_travel_tiers(
    active_only: bool = Query(False),
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    return await PayrollMasterDataService(db).list_travel_tiers(active_only=active_only)


@router.post(
    "/travel-tiers",
    response_model=TravelTierResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_travel_tier(
    data: TravelTierCreate,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_master_data_editor),
):
    return await PayrollMasterDataService(db).create_travel_tier(data.model_dump(), actor_id=actor.actor_id)


@router.post(
    "/travel-tiers/seed",
    summary="Insert the standard travel tier table",
)
async def seed_travel_tiers(
    data: Optional[TravelTierSeedRequest] = None,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_master_data_editor),
):
    service = PayrollMasterDataService(db)
    kwargs = {"effective_from": data.effective_from} if data and data.effective_from else {}
    created = await service.seed_travel_tiers(actor_id=actor.actor_id, **kwargs)
    return {"created": created}


@router.patch("/travel-tiers/{tier_id}", response_model=TravelTierResponse)
async def update_travel_tier(
    tier_id: uuid.UUID,
    data: TravelTierUpdate,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_master_data_editor),
):
    service = PayrollMasterDataService(db)
    return await service.update_travel_tier(tier_id, data.model_dump(exclude_unset=True), actor_id=actor.actor_id)


@router.delete("/travel-tiers/{tier_id}", response_model=MessageResponse)
async def delete_travel_tier(
    tier_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_master_data_editor),
):
    await PayrollMasterDataService(db).delete_travel_tier(tier_id)
    return MessageResponse(message="Travel tier deleted")


# ===========================================
# PUBLIC HOLIDAYS
# ===========================================

@router.get("/public-holidays", response_model=List[PublicHolidayResponse])
async def list_holidays(
    year: Optional[int] = Query(None, ge=1900, le=2200),
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    return await PayrollMasterDataService(db).list_holidays(year=year)


@router.post(
    "/public-holidays",
    response_model=PublicHolidayResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_holiday(
    data: PublicHolidayCreate,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_master_data_editor),
):
    return await PayrollMasterDataService(db).create_holiday(data.holiday_date, data.name)


@router.delete("/public-holidays/{holiday_id}", response_model=MessageResponse)
async def delete_holiday(
    holiday_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_master_data_editor),
):
    await PayrollMasterDataService(db).delete_holiday(holiday_id)
    return MessageResponse(message="Public holiday deleted")


# ===========================================
# SALARY HEADS
# ===========================================

@router.get("/salary-heads", response_model=List[SalaryHeadResponse])
async def list_salary_heads(
    active_only: bool = Query(False),
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    return await PayrollMasterDataService(db).list_salary_heads(active_only=active_only)


@router.post(
    "/salary-heads",
    response_model=SalaryHeadResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_salary_head(
    data: SalaryHeadCreate,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_master_data_editor),
):
    return await PayrollMasterDataService(db).create_salary_head(data.model_dump())


@router.patch("/salary-heads/{head_id}", response_model=SalaryHeadResponse)
async def update_salary_head(
    head_id: uuid.UUID,
    data: SalaryHeadUpdate,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_master_data_editor),
):
    return await PayrollMasterDataService(db).update_salary_head(head_id, data.model_dump(exclude_unset=True))


# ===========================================
# EMPLOYEES
# ===========================================

@router.get("/employees", response_model=List[EmployeeResponse])
async def list_employees(
    active_only: bool = Query(False),
    search: Optional[str] = Query(None, max_length=255),
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    return await PayrollMasterDataService(db).list_employees(active_only=active_only, search=search)


@router.post(
    "/employees",
    response_model=EmployeeResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_employee(
    data: EmployeeCreate,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_master_data_editor),
):
    return await PayrollMasterDataService(db).create_employee(data.model_dump(), actor_id=actor.actor_id)


@router.get("/employees/{employee_id}", response_model=EmployeeResponse)
async def get_employee(
    employee_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    return await PayrollMasterDataService(db).get_employee(employee_id)


@router.patch("/employees/{employee_id}", response_model=EmployeeResponse)
async def update_employee(
    employee_id: uuid.UUID,
    data: EmployeeUpdate,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_master_data_editor),
):
    service = PayrollMasterDataService(db)
    return await service.update_employee(employee_id, data.model_dump(exclude_unset=True), actor_id=actor.actor_id)


@router.get("/employees/{employee_id}/salary-revisions", response_model=List[SalaryRevisionResponse])
async def list_salary_revisions(
    employee_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    return await PayrollMasterDataService(db).list_salary_revisions(employee_id)


@router.post(
    "/employees/{employee_id}/salary-revisions",
    response_model=SalaryRevisionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_salary_revision(
    employee_id: uuid.UUID,
    data: SalaryRevisionCreate,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_master_data_editor),
):
    service = PayrollMasterDataService(db)
    return await service.create_salary_revision(
        employee_id,
        data.effective_from,
        [line.model_dump() for line in data.lines],
        note=data.note,
        actor_id=actor.actor_id,
    )


# ===========================================
# DISPATCH CONFIG
# ===========================================

@router.get("/config", response_model=PayrollConfigResponse)
async def get_config(
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    config = await PayrollMasterDataService(db).get_active_config()
    if config is None:
        raise NotFoundException("Payroll config", message="No active payroll configuration")
    return config


@router.put("/config", response_model=PayrollConfigResponse)
async def save_config(
    data: PayrollConfigUpdate,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_master_data_editor),
):
    return await PayrollMasterDataService(db).save_config(data.model_dump(), actor_id=actor.actor_id)


@router.post("/seed", summary="Seed system salary heads and travel tiers")
async def seed_defaults(
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_master_data_editor),
):
    return await PayrollMasterDataService(db).seed_defaults(actor_id=actor.actor_id)
