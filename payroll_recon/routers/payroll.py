"""
Payroll Recon - Payroll Router

API endpoints for payroll periods: lifecycle, inputs, workbook import,
recalculation, receipts and dispatch.

All endpoints require the "payroll:manage" capability.
"""

import logging
import uuid
from decimal import Decimal
from typing import Optional, List

from fastapi import APIRouter, Depends, status, Query, UploadFile, File, Form
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_recon.database import get_async_session
from payroll_recon.dependencies import Actor, require_payroll_manager
from payroll_recon.models.payroll import PayrollPeriodStatus
from payroll_recon.services.esignature_provider import ESignatureProvider, get_esignature_provider
from payroll_recon.services.payroll_computation_service import PayrollComputationService
from payroll_recon.services.payroll_import_service import PayrollImportService, MAX_BACKFILL_MONTHS
from payroll_recon.services.payroll_period_service import PayrollPeriodService
from payroll_recon.services.receipt_dispatch_service import ReceiptDispatchService
from payroll_recon.schemas.payroll import (
    # Period schemas
    PeriodCreate,
    PeriodResponse,
    PeriodListResponse,
    PeriodActionRequest,
    RecalculateRequest,
    CarryForwardRequest,
    ApprovalEventResponse,
    # Input schemas
    InputOverrideRequest,
    InputValueResponse,
    ExpenseCreate,
    ExpenseResponse,
    AttendanceUpsertRequest,
    AttendanceResponse,
    # Import schemas
    ImportBatchResponse,
    # Receipt schemas
    ReceiptResponse,
    SendReceiptsRequest,
    MessageResponse,
)
from payroll_recon.utils.error_handling import ValidationException

logger = logging.getLogger(__name__)

router = APIRouter()


# ===========================================
# PERIOD ENDPOINTS
# ===========================================

@router.post(
    "/periods",
    response_model=PeriodResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a payroll period",
)
async def create_period(
    data: PeriodCreate,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    """Create a DRAFT period."""
    service = PayrollPeriodService(db)
    return await service.create_period(
        data.period_start,
        data.period_end,
        label=data.label,
        actor_id=actor.actor_id,
    )


@router.get(
    "/periods",
    response_model=PeriodListResponse,
    summary="List payroll periods",
)
async def list_periods(
    status_filter: Optional[PayrollPeriodStatus] = Query(None, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    service = PayrollPeriodService(db)
    periods, total = await service.list_periods(status=status_filter, skip=skip, limit=limit)
    return PeriodListResponse(
        items=[PeriodResponse.model_validate(p) for p in periods],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.get(
    "/dashboard",
    summary="Payroll dashboard counts",
)
async def get_dashboard(
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    """Periods by status plus unresolved and ambiguous mapping counts."""
    return await PayrollPeriodService(db).get_dashboard()


@router.get(
    "/periods/{period_id}",
    response_model=PeriodResponse,
    summary="Get a payroll period",
)
async def get_period(
    period_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    return await PayrollPeriodService(db).get_period(period_id)


@router.get(
    "/periods/{period_id}/events",
    response_model=List[ApprovalEventResponse],
    summary="Approval and lock history",
)
async def list_period_events(
    period_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    return await PayrollPeriodService(db).list_events(period_id)


@router.post(
    "/periods/{period_id}/carry-forward",
    summary="Copy inputs and expenses from a previous period",
)
async def carry_forward(
    period_id: uuid.UUID,
    data: Optional[CarryForwardRequest] = None,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    service = PayrollPeriodService(db)
    return await service.carry_forward(
        period_id,
        base_period_id=data.base_period_id if data else None,
        actor_id=actor.actor_id,
    )


@router.post(
    "/periods/{period_id}/recalculate",
    summary="Recalculate a period",
)
async def recalculate_period(
    period_id: uuid.UUID,
    data: Optional[RecalculateRequest] = None,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    """
    Recompute every identity of the period.

    Per-identity failures are reported in the summary; the period ends
    CALCULATED, PARTIAL or FAILED.
    """
    service = PayrollComputationService(db)
    summary = await service.recalculate(
        period_id,
        tolerance=data.tolerance if data else None,
        actor_id=actor.actor_id,
    )
    return summary.to_dict()


@router.post(
    "/periods/{period_id}/approve",
    response_model=PeriodResponse,
    summary="Approve a calculated period",
)
async def approve_period(
    period_id: uuid.UUID,
    data: Optional[PeriodActionRequest] = None,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    service = PayrollPeriodService(db)
    return await service.approve(period_id, actor.actor_id, comment=data.comment if data else None)


@router.post(
    "/periods/{period_id}/lock",
    response_model=PeriodResponse,
    summary="Lock a period",
)
async def lock_period(
    period_id: uuid.UUID,
    data: Optional[PeriodActionRequest] = None,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    service = PayrollPeriodService(db)
    return await service.lock(period_id, actor.actor_id, comment=data.comment if data else None)


@router.get(
    "/periods/{period_id}/comparison",
    summary="Compare a period with the previous one",
)
async def compare_period(
    period_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    return await PayrollPeriodService(db).compare_with_previous(period_id)


# ===========================================
# INPUT ENDPOINTS
# ===========================================

@router.get(
    "/periods/{period_id}/inputs",
    response_model=List[InputValueResponse],
    summary="List input values of a period",
)
async def list_inputs(
    period_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    return await PayrollPeriodService(db).list_inputs(period_id)


@router.put(
    "/periods/{period_id}/inputs",
    response_model=InputValueResponse,
    summary="Set a manual input value",
)
async def upsert_input(
    period_id: uuid.UUID,
    data: InputOverrideRequest,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    """Manual values are overrides; later imports leave them untouched."""
    service = PayrollPeriodService(db)
    return await service.upsert_input_override(
        period_id,
        payroll_name=data.payroll_name,
        component_key=data.component_key,
        amount=data.amount,
        note=data.note,
        actor_id=actor.actor_id,
    )


@router.delete(
    "/periods/{period_id}/inputs/{input_id}",
    response_model=MessageResponse,
    summary="Delete an input value",
)
async def delete_input(
    period_id: uuid.UUID,
    input_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    await PayrollPeriodService(db).delete_input(period_id, input_id)
    return MessageResponse(message="Input value deleted")


@router.get(
    "/periods/{period_id}/expenses",
    response_model=List[ExpenseResponse],
    summary="List expense entries of a period",
)
async def list_expenses(
    period_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    return await PayrollPeriodService(db).list_expenses(period_id)


@router.post(
    "/periods/{period_id}/expenses",
    response_model=ExpenseResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add an expense entry",
)
async def add_expense(
    period_id: uuid.UUID,
    data: ExpenseCreate,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    service = PayrollPeriodService(db)
    return await service.add_expense(
        period_id,
        category_key=data.category_key,
        amount=data.amount,
        description=data.description,
        payroll_name=data.payroll_name,
        actor_id=actor.actor_id,
    )


@router.delete(
    "/periods/{period_id}/expenses/{expense_id}",
    response_model=MessageResponse,
    summary="Delete an expense entry",
)
async def delete_expense(
    period_id: uuid.UUID,
    expense_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    await PayrollPeriodService(db).delete_expense(period_id, expense_id)
    return MessageResponse(message="Expense entry deleted")


@router.put(
    "/periods/{period_id}/attendance",
    response_model=List[AttendanceResponse],
    summary="Record daily attendance",
)
async def upsert_attendance(
    period_id: uuid.UUID,
    data: AttendanceUpsertRequest,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    service = PayrollPeriodService(db)
    return await service.upsert_attendance(
        period_id,
        data.employee_id,
        [(e.attendance_date, e.status) for e in data.entries],
        actor_id=actor.actor_id,
    )


# ===========================================
# IMPORT ENDPOINTS
# ===========================================

async def _read_workbook(file: UploadFile) -> bytes:
    content = await file.read()
    if not content:
        raise ValidationException("Uploaded workbook is empty", field="file")
    return content


@router.post(
    "/import",
    summary="Import a payroll workbook",
)
async def import_workbook(
    file: UploadFile = File(..., description="Payroll workbook (.xlsx)"),
    period_keys: Optional[str] = Form(None, description="Comma separated MM/YYYY keys to import"),
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    """
    Parse a workbook and upsert its values into month periods.

    Locked, approved and in-flight periods are skipped and reported.
    """
    content = await _read_workbook(file)
    only = [k.strip() for k in period_keys.split(",") if k.strip()] if period_keys else None
    service = PayrollImportService(db)
    summary = await service.import_workbook(
        content,
        file.filename or "workbook.xlsx",
        actor_id=actor.actor_id,
        only_period_keys=only,
    )
    return summary.to_dict()


@router.get(
    "/import/batches",
    response_model=List[ImportBatchResponse],
    summary="Recent import batches",
)
async def list_import_batches(
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    return await PayrollImportService(db).list_batches(limit=limit)


@router.post(
    "/backfill",
    summary="Import and recalculate the latest months of a workbook",
)
async def backfill(
    file: UploadFile = File(...),
    months: int = Form(12, ge=1, le=MAX_BACKFILL_MONTHS),
    lock: bool = Form(False),
    tolerance: Optional[Decimal] = Form(None),
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    content = await _read_workbook(file)
    service = PayrollImportService(db)
    return await service.backfill(
        content,
        file.filename or "workbook.xlsx",
        months=months,
        lock=lock,
        tolerance=tolerance,
        actor_id=actor.actor_id,
    )


# ===========================================
# RECEIPT ENDPOINTS
# ===========================================

@router.get(
    "/periods/{period_id}/receipts",
    response_model=List[ReceiptResponse],
    summary="List receipts of a period",
)
async def list_receipts(
    period_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    service = ReceiptDispatchService(db)
    await service.periods.get_period(period_id)
    return await service.list_receipts(period_id)


@router.get(
    "/periods/{period_id}/receipts/{receipt_id}/pdf",
    summary="Download a receipt PDF",
)
async def download_receipt_pdf(
    period_id: uuid.UUID,
    receipt_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
):
    service = ReceiptDispatchService(db)
    receipt = await service.get_receipt(period_id, receipt_id)
    pdf_bytes = await service.render_pdf(period_id, receipt_id)
    period_key = (receipt.receipt_json or {}).get("period_key", "").replace("/", "-")
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={
            "Content-Disposition": f"attachment; filename=receipt_{period_key}_{receipt.id}.pdf"
        },
    )


@router.post(
    "/periods/{period_id}/send",
    summary="Send receipts for signature",
)
async def send_receipts(
    period_id: uuid.UUID,
    data: Optional[SendReceiptsRequest] = None,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
    provider: ESignatureProvider = Depends(get_esignature_provider),
):
    """
    Dispatch an APPROVED period's receipts.

    The period ends SENT, PARTIAL or FAILED depending on receipt outcomes.
    """
    service = ReceiptDispatchService(db, provider=provider)
    summary = await service.send_period(
        period_id,
        receipt_ids=data.receipt_ids if data else None,
        resend_failed=data.resend_failed if data else False,
        actor_id=actor.actor_id,
    )
    return summary.to_dict()


@router.post(
    "/periods/{period_id}/sync",
    summary="Poll envelope statuses from the provider",
)
async def sync_envelopes(
    period_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_session),
    actor: Actor = Depends(require_payroll_manager),
    provider: ESignatureProvider = Depends(get_esignature_provider),
):
    service = ReceiptDispatchService(db, provider=provider)
    return await service.sync_period(period_id)
