"""
Payroll Recon - Receipt Dispatch Service

Sends an approved period's receipts for signature and folds provider
feedback (webhook events and status polling) back into receipts,
envelopes and the period's dispatch status.

Status updates only move forward. Ranking, lowest first:
READY, ENVELOPE_CREATED, SENT, then COMPLETED and FAILED, which are
final: neither replaces the other. An event that would move a receipt or
envelope to a lower rank or out of a final status, or that is older than
the last applied event, is ignored, so duplicated and reordered
deliveries are harmless. Only a resend, which opens a new envelope, moves
a FAILED receipt on.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_recon.models.payroll import (
    PayrollPeriod,
    PayrollPeriodStatus,
    PayrollReceipt,
    PayrollSignatureEnvelope,
    ReceiptStatus,
)
from payroll_recon.models.payroll_settings import Employee, PayrollConfig
from payroll_recon.services.esignature_provider import EnvelopeRequest, ESignatureProvider, get_esignature_provider
from payroll_recon.services.payroll_period_service import PayrollPeriodService
from payroll_recon.services.receipt_pdf_service import ReceiptPDFService
from payroll_recon.utils.error_handling import (
    BusinessRuleException,
    ConfigurationException,
    ErrorCode,
    ESignatureAPIException,
    InvalidTransitionException,
    NotFoundException,
)

logger = logging.getLogger(__name__)


RECEIPT_STATUS_RANK = {
    ReceiptStatus.READY: 0,
    ReceiptStatus.ENVELOPE_CREATED: 1,
    ReceiptStatus.SENT: 2,
    ReceiptStatus.FAILED: 3,
    ReceiptStatus.COMPLETED: 4,
}

FINAL_RECEIPT_STATUSES = frozenset({ReceiptStatus.COMPLETED, ReceiptStatus.FAILED})

SUCCESSFUL_RECEIPT_STATUSES = frozenset({
    ReceiptStatus.ENVELOPE_CREATED,
    ReceiptStatus.SENT,
    ReceiptStatus.COMPLETED,
})

DISPATCH_OUTCOME_STATUSES = frozenset({
    PayrollPeriodStatus.SENT,
    PayrollPeriodStatus.PARTIAL,
    PayrollPeriodStatus.FAILED,
})

# HelloSign callback event types
WEBHOOK_EVENT_STATUS = {
    "signature_request_signed": ReceiptStatus.COMPLETED,
    "signature_request_all_signed": ReceiptStatus.COMPLETED,
    "signature_request_sent": ReceiptStatus.SENT,
    "signature_request_viewed": ReceiptStatus.SENT,
    "signature_request_declined": ReceiptStatus.FAILED,
    "signature_request_invalid": ReceiptStatus.FAILED,
    "signature_request_canceled": ReceiptStatus.FAILED,
}

# Statuses reported by the provider's signature_request resource
PROVIDER_STATUS = {
    "completed": ReceiptStatus.COMPLETED,
    "declined": ReceiptStatus.FAILED,
    "error": ReceiptStatus.FAILED,
    "canceled": ReceiptStatus.FAILED,
    "partially_signed": ReceiptStatus.SENT,
    "sent": ReceiptStatus.SENT,
    "delivered": ReceiptStatus.SENT,
    "viewed": ReceiptStatus.SENT,
}

MISSING_EMAIL_ERROR = "Mapped employee does not have an email address"
UNMAPPED_ERROR = "Payroll name is not mapped to an employee"


def initial_receipt_status(provider_status: str) -> ReceiptStatus:
    """Receipt status right after a successful send."""
    if (provider_status or "").lower() in ("sent", "delivered"):
        return ReceiptStatus.SENT
    return ReceiptStatus.ENVELOPE_CREATED


def dispatch_outcome(statuses: Sequence[ReceiptStatus]) -> PayrollPeriodStatus:
    succeeded = sum(1 for s in statuses if s in SUCCESSFUL_RECEIPT_STATUSES)
    if statuses and succeeded == len(statuses):
        return PayrollPeriodStatus.SENT
    if succeeded == 0:
        return PayrollPeriodStatus.FAILED
    return PayrollPeriodStatus.PARTIAL


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_event_time(value: Any) -> Optional[datetime]:
    """HelloSign sends epoch seconds as a string."""
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(float(value)), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


@dataclass
class ReceiptOutcome:
    receipt_id: uuid.UUID
    payroll_name: str
    status: ReceiptStatus
    envelope_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "receipt_id": str(self.receipt_id),
            "payroll_name": self.payroll_name,
            "status": self.status.value,
            "envelope_id": self.envelope_id,
            "error": self.error,
        }


@dataclass
class DispatchSummary:
    period_id: uuid.UUID
    status: PayrollPeriodStatus
    outcomes: List[ReceiptOutcome] = field(default_factory=list)

    @property
    def sent(self) -> int:
        return sum(1 for o in self.outcomes if o.status in SUCCESSFUL_RECEIPT_STATUSES)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.status == ReceiptStatus.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period_id": str(self.period_id),
            "status": self.status.value,
            "total": len(self.outcomes),
            "sent": self.sent,
            "failed": self.failed,
            "receipts": [o.to_dict() for o in self.outcomes],
        }


class ReceiptDispatchService:
    """Service for sending receipts and applying signature status."""

    def __init__(self, db: AsyncSession, provider: Optional[ESignatureProvider] = None):
        self.db = db
        self.provider = provider if provider is not None else get_esignature_provider()
        self.periods = PayrollPeriodService(db)
        self.pdf = ReceiptPDFService()

    # ===========================================
    # RECEIPTS
    # ===========================================

    async def list_receipts(self, period_id: uuid.UUID) -> List[PayrollReceipt]:
        result = await self.db.execute(
            select(PayrollReceipt)
            .where(PayrollReceipt.period_id == period_id)
            .order_by(PayrollReceipt.normalized_name)
        )
        return list(result.scalars().all())

    async def get_receipt(self, period_id: uuid.UUID, receipt_id: uuid.UUID) -> PayrollReceipt:
        receipt = await self.db.get(PayrollReceipt, receipt_id)
        if receipt is None or receipt.period_id != period_id:
            raise NotFoundException("Receipt", receipt_id)
        return receipt

    async def render_pdf(self, period_id: uuid.UUID, receipt_id: uuid.UUID) -> bytes:
        receipt = await self.get_receipt(period_id, receipt_id)
        return self.pdf.render_receipt(receipt)

    async def _active_config(self) -> PayrollConfig:
        result = await self.db.execute(
            select(PayrollConfig)
            .where(PayrollConfig.is_active.is_(True))
            .order_by(PayrollConfig.updated_at.desc())
            .limit(1)
        )
        config = result.scalar_one_or_none()
        if config is None or not config.template_id:
            raise ConfigurationException(
                "No active e-signature template is configured for payroll",
                missing=["payroll_config.template_id"],
            )
        return config

    async def _select_receipts(
        self,
        period: PayrollPeriod,
        receipt_ids: Optional[Sequence[uuid.UUID]],
        resend_failed: bool,
    ) -> List[PayrollReceipt]:
        query = select(PayrollReceipt).where(PayrollReceipt.period_id == period.id)
        if receipt_ids:
            query = query.where(PayrollReceipt.id.in_(list(receipt_ids)))
        elif resend_failed:
            query = query.where(PayrollReceipt.status == ReceiptStatus.FAILED)
        else:
            query = query.where(PayrollReceipt.status.in_([ReceiptStatus.READY, ReceiptStatus.FAILED]))
        result = await self.db.execute(query.order_by(PayrollReceipt.normalized_name))
        receipts = list(result.scalars().all())

        if receipt_ids:
            found = {r.id for r in receipts}
            missing = [str(i) for i in receipt_ids if i not in found]
            if missing:
                raise NotFoundException("Receipt", ", ".join(missing))
        return receipts

    # ===========================================
    # DISPATCH
    # ===========================================

    async def send_period(
        self,
        period_id: uuid.UUID,
        receipt_ids: Optional[Sequence[uuid.UUID]] = None,
        resend_failed: bool = False,
        actor_id: Optional[str] = None,
    ) -> DispatchSummary:
        """
        Send an APPROVED period's receipts for signature.

        Configuration is checked before any provider call. The period is
        SENDING for the duration; each receipt commits on its own so a
        failure halfway keeps what was already sent. An unexpected error
        fails only the receipt being sent, and the period always settles
        on SENT, PARTIAL or FAILED.
        """
        period = await self.periods.get_period(period_id)
        if period.status != PayrollPeriodStatus.APPROVED:
            raise InvalidTransitionException("send", period.status, {PayrollPeriodStatus.APPROVED})

        missing = self.provider.missing_configuration()
        if missing:
            raise ConfigurationException("E-signature provider is not configured", missing=missing)
        config = await self._active_config()

        receipts = await self._select_receipts(period, receipt_ids, resend_failed)
        if not receipts:
            raise BusinessRuleException(
                "No receipts are eligible for dispatch",
                code=ErrorCode.NOTHING_TO_DISPATCH,
            )

        period, _ = await self.periods.transition(
            period.id, {PayrollPeriodStatus.APPROVED}, PayrollPeriodStatus.SENDING, "send",
            updated_by=actor_id,
        )
        await self.db.commit()
        logger.info(f"Dispatching {len(receipts)} receipts for {period.label}")

        summary = DispatchSummary(period_id=period_id, status=PayrollPeriodStatus.SENDING)
        for receipt_id in [r.id for r in receipts]:
            receipt = await self.db.get(PayrollReceipt, receipt_id)
            try:
                outcome = await self._send_receipt(receipt, config, period)
                await self.db.commit()
            except Exception as e:
                # Any other failure only fails this receipt; the period must leave SENDING
                logger.error(f"Unexpected error sending receipt {receipt_id}: {e}", exc_info=True)
                await self.db.rollback()
                outcome = await self._fail_after_error(receipt_id, f"Unexpected dispatch error: {e}")
                await self.db.commit()
                period = await self.periods.get_period(period_id)
                config = await self._active_config()
            summary.outcomes.append(outcome)

        summary.status = dispatch_outcome([o.status for o in summary.outcomes])
        period, _ = await self.periods.transition(
            period_id, {PayrollPeriodStatus.SENDING}, summary.status, "finish sending",
            updated_by=actor_id,
        )
        period_summary = dict(period.summary_json or {})
        period_summary["dispatch"] = {
            **summary.to_dict(),
            "dispatched_at": datetime.now(timezone.utc).isoformat(),
            "dispatched_by": actor_id,
        }
        period.summary_json = period_summary
        await self.db.commit()

        logger.info(
            f"Dispatch of {period.label} finished {summary.status.value}: "
            f"{summary.sent} sent, {summary.failed} failed"
        )
        return summary

    async def _send_receipt(
        self,
        receipt: PayrollReceipt,
        config: PayrollConfig,
        period: PayrollPeriod,
    ) -> ReceiptOutcome:
        employee = await self.db.get(Employee, receipt.employee_id) if receipt.employee_id else None
        if employee is None:
            return self._fail_without_call(receipt, UNMAPPED_ERROR)
        if not employee.email:
            return self._fail_without_call(receipt, MISSING_EMAIL_ERROR)

        now = datetime.now(timezone.utc)
        request = EnvelopeRequest(
            template_id=config.template_id,
            template_role_name=config.template_role_name,
            recipient_name=employee.full_name,
            recipient_email=employee.email,
            subject=config.email_subject or f"Payment receipt {period.label}",
            document=self.pdf.render_receipt(receipt),
            document_name=f"receipt-{period.period_key.replace('/', '-')}.pdf",
            metadata={"receipt_id": str(receipt.id), "period_id": str(period.id)},
        )
        try:
            result = await self.provider.send_with_template(request)
        except ESignatureAPIException as e:
            logger.error(f"Envelope request failed for receipt {receipt.id}: {e.message}")
            receipt.envelopes.append(PayrollSignatureEnvelope(
                receipt_id=receipt.id,
                envelope_id=None,
                provider_status="error",
                receipt_status=ReceiptStatus.FAILED,
                recipient_email=employee.email,
                error_message=e.message,
                created_at=datetime.now(timezone.utc),
            ))
            receipt.status = ReceiptStatus.FAILED
            receipt.last_error = e.message
            return ReceiptOutcome(receipt.id, receipt.payroll_name, ReceiptStatus.FAILED, error=e.message)

        status = initial_receipt_status(result.status)
        receipt.envelopes.append(PayrollSignatureEnvelope(
            receipt_id=receipt.id,
            envelope_id=result.envelope_id,
            provider_status=result.status,
            receipt_status=status,
            recipient_email=employee.email,
            sent_at=now,
            last_synced_at=now,
            created_at=now,
        ))
        receipt.status = status
        receipt.last_error = None
        logger.info(f"Receipt {receipt.id} sent as envelope {result.envelope_id} ({status.value})")
        return ReceiptOutcome(receipt.id, receipt.payroll_name, status, envelope_id=result.envelope_id)

    def _fail_without_call(self, receipt: PayrollReceipt, reason: str) -> ReceiptOutcome:
        logger.warning(f"Receipt {receipt.id} for '{receipt.payroll_name}' not sent: {reason}")
        receipt.status = ReceiptStatus.FAILED
        receipt.last_error = reason
        return ReceiptOutcome(receipt.id, receipt.payroll_name, ReceiptStatus.FAILED, error=reason)

    async def _fail_after_error(self, receipt_id: uuid.UUID, reason: str) -> ReceiptOutcome:
        receipt = await self.db.get(PayrollReceipt, receipt_id)
        receipt.status = ReceiptStatus.FAILED
        receipt.last_error = reason
        return ReceiptOutcome(receipt.id, receipt.payroll_name, ReceiptStatus.FAILED, error=reason)

    # ===========================================
    # STATUS UPDATES
    # ===========================================

    async def _apply_status(
        self,
        envelope: PayrollSignatureEnvelope,
        status: ReceiptStatus,
        provider_status: str,
        event_time: Optional[datetime],
    ) -> bool:
        """Apply a provider status to an envelope and, if it is current, its receipt."""
        if envelope.receipt_status in FINAL_RECEIPT_STATUSES and status != envelope.receipt_status:
            return False
        if RECEIPT_STATUS_RANK[status] < RECEIPT_STATUS_RANK[envelope.receipt_status]:
            return False
        if status == envelope.receipt_status and envelope.provider_status == provider_status:
            return False

        when = event_time or datetime.now(timezone.utc)
        envelope.receipt_status = status
        envelope.provider_status = provider_status
        if event_time is not None:
            envelope.last_event_at = event_time
        if status == ReceiptStatus.COMPLETED and envelope.completed_at is None:
            envelope.completed_at = when

        receipt = await self.db.get(PayrollReceipt, envelope.receipt_id)
        latest = receipt.latest_envelope if receipt is not None else None
        if latest is None or latest.id != envelope.id:
            return True
        if receipt.status in FINAL_RECEIPT_STATUSES:
            return True
        if RECEIPT_STATUS_RANK[status] > RECEIPT_STATUS_RANK[receipt.status]:
            receipt.status = status
            receipt.last_error = f"Signature request {provider_status}" if status == ReceiptStatus.FAILED else None
        return True

    async def _refresh_period_status(self, period_id: uuid.UUID) -> Optional[PayrollPeriodStatus]:
        """Recompute SENT/PARTIAL/FAILED from dispatched receipts."""
        period = await self.db.get(PayrollPeriod, period_id)
        if period is None or period.status not in DISPATCH_OUTCOME_STATUSES:
            return None
        receipts = await self.list_receipts(period_id)
        statuses = [r.status for r in receipts if r.status != ReceiptStatus.READY]
        if not statuses:
            return period.status
        outcome = dispatch_outcome(statuses)
        if outcome != period.status:
            period, _ = await self.periods.transition(
                period.id, DISPATCH_OUTCOME_STATUSES, outcome, "update dispatch status",
            )
        return outcome

    async def process_hellosign_webhook(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply one HelloSign callback.

        Unknown events, unknown envelopes and stale events are acknowledged
        without changes.
        """
        event = payload.get("event") or {}
        signature_request = payload.get("signature_request") or {}
        if not isinstance(event, dict) or not isinstance(signature_request, dict):
            return {"handled": False, "reason": "malformed payload"}
        event_type = event.get("event_type")
        envelope_id = signature_request.get("signature_request_id")

        status = WEBHOOK_EVENT_STATUS.get(event_type)
        if status is None:
            logger.debug(f"Ignoring e-signature event {event_type}")
            return {"handled": False, "reason": "unhandled event"}
        if not envelope_id:
            return {"handled": False, "reason": "missing signature_request_id"}

        result = await self.db.execute(
            select(PayrollSignatureEnvelope)
            .where(PayrollSignatureEnvelope.envelope_id == envelope_id)
            .order_by(PayrollSignatureEnvelope.created_at.desc())
            .limit(1)
        )
        envelope = result.scalar_one_or_none()
        if envelope is None:
            logger.debug(f"E-signature event for unknown envelope {envelope_id}")
            return {"handled": False, "reason": "unknown envelope"}

        event_time = parse_event_time(event.get("event_time"))
        last = _as_utc(envelope.last_event_at)
        if event_time is not None and last is not None and event_time < last:
            logger.debug(f"Ignoring stale {event_type} for envelope {envelope_id}")
            return {"handled": False, "reason": "stale event"}

        changed = await self._apply_status(envelope, status, event_type, event_time)
        if changed:
            receipt = await self.db.get(PayrollReceipt, envelope.receipt_id)
            if receipt is not None:
                await self._refresh_period_status(receipt.period_id)
        await self.db.commit()

        logger.info(f"E-signature event {event_type} for envelope {envelope_id}: changed={changed}")
        return {"handled": changed, "status": envelope.receipt_status.value}

    async def sync_period(self, period_id: uuid.UUID) -> Dict[str, Any]:
        """Poll the provider for every open envelope of a period."""
        period = await self.periods.get_period(period_id)
        receipts = await self.list_receipts(period.id)
        now = datetime.now(timezone.utc)

        checked = updated = 0
        errors = []
        for receipt in receipts:
            envelope = receipt.latest_envelope
            if envelope is None or not envelope.envelope_id:
                continue
            if envelope.receipt_status in FINAL_RECEIPT_STATUSES:
                continue
            try:
                remote = await self.provider.get_request_status(envelope.envelope_id)
            except ESignatureAPIException as e:
                logger.error(f"Status sync failed for envelope {envelope.envelope_id}: {e.message}")
                errors.append({"envelope_id": envelope.envelope_id, "error": e.message})
                continue
            checked += 1
            envelope.last_synced_at = now
            status = PROVIDER_STATUS.get(remote.status)
            if status is None:
                continue
            if await self._apply_status(envelope, status, remote.status, None):
                updated += 1

        period_status = await self._refresh_period_status(period.id)
        await self.db.commit()

        logger.info(f"Synced {checked} envelopes for {period.label}: {updated} updated, {len(errors)} errors")
        return {
            "period_id": str(period.id),
            "checked": checked,
            "updated": updated,
            "errors": errors,
            "period_status": (period_status or period.status).value,
        }
