"""
Payroll Recon - Period Lifecycle Tests

Tests for the period state machine, edit guards, recalculation and
carry forward.
"""

import uuid
from datetime import date
from decimal import Decimal, InvalidOperation

import pytest
from sqlalchemy import select

from payroll_recon.models.payroll import (
    AttendanceStatus,
    InputSourceMethod,
    PayrollPeriodStatus,
    PayrollReceipt,
    PeriodSourceType,
    ReceiptStatus,
)
from payroll_recon.models.payroll_settings import Employee, TransportMode
from payroll_recon.services.identity_resolution_service import IdentityResolutionService
from payroll_recon.services import payroll_computation_service as computation_module
from payroll_recon.services.payroll_computation_service import (
    PayrollComputationService,
    aggregate_status,
)
from payroll_recon.services.payroll_master_data_service import PayrollMasterDataService
from payroll_recon.services.payroll_period_service import PayrollPeriodService
from payroll_recon.utils.error_handling import (
    InvalidDateRangeException,
    InvalidTransitionException,
    NotFoundException,
    PeriodLockedException,
    ValidationException,
)


ACTOR = "operator-1"


@pytest.fixture
async def feb_period(db_session):
    return await PayrollPeriodService(db_session).create_period(date(2026, 2, 1), date(2026, 2, 28))


async def _receipts(db_session, period_id):
    result = await db_session.execute(
        select(PayrollReceipt)
        .where(PayrollReceipt.period_id == period_id)
        .order_by(PayrollReceipt.normalized_name)
    )
    return list(result.scalars().all())


async def _calculated(db_session, period):
    periods = PayrollPeriodService(db_session)
    await periods.upsert_input_override(period.id, "Ali Raza", "basic_salary", Decimal("50000"), actor_id=ACTOR)
    await PayrollComputationService(db_session).recalculate(period.id, actor_id=ACTOR)
    return await periods.get_period(period.id)


class TestAggregateStatus:
    """Tests for per-identity outcome aggregation."""

    def test_outcomes(self):
        assert aggregate_status(3, 0) == PayrollPeriodStatus.CALCULATED
        assert aggregate_status(0, 0) == PayrollPeriodStatus.CALCULATED
        assert aggregate_status(2, 1) == PayrollPeriodStatus.PARTIAL
        assert aggregate_status(0, 2) == PayrollPeriodStatus.FAILED


# ===========================================
# CREATION
# ===========================================

class TestCreatePeriod:
    """Tests for period creation."""

    async def test_month_period_defaults(self, db_session, feb_period):
        assert feb_period.status == PayrollPeriodStatus.DRAFT
        assert feb_period.source_type == PeriodSourceType.MANUAL
        assert feb_period.label == "Payroll 02/2026"
        assert feb_period.period_key == "02/2026"

    async def test_end_before_start(self, db_session):
        with pytest.raises(InvalidDateRangeException):
            await PayrollPeriodService(db_session).create_period(date(2026, 2, 28), date(2026, 2, 1))

    async def test_ensure_month_period_reuses(self, db_session, feb_period):
        period, created = await PayrollPeriodService(db_session).ensure_month_period("02/2026")
        assert not created
        assert period.id == feb_period.id

    async def test_ensure_month_period_rejects_bad_key(self, db_session):
        with pytest.raises(ValidationException):
            await PayrollPeriodService(db_session).ensure_month_period("13/2026")


# ===========================================
# TRANSITIONS
# ===========================================

class TestTransitions:
    """Tests for the period state machine."""

    async def test_full_path(self, db_session, feb_period):
        periods = PayrollPeriodService(db_session)
        period = await _calculated(db_session, feb_period)
        assert period.status == PayrollPeriodStatus.CALCULATED

        period = await periods.approve(period.id, ACTOR, comment="Looks right")
        assert period.status == PayrollPeriodStatus.APPROVED
        assert period.approved_by == ACTOR
        assert period.approved_at is not None

        period = await periods.lock(period.id, ACTOR)
        assert period.status == PayrollPeriodStatus.LOCKED

        events = await periods.list_events(period.id)
        assert [(e.action, e.from_status, e.to_status) for e in events] == [
            ("APPROVE", PayrollPeriodStatus.CALCULATED, PayrollPeriodStatus.APPROVED),
            ("LOCK", PayrollPeriodStatus.APPROVED, PayrollPeriodStatus.LOCKED),
        ]
        assert events[0].comment == "Looks right"

    async def test_approve_requires_calculated(self, db_session, feb_period):
        with pytest.raises(InvalidTransitionException):
            await PayrollPeriodService(db_session).approve(feb_period.id, ACTOR)

    async def test_lock_requires_calculation(self, db_session, feb_period):
        with pytest.raises(InvalidTransitionException):
            await PayrollPeriodService(db_session).lock(feb_period.id, ACTOR)

    async def test_locked_is_terminal(self, db_session, feb_period):
        periods = PayrollPeriodService(db_session)
        period = await _calculated(db_session, feb_period)
        await periods.lock(period.id, ACTOR)

        with pytest.raises(InvalidTransitionException):
            await periods.approve(period.id, ACTOR)
        with pytest.raises(InvalidTransitionException):
            await PayrollComputationService(db_session).recalculate(period.id)
        with pytest.raises(InvalidTransitionException):
            await periods.lock(period.id, ACTOR)

    async def test_recalculate_blocked_after_approval(self, db_session, feb_period):
        period = await _calculated(db_session, feb_period)
        await PayrollPeriodService(db_session).approve(period.id, ACTOR)
        with pytest.raises(InvalidTransitionException):
            await PayrollComputationService(db_session).recalculate(period.id)

    async def test_missing_period(self, db_session):
        with pytest.raises(NotFoundException):
            await PayrollPeriodService(db_session).get_period(uuid.uuid4())


# ===========================================
# EDIT GUARDS
# ===========================================

class TestEditGuards:
    """Tests for edits against period status."""

    async def test_edit_resets_calculated_to_draft(self, db_session, feb_period):
        periods = PayrollPeriodService(db_session)
        period = await _calculated(db_session, feb_period)

        row = await periods.upsert_input_override(period.id, "Ali Raza", "BONUS", Decimal("1000"), actor_id=ACTOR)
        assert row.is_override
        assert row.source_method == InputSourceMethod.MANUAL
        assert (await periods.get_period(period.id)).status == PayrollPeriodStatus.DRAFT

    @pytest.mark.parametrize("final_action", ["approve", "lock"])
    async def test_edits_blocked(self, db_session, feb_period, final_action):
        periods = PayrollPeriodService(db_session)
        period = await _calculated(db_session, feb_period)
        await getattr(periods, final_action)(period.id, ACTOR)

        with pytest.raises(PeriodLockedException):
            await periods.upsert_input_override(period.id, "Ali Raza", "BONUS", Decimal("1"))
        with pytest.raises(PeriodLockedException):
            await periods.add_expense(period.id, "fuel", Decimal("100"))
        with pytest.raises(PeriodLockedException):
            await periods.carry_forward(period.id)

        inputs = await periods.list_inputs(period.id)
        assert [(r.component_key, r.amount) for r in inputs] == [("BASIC_SALARY", Decimal("50000.00"))]

    async def test_override_validation(self, db_session, feb_period):
        periods = PayrollPeriodService(db_session)
        with pytest.raises(ValidationException):
            await periods.upsert_input_override(feb_period.id, " .. ", "BONUS", Decimal("1"))
        with pytest.raises(ValidationException):
            await periods.upsert_input_override(feb_period.id, "Ali Raza", " ", Decimal("1"))

    async def test_expenses(self, db_session, feb_period):
        periods = PayrollPeriodService(db_session)
        expense = await periods.add_expense(feb_period.id, "fuel", Decimal("120.456"), payroll_name="Ali Raza")
        assert expense.category_key == "FUEL"
        assert expense.amount == Decimal("120.46")
        assert expense.normalized_name == "ali raza"

        await periods.delete_expense(feb_period.id, expense.id)
        assert await periods.list_expenses(feb_period.id) == []

    async def test_attendance_outside_period_rejected(self, db_session, feb_period):
        employee = Employee(full_name="Ali Raza")
        db_session.add(employee)
        await db_session.commit()
        with pytest.raises(ValidationException):
            await PayrollPeriodService(db_session).upsert_attendance(
                feb_period.id, employee.id, [(date(2026, 3, 1), AttendanceStatus.PRESENT)],
            )


# ===========================================
# RECALCULATION
# ===========================================

class TestRecalculation:
    """Tests for period recalculation."""

    async def test_summary_and_receipts(self, db_session, feb_period):
        periods = PayrollPeriodService(db_session)
        await periods.upsert_input_override(feb_period.id, "Ali Raza", "BASIC_SALARY", Decimal("50000"))
        await periods.upsert_input_override(feb_period.id, "Ali Raza", "PAID", Decimal("48000"))
        await periods.upsert_input_override(feb_period.id, "Sara Ahmed", "BASIC_SALARY", Decimal("30000"))

        summary = await PayrollComputationService(db_session).recalculate(feb_period.id, actor_id=ACTOR)
        data = summary.to_dict()
        assert data["status"] == "CALCULATED"
        assert data["identities"] == 2
        assert data["succeeded"] == 2
        assert data["failed"] == 0
        assert data["working_days"] == 20
        assert data["tolerance"] == "1.00"
        assert len(data["mismatches"]) == 1
        assert data["mismatches"][0]["payroll_name"] == "Ali Raza"
        assert data["mismatches"][0]["severity"] == "critical"

        receipts = await _receipts(db_session, feb_period.id)
        assert [r.normalized_name for r in receipts] == ["ali raza", "sara ahmed"]
        assert all(r.status == ReceiptStatus.READY for r in receipts)
        assert receipts[1].receipt_json["net"]["net_salary"] == "30000.00"
        assert receipts[1].receipt_json["currency"] == "PKR"

        period = await periods.get_period(feb_period.id)
        assert period.summary_json["calculation"]["calculated_by"] == ACTOR

    async def test_recalculation_is_repeatable(self, db_session, feb_period):
        periods = PayrollPeriodService(db_session)
        computation = PayrollComputationService(db_session)
        await periods.upsert_input_override(feb_period.id, "Ali Raza", "BASIC_SALARY", Decimal("50000"))
        await computation.recalculate(feb_period.id)
        await computation.recalculate(feb_period.id)

        comparison = await periods.compare_with_previous(feb_period.id)
        computed = comparison["identities"][0]["current"]["computed"]
        assert computed["NET_SALARY"] == "50000.00"
        assert len(computed) == 5

        receipts = await _receipts(db_session, feb_period.id)
        assert len(receipts) == 1
        assert receipts[0].version == 2

    async def test_dropped_identity_loses_ready_receipt(self, db_session, feb_period):
        periods = PayrollPeriodService(db_session)
        computation = PayrollComputationService(db_session)
        await periods.upsert_input_override(feb_period.id, "Ali Raza", "BASIC_SALARY", Decimal("50000"))
        row = await periods.upsert_input_override(feb_period.id, "Sara Ahmed", "BASIC_SALARY", Decimal("30000"))
        await computation.recalculate(feb_period.id)

        await periods.delete_input(feb_period.id, row.id)
        await computation.recalculate(feb_period.id)
        receipts = await _receipts(db_session, feb_period.id)
        assert [r.normalized_name for r in receipts] == ["ali raza"]

    async def test_bracket_gap_fails_identity(self, db_session, feb_period):
        await PayrollMasterDataService(db_session).create_financial_year({
            "label": "FY 2025-26",
            "start_date": date(2025, 7, 1),
            "end_date": date(2026, 6, 30),
            "is_active": True,
            "brackets": [
                {"income_from": Decimal("0"), "income_to": Decimal("600000"), "fixed_tax": Decimal("0"), "tax_rate": Decimal("0")},
                {"income_from": Decimal("600000"), "income_to": Decimal("1200000"), "fixed_tax": Decimal("0"), "tax_rate": Decimal("0.05")},
            ],
        })
        periods = PayrollPeriodService(db_session)
        await periods.upsert_input_override(feb_period.id, "Ali Raza", "BASIC_SALARY", Decimal("50000"))
        await periods.upsert_input_override(feb_period.id, "Sara Ahmed", "BASIC_SALARY", Decimal("150000"))

        summary = await PayrollComputationService(db_session).recalculate(feb_period.id)
        assert summary.status == PayrollPeriodStatus.PARTIAL
        assert [f["payroll_name"] for f in summary.failures] == ["Sara Ahmed"]
        assert (await periods.get_period(feb_period.id)).status == PayrollPeriodStatus.PARTIAL

    async def test_unexpected_identity_error_gives_partial(self, db_session, feb_period, monkeypatch):
        real_compute = computation_module.compute_identity

        def compute(inputs, ctx):
            if inputs.normalized_name == "sara ahmed":
                raise InvalidOperation("corrupt amount")
            return real_compute(inputs, ctx)

        monkeypatch.setattr(computation_module, "compute_identity", compute)
        periods = PayrollPeriodService(db_session)
        await periods.upsert_input_override(feb_period.id, "Ali Raza", "BASIC_SALARY", Decimal("50000"))
        await periods.upsert_input_override(feb_period.id, "Sara Ahmed", "BASIC_SALARY", Decimal("30000"))

        summary = await PayrollComputationService(db_session).recalculate(feb_period.id)

        assert summary.status == PayrollPeriodStatus.PARTIAL
        assert summary.succeeded == 1
        assert [f["payroll_name"] for f in summary.failures] == ["Sara Ahmed"]
        assert summary.failures[0]["reason"].startswith("Unexpected error")
        receipts = await _receipts(db_session, feb_period.id)
        assert [r.normalized_name for r in receipts] == ["ali raza"]

    async def test_negative_tolerance_rejected(self, db_session, feb_period):
        with pytest.raises(ValidationException):
            await PayrollComputationService(db_session).recalculate(feb_period.id, tolerance=Decimal("-1"))

    async def test_attendance_travel_written_back(self, db_session, feb_period):
        master = PayrollMasterDataService(db_session)
        await master.seed_travel_tiers(effective_from=date(2020, 1, 1), commit=True)
        employee = await master.create_employee({
            "full_name": "Ali Raza",
            "email": "ali@example.com",
            "transport_mode": TransportMode.CAR,
            "distance_km": Decimal("8"),
        })
        await IdentityResolutionService(db_session).resolve_names(["Ali Raza"])

        periods = PayrollPeriodService(db_session)
        await periods.upsert_input_override(feb_period.id, "Ali Raza", "BASIC_SALARY", Decimal("50000"))
        await periods.upsert_attendance(
            feb_period.id,
            employee.id,
            [(date(2026, 2, d), AttendanceStatus.PRESENT) for d in (2, 3, 4, 5, 6, 9, 10, 11, 12, 13)],
        )

        summary = await PayrollComputationService(db_session).recalculate(feb_period.id)
        assert summary.travel_auto_calculated == 1

        travel = [r for r in await periods.list_inputs(feb_period.id) if r.component_key == "TRAVEL_REIMBURSEMENT"]
        assert len(travel) == 1
        assert travel[0].amount == Decimal("9250.00")
        assert travel[0].source_method == InputSourceMethod.SYSTEM
        assert not travel[0].is_override


# ===========================================
# CARRY FORWARD
# ===========================================

class TestCarryForward:
    """Tests for copying a prior period."""

    async def test_copies_and_keeps_overrides(self, db_session):
        periods = PayrollPeriodService(db_session)
        jan = await periods.create_period(date(2026, 1, 1), date(2026, 1, 31))
        feb = await periods.create_period(date(2026, 2, 1), date(2026, 2, 28))

        await periods.upsert_input_override(jan.id, "Ali Raza", "BASIC_SALARY", Decimal("50000"))
        await periods.upsert_input_override(jan.id, "Ali Raza", "BONUS", Decimal("2000"))
        await periods.add_expense(jan.id, "fuel", Decimal("300"), payroll_name="Ali Raza")
        await periods.upsert_input_override(feb.id, "Ali Raza", "BONUS", Decimal("5000"))

        result = await periods.carry_forward(feb.id, actor_id=ACTOR)
        assert result["base_period_id"] == jan.id
        assert result["inputs_copied"] == 1
        assert result["overrides_kept"] == 1
        assert result["expenses_copied"] == 1

        inputs = {r.component_key: r for r in await periods.list_inputs(feb.id)}
        assert inputs["BASIC_SALARY"].amount == Decimal("50000.00")
        assert inputs["BASIC_SALARY"].source_method == InputSourceMethod.CARRY_FORWARD
        assert inputs["BASIC_SALARY"].provenance_json["carried_from_period_id"] == str(jan.id)
        # Carried rows are a starting point, not overrides, even when the base row was one
        assert not inputs["BASIC_SALARY"].is_override
        assert inputs["BONUS"].amount == Decimal("5000.00")
        assert inputs["BONUS"].is_override

        feb = await periods.get_period(feb.id)
        assert feb.source_type == PeriodSourceType.CARRY_FORWARD
        assert feb.status == PayrollPeriodStatus.DRAFT

    async def test_repeat_does_not_duplicate_expenses(self, db_session):
        periods = PayrollPeriodService(db_session)
        jan = await periods.create_period(date(2026, 1, 1), date(2026, 1, 31))
        feb = await periods.create_period(date(2026, 2, 1), date(2026, 2, 28))
        await periods.add_expense(jan.id, "fuel", Decimal("300"))

        await periods.carry_forward(feb.id)
        await periods.carry_forward(feb.id)
        assert len(await periods.list_expenses(feb.id)) == 1

    async def test_no_previous_period(self, db_session, feb_period):
        with pytest.raises(NotFoundException):
            await PayrollPeriodService(db_session).carry_forward(feb_period.id)

    async def test_into_itself(self, db_session, feb_period):
        with pytest.raises(ValidationException):
            await PayrollPeriodService(db_session).carry_forward(feb_period.id, base_period_id=feb_period.id)
