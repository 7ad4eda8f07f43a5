"""
PaySettle - Compensation Service Tests

CTC breakdown, profile maintenance and career events.
"""

import pytest
from datetime import date
from decimal import Decimal
from uuid import uuid4

from paysettle.models.employee import CareerEventStatus, CareerEventType
from paysettle.services.compensation_service import CompensationService, compute_breakdown
from paysettle.utils.error_handling import (
    EmployeeNotFound, InvalidAmount, InvalidTransition, NotFoundException, ValidationException,
)

from conftest import create_employee


@pytest.fixture
def compensation(db_session, audit_sink) -> CompensationService:
    return CompensationService(db_session, audit_sink=audit_sink)


@pytest.fixture
async def employee(db_session):
    return await create_employee(db_session, "EMP-100", designation="Engineer")


# =============================================================================
# CTC BREAKDOWN
# =============================================================================

class TestComputeBreakdown:
    """Monthly structure derived from the annual CTC."""

    def test_twelve_lakh_ctc(self):
        breakdown = compute_breakdown(Decimal("1200000"))

        assert breakdown.basic == Decimal("50000.00")
        assert breakdown.hra == Decimal("20000.00")
        assert breakdown.special_allowance == Decimal("30000.00")
        assert breakdown.gross == Decimal("100000.00")
        assert breakdown.pf_employee == Decimal("1800.00")
        assert breakdown.esi_employee == Decimal("0.00")
        assert breakdown.professional_tax == Decimal("200.00")
        assert breakdown.net == Decimal("98000.00")
        assert breakdown.gratuity == Decimal("2405.00")

    def test_fixed_allowances_come_out_of_special(self):
        breakdown = compute_breakdown(
            Decimal("600000"),
            conveyance=Decimal("1600"),
            telephone=Decimal("1000"),
            medical_allowance=Decimal("1250"),
        )

        assert breakdown.special_allowance == Decimal("11150.00")
        assert breakdown.gross == Decimal("50000.00")

    def test_custom_hra_and_tds(self):
        breakdown = compute_breakdown(
            Decimal("1200000"), hra_percentage=Decimal("50"), tds_percentage=Decimal("10"),
        )

        assert breakdown.hra == Decimal("25000.00")
        assert breakdown.special_allowance == Decimal("25000.00")
        assert breakdown.tds_monthly == Decimal("10000.00")
        assert breakdown.net == Decimal("88000.00")

    def test_esi_below_ceiling(self):
        breakdown = compute_breakdown(Decimal("240000"))

        assert breakdown.gross == Decimal("20000.00")
        assert breakdown.esi_employee == Decimal("150.00")
        assert breakdown.esi_employer == Decimal("650.00")

    def test_no_esi_at_ceiling(self):
        breakdown = compute_breakdown(Decimal("252000"))

        assert breakdown.gross == Decimal("21000.00")
        assert breakdown.esi_employee == Decimal("0.00")
        assert breakdown.esi_employer == Decimal("0.00")
        assert breakdown.net == Decimal("19740.00")

    def test_non_positive_ctc(self):
        with pytest.raises(InvalidAmount):
            compute_breakdown(Decimal("0"))


# =============================================================================
# PROFILES
# =============================================================================

class TestProfiles:
    """Creating and revising compensation profiles."""

    async def test_create_profile(self, compensation, employee):
        profile = await compensation.create_profile(employee.id, Decimal("1200000"))

        assert profile.gross == Decimal("100000.00")
        assert profile.effective_from == employee.join_date
        assert (await compensation.get_profile(employee.id)).id == profile.id

    async def test_one_profile_per_employee(self, compensation, employee):
        await compensation.create_profile(employee.id, Decimal("1200000"))

        with pytest.raises(ValidationException):
            await compensation.create_profile(employee.id, Decimal("900000"))

    async def test_unknown_employee(self, compensation):
        with pytest.raises(EmployeeNotFound):
            await compensation.create_profile(uuid4(), Decimal("1200000"))

    async def test_revise_salary_keeps_opt_ins(self, compensation, employee):
        await compensation.create_profile(employee.id, Decimal("240000"), include_esi=False)

        profile = await compensation.revise_salary(employee.id, Decimal("360000"), date(2025, 4, 1))

        assert profile.annual_ctc == Decimal("360000.00")
        assert profile.gross == Decimal("30000.00")
        assert profile.include_esi is False
        assert profile.esi_employee == Decimal("0.00")
        assert profile.effective_from == date(2025, 4, 1)

    async def test_revise_without_profile(self, compensation, employee):
        with pytest.raises(NotFoundException):
            await compensation.revise_salary(employee.id, Decimal("360000"), date(2025, 4, 1))


# =============================================================================
# CAREER EVENTS
# =============================================================================

class TestCareerEvents:
    """Promotions and increments applied on approval."""

    async def test_promotion_applies_designation_and_ctc(self, compensation, employee, audit_sink):
        await compensation.create_profile(employee.id, Decimal("1200000"))
        event = await compensation.create_career_event(
            employee.id,
            CareerEventType.PROMOTION,
            date(2025, 4, 1),
            new_designation="Senior Engineer",
            new_ctc=Decimal("1500000"),
        )
        assert event.old_ctc == Decimal("1200000.00")

        approved = await compensation.approve_career_event(event.id, approver_id=uuid4())

        assert approved.status == CareerEventStatus.APPROVED
        assert employee.designation == "Senior Engineer"
        profile = await compensation.get_profile(employee.id)
        assert profile.annual_ctc == Decimal("1500000.00")
        assert profile.basic == Decimal("62500.00")
        assert len(audit_sink.of_type("career_event.approved")) == 1

    async def test_department_change_leaves_salary(self, compensation, employee):
        await compensation.create_profile(employee.id, Decimal("1200000"))
        event = await compensation.create_career_event(
            employee.id, CareerEventType.DEPARTMENT_CHANGE, date(2025, 4, 1), new_department="Finance",
        )

        await compensation.approve_career_event(event.id, approver_id=uuid4())

        assert employee.department == "Finance"
        assert (await compensation.get_profile(employee.id)).annual_ctc == Decimal("1200000.00")

    async def test_increment_requires_new_ctc(self, compensation, employee):
        with pytest.raises(ValidationException):
            await compensation.create_career_event(employee.id, CareerEventType.INCREMENT, date(2025, 4, 1))

    async def test_event_approved_once(self, compensation, employee):
        await compensation.create_profile(employee.id, Decimal("1200000"))
        event = await compensation.create_career_event(
            employee.id, CareerEventType.INCREMENT, date(2025, 4, 1), new_ctc=Decimal("1300000"),
        )
        await compensation.approve_career_event(event.id, approver_id=uuid4())

        with pytest.raises(InvalidTransition):
            await compensation.approve_career_event(event.id, approver_id=uuid4())

    async def test_list_events_in_date_order(self, compensation, employee):
        await compensation.create_career_event(
            employee.id, CareerEventType.DEPARTMENT_CHANGE, date(2025, 9, 1), new_department="Sales",
        )
        await compensation.create_career_event(
            employee.id, CareerEventType.DESIGNATION_CHANGE, date(2025, 4, 1), new_designation="Lead",
        )

        events = await compensation.list_career_events(employee.id)

        assert [e.effective_date for e in events] == [date(2025, 4, 1), date(2025, 9, 1)]
