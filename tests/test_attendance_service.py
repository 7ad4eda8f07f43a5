"""
PaySettle - Attendance Service Tests
"""

import pytest
from decimal import Decimal
from uuid import uuid4

from paysettle.models.attendance import AttendanceStatus
from paysettle.services.attendance_service import AttendanceService
from paysettle.utils.error_handling import (
    EmployeeNotFound, InvalidAttendance, InvalidTransition, ValidationException,
)

from conftest import create_employee


@pytest.fixture
def attendance(db_session) -> AttendanceService:
    return AttendanceService(db_session)


@pytest.fixture
async def employee(db_session):
    return await create_employee(db_session, "EMP-ATT")


class TestRecordAttendance:
    """Entering and correcting monthly counters."""

    async def test_record_creates_unapproved_summary(self, attendance, employee, period):
        summary = await attendance.record_attendance(
            employee.id, period, total_working_days=30, present_days=26, paid_leave=2, unpaid_leave=2,
        )

        assert summary.status == AttendanceStatus.UNAPPROVED
        assert summary.payable_days == Decimal("28")
        assert summary.loss_of_pay_days == Decimal("2")
        assert summary.attendance_percentage == Decimal("93.33")

    async def test_half_days_are_credited_back(self, attendance, employee, period):
        summary = await attendance.record_attendance(
            employee.id, period, total_working_days=30, present_days=27, absent_days=3, half_days=2,
        )

        assert summary.payable_days == Decimal("28")
        assert summary.loss_of_pay_days == Decimal("2")

    async def test_rerecord_overwrites_unapproved(self, attendance, employee, period):
        first = await attendance.record_attendance(employee.id, period, total_working_days=30, present_days=30)
        second = await attendance.record_attendance(
            employee.id, period, total_working_days=30, present_days=29, unpaid_leave=1,
        )

        assert second.id == first.id
        assert second.unpaid_leave == 1
        assert len(await attendance.list_for_period(period)) == 1

    async def test_too_many_days(self, attendance, employee, period):
        employee_id = employee.id
        with pytest.raises(InvalidAttendance):
            await attendance.record_attendance(
                employee_id, period, total_working_days=30, present_days=30, unpaid_leave=1,
            )

        assert await attendance.get_summary(employee_id, period) is None

    async def test_negative_counts(self, attendance, employee, period):
        with pytest.raises(InvalidAttendance) as exc_info:
            await attendance.record_attendance(employee.id, period, total_working_days=30, absent_days=-1)

        assert exc_info.value.details["fields"] == ["absent_days"]

    async def test_more_half_days_than_absences(self, attendance, employee, period):
        with pytest.raises(InvalidAttendance):
            await attendance.record_attendance(
                employee.id, period, total_working_days=30, present_days=30, half_days=1,
            )

    async def test_unknown_employee(self, attendance, period):
        with pytest.raises(EmployeeNotFound):
            await attendance.record_attendance(uuid4(), period, total_working_days=30, present_days=30)


class TestApproval:
    """unapproved -> approved, and reopen for corrections."""

    async def test_approve(self, attendance, employee, period):
        summary = await attendance.record_attendance(employee.id, period, total_working_days=30, present_days=30)
        approver = uuid4()

        approved = await attendance.approve(summary.id, approver)

        assert approved.is_approved
        assert approved.approved_by_id == approver
        assert approved.approved_at is not None
        assert len(await attendance.list_for_period(period, AttendanceStatus.APPROVED)) == 1

    async def test_approve_twice(self, attendance, employee, period):
        summary = await attendance.record_attendance(employee.id, period, total_working_days=30, present_days=30)
        await attendance.approve(summary.id, uuid4())

        with pytest.raises(InvalidTransition):
            await attendance.approve(summary.id, uuid4())

    async def test_approved_summary_cannot_be_edited(self, attendance, employee, period):
        summary = await attendance.record_attendance(employee.id, period, total_working_days=30, present_days=30)
        await attendance.approve(summary.id, uuid4())

        with pytest.raises(ValidationException):
            await attendance.record_attendance(
                employee.id, period, total_working_days=30, present_days=25, unpaid_leave=5,
            )

    async def test_reopen_allows_correction(self, attendance, employee, period):
        summary = await attendance.record_attendance(employee.id, period, total_working_days=30, present_days=30)
        await attendance.approve(summary.id, uuid4())

        reopened = await attendance.reopen(summary.id, "Missed two days of unpaid leave")

        assert reopened.status == AttendanceStatus.UNAPPROVED
        assert reopened.approved_by_id is None
        assert reopened.reopened_count == 1

        corrected = await attendance.record_attendance(
            employee.id, period, total_working_days=30, present_days=28, unpaid_leave=2,
        )
        assert corrected.loss_of_pay_days == Decimal("2")

    async def test_reopen_requires_approved(self, attendance, employee, period):
        summary = await attendance.record_attendance(employee.id, period, total_working_days=30, present_days=30)

        with pytest.raises(InvalidTransition):
            await attendance.reopen(summary.id, "Nothing to reopen")
