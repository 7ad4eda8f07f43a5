"""
PaySettle - Attendance Service

Monthly attendance summaries: recorded unapproved, approved exactly once,
and only changed afterwards through an explicit reopen.
"""

import logging
import uuid
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from paysettle.models.attendance import AttendanceStatus, AttendanceSummary
from paysettle.models.base import utcnow
from paysettle.models.employee import Employee
from paysettle.schemas.payroll import PayPeriod
from paysettle.services.payroll_calculator import validate_attendance
from paysettle.utils.error_handling import (
    EmployeeNotFound, InvalidTransition, NotFoundException, ValidationException,
)

logger = logging.getLogger(__name__)


class AttendanceService:
    """Service for recording and approving attendance summaries."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_summary(self, employee_id: uuid.UUID, period: PayPeriod) -> Optional[AttendanceSummary]:
        result = await self.db.execute(
            select(AttendanceSummary).where(
                and_(
                    AttendanceSummary.employee_id == employee_id,
                    AttendanceSummary.month == period.month,
                    AttendanceSummary.year == period.year,
                )
            )
        )
        return result.scalar_one_or_none()

    async def _get(self, summary_id: uuid.UUID) -> AttendanceSummary:
        summary = await self.db.get(AttendanceSummary, summary_id)
        if not summary:
            raise NotFoundException("AttendanceSummary", summary_id)
        return summary

    async def list_for_period(self, period: PayPeriod, status: Optional[AttendanceStatus] = None) -> List[AttendanceSummary]:
        query = select(AttendanceSummary).where(
            and_(AttendanceSummary.month == period.month, AttendanceSummary.year == period.year)
        )
        if status is not None:
            query = query.where(AttendanceSummary.status == status)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def record_attendance(
        self,
        employee_id: uuid.UUID,
        period: PayPeriod,
        total_working_days: int,
        present_days: int = 0,
        absent_days: int = 0,
        paid_leave: int = 0,
        unpaid_leave: int = 0,
        half_days: int = 0,
        overtime_hours: Decimal = Decimal("0"),
    ) -> AttendanceSummary:
        """
        Create or overwrite the unapproved summary for the period.

        Approved summaries must be reopened before they can be changed.
        """
        if not await self.db.get(Employee, employee_id):
            raise EmployeeNotFound(employee_id)

        summary = await self.get_summary(employee_id, period)
        if summary is None:
            summary = AttendanceSummary(
                employee_id=employee_id,
                month=period.month,
                year=period.year,
                status=AttendanceStatus.UNAPPROVED,
                reopened_count=0,
            )
            self.db.add(summary)
        elif summary.status == AttendanceStatus.APPROVED:
            raise ValidationException(
                f"Attendance for {period.label} is approved; reopen it before editing",
                details={"attendance_id": str(summary.id)},
            )

        summary.total_working_days = total_working_days
        summary.present_days = present_days
        summary.absent_days = absent_days
        summary.paid_leave = paid_leave
        summary.unpaid_leave = unpaid_leave
        summary.half_days = half_days
        summary.overtime_hours = overtime_hours

        try:
            validate_attendance(summary)
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise ValidationException(
                f"Attendance for employee {employee_id} in {period.label} was recorded concurrently",
            ) from e
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            f"Attendance recorded for {employee_id} {period.label}: "
            f"{summary.payable_days} payable, {summary.loss_of_pay_days} LOP"
        )
        return summary

    async def approve(self, summary_id: uuid.UUID, approver_id: uuid.UUID) -> AttendanceSummary:
        if approver_id is None:
            raise ValidationException("Approver is required", field="approver_id")

        summary = await self._get(summary_id)
        if summary.status != AttendanceStatus.UNAPPROVED:
            raise InvalidTransition("AttendanceSummary", summary.status, AttendanceStatus.APPROVED.value, summary_id)
        validate_attendance(summary)

        summary.status = AttendanceStatus.APPROVED
        summary.approved_by_id = approver_id
        summary.approved_at = utcnow()
        await self.db.commit()

        logger.info(f"Attendance {summary_id} approved by {approver_id}")
        return summary

    async def reopen(self, summary_id: uuid.UUID, reason: str) -> AttendanceSummary:
        """Administrative correction: back to unapproved with the approval stamp cleared."""
        summary = await self._get(summary_id)
        if summary.status != AttendanceStatus.APPROVED:
            raise InvalidTransition("AttendanceSummary", summary.status, AttendanceStatus.UNAPPROVED.value, summary_id)

        summary.status = AttendanceStatus.UNAPPROVED
        summary.approved_by_id = None
        summary.approved_at = None
        summary.reopened_count += 1
        await self.db.commit()

        logger.warning(f"Attendance {summary_id} reopened ({summary.reopened_count}): {reason}")
        return summary
