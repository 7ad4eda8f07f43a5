"""
PaySettle - Attendance Models

Monthly attendance summary per employee. Derived day counts are properties
over the stored counters and are never persisted or accepted as input.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    DateTime, ForeignKey, Integer, Numeric, Uuid,
    Enum as SQLEnum, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from paysettle.models.base import BaseModel


class AttendanceStatus(str, Enum):
    UNAPPROVED = "unapproved"
    APPROVED = "approved"


class AttendanceSummary(BaseModel):
    """
    Attendance counters for one employee and month.

    A half day is also counted as an absence in ``absent_days``; the half
    that was worked is credited back through ``half_days``.
    """

    __tablename__ = "attendance_summaries"

    employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)

    total_working_days: Mapped[int] = mapped_column(Integer, nullable=False)
    present_days: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    absent_days: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    paid_leave: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    unpaid_leave: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    half_days: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    overtime_hours: Mapped[Decimal] = mapped_column(
        Numeric(precision=6, scale=2), default=Decimal("0.00"), nullable=False,
    )

    status: Mapped[AttendanceStatus] = mapped_column(
        SQLEnum(AttendanceStatus),
        default=AttendanceStatus.UNAPPROVED,
        nullable=False,
    )
    approved_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reopened_count: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False,
        comment="Administrative corrections applied after approval",
    )

    __table_args__ = (
        UniqueConstraint('employee_id', 'month', 'year', name='uq_attendance_employee_period'),
    )

    @property
    def payable_days(self) -> Decimal:
        return Decimal(self.present_days + self.paid_leave) + Decimal(self.half_days) / 2

    @property
    def loss_of_pay_days(self) -> Decimal:
        return Decimal(self.unpaid_leave + self.absent_days) - Decimal(self.half_days) / 2

    @property
    def attendance_percentage(self) -> Decimal:
        if not self.total_working_days:
            return Decimal("0.00")
        pct = Decimal(self.present_days + self.paid_leave) / Decimal(self.total_working_days) * 100
        return pct.quantize(Decimal("0.01"))

    @property
    def is_approved(self) -> bool:
        return self.status == AttendanceStatus.APPROVED

    def __repr__(self) -> str:
        return (
            f"<AttendanceSummary(employee_id={self.employee_id}, period={self.year}-{self.month:02d}, "
            f"status={self.status})>"
        )
