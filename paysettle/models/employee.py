"""
PaySettle - Employee Models

Directory records the payroll engine reads from:
- Employee (identity, placement, bank and statutory numbers)
- CompensationProfile (one per employee, CTC-derived monthly structure)
- CareerEvent (promotions and increments that revise compensation)
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean, Date, DateTime, ForeignKey, Numeric, String, Text, Uuid,
    Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column

from paysettle.models.base import BaseModel, AuditMixin


# ===========================================
# ENUMS
# ===========================================

class EmployeeStatus(str, Enum):
    """Employment status."""
    ACTIVE = "active"
    ON_LEAVE = "on_leave"
    NOTICE_PERIOD = "notice_period"
    SEPARATED = "separated"


class PaymentMode(str, Enum):
    """How net pay is disbursed."""
    BANK = "bank"
    CASH = "cash"
    CHEQUE = "cheque"


class CareerEventType(str, Enum):
    PROMOTION = "promotion"
    INCREMENT = "increment"
    DESIGNATION_CHANGE = "designation_change"
    DEPARTMENT_CHANGE = "department_change"


class CareerEventStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# ===========================================
# EMPLOYEE
# ===========================================

class Employee(BaseModel, AuditMixin):
    """
    Employee directory record.

    Payroll snapshots copy name, department and designation from here at
    generation time, so later edits never rewrite history.
    """

    __tablename__ = "employees"

    employee_code: Mapped[str] = mapped_column(
        String(50), unique=True, nullable=False,
        comment="Human readable employee number e.g., EMP-0001",
    )
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    middle_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Placement
    department: Mapped[str] = mapped_column(String(100), nullable=False)
    designation: Mapped[str] = mapped_column(String(100), nullable=False)
    reporting_manager_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("employees.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    status: Mapped[EmployeeStatus] = mapped_column(
        SQLEnum(EmployeeStatus),
        default=EmployeeStatus.ACTIVE,
        nullable=False,
    )
    join_date: Mapped[date] = mapped_column(Date, nullable=False)
    separation_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    # Statutory identifiers
    pan_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    pf_number: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    esi_number: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)

    # Bank details
    bank_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    bank_account_number: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    ifsc_code: Mapped[Optional[str]] = mapped_column(String(15), nullable=True)

    @property
    def full_name(self) -> str:
        parts = [self.first_name, self.middle_name, self.last_name]
        return " ".join(p for p in parts if p)

    def __repr__(self) -> str:
        return f"<Employee(code={self.employee_code}, name={self.full_name}, status={self.status})>"


# ===========================================
# COMPENSATION PROFILE
# ===========================================

class CompensationProfile(BaseModel):
    """
    Monthly salary structure derived from the annual CTC.

    Rows are written only by CompensationService (create / revise), which
    validates the salary invariants before every write.
    """

    __tablename__ = "compensation_profiles"

    employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("employees.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )

    annual_ctc: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False)

    # Earnings (monthly)
    basic: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2), nullable=False,
        comment="annual_ctc * 50% / 12",
    )
    hra_percentage: Mapped[Decimal] = mapped_column(
        Numeric(precision=5, scale=2), default=Decimal("40.00"), nullable=False,
        comment="HRA as a percentage of basic",
    )
    hra: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2), nullable=False)
    conveyance: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2), default=Decimal("0.00"), nullable=False,
    )
    telephone: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2), default=Decimal("0.00"), nullable=False,
    )
    medical_allowance: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2), default=Decimal("0.00"), nullable=False,
    )
    special_allowance: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2), default=Decimal("0.00"), nullable=False,
        comment="Balancing figure so monthly CTC is fully allocated",
    )
    gross: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2), nullable=False)

    # Statutory (monthly, at full attendance)
    include_pf: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    include_esi: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    pf_employee: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2), default=Decimal("0.00"), nullable=False,
    )
    pf_employer: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2), default=Decimal("0.00"), nullable=False,
    )
    esi_employee: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2), default=Decimal("0.00"), nullable=False,
    )
    esi_employer: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2), default=Decimal("0.00"), nullable=False,
    )
    gratuity: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2), default=Decimal("0.00"), nullable=False,
    )
    professional_tax: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2), default=Decimal("0.00"), nullable=False,
    )
    tds_percentage: Mapped[Decimal] = mapped_column(
        Numeric(precision=5, scale=2), default=Decimal("0.00"), nullable=False,
    )
    tds_monthly: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2), default=Decimal("0.00"), nullable=False,
    )
    net: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2), nullable=False)

    payment_mode: Mapped[PaymentMode] = mapped_column(
        SQLEnum(PaymentMode),
        default=PaymentMode.BANK,
        nullable=False,
    )
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)

    @property
    def statutory_deductions(self) -> Decimal:
        return self.pf_employee + self.esi_employee + self.professional_tax + self.tds_monthly

    def __repr__(self) -> str:
        return f"<CompensationProfile(employee_id={self.employee_id}, ctc={self.annual_ctc}, gross={self.gross})>"


# ===========================================
# CAREER EVENTS
# ===========================================

class CareerEvent(BaseModel, AuditMixin):
    """
    Promotion, increment or placement change awaiting or having received
    approval. Approval applies the change to the employee and profile.
    """

    __tablename__ = "career_events"

    employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event_type: Mapped[CareerEventType] = mapped_column(SQLEnum(CareerEventType), nullable=False)
    effective_date: Mapped[date] = mapped_column(Date, nullable=False)

    old_designation: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    new_designation: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    old_department: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    new_department: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    old_ctc: Mapped[Optional[Decimal]] = mapped_column(Numeric(precision=15, scale=2), nullable=True)
    new_ctc: Mapped[Optional[Decimal]] = mapped_column(Numeric(precision=15, scale=2), nullable=True)

    status: Mapped[CareerEventStatus] = mapped_column(
        SQLEnum(CareerEventStatus),
        default=CareerEventStatus.PENDING,
        nullable=False,
    )
    approved_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<CareerEvent(employee_id={self.employee_id}, type={self.event_type}, status={self.status})>"
