"""
PaySettle - Payroll Models

Monthly settlement records:
- PayRun: one non-cancelled batch per (month, year)
- PayRunEmployeeRecord: per-employee computation snapshot taken at generation
- Payslip: immutable, denormalised employee-facing result of processing
- DocumentSequence: monotonic counters behind human readable numbers

PayRun status flow: draft -> approved -> processed, with cancelled reachable
from draft or approved only.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, Uuid,
    Enum as SQLEnum, JSON, UniqueConstraint, event, inspect, text,
)
from sqlalchemy.orm import Mapped, mapped_column

from paysettle.models.base import BaseModel, AuditMixin
from paysettle.models.employee import PaymentMode
from paysettle.utils.error_handling import ImmutableRecordError


# ===========================================
# ENUMS
# ===========================================

class PayRunStatus(str, Enum):
    """Pay run processing status."""
    DRAFT = "draft"
    APPROVED = "approved"
    PROCESSED = "processed"
    CANCELLED = "cancelled"


class RecordPaymentStatus(str, Enum):
    """Settlement outcome of a single employee record."""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


def money_column(comment: Optional[str] = None, precision: int = 12):
    return mapped_column(
        Numeric(precision=precision, scale=2),
        default=Decimal("0.00"),
        nullable=False,
        comment=comment,
    )


# ===========================================
# PAY RUN
# ===========================================

class PayRun(BaseModel, AuditMixin):
    """
    Payroll batch for one month.

    Totals are always recomputed from the employee records and never entered
    directly.
    """

    __tablename__ = "pay_runs"

    pay_run_code: Mapped[str] = mapped_column(
        String(50), nullable=False,
        comment="Human readable code e.g., PR-2026-03-01",
    )
    salary_month: Mapped[int] = mapped_column(Integer, nullable=False)
    salary_year: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[PayRunStatus] = mapped_column(
        SQLEnum(PayRunStatus),
        default=PayRunStatus.DRAFT,
        nullable=False,
    )

    # Summary (calculated)
    total_employees: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_gross: Mapped[Decimal] = money_column(precision=18)
    total_loss_of_pay: Mapped[Decimal] = money_column(precision=18)
    total_deductions: Mapped[Decimal] = money_column(precision=18)
    total_net_pay: Mapped[Decimal] = money_column(precision=18)
    total_pf_employee: Mapped[Decimal] = money_column(precision=18)
    total_esi_employee: Mapped[Decimal] = money_column(precision=18)
    total_advance_deduction: Mapped[Decimal] = money_column(precision=18)
    total_loan_deduction: Mapped[Decimal] = money_column(precision=18)

    generation_warnings: Mapped[list] = mapped_column(
        JSON, default=list, nullable=False,
        comment="Employees skipped at generation and why",
    )

    # Workflow
    approved_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint('pay_run_code', name='uq_pay_run_code'),
        # At most one live run per period; cancelled runs do not count.
        Index(
            'uq_pay_runs_active_period',
            'salary_month', 'salary_year',
            unique=True,
            sqlite_where=text("status != 'CANCELLED'"),
            postgresql_where=text("status != 'CANCELLED'"),
        ),
    )

    @property
    def period_label(self) -> str:
        return f"{self.salary_year}-{self.salary_month:02d}"

    def __repr__(self) -> str:
        return f"<PayRun(id={self.id}, code={self.pay_run_code}, status={self.status})>"


# ===========================================
# PAY RUN EMPLOYEE RECORD
# ===========================================

class PayRunEmployeeRecord(BaseModel):
    """
    Snapshot of one employee's computed pay inside a pay run.

    ``monthly_gross`` is the contractual gross; ``gross_salary`` is what was
    earned after loss of pay, so net_pay == gross_salary - total_deductions.
    """

    __tablename__ = "pay_run_employee_records"

    pay_run_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("pay_runs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("employees.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    # Snapshot of placement at generation time
    employee_name: Mapped[str] = mapped_column(String(300), nullable=False)
    employee_code: Mapped[str] = mapped_column(String(50), nullable=False)
    department: Mapped[str] = mapped_column(String(100), nullable=False)
    designation: Mapped[str] = mapped_column(String(100), nullable=False)

    # Attendance
    total_working_days: Mapped[int] = mapped_column(Integer, nullable=False)
    payable_days: Mapped[Decimal] = mapped_column(Numeric(precision=5, scale=1), nullable=False)
    loss_of_pay_days: Mapped[Decimal] = mapped_column(Numeric(precision=5, scale=1), nullable=False)

    # Earnings
    basic: Mapped[Decimal] = money_column()
    hra: Mapped[Decimal] = money_column()
    conveyance: Mapped[Decimal] = money_column()
    telephone: Mapped[Decimal] = money_column()
    medical_allowance: Mapped[Decimal] = money_column()
    special_allowance: Mapped[Decimal] = money_column()
    monthly_gross: Mapped[Decimal] = money_column("Contractual monthly gross")
    loss_of_pay_amount: Mapped[Decimal] = money_column()
    gross_salary: Mapped[Decimal] = money_column("Earned gross after loss of pay")

    # Deductions
    pf_employee: Mapped[Decimal] = money_column()
    esi_employee: Mapped[Decimal] = money_column()
    professional_tax: Mapped[Decimal] = money_column()
    tds: Mapped[Decimal] = money_column()
    advance_deduction: Mapped[Decimal] = money_column()
    loan_deduction: Mapped[Decimal] = money_column()
    total_deductions: Mapped[Decimal] = money_column()
    net_pay: Mapped[Decimal] = money_column()

    # Employer contributions
    pf_employer: Mapped[Decimal] = money_column()
    esi_employer: Mapped[Decimal] = money_column()

    obligation_breakdown: Mapped[list] = mapped_column(
        JSON, default=list, nullable=False,
        comment="Advances / loan EMIs this record recovers",
    )
    payment_mode: Mapped[PaymentMode] = mapped_column(
        SQLEnum(PaymentMode),
        default=PaymentMode.BANK,
        nullable=False,
    )
    payment_status: Mapped[RecordPaymentStatus] = mapped_column(
        SQLEnum(RecordPaymentStatus),
        default=RecordPaymentStatus.PENDING,
        nullable=False,
    )
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint('pay_run_id', 'employee_id', name='uq_pay_run_record_employee'),
    )

    def __repr__(self) -> str:
        return f"<PayRunEmployeeRecord(pay_run_id={self.pay_run_id}, employee={self.employee_code}, net={self.net_pay})>"


# ===========================================
# PAYSLIP
# ===========================================

class Payslip(BaseModel):
    """
    Employee-facing payslip. Every field except the delivery-tracking
    columns is frozen at creation.
    """

    __tablename__ = "payslips"

    payslip_number: Mapped[str] = mapped_column(
        String(50), unique=True, nullable=False,
        comment="e.g., PS-202603-0001",
    )
    pay_run_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("pay_runs.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("pay_run_employee_records.id", ondelete="RESTRICT"),
        unique=True,
        nullable=False,
    )
    employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("employees.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    salary_month: Mapped[int] = mapped_column(Integer, nullable=False)
    salary_year: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    # Denormalised employee details
    employee_name: Mapped[str] = mapped_column(String(300), nullable=False)
    employee_code: Mapped[str] = mapped_column(String(50), nullable=False)
    department: Mapped[str] = mapped_column(String(100), nullable=False)
    designation: Mapped[str] = mapped_column(String(100), nullable=False)
    pan_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    pf_number: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    esi_number: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    bank_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    bank_account_number: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    payment_mode: Mapped[PaymentMode] = mapped_column(SQLEnum(PaymentMode), nullable=False)

    # Days
    total_working_days: Mapped[int] = mapped_column(Integer, nullable=False)
    payable_days: Mapped[Decimal] = mapped_column(Numeric(precision=5, scale=1), nullable=False)
    loss_of_pay_days: Mapped[Decimal] = mapped_column(Numeric(precision=5, scale=1), nullable=False)

    # Amounts
    basic: Mapped[Decimal] = money_column()
    hra: Mapped[Decimal] = money_column()
    conveyance: Mapped[Decimal] = money_column()
    telephone: Mapped[Decimal] = money_column()
    medical_allowance: Mapped[Decimal] = money_column()
    special_allowance: Mapped[Decimal] = money_column()
    monthly_gross: Mapped[Decimal] = money_column()
    loss_of_pay_amount: Mapped[Decimal] = money_column()
    gross_salary: Mapped[Decimal] = money_column()
    pf_employee: Mapped[Decimal] = money_column()
    esi_employee: Mapped[Decimal] = money_column()
    professional_tax: Mapped[Decimal] = money_column()
    tds: Mapped[Decimal] = money_column()
    advance_deduction: Mapped[Decimal] = money_column()
    loan_deduction: Mapped[Decimal] = money_column()
    total_deductions: Mapped[Decimal] = money_column()
    net_pay: Mapped[Decimal] = money_column()
    net_pay_words: Mapped[str] = mapped_column(String(500), nullable=False)

    generated_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)

    # Delivery tracking (the only mutable part)
    is_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    download_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_downloaded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint('employee_id', 'salary_month', 'salary_year', name='uq_payslip_employee_period'),
    )

    def __repr__(self) -> str:
        return f"<Payslip(number={self.payslip_number}, employee={self.employee_code}, net={self.net_pay})>"


# ===========================================
# DOCUMENT SEQUENCES
# ===========================================

class DocumentSequence(BaseModel):
    """Last issued number per (sequence type, year, month)."""

    __tablename__ = "document_sequences"

    sequence_type: Mapped[str] = mapped_column(String(30), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    last_value: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        UniqueConstraint('sequence_type', 'year', 'month', name='uq_document_sequence_scope'),
    )

    def __repr__(self) -> str:
        return f"<DocumentSequence({self.sequence_type} {self.year}-{self.month:02d} = {self.last_value})>"


# ===========================================
# IMMUTABILITY GUARDS
# ===========================================

PAYSLIP_MUTABLE_FIELDS = frozenset({"is_sent", "sent_at", "download_count", "last_downloaded_at", "updated_at"})
RECORD_MUTABLE_FIELDS = frozenset({"payment_status", "failure_reason", "updated_at"})


def _changed_fields(target) -> set:
    state = inspect(target)
    return {attr.key for attr in state.attrs if attr.history.has_changes()}


@event.listens_for(Payslip, "before_update")
def payslip_before_update(mapper, connection, target):
    """Only delivery tracking may change once a payslip exists"""
    frozen = _changed_fields(target) - PAYSLIP_MUTABLE_FIELDS
    if frozen:
        raise ImmutableRecordError("Payslip", target.id, sorted(frozen))


@event.listens_for(PayRunEmployeeRecord, "before_update")
def record_before_update(mapper, connection, target):
    """Computed amounts are a snapshot; only the settlement outcome may change"""
    frozen = _changed_fields(target) - RECORD_MUTABLE_FIELDS
    if frozen:
        raise ImmutableRecordError("PayRunEmployeeRecord", target.id, sorted(frozen))
