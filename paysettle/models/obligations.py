"""
PaySettle - Credit Obligation Models

Salary advances and employee loans recovered through payroll:
- Advance + AdvanceInstallment (append-only recovery entries)
- Loan + LoanEMI (EMI schedule written at activation, each row paid once)

Balances that are always derivable (remaining amount, remaining EMIs,
remaining balance, completion percentage) are properties, not columns.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Date, DateTime, ForeignKey, Integer, Numeric, String, Text, Uuid,
    Enum as SQLEnum, UniqueConstraint, CheckConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from paysettle.models.base import BaseModel, AuditMixin
from paysettle.utils.money import HUNDRED, ZERO, round_money


# ===========================================
# ENUMS
# ===========================================

class AdvanceStatus(str, Enum):
    """Recovery status of a salary advance."""
    PENDING = "pending"
    PARTIAL = "partial"
    DEDUCTED = "deducted"
    CANCELLED = "cancelled"


class LoanStatus(str, Enum):
    """Loan lifecycle status."""
    PENDING = "pending"
    APPROVED = "approved"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DEFAULTED = "defaulted"


class EMIStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    SKIPPED = "skipped"


def period_index(month: int, year: int) -> int:
    """Monotonic month number used to compare periods."""
    return year * 12 + (month - 1)


# ===========================================
# ADVANCES
# ===========================================

class Advance(BaseModel, AuditMixin):
    """
    Salary advance paid out up front and recovered in equal installments
    starting from the deduction start period.
    """

    __tablename__ = "advances"

    employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    paid_amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2), nullable=False,
        comment="Amount advanced to the employee",
    )
    paid_date: Mapped[date] = mapped_column(Date, nullable=False)
    installments: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    installments_deducted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    amount_deducted: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2), default=Decimal("0.00"), nullable=False,
    )
    deduction_start_month: Mapped[int] = mapped_column(Integer, nullable=False)
    deduction_start_year: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[AdvanceStatus] = mapped_column(
        SQLEnum(AdvanceStatus),
        default=AdvanceStatus.PENDING,
        nullable=False,
    )
    reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    remarks: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint('paid_amount > 0', name='advance_paid_amount_positive'),
        CheckConstraint('installments > 0', name='advance_installments_positive'),
        CheckConstraint('amount_deducted <= paid_amount', name='advance_not_over_deducted'),
    )

    @property
    def per_installment_amount(self) -> Decimal:
        return round_money(self.paid_amount / self.installments)

    @property
    def remaining_amount(self) -> Decimal:
        return round_money(self.paid_amount - self.amount_deducted)

    @property
    def next_installment_amount(self) -> Decimal:
        """
        Amount the next recovery takes. The final scheduled installment
        clears the rounding residue.
        """
        remaining = self.remaining_amount
        if self.installments_deducted + 1 >= self.installments:
            return remaining
        return min(self.per_installment_amount, remaining)

    def is_due(self, month: int, year: int) -> bool:
        return (
            self.status in (AdvanceStatus.PENDING, AdvanceStatus.PARTIAL)
            and self.remaining_amount > ZERO
            and period_index(self.deduction_start_month, self.deduction_start_year) <= period_index(month, year)
        )

    def __repr__(self) -> str:
        return f"<Advance(id={self.id}, paid={self.paid_amount}, deducted={self.amount_deducted}, status={self.status})>"


class AdvanceInstallment(BaseModel):
    """One recovery applied against an advance. Never updated or deleted."""

    __tablename__ = "advance_installments"

    advance_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("advances.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    installment_number: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2), nullable=False)
    month: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    year: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    payslip_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("payslips.id", ondelete="SET NULL"),
        nullable=True,
        comment="Set when recovered through payroll",
    )
    balance_after: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2), nullable=False)

    __table_args__ = (
        UniqueConstraint('advance_id', 'installment_number', name='uq_advance_installment_number'),
    )

    def __repr__(self) -> str:
        return f"<AdvanceInstallment(advance_id={self.advance_id}, n={self.installment_number}, amount={self.amount})>"


# ===========================================
# LOANS
# ===========================================

class Loan(BaseModel, AuditMixin):
    """
    Employee loan with flat interest, repaid in equal monthly installments.
    """

    __tablename__ = "loans"

    employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    principal: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False)
    interest_rate: Mapped[Decimal] = mapped_column(
        Numeric(precision=5, scale=2), default=Decimal("0.00"), nullable=False,
        comment="Flat interest percentage over the whole tenure",
    )
    interest_amount: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=15, scale=2), nullable=False,
        comment="Principal + interest",
    )
    number_of_emis: Mapped[int] = mapped_column(Integer, nullable=False)
    emi_amount: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False)

    start_month: Mapped[int] = mapped_column(Integer, nullable=False)
    start_year: Mapped[int] = mapped_column(Integer, nullable=False)

    # Balance tracking
    total_paid_emis: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(
        Numeric(precision=15, scale=2), default=Decimal("0.00"), nullable=False,
    )

    status: Mapped[LoanStatus] = mapped_column(
        SQLEnum(LoanStatus),
        default=LoanStatus.PENDING,
        nullable=False,
    )
    approved_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    activated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    remarks: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint('principal > 0', name='loan_principal_positive'),
        CheckConstraint('number_of_emis > 0', name='loan_emis_positive'),
        CheckConstraint('total_paid_emis <= number_of_emis', name='loan_paid_emis_bounded'),
    )

    @property
    def remaining_emis(self) -> int:
        return self.number_of_emis - self.total_paid_emis

    @property
    def remaining_balance(self) -> Decimal:
        return round_money(self.total_amount - self.amount_paid)

    @property
    def completion_percentage(self) -> Decimal:
        if not self.total_amount:
            return ZERO
        return round_money(self.amount_paid / self.total_amount * HUNDRED)

    def __repr__(self) -> str:
        return (
            f"<Loan(id={self.id}, total={self.total_amount}, paid_emis={self.total_paid_emis}/"
            f"{self.number_of_emis}, status={self.status})>"
        )


class LoanEMI(BaseModel):
    """Scheduled installment of a loan."""

    __tablename__ = "loan_emis"

    loan_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("loans.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    emi_number: Mapped[int] = mapped_column(Integer, nullable=False)
    emi_month: Mapped[int] = mapped_column(Integer, nullable=False)
    emi_year: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False)

    status: Mapped[EMIStatus] = mapped_column(
        SQLEnum(EMIStatus),
        default=EMIStatus.PENDING,
        nullable=False,
    )
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_month: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    paid_year: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    payslip_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("payslips.id", ondelete="SET NULL"),
        nullable=True,
    )

    __table_args__ = (
        UniqueConstraint('loan_id', 'emi_number', name='uq_loan_emi_number'),
    )

    @property
    def period_index(self) -> int:
        return period_index(self.emi_month, self.emi_year)

    def __repr__(self) -> str:
        return f"<LoanEMI(loan_id={self.loan_id}, n={self.emi_number}, {self.emi_year}-{self.emi_month:02d}, status={self.status})>"
