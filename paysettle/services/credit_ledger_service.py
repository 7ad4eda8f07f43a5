"""
PaySettle - Credit Obligation Ledger

Bookkeeping for salary advances and employee loans:
- Advances are recovered installment by installment; every recovery is an
  append-only AdvanceInstallment row.
- Loans carry an EMI schedule written at activation; every EMI row is paid
  exactly once.

Mutations of one obligation are serialized by the shared keyed lock plus a
row lock, so a pay run and a manual recovery can never both deduct from the
same obligation at the same time.

Invariants held after every operation:
- Advance: amount_deducted + remaining_amount == paid_amount, and
  amount_deducted == sum of its installment rows
- Loan: remaining_emis == number_of_emis - total_paid_emis, and
  total_paid_emis == count of its paid EMI rows
"""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import date
from decimal import Decimal
from typing import AsyncIterator, List, Optional, Tuple

from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from paysettle.models.base import utcnow
from paysettle.models.obligations import (
    Advance, AdvanceInstallment, AdvanceStatus,
    Loan, LoanEMI, LoanStatus, EMIStatus,
)
from paysettle.schemas.payroll import AuditEvent, DueObligation, PayPeriod
from paysettle.services.collaborators import AuditSink, emit_audit
from paysettle.utils.error_handling import (
    InvalidAmount, InvalidTransition, LedgerIntegrityError, NoRemainingEMIs,
    ObligationNotActive, ObligationNotFound, OverDeduction, ValidationException,
)
from paysettle.utils.locks import KeyedLock, obligation_key, obligation_locks
from paysettle.utils.money import ZERO, HUNDRED, round_money, to_decimal

logger = logging.getLogger(__name__)


ADVANCE = "advance"
LOAN = "loan"


def compute_loan_terms(
    principal: Decimal,
    interest_rate: Decimal,
    number_of_emis: int,
) -> Tuple[Decimal, Decimal, Decimal]:
    """Flat interest terms: (interest_amount, total_amount, emi_amount)."""
    interest_amount = round_money(principal * interest_rate / HUNDRED)
    total_amount = round_money(principal + interest_amount)
    emi_amount = round_money(total_amount / number_of_emis)
    return interest_amount, total_amount, emi_amount


def build_emi_schedule(
    total_amount: Decimal,
    emi_amount: Decimal,
    number_of_emis: int,
    start: PayPeriod,
) -> List[Tuple[int, PayPeriod, Decimal]]:
    """One (emi_number, period, amount) per month; the last EMI takes the rounding residue."""
    schedule = []
    for n in range(1, number_of_emis + 1):
        amount = emi_amount
        if n == number_of_emis:
            amount = round_money(total_amount - emi_amount * (number_of_emis - 1))
        schedule.append((n, start.shift(n - 1), amount))
    return schedule


class CreditLedgerService:
    """Service for advance and loan recovery bookkeeping."""

    def __init__(
        self,
        db: AsyncSession,
        locks: Optional[KeyedLock] = None,
        audit_sink: Optional[AuditSink] = None,
    ):
        self.db = db
        self.locks = locks if locks is not None else obligation_locks
        self.audit_sink = audit_sink

    @asynccontextmanager
    async def _exclusive(self, kind: str, obligation_id: uuid.UUID, commit: bool) -> AsyncIterator[None]:
        """
        Standalone calls take the obligation lock themselves. Calls that are
        part of a caller's transaction (commit=False) must run in the task
        that already holds it.
        """
        key = obligation_key(kind, obligation_id)
        if commit:
            async with self.locks.hold(key):
                yield
        else:
            if not self.locks.held_by_current_task(key):
                raise LedgerIntegrityError(
                    f"{kind} {obligation_id} mutated without holding its lock",
                    details={"key": key},
                )
            yield

    # ===========================================
    # ADVANCES
    # ===========================================

    async def create_advance(
        self,
        employee_id: uuid.UUID,
        paid_amount: Decimal,
        installments: int,
        deduction_start: PayPeriod,
        paid_date: Optional[date] = None,
        reason: Optional[str] = None,
        created_by_id: Optional[uuid.UUID] = None,
    ) -> Advance:
        """Record an advance paid to an employee."""
        paid_amount = round_money(paid_amount)
        if paid_amount <= ZERO:
            raise InvalidAmount(paid_amount, field="paid_amount")
        if installments < 1:
            raise ValidationException("Installments must be at least 1", field="installments")

        advance = Advance(
            employee_id=employee_id,
            paid_amount=paid_amount,
            paid_date=paid_date or date.today(),
            installments=installments,
            installments_deducted=0,
            amount_deducted=ZERO,
            deduction_start_month=deduction_start.month,
            deduction_start_year=deduction_start.year,
            status=AdvanceStatus.PENDING,
            reason=reason,
            created_by_id=created_by_id,
        )
        self.db.add(advance)
        await self.db.commit()

        logger.info(f"Advance {advance.id} of {paid_amount} recorded for employee {employee_id}")
        return advance

    async def get_advance(self, advance_id: uuid.UUID, for_update: bool = False) -> Advance:
        query = select(Advance).where(Advance.id == advance_id).execution_options(populate_existing=True)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        advance = result.scalar_one_or_none()
        if not advance:
            raise ObligationNotFound("Advance", advance_id)
        return advance

    async def list_advance_installments(self, advance_id: uuid.UUID) -> List[AdvanceInstallment]:
        result = await self.db.execute(
            select(AdvanceInstallment)
            .where(AdvanceInstallment.advance_id == advance_id)
            .order_by(AdvanceInstallment.installment_number)
        )
        return list(result.scalars().all())

    async def cancel_advance(self, advance_id: uuid.UUID, reason: str) -> Advance:
        """Cancel an advance before any recovery has been taken."""
        async with self.locks.hold(obligation_key(ADVANCE, advance_id)):
            advance = await self.get_advance(advance_id, for_update=True)
            if advance.status != AdvanceStatus.PENDING:
                raise InvalidTransition("Advance", advance.status, AdvanceStatus.CANCELLED.value, advance_id)
            advance.status = AdvanceStatus.CANCELLED
            advance.remarks = reason
            await self.db.commit()

        logger.info(f"Advance {advance_id} cancelled: {reason}")
        return advance

    async def _check_advance_integrity(self, advance: Advance) -> None:
        result = await self.db.execute(
            select(func.coalesce(func.sum(AdvanceInstallment.amount), 0))
            .where(AdvanceInstallment.advance_id == advance.id)
        )
        recorded = round_money(result.scalar() or 0)
        if recorded != round_money(advance.amount_deducted) or advance.amount_deducted > advance.paid_amount:
            raise LedgerIntegrityError(
                f"Advance {advance.id} deducted {advance.amount_deducted} but installments sum to {recorded}",
                details={"advance_id": str(advance.id), "recorded": str(recorded)},
            )

    async def apply_advance_installment(
        self,
        advance_id: uuid.UUID,
        amount: Decimal,
        period: Optional[PayPeriod] = None,
        payslip_id: Optional[uuid.UUID] = None,
        commit: bool = True,
    ) -> AdvanceInstallment:
        """
        Recover ``amount`` from an advance.

        Raises ObligationNotActive unless the advance is pending or partial,
        and OverDeduction when the amount exceeds what is left.
        """
        amount = round_money(amount)
        if amount <= ZERO:
            raise InvalidAmount(amount)

        async with self._exclusive(ADVANCE, advance_id, commit):
            advance = await self.get_advance(advance_id, for_update=True)

            if advance.status not in (AdvanceStatus.PENDING, AdvanceStatus.PARTIAL):
                raise ObligationNotActive("Advance", advance_id, advance.status)
            if amount > advance.remaining_amount:
                raise OverDeduction(advance_id, amount, advance.remaining_amount)
            await self._check_advance_integrity(advance)

            advance.amount_deducted = round_money(advance.amount_deducted + amount)
            advance.installments_deducted += 1
            if advance.remaining_amount == ZERO:
                advance.status = AdvanceStatus.DEDUCTED
            else:
                advance.status = AdvanceStatus.PARTIAL

            installment = AdvanceInstallment(
                advance_id=advance.id,
                installment_number=advance.installments_deducted,
                amount=amount,
                month=period.month if period else None,
                year=period.year if period else None,
                payslip_id=payslip_id,
                balance_after=advance.remaining_amount,
            )
            self.db.add(installment)
            await self.db.flush()

            if commit:
                await self.db.commit()

        logger.info(
            f"Advance {advance_id}: recovered {amount}, remaining {advance.remaining_amount} "
            f"({advance.status.value})"
        )
        if commit:
            await emit_audit(self.audit_sink, AuditEvent(
                event_type="obligation.deduction_applied",
                entity_type="advance",
                entity_id=str(advance_id),
                data={
                    "amount": str(amount),
                    "remaining": str(advance.remaining_amount),
                    "status": advance.status.value,
                },
            ))
        return installment

    # ===========================================
    # LOANS
    # ===========================================

    async def create_loan(
        self,
        employee_id: uuid.UUID,
        principal: Decimal,
        interest_rate: Decimal,
        number_of_emis: int,
        start: PayPeriod,
        remarks: Optional[str] = None,
        created_by_id: Optional[uuid.UUID] = None,
    ) -> Loan:
        """Create a loan request in pending status."""
        principal = round_money(principal)
        interest_rate = to_decimal(interest_rate)
        if principal <= ZERO:
            raise InvalidAmount(principal, field="principal")
        if interest_rate < ZERO:
            raise InvalidAmount(interest_rate, field="interest_rate", message="Interest rate cannot be negative")
        if number_of_emis < 1:
            raise ValidationException("Number of EMIs must be at least 1", field="number_of_emis")

        interest_amount, total_amount, emi_amount = compute_loan_terms(principal, interest_rate, number_of_emis)

        loan = Loan(
            employee_id=employee_id,
            principal=principal,
            interest_rate=interest_rate,
            interest_amount=interest_amount,
            total_amount=total_amount,
            number_of_emis=number_of_emis,
            emi_amount=emi_amount,
            start_month=start.month,
            start_year=start.year,
            total_paid_emis=0,
            amount_paid=ZERO,
            status=LoanStatus.PENDING,
            remarks=remarks,
            created_by_id=created_by_id,
        )
        self.db.add(loan)
        await self.db.commit()

        logger.info(f"Loan {loan.id} requested: {principal} @ {interest_rate}% over {number_of_emis} EMIs")
        return loan

    async def get_loan(self, loan_id: uuid.UUID, for_update: bool = False) -> Loan:
        query = select(Loan).where(Loan.id == loan_id).execution_options(populate_existing=True)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        loan = result.scalar_one_or_none()
        if not loan:
            raise ObligationNotFound("Loan", loan_id)
        return loan

    async def list_loan_emis(self, loan_id: uuid.UUID) -> List[LoanEMI]:
        result = await self.db.execute(
            select(LoanEMI)
            .where(LoanEMI.loan_id == loan_id)
            .order_by(LoanEMI.emi_number)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _transition_loan(
        self,
        loan_id: uuid.UUID,
        allowed: Tuple[LoanStatus, ...],
        target: LoanStatus,
    ) -> Loan:
        loan = await self.get_loan(loan_id, for_update=True)
        if loan.status not in allowed:
            raise InvalidTransition("Loan", loan.status, target.value, loan_id)
        loan.status = target
        return loan

    async def approve_loan(self, loan_id: uuid.UUID, approver_id: uuid.UUID) -> Loan:
        if approver_id is None:
            raise ValidationException("Approver is required", field="approver_id")
        async with self.locks.hold(obligation_key(LOAN, loan_id)):
            loan = await self._transition_loan(loan_id, (LoanStatus.PENDING,), LoanStatus.APPROVED)
            loan.approved_by_id = approver_id
            loan.approved_at = utcnow()
            await self.db.commit()

        logger.info(f"Loan {loan_id} approved by {approver_id}")
        return loan

    async def activate_loan(self, loan_id: uuid.UUID) -> Loan:
        """Disburse an approved loan and write its EMI schedule."""
        async with self.locks.hold(obligation_key(LOAN, loan_id)):
            loan = await self._transition_loan(loan_id, (LoanStatus.APPROVED,), LoanStatus.ACTIVE)
            loan.activated_at = utcnow()

            start = PayPeriod(month=loan.start_month, year=loan.start_year)
            for number, period, amount in build_emi_schedule(
                loan.total_amount, loan.emi_amount, loan.number_of_emis, start
            ):
                self.db.add(LoanEMI(
                    loan_id=loan.id,
                    emi_number=number,
                    emi_month=period.month,
                    emi_year=period.year,
                    amount=amount,
                    status=EMIStatus.PENDING,
                ))
            await self.db.commit()

        logger.info(f"Loan {loan_id} activated with {loan.number_of_emis} EMIs from {start.label}")
        await emit_audit(self.audit_sink, AuditEvent(
            event_type="loan.activated",
            entity_type="loan",
            entity_id=str(loan_id),
            data={"total_amount": str(loan.total_amount), "emis": loan.number_of_emis},
        ))
        return loan

    async def cancel_loan(self, loan_id: uuid.UUID, reason: str) -> Loan:
        async with self.locks.hold(obligation_key(LOAN, loan_id)):
            loan = await self._transition_loan(
                loan_id, (LoanStatus.PENDING, LoanStatus.APPROVED), LoanStatus.CANCELLED
            )
            loan.remarks = reason
            loan.closed_at = utcnow()
            await self.db.commit()

        logger.info(f"Loan {loan_id} cancelled: {reason}")
        return loan

    async def mark_loan_defaulted(self, loan_id: uuid.UUID, reason: str) -> Loan:
        async with self.locks.hold(obligation_key(LOAN, loan_id)):
            loan = await self._transition_loan(loan_id, (LoanStatus.ACTIVE,), LoanStatus.DEFAULTED)
            loan.remarks = reason
            loan.closed_at = utcnow()
            await self.db.commit()

        logger.warning(f"Loan {loan_id} marked defaulted with balance {loan.remaining_balance}: {reason}")
        return loan

    async def _check_loan_integrity(self, loan: Loan) -> None:
        result = await self.db.execute(
            select(func.count(LoanEMI.id), func.coalesce(func.sum(LoanEMI.amount), 0))
            .where(and_(LoanEMI.loan_id == loan.id, LoanEMI.status == EMIStatus.PAID))
        )
        paid_count, paid_sum = result.one()
        if paid_count != loan.total_paid_emis or round_money(paid_sum) != round_money(loan.amount_paid):
            raise LedgerIntegrityError(
                f"Loan {loan.id} records {loan.total_paid_emis} paid EMIs / {loan.amount_paid} "
                f"but schedule shows {paid_count} / {paid_sum}",
                details={"loan_id": str(loan.id)},
            )

    async def _next_due_emi(self, loan_id: uuid.UUID, period: PayPeriod) -> Optional[LoanEMI]:
        """Earliest unpaid EMI scheduled on or before ``period``."""
        result = await self.db.execute(
            select(LoanEMI)
            .where(
                and_(
                    LoanEMI.loan_id == loan_id,
                    LoanEMI.status == EMIStatus.PENDING,
                    LoanEMI.emi_year * 12 + LoanEMI.emi_month - 1 <= period.index,
                )
            )
            .order_by(LoanEMI.emi_number)
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def apply_loan_emi(
        self,
        loan_id: uuid.UUID,
        period: PayPeriod,
        payslip_id: Optional[uuid.UUID] = None,
        commit: bool = True,
    ) -> LoanEMI:
        """
        Mark the EMI due for ``period`` paid.

        Raises ObligationNotActive unless the loan is active, and
        NoRemainingEMIs when nothing is left to pay for the period.
        """
        async with self._exclusive(LOAN, loan_id, commit):
            loan = await self.get_loan(loan_id, for_update=True)

            if loan.status != LoanStatus.ACTIVE:
                raise ObligationNotActive("Loan", loan_id, loan.status)
            if loan.remaining_emis <= 0:
                raise NoRemainingEMIs(loan_id)
            await self._check_loan_integrity(loan)

            emi = await self._next_due_emi(loan_id, period)
            if emi is None:
                raise NoRemainingEMIs(loan_id, period.label)

            amount = min(emi.amount, loan.remaining_balance)
            if amount != emi.amount:
                raise LedgerIntegrityError(
                    f"Loan {loan_id} EMI {emi.emi_number} of {emi.amount} exceeds balance {loan.remaining_balance}",
                    details={"loan_id": str(loan_id), "emi_number": emi.emi_number},
                )

            emi.status = EMIStatus.PAID
            emi.paid_at = utcnow()
            emi.paid_month = period.month
            emi.paid_year = period.year
            emi.payslip_id = payslip_id

            loan.total_paid_emis += 1
            loan.amount_paid = round_money(loan.amount_paid + amount)
            if loan.remaining_emis == 0:
                loan.status = LoanStatus.COMPLETED
                loan.closed_at = utcnow()
            await self.db.flush()

            if commit:
                await self.db.commit()

        logger.info(
            f"Loan {loan_id}: EMI {emi.emi_number} paid ({amount}), "
            f"{loan.remaining_emis} remaining, balance {loan.remaining_balance}"
        )
        if commit:
            await emit_audit(self.audit_sink, AuditEvent(
                event_type="obligation.deduction_applied",
                entity_type="loan",
                entity_id=str(loan_id),
                data={
                    "emi_number": emi.emi_number,
                    "amount": str(amount),
                    "remaining_emis": loan.remaining_emis,
                    "remaining_balance": str(loan.remaining_balance),
                    "status": loan.status.value,
                },
            ))
        return emi

    # ===========================================
    # DUE OBLIGATIONS
    # ===========================================

    async def get_due_obligations_for_period(
        self,
        employee_id: uuid.UUID,
        period: PayPeriod,
    ) -> List[DueObligation]:
        """
        Installments owed by the employee in ``period``, each capped at the
        obligation's remaining balance. Read-only.
        """
        due: List[DueObligation] = []

        result = await self.db.execute(
            select(Advance)
            .where(
                and_(
                    Advance.employee_id == employee_id,
                    Advance.status.in_([AdvanceStatus.PENDING, AdvanceStatus.PARTIAL]),
                )
            )
            .order_by(Advance.paid_date, Advance.id)
            .execution_options(populate_existing=True)
        )
        for advance in result.scalars().all():
            if not advance.is_due(period.month, period.year):
                continue
            due.append(DueObligation(
                kind=ADVANCE,
                obligation_id=advance.id,
                installment_number=advance.installments_deducted + 1,
                amount=advance.next_installment_amount,
            ))

        result = await self.db.execute(
            select(Loan)
            .where(and_(Loan.employee_id == employee_id, Loan.status == LoanStatus.ACTIVE))
            .order_by(Loan.start_year, Loan.start_month, Loan.id)
            .execution_options(populate_existing=True)
        )
        for loan in result.scalars().all():
            emi = await self._next_due_emi(loan.id, period)
            if emi is None:
                continue
            amount = min(emi.amount, loan.remaining_balance)
            if amount <= ZERO:
                continue
            due.append(DueObligation(
                kind=LOAN,
                obligation_id=loan.id,
                installment_number=emi.emi_number,
                amount=amount,
                emi_id=emi.id,
            ))

        return due
