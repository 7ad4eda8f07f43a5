"""
PaySettle - Payslip Service

Turns a PayRunEmployeeRecord into the employee-facing Payslip:
- issues the next number from the (PAYSLIP, year, month) sequence
- copies the employee snapshot and every amount onto the payslip
- guards against a second payslip for the same employee and month

After creation only delivery tracking (sent flag, downloads) may change.
"""

import logging
import uuid
from datetime import date
from typing import List, Optional

from sqlalchemy import select, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from paysettle.config import settings
from paysettle.models.base import utcnow
from paysettle.models.payroll import DocumentSequence, PayRun, PayRunEmployeeRecord, Payslip
from paysettle.schemas.payroll import EmployeeSnapshot, PayPeriod
from paysettle.utils.error_handling import (
    DuplicatePayslip, NotFoundException, PayRunNotFound, SequenceConflict,
)
from paysettle.utils.money import amount_in_words

logger = logging.getLogger(__name__)


PAYSLIP_SEQUENCE = "PAYSLIP"


class PayslipService:
    """Service for payslip numbering, finalization and delivery tracking."""

    def __init__(self, db: AsyncSession, prefix: Optional[str] = None):
        self.db = db
        self.prefix = prefix or settings.payslip_number_prefix

    # ===========================================
    # NUMBERING
    # ===========================================

    async def next_number(self, sequence_type: str, period: PayPeriod) -> int:
        """Increment and return the counter for (sequence_type, year, month)."""
        result = await self.db.execute(
            select(DocumentSequence)
            .where(
                and_(
                    DocumentSequence.sequence_type == sequence_type,
                    DocumentSequence.year == period.year,
                    DocumentSequence.month == period.month,
                )
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        sequence = result.scalar_one_or_none()
        if sequence is None:
            sequence = DocumentSequence(
                sequence_type=sequence_type,
                year=period.year,
                month=period.month,
                last_value=0,
            )
            self.db.add(sequence)

        sequence.last_value += 1
        try:
            await self.db.flush()
        except IntegrityError as e:
            # Another worker created the counter row first
            raise SequenceConflict(sequence_type, period.month, period.year) from e
        return sequence.last_value

    async def next_payslip_number(self, period: PayPeriod) -> str:
        value = await self.next_number(PAYSLIP_SEQUENCE, period)
        return f"{self.prefix}-{period.year}{period.month:02d}-{value:04d}"

    # ===========================================
    # FINALIZATION
    # ===========================================

    async def finalize(
        self,
        record: PayRunEmployeeRecord,
        snapshot: EmployeeSnapshot,
        payment_date: Optional[date] = None,
        generated_by_id: Optional[uuid.UUID] = None,
        idempotent: bool = False,
        commit: bool = True,
    ) -> Payslip:
        """
        Create the payslip for ``record``.

        Raises DuplicatePayslip when the employee already has one for the
        month, unless ``idempotent`` is set, in which case the existing
        payslip is returned unchanged.
        """
        pay_run = await self.db.get(PayRun, record.pay_run_id)
        if not pay_run:
            raise PayRunNotFound(record.pay_run_id)
        period = PayPeriod(month=pay_run.salary_month, year=pay_run.salary_year)

        existing = await self.get_employee_payslip(record.employee_id, period)
        if existing:
            if idempotent:
                logger.info(f"Payslip {existing.payslip_number} already issued for {snapshot.employee_code}")
                return existing
            raise DuplicatePayslip(record.employee_id, period.month, period.year, existing.payslip_number)

        payslip = Payslip(
            payslip_number=await self.next_payslip_number(period),
            pay_run_id=pay_run.id,
            record_id=record.id,
            employee_id=record.employee_id,
            salary_month=period.month,
            salary_year=period.year,
            payment_date=payment_date or pay_run.payment_date,
            # Employee details as of processing
            employee_name=snapshot.full_name,
            employee_code=snapshot.employee_code,
            department=snapshot.department,
            designation=snapshot.designation,
            pan_number=snapshot.pan_number,
            pf_number=snapshot.pf_number,
            esi_number=snapshot.esi_number,
            bank_name=snapshot.bank_name,
            bank_account_number=snapshot.bank_account_number,
            payment_mode=record.payment_mode,
            # Days
            total_working_days=record.total_working_days,
            payable_days=record.payable_days,
            loss_of_pay_days=record.loss_of_pay_days,
            # Amounts
            basic=record.basic,
            hra=record.hra,
            conveyance=record.conveyance,
            telephone=record.telephone,
            medical_allowance=record.medical_allowance,
            special_allowance=record.special_allowance,
            monthly_gross=record.monthly_gross,
            loss_of_pay_amount=record.loss_of_pay_amount,
            gross_salary=record.gross_salary,
            pf_employee=record.pf_employee,
            esi_employee=record.esi_employee,
            professional_tax=record.professional_tax,
            tds=record.tds,
            advance_deduction=record.advance_deduction,
            loan_deduction=record.loan_deduction,
            total_deductions=record.total_deductions,
            net_pay=record.net_pay,
            net_pay_words=amount_in_words(record.net_pay),
            generated_by_id=generated_by_id,
            is_sent=False,
            download_count=0,
        )
        self.db.add(payslip)
        try:
            await self.db.flush()
        except IntegrityError as e:
            # Another worker issued the payslip between the check and the insert
            raise DuplicatePayslip(record.employee_id, period.month, period.year) from e

        if commit:
            await self.db.commit()

        logger.info(f"Payslip {payslip.payslip_number} issued to {snapshot.employee_code}: net {payslip.net_pay}")
        return payslip

    # ===========================================
    # QUERIES
    # ===========================================

    async def get_payslip(self, payslip_id: uuid.UUID) -> Payslip:
        payslip = await self.db.get(Payslip, payslip_id)
        if not payslip:
            raise NotFoundException("Payslip", payslip_id)
        return payslip

    async def get_employee_payslip(
        self,
        employee_id: uuid.UUID,
        period: PayPeriod,
    ) -> Optional[Payslip]:
        result = await self.db.execute(
            select(Payslip).where(
                and_(
                    Payslip.employee_id == employee_id,
                    Payslip.salary_month == period.month,
                    Payslip.salary_year == period.year,
                )
            )
        )
        return result.scalar_one_or_none()

    async def list_payslips_for_run(self, pay_run_id: uuid.UUID) -> List[Payslip]:
        result = await self.db.execute(
            select(Payslip)
            .where(Payslip.pay_run_id == pay_run_id)
            .order_by(Payslip.payslip_number)
        )
        return list(result.scalars().all())

    # ===========================================
    # DELIVERY TRACKING
    # ===========================================

    async def mark_sent(self, payslip_id: uuid.UUID) -> Payslip:
        payslip = await self.get_payslip(payslip_id)
        if not payslip.is_sent:
            payslip.is_sent = True
            payslip.sent_at = utcnow()
            await self.db.commit()
        return payslip

    async def record_download(self, payslip_id: uuid.UUID) -> Payslip:
        payslip = await self.get_payslip(payslip_id)
        payslip.download_count += 1
        payslip.last_downloaded_at = utcnow()
        await self.db.commit()
        return payslip
