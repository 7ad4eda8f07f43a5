"""
PaySettle - Pay Run Service

Orchestrates a month's payroll:

    generate  ->  draft  --approve-->  approved  --process-->  processed
                    \\                     /
                     +----> cancelled <---+

Generation is all-or-nothing: either every eligible employee gets a record
and the run is committed, or nothing is written. Employees without an
approved attendance summary (or profile) are skipped and reported as
warnings on the run.

Processing is per-employee best effort. Each employee's payslip and the
advance / loan deductions it carries commit together in their own
transaction; a failure rolls back only that employee and is reported.
Re-running ``process_pay_run(..., retry=True)`` on a processed run
re-attempts the failed subset and returns the payslips already issued.

All state transitions of a period hold that period's keyed lock, and
generation additionally relies on a partial unique index, so two operators
can never create two live runs for the same month.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from pydantic import ValidationError
from sqlalchemy import select, func, and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from paysettle.config import settings
from paysettle.models.base import utcnow
from paysettle.models.payroll import (
    PayRun, PayRunStatus, PayRunEmployeeRecord, Payslip, RecordPaymentStatus,
)
from paysettle.models.employee import PaymentMode
from paysettle.schemas.payroll import (
    AuditEvent, DueObligation, EmployeePayComputation, EmployeeSnapshot, FailedEmployee,
    PayPeriod, PayRunSummary, ProcessedEmployee, ProcessingReport,
)
from paysettle.services.collaborators import (
    AttendanceStore, AuditSink, EmployeeDirectory, LoggingAuditSink,
    LoggingNotificationService, NotificationService, SettingsStatutoryConfigProvider,
    SqlAttendanceStore, SqlEmployeeDirectory, StatutoryConfigProvider, emit_audit,
)
from paysettle.services.credit_ledger_service import ADVANCE, CreditLedgerService
from paysettle.services.payroll_calculator import PayrollCalculator
from paysettle.services.payslip_service import PayslipService
from paysettle.utils.error_handling import (
    AppException, DeductionMismatch, DuplicatePayslip, DuplicatePeriod, ErrorCode,
    GenerationCancelled, InvalidTransition, NoEligibleEmployees, NotFoundException,
    PayRunNotFound, ValidationException,
)
from paysettle.utils.locks import (
    KeyedLock, obligation_key, obligation_locks as shared_obligation_locks,
    period_key, period_locks as shared_period_locks,
)
from paysettle.utils.money import sum_money

logger = logging.getLogger(__name__)


# Periods whose in-flight generation should stop at the next employee
_cancel_requests: Set[str] = set()


def _period(month: int, year: int) -> PayPeriod:
    try:
        return PayPeriod(month=month, year=year)
    except ValidationError as e:
        raise ValidationException(
            f"Invalid payroll period {year}-{month}",
            details={"errors": e.errors(include_url=False)},
        ) from e


class PayRunService:
    """Service for pay run generation, approval, processing and cancellation."""

    def __init__(
        self,
        db: AsyncSession,
        directory: Optional[EmployeeDirectory] = None,
        attendance_store: Optional[AttendanceStore] = None,
        statutory_provider: Optional[StatutoryConfigProvider] = None,
        audit_sink: Optional[AuditSink] = None,
        notifier: Optional[NotificationService] = None,
        calculator: Optional[PayrollCalculator] = None,
        period_locks: Optional[KeyedLock] = None,
        obligation_locks: Optional[KeyedLock] = None,
    ):
        self.db = db
        self.directory = directory or SqlEmployeeDirectory(db)
        self.attendance_store = attendance_store or SqlAttendanceStore(db)
        self.statutory_provider = statutory_provider or SettingsStatutoryConfigProvider()
        self.audit_sink = audit_sink or LoggingAuditSink()
        if notifier is None and settings.notifications_enabled:
            notifier = LoggingNotificationService()
        self.notifier = notifier
        self.calculator = calculator or PayrollCalculator()
        self.period_locks = period_locks if period_locks is not None else shared_period_locks
        self.obligation_locks = obligation_locks if obligation_locks is not None else shared_obligation_locks
        self.ledger = CreditLedgerService(db, locks=self.obligation_locks, audit_sink=self.audit_sink)
        self.payslips = PayslipService(db)

    # ===========================================
    # QUERIES
    # ===========================================

    async def get_pay_run(self, pay_run_id: uuid.UUID, for_update: bool = False) -> PayRun:
        query = select(PayRun).where(PayRun.id == pay_run_id).execution_options(populate_existing=True)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        pay_run = result.scalar_one_or_none()
        if not pay_run:
            raise PayRunNotFound(pay_run_id)
        return pay_run

    async def find_live_pay_run(self, month: int, year: int) -> Optional[PayRun]:
        """The non-cancelled run for the period, if any."""
        result = await self.db.execute(
            select(PayRun).where(
                and_(
                    PayRun.salary_month == month,
                    PayRun.salary_year == year,
                    PayRun.status != PayRunStatus.CANCELLED,
                )
            )
        )
        return result.scalar_one_or_none()

    async def list_pay_runs(
        self,
        year: Optional[int] = None,
        status: Optional[PayRunStatus] = None,
    ) -> List[PayRun]:
        query = select(PayRun)
        if year is not None:
            query = query.where(PayRun.salary_year == year)
        if status is not None:
            query = query.where(PayRun.status == status)
        query = query.order_by(PayRun.salary_year.desc(), PayRun.salary_month.desc(), PayRun.pay_run_code)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def list_records(self, pay_run_id: uuid.UUID) -> List[PayRunEmployeeRecord]:
        result = await self.db.execute(
            select(PayRunEmployeeRecord)
            .where(PayRunEmployeeRecord.pay_run_id == pay_run_id)
            .order_by(PayRunEmployeeRecord.employee_code)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_pay_run_summary(self, pay_run_id: uuid.UUID) -> PayRunSummary:
        pay_run = await self.get_pay_run(pay_run_id)

        payslips = await self.db.execute(
            select(func.count(Payslip.id)).where(Payslip.pay_run_id == pay_run_id)
        )
        failed = await self.db.execute(
            select(func.count(PayRunEmployeeRecord.id)).where(
                and_(
                    PayRunEmployeeRecord.pay_run_id == pay_run_id,
                    PayRunEmployeeRecord.payment_status == RecordPaymentStatus.FAILED,
                )
            )
        )
        return PayRunSummary(
            id=pay_run.id,
            pay_run_code=pay_run.pay_run_code,
            salary_month=pay_run.salary_month,
            salary_year=pay_run.salary_year,
            status=pay_run.status.value,
            total_employees=pay_run.total_employees,
            total_gross=pay_run.total_gross,
            total_deductions=pay_run.total_deductions,
            total_net_pay=pay_run.total_net_pay,
            payslips_issued=payslips.scalar() or 0,
            records_failed=failed.scalar() or 0,
            generation_warnings=pay_run.generation_warnings or [],
        )

    # ===========================================
    # GENERATION
    # ===========================================

    @staticmethod
    def request_generation_cancel(month: int, year: int) -> None:
        """Ask an in-flight generation for the period to stop at the next employee."""
        _cancel_requests.add(period_key(month, year))
        logger.info(f"Cancellation requested for pay run generation {year}-{month:02d}")

    async def _next_pay_run_code(self, period: PayPeriod) -> str:
        result = await self.db.execute(
            select(func.count(PayRun.id)).where(
                and_(PayRun.salary_month == period.month, PayRun.salary_year == period.year)
            )
        )
        sequence = (result.scalar() or 0) + 1
        return f"PR-{period.year}-{period.month:02d}-{sequence:02d}"

    async def _claimed_obligations(self, employee_id: uuid.UUID, period: PayPeriod) -> Set[str]:
        """
        Obligation keys the employee's unsettled records in other live runs
        still expect to deduct.
        """
        result = await self.db.execute(
            select(PayRunEmployeeRecord.obligation_breakdown)
            .join(PayRun, PayRun.id == PayRunEmployeeRecord.pay_run_id)
            .where(
                and_(
                    PayRunEmployeeRecord.employee_id == employee_id,
                    PayRunEmployeeRecord.payment_status != RecordPaymentStatus.PAID,
                    PayRun.status != PayRunStatus.CANCELLED,
                    or_(PayRun.salary_month != period.month, PayRun.salary_year != period.year),
                )
            )
        )
        return {
            obligation_key(entry["kind"], entry["obligation_id"])
            for breakdown in result.scalars().all()
            for entry in breakdown or []
        }

    async def _unclaimed_due(self, employee_id: uuid.UUID, period: PayPeriod) -> List[DueObligation]:
        """Due obligations minus those another open record will settle first."""
        due = await self.ledger.get_due_obligations_for_period(employee_id, period)
        if not due:
            return due
        claimed = await self._claimed_obligations(employee_id, period)
        unclaimed = []
        for obligation in due:
            if obligation_key(obligation.kind, obligation.obligation_id) in claimed:
                logger.info(
                    f"{obligation.kind} {obligation.obligation_id} for employee {employee_id} is claimed "
                    f"by another open pay run; not deducted in {period.label}"
                )
                continue
            unclaimed.append(obligation)
        return unclaimed

    @staticmethod
    def _build_record(
        pay_run: PayRun,
        computation: EmployeePayComputation,
        snapshot: EmployeeSnapshot,
        payment_mode: PaymentMode,
    ) -> PayRunEmployeeRecord:
        return PayRunEmployeeRecord(
            pay_run_id=pay_run.id,
            employee_id=computation.employee_id,
            employee_name=snapshot.full_name,
            employee_code=snapshot.employee_code,
            department=snapshot.department,
            designation=snapshot.designation,
            total_working_days=computation.total_working_days,
            payable_days=computation.payable_days,
            loss_of_pay_days=computation.loss_of_pay_days,
            basic=computation.basic,
            hra=computation.hra,
            conveyance=computation.conveyance,
            telephone=computation.telephone,
            medical_allowance=computation.medical_allowance,
            special_allowance=computation.special_allowance,
            monthly_gross=computation.gross_salary,
            loss_of_pay_amount=computation.loss_of_pay_amount,
            gross_salary=computation.adjusted_gross,
            pf_employee=computation.pf,
            esi_employee=computation.esi,
            professional_tax=computation.professional_tax,
            tds=computation.tds,
            advance_deduction=computation.advance_deduction,
            loan_deduction=computation.loan_deduction,
            total_deductions=computation.total_deductions,
            net_pay=computation.net_pay,
            pf_employer=computation.pf_employer,
            esi_employer=computation.esi_employer,
            obligation_breakdown=[o.to_breakdown() for o in computation.obligations],
            payment_mode=payment_mode,
            payment_status=RecordPaymentStatus.PENDING,
        )

    @staticmethod
    def _apply_totals(pay_run: PayRun, records: List[PayRunEmployeeRecord]) -> None:
        pay_run.total_employees = len(records)
        pay_run.total_gross = sum_money(r.gross_salary for r in records)
        pay_run.total_loss_of_pay = sum_money(r.loss_of_pay_amount for r in records)
        pay_run.total_deductions = sum_money(r.total_deductions for r in records)
        pay_run.total_net_pay = sum_money(r.net_pay for r in records)
        pay_run.total_pf_employee = sum_money(r.pf_employee for r in records)
        pay_run.total_esi_employee = sum_money(r.esi_employee for r in records)
        pay_run.total_advance_deduction = sum_money(r.advance_deduction for r in records)
        pay_run.total_loan_deduction = sum_money(r.loan_deduction for r in records)

    async def generate_pay_run(
        self,
        month: int,
        year: int,
        requested_by: Optional[uuid.UUID] = None,
    ) -> PayRun:
        """
        Create the draft pay run for a month with one record per eligible employee.

        Raises DuplicatePeriod if a live run exists, NoEligibleEmployees if
        nobody could be computed, GenerationCancelled if cancelled mid-way.
        Any calculator error other than missing data aborts the whole run.
        """
        period = _period(month, year)
        key = period_key(month, year)

        async with self.period_locks.hold(key):
            _cancel_requests.discard(key)
            try:
                existing = await self.find_live_pay_run(month, year)
                if existing:
                    raise DuplicatePeriod(month, year, existing.id)

                employee_ids = await self.directory.get_active_employees(period)
                if not employee_ids:
                    raise NoEligibleEmployees(month, year)

                config = await self.statutory_provider.get_rates(period)

                pay_run = PayRun(
                    pay_run_code=await self._next_pay_run_code(period),
                    salary_month=month,
                    salary_year=year,
                    status=PayRunStatus.DRAFT,
                    generation_warnings=[],
                    created_by_id=requested_by,
                )
                self.db.add(pay_run)
                await self.db.flush()

                records: List[PayRunEmployeeRecord] = []
                warnings: List[Dict[str, Any]] = []

                for employee_id in employee_ids:
                    if key in _cancel_requests:
                        raise GenerationCancelled(month, year, len(records))

                    try:
                        profile = await self.directory.get_compensation_profile(employee_id)
                        attendance = await self.attendance_store.get_approved_summary(employee_id, period)
                        due = await self._unclaimed_due(employee_id, period)
                        computation = self.calculator.calculate(profile, attendance, due, config, period)
                    except NotFoundException as e:
                        logger.warning(f"Skipping employee {employee_id} for {period.label}: {e.message}")
                        warnings.append({
                            "employee_id": str(employee_id),
                            "code": e.code.value,
                            "message": e.message,
                        })
                        continue

                    snapshot = await self.directory.get_employee_snapshot(employee_id)
                    record = self._build_record(pay_run, computation, snapshot, profile.payment_mode)
                    self.db.add(record)
                    records.append(record)

                if not records:
                    raise NoEligibleEmployees(month, year, skipped=len(warnings))

                self._apply_totals(pay_run, records)
                pay_run.generation_warnings = warnings
                await self.db.commit()

            except IntegrityError as e:
                await self.db.rollback()
                logger.warning(f"Concurrent pay run insert detected for {period.label}")
                raise DuplicatePeriod(month, year) from e
            except AppException as e:
                await self.db.rollback()
                logger.warning(f"Pay run generation for {period.label} rejected: {e.message}")
                raise
            except Exception:
                await self.db.rollback()
                logger.error(f"Pay run generation for {period.label} aborted, nothing persisted")
                raise
            finally:
                _cancel_requests.discard(key)

        logger.info(
            f"Generated pay run {pay_run.pay_run_code}: {pay_run.total_employees} employees, "
            f"net {pay_run.total_net_pay}, {len(warnings)} skipped"
        )
        await emit_audit(self.audit_sink, AuditEvent(
            event_type="pay_run.generated",
            entity_type="pay_run",
            entity_id=str(pay_run.id),
            actor_id=str(requested_by) if requested_by else None,
            data={
                "period": period.label,
                "employees": pay_run.total_employees,
                "total_net_pay": str(pay_run.total_net_pay),
                "skipped": len(warnings),
            },
        ))
        return pay_run

    # ===========================================
    # TRANSITIONS
    # ===========================================

    @asynccontextmanager
    async def _locked_run(self, pay_run_id: uuid.UUID) -> AsyncIterator[PayRun]:
        """Yield a freshly loaded pay run while holding its period lock."""
        pay_run = await self.get_pay_run(pay_run_id)
        async with self.period_locks.hold(period_key(pay_run.salary_month, pay_run.salary_year)):
            yield await self.get_pay_run(pay_run_id, for_update=True)

    async def approve_pay_run(self, pay_run_id: uuid.UUID, approver_id: uuid.UUID) -> PayRun:
        """Approve a draft pay run."""
        if approver_id is None:
            raise ValidationException("Approver is required", field="approver_id")

        async with self._locked_run(pay_run_id) as pay_run:
            if pay_run.status != PayRunStatus.DRAFT:
                raise InvalidTransition("PayRun", pay_run.status, PayRunStatus.APPROVED.value, pay_run_id)

            pay_run.status = PayRunStatus.APPROVED
            pay_run.approved_by_id = approver_id
            pay_run.approved_at = utcnow()
            pay_run.updated_by_id = approver_id
            await self.db.commit()

        logger.info(f"Pay run {pay_run.pay_run_code} approved by {approver_id}")
        await emit_audit(self.audit_sink, AuditEvent(
            event_type="pay_run.approved",
            entity_type="pay_run",
            entity_id=str(pay_run_id),
            actor_id=str(approver_id),
        ))
        return pay_run

    async def cancel_pay_run(
        self,
        pay_run_id: uuid.UUID,
        reason: str,
        cancelled_by: Optional[uuid.UUID] = None,
    ) -> PayRun:
        """Cancel a draft or approved pay run. The ledger is untouched."""
        async with self._locked_run(pay_run_id) as pay_run:
            if pay_run.status not in (PayRunStatus.DRAFT, PayRunStatus.APPROVED):
                raise InvalidTransition("PayRun", pay_run.status, PayRunStatus.CANCELLED.value, pay_run_id)

            pay_run.status = PayRunStatus.CANCELLED
            pay_run.cancellation_reason = reason
            pay_run.cancelled_at = utcnow()
            pay_run.updated_by_id = cancelled_by
            await self.db.commit()

        logger.info(f"Pay run {pay_run.pay_run_code} cancelled: {reason}")
        await emit_audit(self.audit_sink, AuditEvent(
            event_type="pay_run.cancelled",
            entity_type="pay_run",
            entity_id=str(pay_run_id),
            actor_id=str(cancelled_by) if cancelled_by else None,
            data={"reason": reason},
        ))
        return pay_run

    # ===========================================
    # PROCESSING
    # ===========================================

    async def process_pay_run(
        self,
        pay_run_id: uuid.UUID,
        processor_id: uuid.UUID,
        payment_date: date,
        retry: bool = False,
    ) -> ProcessingReport:
        """
        Issue payslips and apply deductions for every record of an approved run.

        With ``retry=True`` a processed run is accepted too: records that
        already have a payslip are reported as succeeded without being
        touched again, and failed records are attempted once more.
        """
        allowed = {PayRunStatus.APPROVED}
        if retry:
            allowed.add(PayRunStatus.PROCESSED)

        async with self._locked_run(pay_run_id) as pay_run:
            if pay_run.status not in allowed:
                raise InvalidTransition("PayRun", pay_run.status, PayRunStatus.PROCESSED.value, pay_run_id)

            period = PayPeriod(month=pay_run.salary_month, year=pay_run.salary_year)
            code = pay_run.pay_run_code

            result = await self.db.execute(
                select(PayRunEmployeeRecord.id, PayRunEmployeeRecord.employee_id)
                .where(PayRunEmployeeRecord.pay_run_id == pay_run_id)
                .order_by(PayRunEmployeeRecord.employee_code)
            )
            rows = result.all()
            # Release the row lock taken by _locked_run before per-employee transactions
            await self.db.commit()

            report = ProcessingReport(pay_run_id=pay_run_id, status=PayRunStatus.PROCESSED.value)
            for record_id, employee_id in rows:
                outcome = await self._process_record(
                    record_id, employee_id, period, processor_id, payment_date, retry
                )
                if isinstance(outcome, ProcessedEmployee):
                    report.succeeded.append(outcome)
                else:
                    report.failed.append(outcome)

            pay_run = await self.get_pay_run(pay_run_id, for_update=True)
            if pay_run.status == PayRunStatus.APPROVED:
                pay_run.status = PayRunStatus.PROCESSED
                pay_run.processed_by_id = processor_id
                pay_run.processed_at = utcnow()
                pay_run.payment_date = payment_date
                pay_run.updated_by_id = processor_id
            await self.db.commit()

        logger.info(
            f"Processed pay run {code}: {report.succeeded_count} succeeded, "
            f"{report.failed_count} failed"
        )
        await emit_audit(self.audit_sink, AuditEvent(
            event_type="pay_run.processed",
            entity_type="pay_run",
            entity_id=str(pay_run_id),
            actor_id=str(processor_id),
            data={
                "retry": retry,
                "succeeded": report.succeeded_count,
                "failed": [str(f.employee_id) for f in report.failed],
            },
        ))
        return report

    async def _process_record(
        self,
        record_id: uuid.UUID,
        employee_id: uuid.UUID,
        period: PayPeriod,
        processor_id: uuid.UUID,
        payment_date: date,
        retry: bool,
    ):
        """Settle one record in its own transaction; returns ProcessedEmployee or FailedEmployee."""
        try:
            record = await self.db.get(PayRunEmployeeRecord, record_id, populate_existing=True)

            existing = await self.payslips.get_employee_payslip(employee_id, period)
            if existing is not None:
                if retry and existing.record_id == record_id:
                    return ProcessedEmployee(
                        record_id=record_id,
                        employee_id=employee_id,
                        payslip_id=existing.id,
                        payslip_number=existing.payslip_number,
                        net_pay=existing.net_pay,
                        already_existed=True,
                    )
                raise DuplicatePayslip(employee_id, period.month, period.year, existing.payslip_number)

            breakdown = list(record.obligation_breakdown or [])
            keys = [obligation_key(entry["kind"], entry["obligation_id"]) for entry in breakdown]

            async with self.obligation_locks.hold_many(keys):
                due = await self.ledger.get_due_obligations_for_period(employee_id, period)
                matched = self._match_obligations(employee_id, breakdown, due)

                snapshot = await self.directory.get_employee_snapshot(employee_id)
                payslip = await self.payslips.finalize(
                    record,
                    snapshot,
                    payment_date=payment_date,
                    generated_by_id=processor_id,
                    commit=False,
                )
                for obligation in matched:
                    if obligation.kind == ADVANCE:
                        await self.ledger.apply_advance_installment(
                            obligation.obligation_id, obligation.amount,
                            period=period, payslip_id=payslip.id, commit=False,
                        )
                    else:
                        await self.ledger.apply_loan_emi(
                            obligation.obligation_id, period,
                            payslip_id=payslip.id, commit=False,
                        )

                record.payment_status = RecordPaymentStatus.PAID
                record.failure_reason = None
                await self.db.commit()

        except Exception as e:
            await self.db.rollback()
            return await self._record_failure(record_id, employee_id, e)

        logger.info(f"Settled {snapshot.employee_code} for {period.label} with payslip {payslip.payslip_number}")
        await emit_audit(self.audit_sink, AuditEvent(
            event_type="payslip.issued",
            entity_type="payslip",
            entity_id=str(payslip.id),
            actor_id=str(processor_id),
            data={
                "payslip_number": payslip.payslip_number,
                "employee_id": str(employee_id),
                "net_pay": str(payslip.net_pay),
                "deductions": [o.to_breakdown() for o in matched],
            },
        ))
        await self._notify(payslip)

        return ProcessedEmployee(
            record_id=record_id,
            employee_id=employee_id,
            payslip_id=payslip.id,
            payslip_number=payslip.payslip_number,
            net_pay=payslip.net_pay,
        )

    @staticmethod
    def _match_obligations(
        employee_id: uuid.UUID,
        breakdown: List[Dict[str, Any]],
        due: List[DueObligation],
    ) -> List[DueObligation]:
        """Recorded deductions must still be exactly what the ledger says is due."""
        matched = []
        for entry in breakdown:
            hit = next((o for o in due if o.matches_breakdown(entry)), None)
            if hit is None:
                raise DeductionMismatch(
                    employee_id,
                    expected=entry,
                    actual=[o.to_breakdown() for o in due],
                )
            matched.append(hit)
        return matched

    async def _record_failure(
        self,
        record_id: uuid.UUID,
        employee_id: uuid.UUID,
        error: Exception,
    ) -> FailedEmployee:
        if isinstance(error, AppException):
            code, message = error.code.value, error.message
            logger.warning(f"Processing failed for employee {employee_id}: {message}")
        else:
            code, message = ErrorCode.INTERNAL_ERROR.value, str(error)
            logger.error(f"Unexpected error processing employee {employee_id}", exc_info=error)

        record = await self.db.get(PayRunEmployeeRecord, record_id, populate_existing=True)
        if record is not None and record.payment_status != RecordPaymentStatus.PAID:
            record.payment_status = RecordPaymentStatus.FAILED
            record.failure_reason = message
            await self.db.commit()

        return FailedEmployee(
            record_id=record_id,
            employee_id=employee_id,
            error_code=code,
            message=message,
        )

    async def _notify(self, payslip: Payslip) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.send_payslip(payslip)
        except Exception as e:
            logger.warning(f"Payslip notification failed for {payslip.payslip_number}: {e}")
