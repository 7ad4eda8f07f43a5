"""
PaySettle - Payslip Service Tests

Numbering, duplicate protection, delivery tracking and the immutability
guards on payslips and pay run records.
"""

import pytest
from decimal import Decimal
from uuid import uuid4

from paysettle.models.payroll import DocumentSequence, RecordPaymentStatus
from paysettle.services.collaborators import SqlEmployeeDirectory
from paysettle.services.pay_run_service import PayRunService
from paysettle.services.payslip_service import PAYSLIP_SEQUENCE, PayslipService
from paysettle.utils.error_handling import (
    DuplicatePayslip, ErrorCode, ImmutableRecordError, NotFoundException, SequenceConflict,
)

from conftest import create_payable_employee


@pytest.fixture
def payslips(db_session) -> PayslipService:
    return PayslipService(db_session)


@pytest.fixture
async def records(db_session, period, audit_sink, notifier, period_locks, obligation_locks):
    """Draft run for three employees; returns its records ordered by code."""
    for code in ("EMP-001", "EMP-002", "EMP-003"):
        await create_payable_employee(db_session, code, period)

    service = PayRunService(
        db_session,
        audit_sink=audit_sink,
        notifier=notifier,
        period_locks=period_locks,
        obligation_locks=obligation_locks,
    )
    pay_run = await service.generate_pay_run(period.month, period.year)
    return await service.list_records(pay_run.id)


async def issue(db_session, payslips: PayslipService, record, **kwargs):
    snapshot = await SqlEmployeeDirectory(db_session).get_employee_snapshot(record.employee_id)
    return await payslips.finalize(record, snapshot, **kwargs)


# =============================================================================
# NUMBERING
# =============================================================================

class TestPayslipNumbering:
    """Gap-free numbers per month."""

    async def test_sequential_numbers(self, db_session, payslips, records):
        issued = [await issue(db_session, payslips, record) for record in records]

        assert [p.payslip_number for p in issued] == [
            "PS-202503-0001", "PS-202503-0002", "PS-202503-0003",
        ]

    async def test_each_month_has_its_own_counter(self, payslips, period):
        assert await payslips.next_payslip_number(period) == "PS-202503-0001"
        assert await payslips.next_payslip_number(period) == "PS-202503-0002"
        assert await payslips.next_payslip_number(period.shift(1)) == "PS-202504-0001"

    async def test_custom_prefix(self, db_session, period):
        service = PayslipService(db_session, prefix="SLIP")

        assert await service.next_payslip_number(period) == "SLIP-202503-0001"

    async def test_competing_counter_row_is_a_conflict(self, db_session, payslips, period):
        # Row created by another worker, not yet visible to our lookup
        db_session.add(DocumentSequence(
            sequence_type=PAYSLIP_SEQUENCE, year=period.year, month=period.month, last_value=4,
        ))

        with pytest.raises(SequenceConflict) as exc_info:
            await payslips.next_number(PAYSLIP_SEQUENCE, period)
        await db_session.rollback()

        assert exc_info.value.code == ErrorCode.SEQUENCE_CONFLICT
        assert exc_info.value.details["month"] == period.month


# =============================================================================
# FINALIZATION
# =============================================================================

class TestFinalize:
    """Payslip creation from a pay run record."""

    async def test_copies_record_and_snapshot(self, db_session, payslips, records):
        record = records[0]

        payslip = await issue(db_session, payslips, record)

        assert payslip.record_id == record.id
        assert payslip.employee_code == "EMP-001"
        assert payslip.employee_name == record.employee_name
        assert payslip.gross_salary == record.gross_salary
        assert payslip.total_deductions == record.total_deductions
        assert payslip.net_pay == Decimal("98000.00")
        assert payslip.net_pay_words == "Rupees Ninety Eight Thousand Only"
        assert payslip.is_sent is False
        assert payslip.download_count == 0

    async def test_second_payslip_for_same_month_rejected(self, db_session, payslips, records):
        first = await issue(db_session, payslips, records[0])

        with pytest.raises(DuplicatePayslip) as exc_info:
            await issue(db_session, payslips, records[0])

        assert exc_info.value.details["payslip_number"] == first.payslip_number

    async def test_idempotent_finalize_returns_existing(self, db_session, payslips, records, period):
        first = await issue(db_session, payslips, records[0])

        again = await issue(db_session, payslips, records[0], idempotent=True)

        assert again.id == first.id
        assert await payslips.next_payslip_number(period) == "PS-202503-0002"

    async def test_list_for_run(self, db_session, payslips, records):
        for record in records:
            await issue(db_session, payslips, record)

        listed = await payslips.list_payslips_for_run(records[0].pay_run_id)

        assert [p.employee_code for p in listed] == ["EMP-001", "EMP-002", "EMP-003"]

    async def test_unknown_payslip(self, payslips):
        with pytest.raises(NotFoundException):
            await payslips.get_payslip(uuid4())


# =============================================================================
# DELIVERY TRACKING
# =============================================================================

class TestDeliveryTracking:
    """The only fields that may change after issue."""

    async def test_mark_sent(self, db_session, payslips, records):
        payslip = await issue(db_session, payslips, records[0])

        sent = await payslips.mark_sent(payslip.id)
        first_sent_at = sent.sent_at
        sent = await payslips.mark_sent(payslip.id)

        assert sent.is_sent is True
        assert sent.sent_at == first_sent_at

    async def test_record_download(self, db_session, payslips, records):
        payslip = await issue(db_session, payslips, records[0])

        await payslips.record_download(payslip.id)
        downloaded = await payslips.record_download(payslip.id)

        assert downloaded.download_count == 2
        assert downloaded.last_downloaded_at is not None


# =============================================================================
# IMMUTABILITY
# =============================================================================

class TestImmutability:
    """Issued amounts cannot be edited in place."""

    async def test_payslip_amounts_are_frozen(self, db_session, payslips, records):
        payslip = await issue(db_session, payslips, records[0])

        payslip.net_pay = Decimal("1.00")
        with pytest.raises(ImmutableRecordError) as exc_info:
            await db_session.commit()
        await db_session.rollback()

        assert exc_info.value.details["fields"] == ["net_pay"]

    async def test_record_amounts_are_frozen(self, db_session, records):
        record = records[0]

        record.gross_salary = Decimal("1.00")
        record.net_pay = Decimal("1.00")
        with pytest.raises(ImmutableRecordError) as exc_info:
            await db_session.commit()
        await db_session.rollback()

        assert exc_info.value.details["fields"] == ["gross_salary", "net_pay"]

    async def test_record_settlement_outcome_may_change(self, db_session, records):
        record = records[0]

        record.payment_status = RecordPaymentStatus.FAILED
        record.failure_reason = "Bank rejected the transfer"
        await db_session.commit()

        assert record.payment_status == RecordPaymentStatus.FAILED
