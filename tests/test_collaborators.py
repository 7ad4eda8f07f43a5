"""
PaySettle - Collaborator Adapter Tests

SQL-backed directory and attendance lookups, and effective-dated
statutory configuration.
"""

import pytest
from datetime import date
from decimal import Decimal
from uuid import uuid4

from paysettle.config import settings
from paysettle.models.employee import EmployeeStatus
from paysettle.services.collaborators import (
    SettingsStatutoryConfigProvider, SqlAttendanceStore, SqlEmployeeDirectory,
    VersionedStatutoryConfigProvider, emit_audit, statutory_config_from_settings,
)
from paysettle.schemas.payroll import AuditEvent, PayPeriod
from paysettle.utils.error_handling import EmployeeNotFound, NotFoundException, ValidationException

from conftest import RecordingAuditSink, create_attendance, create_employee, create_profile


BASE = statutory_config_from_settings(settings)


def version(effective_from: date, ceiling: str):
    return BASE.model_copy(update={"effective_from": effective_from, "pf_wage_ceiling": Decimal(ceiling)})


class TestSqlEmployeeDirectory:
    """Which employees a period pays."""

    async def test_tenure_overlap(self, db_session, period):
        await create_employee(db_session, "EMP-001")
        await create_employee(db_session, "EMP-002", join_date=date(2025, 3, 20))
        await create_employee(db_session, "EMP-003", join_date=date(2025, 4, 1))
        await create_employee(
            db_session, "EMP-004",
            status=EmployeeStatus.SEPARATED, separation_date=date(2025, 3, 10),
        )
        await create_employee(
            db_session, "EMP-005",
            status=EmployeeStatus.SEPARATED, separation_date=date(2025, 2, 28),
        )
        await create_employee(db_session, "EMP-006", status=EmployeeStatus.SEPARATED)

        directory = SqlEmployeeDirectory(db_session)
        ids = await directory.get_active_employees(period)

        codes = [(await directory.get_employee_snapshot(i)).employee_code for i in ids]
        assert codes == ["EMP-001", "EMP-002", "EMP-004"]

    async def test_snapshot(self, db_session):
        employee = await create_employee(db_session, "EMP-001", first_name="Meera", last_name="Nair",
                                         bank_name="State Bank", bank_account_number="001122")

        snapshot = await SqlEmployeeDirectory(db_session).get_employee_snapshot(employee.id)

        assert snapshot.full_name == "Meera Nair"
        assert snapshot.bank_account_number == "001122"

    async def test_missing_profile_and_employee(self, db_session):
        employee = await create_employee(db_session, "EMP-001")
        directory = SqlEmployeeDirectory(db_session)

        with pytest.raises(NotFoundException):
            await directory.get_compensation_profile(employee.id)
        with pytest.raises(EmployeeNotFound):
            await directory.get_employee_snapshot(uuid4())

        await create_profile(db_session, employee, Decimal("600000"))
        profile = await directory.get_compensation_profile(employee.id)
        assert profile.gross == Decimal("50000.00")


class TestSqlAttendanceStore:

    async def test_only_approved_summaries(self, db_session, period):
        approved = await create_employee(db_session, "EMP-001")
        pending = await create_employee(db_session, "EMP-002")
        await create_attendance(db_session, approved, period)
        await create_attendance(db_session, pending, period, approved=False)

        store = SqlAttendanceStore(db_session)

        assert (await store.get_approved_summary(approved.id, period)) is not None
        assert (await store.get_approved_summary(pending.id, period)) is None
        assert (await store.get_approved_summary(approved.id, period.shift(1))) is None


class TestStatutoryConfig:
    """Rates in force for a period."""

    async def test_settings_provider(self, period):
        rates = await SettingsStatutoryConfigProvider().get_rates(period)

        assert rates.pf_wage_ceiling == Decimal("15000")
        assert rates.professional_tax_for(Decimal("100000")) == Decimal("200")

    async def test_latest_version_in_force(self):
        provider = VersionedStatutoryConfigProvider([
            version(date(2025, 4, 1), "18000"),
            version(date(2024, 4, 1), "15000"),
        ])

        march = await provider.get_rates(PayPeriod(month=3, year=2025))
        april = await provider.get_rates(PayPeriod(month=4, year=2025))

        assert march.pf_wage_ceiling == Decimal("15000")
        assert april.pf_wage_ceiling == Decimal("18000")

    async def test_no_version_in_force(self):
        provider = VersionedStatutoryConfigProvider([version(date(2025, 4, 1), "18000")])

        with pytest.raises(ValidationException):
            await provider.get_rates(PayPeriod(month=3, year=2025))

    def test_versions_need_effective_date(self):
        with pytest.raises(ValidationException):
            VersionedStatutoryConfigProvider([BASE])


class TestAuditEmission:

    async def test_sink_failure_is_not_raised(self):
        class BrokenSink(RecordingAuditSink):
            async def record(self, event):
                raise RuntimeError("audit store down")

        await emit_audit(BrokenSink(), AuditEvent(
            event_type="pay_run.generated", entity_type="pay_run", entity_id="x",
        ))

    async def test_events_reach_the_sink(self):
        sink = RecordingAuditSink()

        await emit_audit(sink, AuditEvent(event_type="loan.activated", entity_type="loan", entity_id="1"))

        assert [e.event_type for e in sink.events] == ["loan.activated"]
