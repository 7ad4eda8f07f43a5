"""
PaySettle - Test Configuration

Pytest fixtures and configuration. Every test gets its own SQLite database
file, so tests never share state and concurrent sessions see real commits.
"""

from datetime import date
from decimal import Decimal
from typing import AsyncGenerator, List, Optional
from uuid import UUID

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

import paysettle.models  # noqa: F401 - register mappers
from paysettle.database import Base
from paysettle.models.attendance import AttendanceStatus, AttendanceSummary
from paysettle.models.base import utcnow
from paysettle.models.employee import CompensationProfile, Employee, EmployeeStatus, PaymentMode
from paysettle.models.payroll import Payslip
from paysettle.schemas.payroll import AuditEvent, PayPeriod
from paysettle.services.collaborators import AuditSink, NotificationService
from paysettle.services.compensation_service import compute_breakdown
from paysettle.utils.locks import KeyedLock


# =============================================================================
# DATABASE
# =============================================================================

@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path):
    """Async engine on a throwaway SQLite file with all tables created."""
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'paysettle_test.db'}",
        echo=False,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


# =============================================================================
# COLLABORATOR DOUBLES
# =============================================================================

class RecordingAuditSink(AuditSink):
    """Keeps every audit event in memory."""

    def __init__(self):
        self.events: List[AuditEvent] = []

    async def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> List[AuditEvent]:
        return [e for e in self.events if e.event_type == event_type]


class RecordingNotifier(NotificationService):
    """Collects payslip numbers; optionally fails every send."""

    def __init__(self, fail: bool = False):
        self.sent: List[str] = []
        self.fail = fail

    async def send_payslip(self, payslip: Payslip) -> None:
        if self.fail:
            raise RuntimeError("SMTP relay unavailable")
        self.sent.append(payslip.payslip_number)


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def period_locks() -> KeyedLock:
    return KeyedLock("test-periods", timeout=5)


@pytest.fixture
def obligation_locks() -> KeyedLock:
    return KeyedLock("test-obligations", timeout=5)


@pytest.fixture
def period() -> PayPeriod:
    return PayPeriod(month=3, year=2025)


# =============================================================================
# DATA BUILDERS
# =============================================================================

async def create_employee(
    db: AsyncSession,
    code: str,
    first_name: str = "Test",
    last_name: str = "Employee",
    department: str = "Engineering",
    designation: str = "Engineer",
    join_date: date = date(2023, 1, 1),
    **extra,
) -> Employee:
    employee = Employee(
        employee_code=code,
        first_name=first_name,
        last_name=last_name,
        department=department,
        designation=designation,
        join_date=join_date,
        status=extra.pop("status", EmployeeStatus.ACTIVE),
        **extra,
    )
    db.add(employee)
    await db.commit()
    return employee


async def create_profile(
    db: AsyncSession,
    employee: Employee,
    annual_ctc: Decimal,
    include_pf: bool = True,
    include_esi: bool = True,
    tds_percentage: Decimal = Decimal("0"),
) -> CompensationProfile:
    breakdown = compute_breakdown(
        Decimal(annual_ctc),
        include_pf=include_pf,
        include_esi=include_esi,
        tds_percentage=tds_percentage,
    )
    profile = CompensationProfile(
        employee_id=employee.id,
        include_pf=include_pf,
        include_esi=include_esi,
        payment_mode=PaymentMode.BANK,
        effective_from=employee.join_date,
        **breakdown.model_dump(),
    )
    db.add(profile)
    await db.commit()
    return profile


async def create_attendance(
    db: AsyncSession,
    employee: Employee,
    period: PayPeriod,
    total_working_days: int = 30,
    present_days: Optional[int] = None,
    absent_days: int = 0,
    paid_leave: int = 0,
    unpaid_leave: int = 0,
    half_days: int = 0,
    approved_by: Optional[UUID] = None,
    approved: bool = True,
) -> AttendanceSummary:
    if present_days is None:
        present_days = total_working_days - absent_days - paid_leave - unpaid_leave
    summary = AttendanceSummary(
        employee_id=employee.id,
        month=period.month,
        year=period.year,
        total_working_days=total_working_days,
        present_days=present_days,
        absent_days=absent_days,
        paid_leave=paid_leave,
        unpaid_leave=unpaid_leave,
        half_days=half_days,
        overtime_hours=Decimal("0"),
        status=AttendanceStatus.APPROVED if approved else AttendanceStatus.UNAPPROVED,
        approved_by_id=approved_by if approved else None,
        approved_at=utcnow() if approved else None,
        reopened_count=0,
    )
    db.add(summary)
    await db.commit()
    return summary


async def create_payable_employee(
    db: AsyncSession,
    code: str,
    period: PayPeriod,
    annual_ctc: Decimal = Decimal("1200000"),
    **attendance,
) -> Employee:
    """Employee with a profile and approved attendance for ``period``."""
    employee = await create_employee(db, code, first_name=code.title())
    await create_profile(db, employee, annual_ctc)
    await create_attendance(db, employee, period, **attendance)
    return employee
