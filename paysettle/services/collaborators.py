"""
PaySettle - External Collaborators

Contracts the settlement engine consumes, with the default adapters used in
production and tests:
- EmployeeDirectory      -> SqlEmployeeDirectory
- AttendanceStore        -> SqlAttendanceStore
- StatutoryConfigProvider -> SettingsStatutoryConfigProvider,
                             VersionedStatutoryConfigProvider
- AuditSink              -> LoggingAuditSink
- NotificationService    -> LoggingNotificationService
"""

import calendar
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import date
from typing import List, Optional, Sequence

from sqlalchemy import select, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from paysettle.config import Settings, settings as default_settings
from paysettle.models.attendance import AttendanceSummary, AttendanceStatus
from paysettle.models.employee import CompensationProfile, Employee, EmployeeStatus
from paysettle.models.payroll import Payslip
from paysettle.schemas.payroll import (
    AuditEvent, EmployeeSnapshot, PayPeriod, ProfessionalTaxSlab, StatutoryConfig,
)
from paysettle.utils.error_handling import EmployeeNotFound, NotFoundException, ValidationException

logger = logging.getLogger(__name__)


# ===========================================
# CONTRACTS
# ===========================================

class EmployeeDirectory(ABC):
    """Source of employees and their compensation profiles."""

    @abstractmethod
    async def get_active_employees(self, period: PayPeriod) -> List[uuid.UUID]:
        """Employees whose tenure overlaps the period."""
        pass

    @abstractmethod
    async def get_compensation_profile(self, employee_id: uuid.UUID) -> CompensationProfile:
        pass

    @abstractmethod
    async def get_employee_snapshot(self, employee_id: uuid.UUID) -> EmployeeSnapshot:
        pass


class AttendanceStore(ABC):

    @abstractmethod
    async def get_approved_summary(
        self, employee_id: uuid.UUID, period: PayPeriod
    ) -> Optional[AttendanceSummary]:
        """Approved summary for the period, or None."""
        pass


class StatutoryConfigProvider(ABC):

    @abstractmethod
    async def get_rates(self, period: PayPeriod) -> StatutoryConfig:
        pass


class AuditSink(ABC):

    @abstractmethod
    async def record(self, event: AuditEvent) -> None:
        pass


class NotificationService(ABC):

    @abstractmethod
    async def send_payslip(self, payslip: Payslip) -> None:
        pass


# ===========================================
# SQL ADAPTERS
# ===========================================

class SqlEmployeeDirectory(EmployeeDirectory):
    """Directory backed by the employees / compensation_profiles tables."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_active_employees(self, period: PayPeriod) -> List[uuid.UUID]:
        first_day = period.first_day
        last_day = date(period.year, period.month, calendar.monthrange(period.year, period.month)[1])

        result = await self.db.execute(
            select(Employee.id)
            .where(
                and_(
                    Employee.join_date <= last_day,
                    or_(
                        Employee.separation_date.is_(None),
                        Employee.separation_date >= first_day,
                    ),
                    or_(
                        Employee.status != EmployeeStatus.SEPARATED,
                        Employee.separation_date.is_not(None),
                    ),
                )
            )
            .order_by(Employee.employee_code)
        )
        return list(result.scalars().all())

    async def get_compensation_profile(self, employee_id: uuid.UUID) -> CompensationProfile:
        result = await self.db.execute(
            select(CompensationProfile).where(CompensationProfile.employee_id == employee_id)
        )
        profile = result.scalar_one_or_none()
        if not profile:
            raise NotFoundException(
                "CompensationProfile",
                message=f"No compensation profile for employee {employee_id}",
            )
        return profile

    async def get_employee_snapshot(self, employee_id: uuid.UUID) -> EmployeeSnapshot:
        employee = await self.db.get(Employee, employee_id)
        if not employee:
            raise EmployeeNotFound(employee_id)
        return EmployeeSnapshot(
            employee_id=employee.id,
            employee_code=employee.employee_code,
            full_name=employee.full_name,
            department=employee.department,
            designation=employee.designation,
            email=employee.email,
            pan_number=employee.pan_number,
            pf_number=employee.pf_number,
            esi_number=employee.esi_number,
            bank_name=employee.bank_name,
            bank_account_number=employee.bank_account_number,
        )


class SqlAttendanceStore(AttendanceStore):

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_approved_summary(
        self, employee_id: uuid.UUID, period: PayPeriod
    ) -> Optional[AttendanceSummary]:
        result = await self.db.execute(
            select(AttendanceSummary).where(
                and_(
                    AttendanceSummary.employee_id == employee_id,
                    AttendanceSummary.month == period.month,
                    AttendanceSummary.year == period.year,
                    AttendanceSummary.status == AttendanceStatus.APPROVED,
                )
            )
        )
        return result.scalar_one_or_none()


# ===========================================
# STATUTORY CONFIGURATION
# ===========================================

def statutory_config_from_settings(config: Settings) -> StatutoryConfig:
    return StatutoryConfig(
        pf_employee_rate=config.pf_employee_rate,
        pf_employer_rate=config.pf_employer_rate,
        pf_wage_ceiling=config.pf_wage_ceiling,
        esi_employee_rate=config.esi_employee_rate,
        esi_employer_rate=config.esi_employer_rate,
        esi_wage_ceiling=config.esi_wage_ceiling,
        professional_tax_slabs=[ProfessionalTaxSlab(**slab) for slab in config.professional_tax_slabs],
    )


class SettingsStatutoryConfigProvider(StatutoryConfigProvider):
    """Same rates for every period, taken from application settings."""

    def __init__(self, config: Optional[Settings] = None):
        self._config = statutory_config_from_settings(config or default_settings)

    async def get_rates(self, period: PayPeriod) -> StatutoryConfig:
        return self._config


class VersionedStatutoryConfigProvider(StatutoryConfigProvider):
    """
    Effective-dated rates. The version in force for a period is the latest
    one whose ``effective_from`` is on or before the first day of the period.
    """

    def __init__(self, versions: Sequence[StatutoryConfig]):
        if any(v.effective_from is None for v in versions):
            raise ValidationException("Every statutory config version needs effective_from")
        self._versions = sorted(versions, key=lambda v: v.effective_from)

    async def get_rates(self, period: PayPeriod) -> StatutoryConfig:
        in_force = [v for v in self._versions if v.effective_from <= period.first_day]
        if not in_force:
            raise ValidationException(
                f"No statutory configuration in force for {period.label}",
                details={"period": period.label},
            )
        return in_force[-1]


# ===========================================
# AUDIT & NOTIFICATIONS
# ===========================================

class LoggingAuditSink(AuditSink):
    """Writes audit events to the application log."""

    def __init__(self, logger_name: str = "paysettle.audit"):
        self._logger = logging.getLogger(logger_name)

    async def record(self, event: AuditEvent) -> None:
        self._logger.info(
            f"{event.event_type} {event.entity_type}={event.entity_id} "
            f"actor={event.actor_id} data={event.data}"
        )


class LoggingNotificationService(NotificationService):
    """Logs payslip deliveries; a mail or SMS gateway replaces this in production."""

    async def send_payslip(self, payslip: Payslip) -> None:
        logger.info(
            f"Payslip {payslip.payslip_number} ready for {payslip.employee_code} "
            f"({payslip.salary_year}-{payslip.salary_month:02d})"
        )


async def emit_audit(sink: Optional[AuditSink], event: AuditEvent) -> None:
    """Hand an event to the audit sink. Sink failures are logged, never raised."""
    if sink is None:
        return
    try:
        await sink.record(event)
    except Exception as e:
        logger.warning(f"Audit sink rejected {event.event_type} for {event.entity_id}: {e}")
