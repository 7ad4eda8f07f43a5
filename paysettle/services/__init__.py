"""
PaySettle - Services Package

Business logic services.
"""

from paysettle.services.payroll_calculator import PayrollCalculator
from paysettle.services.credit_ledger_service import CreditLedgerService
from paysettle.services.payslip_service import PayslipService
from paysettle.services.pay_run_service import PayRunService
from paysettle.services.compensation_service import CompensationService, compute_breakdown
from paysettle.services.attendance_service import AttendanceService
from paysettle.services.employee_service import EmployeeService
from paysettle.services.collaborators import (
    AttendanceStore,
    AuditSink,
    EmployeeDirectory,
    NotificationService,
    StatutoryConfigProvider,
    LoggingAuditSink,
    LoggingNotificationService,
    SettingsStatutoryConfigProvider,
    SqlAttendanceStore,
    SqlEmployeeDirectory,
    VersionedStatutoryConfigProvider,
)

__all__ = [
    "PayrollCalculator",
    "CreditLedgerService",
    "PayslipService",
    "PayRunService",
    "CompensationService",
    "compute_breakdown",
    "AttendanceService",
    "EmployeeService",
    "AttendanceStore",
    "AuditSink",
    "EmployeeDirectory",
    "NotificationService",
    "StatutoryConfigProvider",
    "LoggingAuditSink",
    "LoggingNotificationService",
    "SettingsStatutoryConfigProvider",
    "SqlAttendanceStore",
    "SqlEmployeeDirectory",
    "VersionedStatutoryConfigProvider",
]
