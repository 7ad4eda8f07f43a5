"""
PaySettle - SQLAlchemy Models Package

This package contains all database models for the application.
"""

from paysettle.models.base import BaseModel, TimestampMixin, AuditMixin
from paysettle.models.employee import (
    Employee,
    EmployeeStatus,
    PaymentMode,
    CompensationProfile,
    CareerEvent,
    CareerEventType,
    CareerEventStatus,
)
from paysettle.models.attendance import AttendanceSummary, AttendanceStatus
from paysettle.models.obligations import (
    Advance,
    AdvanceInstallment,
    AdvanceStatus,
    Loan,
    LoanEMI,
    LoanStatus,
    EMIStatus,
)
from paysettle.models.payroll import (
    PayRun,
    PayRunStatus,
    PayRunEmployeeRecord,
    RecordPaymentStatus,
    Payslip,
    DocumentSequence,
)

__all__ = [
    "BaseModel",
    "TimestampMixin",
    "AuditMixin",
    "Employee",
    "EmployeeStatus",
    "PaymentMode",
    "CompensationProfile",
    "CareerEvent",
    "CareerEventType",
    "CareerEventStatus",
    "AttendanceSummary",
    "AttendanceStatus",
    "Advance",
    "AdvanceInstallment",
    "AdvanceStatus",
    "Loan",
    "LoanEMI",
    "LoanStatus",
    "EMIStatus",
    "PayRun",
    "PayRunStatus",
    "PayRunEmployeeRecord",
    "RecordPaymentStatus",
    "Payslip",
    "DocumentSequence",
]
