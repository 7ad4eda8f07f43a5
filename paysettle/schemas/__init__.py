"""
PaySettle - Pydantic Schemas Package
"""

from paysettle.schemas.payroll import (
    PayPeriod,
    ProfessionalTaxSlab,
    StatutoryConfig,
    DueObligation,
    EmployeePayComputation,
    SalaryBreakdown,
    EmployeeSnapshot,
    ProcessedEmployee,
    FailedEmployee,
    ProcessingReport,
    AuditEvent,
    PayRunSummary,
)
