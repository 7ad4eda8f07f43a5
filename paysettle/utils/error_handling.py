"""
Error Handling Module for PaySettle

Typed exception hierarchy for the payroll settlement engine:
- Validation errors (bad input, illegal state transitions)
- Data-availability errors (missing attendance, unknown entities)
- Invariant violations (ledger over-deduction, inactive obligations)
- Concurrency errors (duplicate periods, lock timeouts)

Every exception carries a stable ErrorCode and an HTTP-style status code so an
outer API layer can map it without knowing the engine internals.
"""

from datetime import datetime, timezone
from enum import Enum
from http import HTTPStatus
from typing import Any, Dict, List, Optional
import logging

logger = logging.getLogger("paysettle.errors")


class ErrorCode(str, Enum):
    """Standardized error codes for the application"""

    # Validation Errors (4xx)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_COMPENSATION = "INVALID_COMPENSATION"
    INVALID_ATTENDANCE = "INVALID_ATTENDANCE"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    NEGATIVE_NET_PAY = "NEGATIVE_NET_PAY"
    IMMUTABLE_RECORD = "IMMUTABLE_RECORD"

    # Resource Errors (404)
    NOT_FOUND = "NOT_FOUND"
    PAY_RUN_NOT_FOUND = "PAY_RUN_NOT_FOUND"
    EMPLOYEE_NOT_FOUND = "EMPLOYEE_NOT_FOUND"
    OBLIGATION_NOT_FOUND = "OBLIGATION_NOT_FOUND"
    MISSING_ATTENDANCE = "MISSING_ATTENDANCE"
    NO_ELIGIBLE_EMPLOYEES = "NO_ELIGIBLE_EMPLOYEES"

    # Ledger / Business Logic Errors (422)
    OVER_DEDUCTION = "OVER_DEDUCTION"
    OBLIGATION_NOT_ACTIVE = "OBLIGATION_NOT_ACTIVE"
    NO_REMAINING_EMIS = "NO_REMAINING_EMIS"
    DEDUCTION_MISMATCH = "DEDUCTION_MISMATCH"
    LEDGER_INTEGRITY_VIOLATED = "LEDGER_INTEGRITY_VIOLATED"
    HIERARCHY_CYCLE = "HIERARCHY_CYCLE"

    # Concurrency Errors (409)
    DUPLICATE_PERIOD = "DUPLICATE_PERIOD"
    DUPLICATE_PAYSLIP = "DUPLICATE_PAYSLIP"
    LOCK_TIMEOUT = "LOCK_TIMEOUT"
    GENERATION_CANCELLED = "GENERATION_CANCELLED"
    SEQUENCE_CONFLICT = "SEQUENCE_CONFLICT"

    # Internal Errors (500)
    INTERNAL_ERROR = "INTERNAL_ERROR"


class AppException(Exception):
    """Base exception for all application exceptions"""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
        field: Optional[str] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = int(status_code)
        self.details = details or {}
        self.field = field
        self.timestamp = datetime.now(timezone.utc)
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a serializable dictionary"""
        result = {
            "code": self.code.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.field:
            result["field"] = self.field
        if self.details:
            result["details"] = self.details
        return result


# ============================================================================
# Validation Exceptions
# ============================================================================

class ValidationException(AppException):
    """Base validation exception"""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=HTTPStatus.UNPROCESSABLE_ENTITY,
            details=details,
            field=field,
        )


class InvalidCompensation(ValidationException):
    """Compensation profile violates its salary invariants"""

    def __init__(self, employee_id: Any, violations: Dict[str, Any]):
        super().__init__(
            message=f"Compensation profile for employee {employee_id} is inconsistent: "
                    f"{', '.join(sorted(violations))}",
            code=ErrorCode.INVALID_COMPENSATION,
            details={"employee_id": str(employee_id), "violations": violations},
        )


class InvalidAttendance(ValidationException):
    """Attendance summary figures do not add up"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            code=ErrorCode.INVALID_ATTENDANCE,
            details=details,
        )


class InvalidTransition(ValidationException):
    """State machine transition not allowed from the current status"""

    def __init__(self, entity: str, current: Any, target: str, entity_id: Any = None):
        current_value = getattr(current, "value", current)
        super().__init__(
            message=f"Cannot move {entity} from '{current_value}' to '{target}'",
            code=ErrorCode.INVALID_TRANSITION,
            details={
                "entity": entity,
                "entity_id": str(entity_id) if entity_id else None,
                "current_status": current_value,
                "target_status": target,
            },
        )


class InvalidAmount(ValidationException):
    """Invalid monetary amount"""

    def __init__(self, amount: Any, field: str = "amount", message: Optional[str] = None):
        super().__init__(
            message=message or f"Invalid amount: {amount}. Amount must be a positive number.",
            field=field,
            code=ErrorCode.INVALID_AMOUNT,
            details={"provided_amount": str(amount)},
        )


class NegativeNetPay(ValidationException):
    """Deductions exceed the earned gross for the period"""

    def __init__(self, employee_id: Any, adjusted_gross: Any, total_deductions: Any):
        super().__init__(
            message=f"Deductions {total_deductions} exceed earned gross {adjusted_gross} "
                    f"for employee {employee_id}",
            code=ErrorCode.NEGATIVE_NET_PAY,
            details={
                "employee_id": str(employee_id),
                "adjusted_gross": str(adjusted_gross),
                "total_deductions": str(total_deductions),
            },
        )


class ImmutableRecordError(ValidationException):
    """Attempted change to a frozen payroll snapshot"""

    def __init__(self, entity: str, entity_id: Any, fields: List[str]):
        super().__init__(
            message=f"{entity} {entity_id} is immutable; cannot change {', '.join(fields)}",
            code=ErrorCode.IMMUTABLE_RECORD,
            details={"entity": entity, "entity_id": str(entity_id), "fields": fields},
        )


# ============================================================================
# Data Availability Exceptions
# ============================================================================

class NotFoundException(AppException):
    """Resource not found"""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[Any] = None,
        message: Optional[str] = None,
        code: ErrorCode = ErrorCode.NOT_FOUND,
    ):
        msg = message or f"{resource_type} not found"
        if resource_id and not message:
            msg = f"{resource_type} with ID '{resource_id}' not found"

        super().__init__(
            code=code,
            message=msg,
            status_code=HTTPStatus.NOT_FOUND,
            details={"resource_type": resource_type, "resource_id": str(resource_id) if resource_id else None},
        )


class PayRunNotFound(NotFoundException):
    def __init__(self, pay_run_id: Any):
        super().__init__("PayRun", pay_run_id, code=ErrorCode.PAY_RUN_NOT_FOUND)


class EmployeeNotFound(NotFoundException):
    def __init__(self, employee_id: Any):
        super().__init__("Employee", employee_id, code=ErrorCode.EMPLOYEE_NOT_FOUND)


class ObligationNotFound(NotFoundException):
    def __init__(self, kind: str, obligation_id: Any):
        super().__init__(kind, obligation_id, code=ErrorCode.OBLIGATION_NOT_FOUND)


class MissingAttendance(NotFoundException):
    """No approved attendance summary for the employee and period"""

    def __init__(self, employee_id: Any, month: int, year: int):
        super().__init__(
            "AttendanceSummary",
            message=f"No approved attendance for employee {employee_id} in {year}-{month:02d}",
            code=ErrorCode.MISSING_ATTENDANCE,
        )
        self.details.update({"employee_id": str(employee_id), "month": month, "year": year})
        self.employee_id = employee_id


class NoEligibleEmployees(AppException):
    def __init__(self, month: int, year: int, skipped: int = 0):
        super().__init__(
            code=ErrorCode.NO_ELIGIBLE_EMPLOYEES,
            message=f"No eligible employees for payroll {year}-{month:02d}",
            status_code=HTTPStatus.UNPROCESSABLE_ENTITY,
            details={"month": month, "year": year, "skipped": skipped},
        )


# ============================================================================
# Invariant Violations (ledger)
# ============================================================================

class LedgerException(AppException):
    """Base exception for credit obligation ledger violations"""

    def __init__(
        self,
        message: str,
        code: ErrorCode,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=HTTPStatus.UNPROCESSABLE_ENTITY,
            details=details,
        )


class OverDeduction(LedgerException):
    def __init__(self, obligation_id: Any, amount: Any, remaining: Any):
        super().__init__(
            message=f"Deduction {amount} exceeds remaining balance {remaining} on obligation {obligation_id}",
            code=ErrorCode.OVER_DEDUCTION,
            details={"obligation_id": str(obligation_id), "amount": str(amount), "remaining": str(remaining)},
        )


class ObligationNotActive(LedgerException):
    def __init__(self, kind: str, obligation_id: Any, status: Any):
        status_value = getattr(status, "value", status)
        super().__init__(
            message=f"{kind} {obligation_id} is '{status_value}' and cannot take deductions",
            code=ErrorCode.OBLIGATION_NOT_ACTIVE,
            details={"kind": kind, "obligation_id": str(obligation_id), "status": status_value},
        )


class NoRemainingEMIs(LedgerException):
    def __init__(self, loan_id: Any, period: Optional[str] = None):
        message = f"Loan {loan_id} has no remaining EMIs"
        if period:
            message = f"Loan {loan_id} has no pending EMI due by {period}"
        super().__init__(
            message=message,
            code=ErrorCode.NO_REMAINING_EMIS,
            details={"loan_id": str(loan_id), "period": period},
        )


class DeductionMismatch(LedgerException):
    """Obligation state changed between generation and processing"""

    def __init__(self, employee_id: Any, expected: Any, actual: Any):
        super().__init__(
            message=f"Recorded deductions for employee {employee_id} no longer match the ledger",
            code=ErrorCode.DEDUCTION_MISMATCH,
            details={"employee_id": str(employee_id), "expected": expected, "actual": actual},
        )


class LedgerIntegrityError(LedgerException):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            code=ErrorCode.LEDGER_INTEGRITY_VIOLATED,
            details=details,
        )
        logger.error(f"Ledger integrity violation: {message}")


class HierarchyCycleError(ValidationException):
    def __init__(self, employee_id: Any, manager_id: Any):
        super().__init__(
            message=f"Assigning manager {manager_id} to employee {employee_id} creates a reporting cycle",
            code=ErrorCode.HIERARCHY_CYCLE,
            details={"employee_id": str(employee_id), "manager_id": str(manager_id)},
        )


# ============================================================================
# Concurrency Exceptions
# ============================================================================

class ConcurrencyException(AppException):
    """Base exception for conflicts callers may retry after backoff"""

    def __init__(
        self,
        message: str,
        code: ErrorCode,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=HTTPStatus.CONFLICT,
            details=details,
        )


class DuplicatePeriod(ConcurrencyException):
    def __init__(self, month: int, year: int, existing_id: Any = None):
        super().__init__(
            message=f"A pay run already exists for {year}-{month:02d}",
            code=ErrorCode.DUPLICATE_PERIOD,
            details={"month": month, "year": year, "existing_id": str(existing_id) if existing_id else None},
        )


class DuplicatePayslip(ConcurrencyException):
    def __init__(self, employee_id: Any, month: int, year: int, payslip_number: Optional[str] = None):
        super().__init__(
            message=f"Payslip already exists for employee {employee_id} in {year}-{month:02d}",
            code=ErrorCode.DUPLICATE_PAYSLIP,
            details={
                "employee_id": str(employee_id),
                "month": month,
                "year": year,
                "payslip_number": payslip_number,
            },
        )


class LockAcquisitionTimeout(ConcurrencyException):
    def __init__(self, key: Any, timeout: float):
        super().__init__(
            message=f"Timed out after {timeout}s waiting for lock {key!r}",
            code=ErrorCode.LOCK_TIMEOUT,
            details={"key": repr(key), "timeout": timeout},
        )


class GenerationCancelled(ConcurrencyException):
    def __init__(self, month: int, year: int, processed: int):
        super().__init__(
            message=f"Pay run generation for {year}-{month:02d} was cancelled",
            code=ErrorCode.GENERATION_CANCELLED,
            details={"month": month, "year": year, "employees_computed": processed},
        )


class SequenceConflict(ConcurrencyException):
    def __init__(self, sequence_type: str, month: int, year: int):
        super().__init__(
            message=f"Concurrent update of the {sequence_type} sequence for {year}-{month:02d}",
            code=ErrorCode.SEQUENCE_CONFLICT,
            details={"sequence_type": sequence_type, "month": month, "year": year},
        )
