"""
PaySettle - Payroll Schemas

Pydantic value objects exchanged between the calculator, the ledger, the
orchestrator and external collaborators.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ===========================================
# PERIODS
# ===========================================

class PayPeriod(BaseModel):
    """A salary month."""
    model_config = ConfigDict(frozen=True)

    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=2000, le=2100)

    @classmethod
    def of(cls, value: date) -> "PayPeriod":
        return cls(month=value.month, year=value.year)

    @property
    def index(self) -> int:
        return self.year * 12 + (self.month - 1)

    @property
    def label(self) -> str:
        return f"{self.year}-{self.month:02d}"

    @property
    def first_day(self) -> date:
        return date(self.year, self.month, 1)

    def shift(self, months: int) -> "PayPeriod":
        index = self.index + months
        return PayPeriod(month=index % 12 + 1, year=index // 12)

    def __str__(self) -> str:
        return self.label


# ===========================================
# STATUTORY CONFIGURATION
# ===========================================

class ProfessionalTaxSlab(BaseModel):
    """Flat monthly professional tax for earned gross within [min, max]."""
    min_gross: Decimal = Decimal("0")
    max_gross: Optional[Decimal] = None
    amount: Decimal

    def matches(self, gross: Decimal) -> bool:
        if gross < self.min_gross:
            return False
        return self.max_gross is None or gross <= self.max_gross


class StatutoryConfig(BaseModel):
    """PF / ESI rates and ceilings plus professional tax slabs for a period."""
    pf_employee_rate: Decimal = Field(..., ge=0)
    pf_employer_rate: Decimal = Field(..., ge=0)
    pf_wage_ceiling: Decimal = Field(..., gt=0)
    esi_employee_rate: Decimal = Field(..., ge=0)
    esi_employer_rate: Decimal = Field(..., ge=0)
    esi_wage_ceiling: Decimal = Field(..., gt=0)
    professional_tax_slabs: List[ProfessionalTaxSlab] = Field(default_factory=list)
    effective_from: Optional[date] = None

    @model_validator(mode="after")
    def validate_slabs(self) -> "StatutoryConfig":
        slabs = sorted(self.professional_tax_slabs, key=lambda s: s.min_gross)
        for lower, upper in zip(slabs, slabs[1:]):
            if lower.max_gross is None or lower.max_gross >= upper.min_gross:
                raise ValueError(
                    f"Professional tax slabs overlap at {upper.min_gross}"
                )
        self.professional_tax_slabs = slabs
        return self

    def professional_tax_for(self, gross: Decimal) -> Decimal:
        for slab in self.professional_tax_slabs:
            if slab.matches(gross):
                return slab.amount
        return Decimal("0.00")


# ===========================================
# LEDGER
# ===========================================

ObligationKind = Literal["advance", "loan"]


class DueObligation(BaseModel):
    """An installment owed in a period, already capped at the remaining balance."""
    model_config = ConfigDict(frozen=True)

    kind: ObligationKind
    obligation_id: UUID
    installment_number: int
    amount: Decimal
    emi_id: Optional[UUID] = None

    def to_breakdown(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "obligation_id": str(self.obligation_id),
            "installment_number": self.installment_number,
            "amount": str(self.amount),
        }

    def matches_breakdown(self, entry: Dict[str, Any]) -> bool:
        return (
            entry.get("kind") == self.kind
            and entry.get("obligation_id") == str(self.obligation_id)
            and Decimal(str(entry.get("amount"))) == self.amount
        )


# ===========================================
# CALCULATION
# ===========================================

class EmployeePayComputation(BaseModel):
    """
    Result of computing one employee's pay for one period.

    ``gross_salary`` is the contractual monthly gross; ``adjusted_gross`` is
    what remains after loss of pay and is the base for net pay.
    """
    employee_id: UUID
    total_working_days: int
    payable_days: Decimal
    loss_of_pay_days: Decimal

    basic: Decimal
    hra: Decimal
    conveyance: Decimal
    telephone: Decimal
    medical_allowance: Decimal
    special_allowance: Decimal

    gross_salary: Decimal
    loss_of_pay_amount: Decimal
    adjusted_gross: Decimal

    pf: Decimal
    esi: Decimal
    professional_tax: Decimal
    tds: Decimal
    advance_deduction: Decimal
    loan_deduction: Decimal
    total_deductions: Decimal
    net_pay: Decimal

    pf_employer: Decimal
    esi_employer: Decimal
    obligations: List[DueObligation] = Field(default_factory=list)


class SalaryBreakdown(BaseModel):
    """Monthly salary structure derived from an annual CTC."""
    annual_ctc: Decimal
    basic: Decimal
    hra_percentage: Decimal
    hra: Decimal
    conveyance: Decimal
    telephone: Decimal
    medical_allowance: Decimal
    special_allowance: Decimal
    gross: Decimal
    pf_employee: Decimal
    pf_employer: Decimal
    esi_employee: Decimal
    esi_employer: Decimal
    gratuity: Decimal
    professional_tax: Decimal
    tds_percentage: Decimal
    tds_monthly: Decimal
    net: Decimal


# ===========================================
# DIRECTORY SNAPSHOTS
# ===========================================

class EmployeeSnapshot(BaseModel):
    """Employee details frozen onto a payslip."""
    model_config = ConfigDict(from_attributes=True)

    employee_id: UUID
    employee_code: str
    full_name: str
    department: str
    designation: str
    email: Optional[str] = None
    pan_number: Optional[str] = None
    pf_number: Optional[str] = None
    esi_number: Optional[str] = None
    bank_name: Optional[str] = None
    bank_account_number: Optional[str] = None


# ===========================================
# PROCESSING REPORT
# ===========================================

class ProcessedEmployee(BaseModel):
    record_id: UUID
    employee_id: UUID
    payslip_id: UUID
    payslip_number: str
    net_pay: Decimal
    already_existed: bool = False


class FailedEmployee(BaseModel):
    record_id: UUID
    employee_id: UUID
    error_code: str
    message: str


class ProcessingReport(BaseModel):
    """Per-employee outcome of processing a pay run."""
    pay_run_id: UUID
    status: str
    succeeded: List[ProcessedEmployee] = Field(default_factory=list)
    failed: List[FailedEmployee] = Field(default_factory=list)

    @property
    def succeeded_count(self) -> int:
        return len(self.succeeded)

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    @property
    def is_complete(self) -> bool:
        return not self.failed


# ===========================================
# AUDIT
# ===========================================

class AuditEvent(BaseModel):
    """State transition reported to the audit sink."""
    event_type: str
    entity_type: str
    entity_id: str
    actor_id: Optional[str] = None
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    data: Dict[str, Any] = Field(default_factory=dict)


# ===========================================
# READ MODELS
# ===========================================

class PayRunSummary(BaseModel):
    """Pay run overview for operators."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    pay_run_code: str
    salary_month: int
    salary_year: int
    status: str
    total_employees: int
    total_gross: Decimal
    total_deductions: Decimal
    total_net_pay: Decimal
    payslips_issued: int = 0
    records_failed: int = 0
    generation_warnings: List[Dict[str, Any]] = Field(default_factory=list)
