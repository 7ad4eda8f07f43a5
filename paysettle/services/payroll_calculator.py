"""
PaySettle - Payroll Calculator

Pure computation of one employee's pay for one period. Nothing here reads
from or writes to the database; callers pass in the profile, the approved
attendance summary, the obligations due and the statutory configuration.

Computation order:
1. Loss of pay     = round(gross / working days * LOP days, 2)
2. Adjusted gross  = gross - loss of pay (earnings prorated to match)
3. PF              = rate x min(earned basic, PF wage ceiling), if opted in
4. ESI             = rate x adjusted gross, if opted in and gross < ESI ceiling
5. Professional tax from the configured slabs on adjusted gross
6. TDS             = adjusted gross x TDS %
7. Advance / loan recoveries as supplied by the ledger
8. Net             = adjusted gross - total deductions (never negative)
"""

import logging
from decimal import Decimal
from typing import Dict, Optional, Sequence

from paysettle.models.attendance import AttendanceSummary
from paysettle.models.employee import CompensationProfile
from paysettle.schemas.payroll import (
    DueObligation, EmployeePayComputation, PayPeriod, StatutoryConfig,
)
from paysettle.utils.error_handling import (
    InvalidAttendance, InvalidCompensation, MissingAttendance, NegativeNetPay,
)
from paysettle.utils.money import ZERO, percent_of, round_money, sum_money, within

logger = logging.getLogger(__name__)


# Basic is half of CTC, paid monthly
BASIC_SHARE_OF_CTC = Decimal("0.5")
MONTHS_PER_YEAR = 12

PROFILE_TOLERANCE = Decimal("1.00")


def expected_basic(annual_ctc: Decimal) -> Decimal:
    return round_money(annual_ctc * BASIC_SHARE_OF_CTC / MONTHS_PER_YEAR)


def profile_violations(
    profile: CompensationProfile,
    tolerance: Decimal = PROFILE_TOLERANCE,
) -> Dict[str, Dict[str, str]]:
    """Return the salary invariants the profile breaks, keyed by name."""
    violations = {}

    basic = expected_basic(profile.annual_ctc)
    if not within(profile.basic, basic, tolerance):
        violations["basic"] = {"expected": str(basic), "actual": str(profile.basic)}

    gross = sum_money([
        profile.basic,
        profile.hra,
        profile.conveyance,
        profile.telephone,
        profile.medical_allowance,
        profile.special_allowance,
    ])
    if not within(profile.gross, gross, tolerance):
        violations["gross"] = {"expected": str(gross), "actual": str(profile.gross)}

    net = round_money(profile.gross - profile.statutory_deductions)
    if not within(profile.net, net, tolerance):
        violations["net"] = {"expected": str(net), "actual": str(profile.net)}

    if profile.gross <= ZERO:
        violations["gross_positive"] = {"expected": "> 0", "actual": str(profile.gross)}

    return violations


def validate_profile(profile: CompensationProfile, tolerance: Decimal = PROFILE_TOLERANCE) -> None:
    violations = profile_violations(profile, tolerance)
    if violations:
        raise InvalidCompensation(profile.employee_id, violations)


def validate_attendance(summary: AttendanceSummary) -> None:
    counts = {
        "total_working_days": summary.total_working_days,
        "present_days": summary.present_days,
        "absent_days": summary.absent_days,
        "paid_leave": summary.paid_leave,
        "unpaid_leave": summary.unpaid_leave,
        "half_days": summary.half_days,
    }
    negative = [name for name, value in counts.items() if value is None or value < 0]
    if negative:
        raise InvalidAttendance(
            f"Attendance counters cannot be negative: {', '.join(negative)}",
            details={"fields": negative},
        )
    if summary.total_working_days == 0:
        raise InvalidAttendance("Attendance summary has zero working days")

    accounted = summary.present_days + summary.absent_days + summary.paid_leave + summary.unpaid_leave
    if accounted > summary.total_working_days:
        raise InvalidAttendance(
            f"{accounted} days accounted for but only {summary.total_working_days} working days",
            details={"accounted": accounted, "total_working_days": summary.total_working_days},
        )
    if summary.loss_of_pay_days < 0:
        raise InvalidAttendance(
            "Half days exceed recorded absences",
            details={"half_days": summary.half_days, "absent_days": summary.absent_days},
        )


class PayrollCalculator:
    """Stateless pay computation. Safe to share across coroutines."""

    def __init__(self, tolerance: Decimal = PROFILE_TOLERANCE):
        self.tolerance = tolerance

    def calculate(
        self,
        profile: CompensationProfile,
        attendance: Optional[AttendanceSummary],
        obligations: Sequence[DueObligation],
        config: StatutoryConfig,
        period: PayPeriod,
    ) -> EmployeePayComputation:
        """Compute pay for ``profile.employee_id`` in ``period``."""
        employee_id = profile.employee_id

        if attendance is None or not attendance.is_approved:
            raise MissingAttendance(employee_id, period.month, period.year)
        if (attendance.month, attendance.year) != (period.month, period.year):
            raise InvalidAttendance(
                f"Attendance for {attendance.year}-{attendance.month:02d} used for {period.label}",
            )
        validate_attendance(attendance)
        validate_profile(profile, self.tolerance)

        gross = round_money(profile.gross)
        working_days = attendance.total_working_days
        lop_days = attendance.loss_of_pay_days

        # 1-2. Loss of pay
        lop_amount = round_money(gross / working_days * lop_days)
        adjusted_gross = round_money(gross - lop_amount)
        ratio = adjusted_gross / gross

        basic = round_money(profile.basic * ratio)
        hra = round_money(profile.hra * ratio)
        conveyance = round_money(profile.conveyance * ratio)
        telephone = round_money(profile.telephone * ratio)
        medical = round_money(profile.medical_allowance * ratio)
        # Special allowance absorbs proration rounding
        special = round_money(adjusted_gross - (basic + hra + conveyance + telephone + medical))

        # 3. Provident fund
        pf = pf_employer = ZERO
        if profile.include_pf:
            pf_wage = min(basic, config.pf_wage_ceiling)
            pf = percent_of(pf_wage, config.pf_employee_rate)
            pf_employer = percent_of(pf_wage, config.pf_employer_rate)

        # 4. ESI
        esi = esi_employer = ZERO
        if profile.include_esi and gross < config.esi_wage_ceiling:
            esi = percent_of(adjusted_gross, config.esi_employee_rate)
            esi_employer = percent_of(adjusted_gross, config.esi_employer_rate)

        # 5-6. Taxes
        professional_tax = round_money(config.professional_tax_for(adjusted_gross))
        tds = percent_of(adjusted_gross, profile.tds_percentage)

        # 7. Recoveries
        advance_deduction = sum_money(o.amount for o in obligations if o.kind == "advance")
        loan_deduction = sum_money(o.amount for o in obligations if o.kind == "loan")

        total_deductions = sum_money([
            pf, esi, professional_tax, tds, advance_deduction, loan_deduction,
        ])
        net_pay = round_money(adjusted_gross - total_deductions)
        if net_pay < ZERO:
            raise NegativeNetPay(employee_id, adjusted_gross, total_deductions)

        logger.debug(
            f"Computed pay for {employee_id} {period.label}: gross={gross} lop={lop_amount} "
            f"deductions={total_deductions} net={net_pay}"
        )

        return EmployeePayComputation(
            employee_id=employee_id,
            total_working_days=working_days,
            payable_days=attendance.payable_days,
            loss_of_pay_days=lop_days,
            basic=basic,
            hra=hra,
            conveyance=conveyance,
            telephone=telephone,
            medical_allowance=medical,
            special_allowance=special,
            gross_salary=gross,
            loss_of_pay_amount=lop_amount,
            adjusted_gross=adjusted_gross,
            pf=pf,
            esi=esi,
            professional_tax=professional_tax,
            tds=tds,
            advance_deduction=advance_deduction,
            loan_deduction=loan_deduction,
            total_deductions=total_deductions,
            net_pay=net_pay,
            pf_employer=pf_employer,
            esi_employer=esi_employer,
            obligations=list(obligations),
        )
