"""
PaySettle - Payroll Calculator Tests

Unit tests for loss of pay, statutory deductions and recoveries.
"""

import pytest
from decimal import Decimal
from uuid import uuid4

from paysettle.models.attendance import AttendanceStatus, AttendanceSummary
from paysettle.models.employee import CompensationProfile, PaymentMode
from paysettle.schemas.payroll import DueObligation, PayPeriod, ProfessionalTaxSlab, StatutoryConfig
from paysettle.services.collaborators import statutory_config_from_settings
from paysettle.services.compensation_service import compute_breakdown
from paysettle.services.payroll_calculator import PayrollCalculator, profile_violations
from paysettle.config import settings
from paysettle.utils.error_handling import (
    InvalidAttendance, InvalidCompensation, MissingAttendance, NegativeNetPay,
)


PERIOD = PayPeriod(month=3, year=2025)
CONFIG = statutory_config_from_settings(settings)


def make_profile(annual_ctc: str, **kwargs) -> CompensationProfile:
    include_pf = kwargs.pop("include_pf", True)
    include_esi = kwargs.pop("include_esi", True)
    tds_percentage = kwargs.pop("tds_percentage", Decimal("0"))
    breakdown = compute_breakdown(
        Decimal(annual_ctc),
        include_pf=include_pf,
        include_esi=include_esi,
        tds_percentage=tds_percentage,
        config=CONFIG,
    )
    return CompensationProfile(
        employee_id=uuid4(),
        include_pf=include_pf,
        include_esi=include_esi,
        payment_mode=PaymentMode.BANK,
        **breakdown.model_dump(),
    )


def make_attendance(profile: CompensationProfile, period: PayPeriod = PERIOD, **counts) -> AttendanceSummary:
    values = {
        "total_working_days": 30,
        "absent_days": 0,
        "paid_leave": 0,
        "unpaid_leave": 0,
        "half_days": 0,
    }
    values.update(counts)
    values.setdefault(
        "present_days",
        values["total_working_days"] - values["absent_days"] - values["paid_leave"] - values["unpaid_leave"],
    )
    status = values.pop("status", AttendanceStatus.APPROVED)
    return AttendanceSummary(
        employee_id=profile.employee_id,
        month=period.month,
        year=period.year,
        status=status,
        overtime_hours=Decimal("0"),
        **values,
    )


@pytest.fixture
def calculator() -> PayrollCalculator:
    return PayrollCalculator()


class TestLossOfPay:
    """Attendance-driven proration of the monthly gross."""

    def test_full_attendance_with_paid_leave(self, calculator):
        """CTC 12 lakh, 28 present + 2 paid leave: no loss of pay, full gross."""
        profile = make_profile("1200000")
        attendance = make_attendance(profile, present_days=28, paid_leave=2)

        result = calculator.calculate(profile, attendance, [], CONFIG, PERIOD)

        assert result.loss_of_pay_days == Decimal("0")
        assert result.payable_days == Decimal("30")
        assert result.loss_of_pay_amount == Decimal("0.00")
        assert result.gross_salary == Decimal("100000.00")
        assert result.adjusted_gross == Decimal("100000.00")

    def test_unpaid_leave_reduces_gross(self, calculator):
        """5 unpaid days of 30 on a 60,000 gross costs exactly 10,000."""
        profile = make_profile("720000")
        assert profile.gross == Decimal("60000.00")
        attendance = make_attendance(profile, unpaid_leave=5)

        result = calculator.calculate(profile, attendance, [], CONFIG, PERIOD)

        assert result.loss_of_pay_amount == Decimal("10000.00")
        assert result.adjusted_gross == Decimal("50000.00")
        assert result.basic == Decimal("25000.00")
        assert result.hra == Decimal("10000.00")
        assert result.special_allowance == Decimal("15000.00")

    def test_half_day_counts_half(self, calculator):
        profile = make_profile("720000")
        attendance = make_attendance(profile, present_days=28, absent_days=2, half_days=1)

        result = calculator.calculate(profile, attendance, [], CONFIG, PERIOD)

        assert result.payable_days == Decimal("28.5")
        assert result.loss_of_pay_days == Decimal("1.5")
        assert result.loss_of_pay_amount == Decimal("3000.00")

    def test_earned_components_sum_to_adjusted_gross(self, calculator):
        profile = make_profile("987654")
        attendance = make_attendance(profile, unpaid_leave=7, total_working_days=31)

        result = calculator.calculate(profile, attendance, [], CONFIG, PERIOD)

        components = (
            result.basic + result.hra + result.conveyance + result.telephone
            + result.medical_allowance + result.special_allowance
        )
        assert components == result.adjusted_gross


class TestStatutoryDeductions:
    """PF, ESI, professional tax and TDS."""

    def test_pf_capped_at_wage_ceiling(self, calculator):
        profile = make_profile("1200000")
        result = calculator.calculate(profile, make_attendance(profile), [], CONFIG, PERIOD)

        # 12% of 15,000 rather than 12% of 50,000 basic
        assert result.pf == Decimal("1800.00")
        assert result.pf_employer == Decimal("1800.00")

    def test_pf_below_ceiling_uses_earned_basic(self, calculator):
        profile = make_profile("240000")
        result = calculator.calculate(profile, make_attendance(profile), [], CONFIG, PERIOD)

        assert result.pf == Decimal("1200.00")

    def test_pf_opt_out(self, calculator):
        profile = make_profile("1200000", include_pf=False)
        result = calculator.calculate(profile, make_attendance(profile), [], CONFIG, PERIOD)

        assert result.pf == Decimal("0.00")
        assert result.pf_employer == Decimal("0.00")

    def test_esi_applies_below_ceiling(self, calculator):
        profile = make_profile("240000")
        assert profile.gross == Decimal("20000.00")

        result = calculator.calculate(profile, make_attendance(profile), [], CONFIG, PERIOD)

        assert result.esi == Decimal("150.00")
        assert result.esi_employer == Decimal("650.00")

    def test_no_esi_at_ceiling(self, calculator):
        profile = make_profile("252000")
        assert profile.gross == Decimal("21000.00")

        result = calculator.calculate(profile, make_attendance(profile), [], CONFIG, PERIOD)

        assert result.esi == Decimal("0.00")
        assert result.esi_employer == Decimal("0.00")

    def test_no_esi_above_ceiling(self, calculator):
        profile = make_profile("1200000")
        result = calculator.calculate(profile, make_attendance(profile), [], CONFIG, PERIOD)

        assert result.esi == Decimal("0.00")

    def test_professional_tax_from_slabs(self, calculator):
        low = make_profile("240000")
        high = make_profile("1200000")

        assert calculator.calculate(low, make_attendance(low), [], CONFIG, PERIOD).professional_tax == Decimal("0.00")
        assert calculator.calculate(high, make_attendance(high), [], CONFIG, PERIOD).professional_tax == Decimal("200.00")

    def test_custom_slabs_are_honoured(self, calculator):
        config = CONFIG.model_copy(update={"professional_tax_slabs": [
            ProfessionalTaxSlab(min_gross=Decimal("0"), max_gross=Decimal("9999.99"), amount=Decimal("0")),
            ProfessionalTaxSlab(min_gross=Decimal("10000"), max_gross=None, amount=Decimal("175")),
        ]})
        profile = make_profile("240000")

        result = calculator.calculate(profile, make_attendance(profile), [], config, PERIOD)

        assert result.professional_tax == Decimal("175.00")

    def test_tds_on_adjusted_gross(self, calculator):
        profile = make_profile("1200000", tds_percentage=Decimal("10"))
        attendance = make_attendance(profile, unpaid_leave=3)

        result = calculator.calculate(profile, attendance, [], CONFIG, PERIOD)

        assert result.adjusted_gross == Decimal("90000.00")
        assert result.tds == Decimal("9000.00")

    def test_overlapping_slabs_rejected(self):
        with pytest.raises(ValueError):
            StatutoryConfig(
                **CONFIG.model_dump(exclude={"professional_tax_slabs"}),
                professional_tax_slabs=[
                    {"min_gross": "0", "max_gross": "20000", "amount": "0"},
                    {"min_gross": "15000", "max_gross": None, "amount": "200"},
                ],
            )


class TestNetPay:
    """Totals and recoveries."""

    def test_net_is_adjusted_gross_minus_deductions(self, calculator):
        profile = make_profile("1200000")
        result = calculator.calculate(profile, make_attendance(profile), [], CONFIG, PERIOD)

        assert result.total_deductions == Decimal("2000.00")
        assert result.net_pay == Decimal("98000.00")
        assert result.net_pay == result.adjusted_gross - result.total_deductions

    def test_recoveries_are_included(self, calculator):
        profile = make_profile("1200000")
        obligations = [
            DueObligation(kind="advance", obligation_id=uuid4(), installment_number=1, amount=Decimal("5000.00")),
            DueObligation(kind="loan", obligation_id=uuid4(), installment_number=1, amount=Decimal("9333.33")),
        ]

        result = calculator.calculate(profile, make_attendance(profile), obligations, CONFIG, PERIOD)

        assert result.advance_deduction == Decimal("5000.00")
        assert result.loan_deduction == Decimal("9333.33")
        assert result.total_deductions == Decimal("16333.33")
        assert result.net_pay == Decimal("83666.67")
        assert len(result.obligations) == 2

    def test_negative_net_is_rejected(self, calculator):
        profile = make_profile("240000")
        obligations = [
            DueObligation(kind="advance", obligation_id=uuid4(), installment_number=1, amount=Decimal("19000.00")),
        ]

        with pytest.raises(NegativeNetPay):
            calculator.calculate(profile, make_attendance(profile), obligations, CONFIG, PERIOD)


class TestInputValidation:
    """Calculator refuses inconsistent inputs instead of computing garbage."""

    def test_missing_attendance(self, calculator):
        profile = make_profile("1200000")
        with pytest.raises(MissingAttendance) as exc_info:
            calculator.calculate(profile, None, [], CONFIG, PERIOD)
        assert exc_info.value.employee_id == profile.employee_id

    def test_unapproved_attendance_counts_as_missing(self, calculator):
        profile = make_profile("1200000")
        attendance = make_attendance(profile, status=AttendanceStatus.UNAPPROVED)

        with pytest.raises(MissingAttendance):
            calculator.calculate(profile, attendance, [], CONFIG, PERIOD)

    def test_attendance_for_other_period(self, calculator):
        profile = make_profile("1200000")
        attendance = make_attendance(profile, period=PayPeriod(month=2, year=2025))

        with pytest.raises(InvalidAttendance):
            calculator.calculate(profile, attendance, [], CONFIG, PERIOD)

    def test_more_days_than_working_days(self, calculator):
        profile = make_profile("1200000")
        attendance = make_attendance(profile, present_days=29, unpaid_leave=3)

        with pytest.raises(InvalidAttendance):
            calculator.calculate(profile, attendance, [], CONFIG, PERIOD)

    def test_zero_working_days(self, calculator):
        profile = make_profile("1200000")
        attendance = make_attendance(profile, total_working_days=0, present_days=0)

        with pytest.raises(InvalidAttendance):
            calculator.calculate(profile, attendance, [], CONFIG, PERIOD)

    def test_inconsistent_profile(self, calculator):
        profile = make_profile("1200000")
        profile.basic = profile.basic + Decimal("500")

        with pytest.raises(InvalidCompensation) as exc_info:
            calculator.calculate(profile, make_attendance(profile), [], CONFIG, PERIOD)
        assert "basic" in exc_info.value.details["violations"]

    def test_profile_within_tolerance_is_accepted(self):
        profile = make_profile("1200000")
        profile.special_allowance = profile.special_allowance + Decimal("0.50")

        assert profile_violations(profile) == {}
