"""
PaySettle - Compensation Service

Derives the monthly salary structure from an annual CTC and owns every write
to CompensationProfile:
- create_profile / revise_salary validate the salary invariants first
- career events (promotion, increment, placement change) are applied to the
  employee and the profile in the same transaction that approves them
"""

import logging
import uuid
from datetime import date
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from paysettle.config import settings
from paysettle.models.base import utcnow
from paysettle.models.employee import (
    CareerEvent, CareerEventStatus, CareerEventType, CompensationProfile, Employee, PaymentMode,
)
from paysettle.schemas.payroll import AuditEvent, SalaryBreakdown, StatutoryConfig
from paysettle.services.collaborators import AuditSink, emit_audit, statutory_config_from_settings
from paysettle.services.payroll_calculator import (
    BASIC_SHARE_OF_CTC, MONTHS_PER_YEAR, validate_profile,
)
from paysettle.utils.error_handling import (
    EmployeeNotFound, InvalidAmount, InvalidTransition, NotFoundException, ValidationException,
)
from paysettle.utils.money import ZERO, percent_of, round_money, sum_money, to_decimal

logger = logging.getLogger(__name__)


DEFAULT_HRA_PERCENTAGE = Decimal("40")


def compute_breakdown(
    annual_ctc: Decimal,
    hra_percentage: Decimal = DEFAULT_HRA_PERCENTAGE,
    conveyance: Decimal = ZERO,
    telephone: Decimal = ZERO,
    medical_allowance: Decimal = ZERO,
    include_pf: bool = True,
    include_esi: bool = True,
    tds_percentage: Decimal = ZERO,
    config: Optional[StatutoryConfig] = None,
    gratuity_rate: Optional[Decimal] = None,
) -> SalaryBreakdown:
    """
    Monthly structure for an annual CTC.

    Basic is half the CTC; HRA a percentage of basic; the special allowance
    is whatever remains of the monthly CTC after the fixed components.
    """
    annual_ctc = round_money(annual_ctc)
    if annual_ctc <= ZERO:
        raise InvalidAmount(annual_ctc, field="annual_ctc")

    config = config or statutory_config_from_settings(settings)
    gratuity_rate = to_decimal(gratuity_rate if gratuity_rate is not None else settings.gratuity_rate)

    monthly_ctc = round_money(annual_ctc / MONTHS_PER_YEAR)
    basic = round_money(annual_ctc * BASIC_SHARE_OF_CTC / MONTHS_PER_YEAR)
    hra = percent_of(basic, hra_percentage)
    conveyance = round_money(conveyance)
    telephone = round_money(telephone)
    medical_allowance = round_money(medical_allowance)

    fixed = sum_money([basic, hra, conveyance, telephone, medical_allowance])
    special_allowance = max(ZERO, round_money(monthly_ctc - fixed))
    gross = round_money(fixed + special_allowance)

    pf_employee = pf_employer = ZERO
    if include_pf:
        pf_wage = min(basic, config.pf_wage_ceiling)
        pf_employee = percent_of(pf_wage, config.pf_employee_rate)
        pf_employer = percent_of(pf_wage, config.pf_employer_rate)

    esi_employee = esi_employer = ZERO
    if include_esi and gross < config.esi_wage_ceiling:
        esi_employee = percent_of(gross, config.esi_employee_rate)
        esi_employer = percent_of(gross, config.esi_employer_rate)

    professional_tax = round_money(config.professional_tax_for(gross))
    tds_monthly = percent_of(gross, tds_percentage)
    net = round_money(gross - (pf_employee + esi_employee + professional_tax + tds_monthly))

    return SalaryBreakdown(
        annual_ctc=annual_ctc,
        basic=basic,
        hra_percentage=to_decimal(hra_percentage),
        hra=hra,
        conveyance=conveyance,
        telephone=telephone,
        medical_allowance=medical_allowance,
        special_allowance=special_allowance,
        gross=gross,
        pf_employee=pf_employee,
        pf_employer=pf_employer,
        esi_employee=esi_employee,
        esi_employer=esi_employer,
        gratuity=percent_of(basic, gratuity_rate),
        professional_tax=professional_tax,
        tds_percentage=to_decimal(tds_percentage),
        tds_monthly=tds_monthly,
        net=net,
    )


def _apply_breakdown(profile: CompensationProfile, breakdown: SalaryBreakdown) -> None:
    for field, value in breakdown.model_dump().items():
        setattr(profile, field, value)


class CompensationService:
    """Service for compensation profiles and career events."""

    def __init__(
        self,
        db: AsyncSession,
        config: Optional[StatutoryConfig] = None,
        audit_sink: Optional[AuditSink] = None,
    ):
        self.db = db
        self.config = config or statutory_config_from_settings(settings)
        self.audit_sink = audit_sink

    async def _get_employee(self, employee_id: uuid.UUID) -> Employee:
        employee = await self.db.get(Employee, employee_id)
        if not employee:
            raise EmployeeNotFound(employee_id)
        return employee

    async def get_profile(self, employee_id: uuid.UUID) -> Optional[CompensationProfile]:
        result = await self.db.execute(
            select(CompensationProfile).where(CompensationProfile.employee_id == employee_id)
        )
        return result.scalar_one_or_none()

    # ===========================================
    # PROFILES
    # ===========================================

    async def create_profile(
        self,
        employee_id: uuid.UUID,
        annual_ctc: Decimal,
        hra_percentage: Decimal = DEFAULT_HRA_PERCENTAGE,
        conveyance: Decimal = ZERO,
        telephone: Decimal = ZERO,
        medical_allowance: Decimal = ZERO,
        include_pf: bool = True,
        include_esi: bool = True,
        tds_percentage: Decimal = ZERO,
        payment_mode: PaymentMode = PaymentMode.BANK,
        effective_from: Optional[date] = None,
    ) -> CompensationProfile:
        """Create the employee's compensation profile from an annual CTC."""
        employee = await self._get_employee(employee_id)
        if await self.get_profile(employee_id):
            raise ValidationException(
                f"Employee {employee.employee_code} already has a compensation profile",
                field="employee_id",
            )

        breakdown = compute_breakdown(
            annual_ctc, hra_percentage, conveyance, telephone, medical_allowance,
            include_pf, include_esi, tds_percentage, self.config,
        )
        profile = CompensationProfile(
            employee_id=employee_id,
            include_pf=include_pf,
            include_esi=include_esi,
            payment_mode=payment_mode,
            effective_from=effective_from or employee.join_date,
        )
        _apply_breakdown(profile, breakdown)
        validate_profile(profile)

        self.db.add(profile)
        await self.db.commit()

        logger.info(f"Compensation profile created for {employee.employee_code}: CTC {breakdown.annual_ctc}")
        return profile

    async def revise_salary(
        self,
        employee_id: uuid.UUID,
        annual_ctc: Decimal,
        effective_from: date,
        hra_percentage: Optional[Decimal] = None,
        tds_percentage: Optional[Decimal] = None,
        commit: bool = True,
    ) -> CompensationProfile:
        """Re-derive the profile for a new CTC, keeping fixed allowances and opt-ins."""
        profile = await self.get_profile(employee_id)
        if not profile:
            raise NotFoundException(
                "CompensationProfile",
                message=f"No compensation profile for employee {employee_id}",
            )

        breakdown = compute_breakdown(
            annual_ctc,
            hra_percentage if hra_percentage is not None else profile.hra_percentage,
            profile.conveyance,
            profile.telephone,
            profile.medical_allowance,
            profile.include_pf,
            profile.include_esi,
            tds_percentage if tds_percentage is not None else profile.tds_percentage,
            self.config,
        )
        old_ctc = profile.annual_ctc
        _apply_breakdown(profile, breakdown)
        profile.effective_from = effective_from
        validate_profile(profile)

        await self.db.flush()
        if commit:
            await self.db.commit()

        logger.info(f"Salary revised for employee {employee_id}: CTC {old_ctc} -> {breakdown.annual_ctc}")
        return profile

    # ===========================================
    # CAREER EVENTS
    # ===========================================

    async def create_career_event(
        self,
        employee_id: uuid.UUID,
        event_type: CareerEventType,
        effective_date: date,
        new_designation: Optional[str] = None,
        new_department: Optional[str] = None,
        new_ctc: Optional[Decimal] = None,
        notes: Optional[str] = None,
        created_by_id: Optional[uuid.UUID] = None,
    ) -> CareerEvent:
        employee = await self._get_employee(employee_id)
        profile = await self.get_profile(employee_id)

        if event_type in (CareerEventType.PROMOTION, CareerEventType.INCREMENT) and new_ctc is None:
            raise ValidationException(f"{event_type.value} requires a new CTC", field="new_ctc")
        if new_ctc is not None and round_money(new_ctc) <= ZERO:
            raise InvalidAmount(new_ctc, field="new_ctc")

        event = CareerEvent(
            employee_id=employee_id,
            event_type=event_type,
            effective_date=effective_date,
            old_designation=employee.designation,
            new_designation=new_designation,
            old_department=employee.department,
            new_department=new_department,
            old_ctc=profile.annual_ctc if profile else None,
            new_ctc=round_money(new_ctc) if new_ctc is not None else None,
            status=CareerEventStatus.PENDING,
            notes=notes,
            created_by_id=created_by_id,
        )
        self.db.add(event)
        await self.db.commit()

        logger.info(f"Career event {event_type.value} recorded for {employee.employee_code}")
        return event

    async def list_career_events(self, employee_id: uuid.UUID) -> List[CareerEvent]:
        result = await self.db.execute(
            select(CareerEvent)
            .where(CareerEvent.employee_id == employee_id)
            .order_by(CareerEvent.effective_date)
        )
        return list(result.scalars().all())

    async def approve_career_event(self, event_id: uuid.UUID, approver_id: uuid.UUID) -> CareerEvent:
        """Approve a pending event and apply it to the employee and profile atomically."""
        if approver_id is None:
            raise ValidationException("Approver is required", field="approver_id")

        event = await self.db.get(CareerEvent, event_id)
        if not event:
            raise NotFoundException("CareerEvent", event_id)
        if event.status != CareerEventStatus.PENDING:
            raise InvalidTransition("CareerEvent", event.status, CareerEventStatus.APPROVED.value, event_id)

        try:
            employee = await self._get_employee(event.employee_id)
            if event.new_designation:
                employee.designation = event.new_designation
            if event.new_department:
                employee.department = event.new_department
            employee.updated_by_id = approver_id

            if event.new_ctc is not None:
                await self.revise_salary(event.employee_id, event.new_ctc, event.effective_date, commit=False)

            event.status = CareerEventStatus.APPROVED
            event.approved_by_id = approver_id
            event.approved_at = utcnow()
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Career event {event_id} ({event.event_type.value}) approved by {approver_id}")
        await emit_audit(self.audit_sink, AuditEvent(
            event_type="career_event.approved",
            entity_type="career_event",
            entity_id=str(event_id),
            actor_id=str(approver_id),
            data={"new_ctc": str(event.new_ctc) if event.new_ctc is not None else None},
        ))
        return event
