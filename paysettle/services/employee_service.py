"""
PaySettle - Employee Service

Directory maintenance the payroll engine depends on: onboarding,
separation, and the reporting hierarchy. The hierarchy is walked
iteratively with a depth limit, and assignments that would close a cycle
are refused.
"""

import logging
import uuid
from datetime import date
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from paysettle.config import settings
from paysettle.models.employee import Employee, EmployeeStatus
from paysettle.utils.error_handling import (
    EmployeeNotFound, HierarchyCycleError, InvalidTransition, ValidationException,
)

logger = logging.getLogger(__name__)


class EmployeeService:
    """Service for employee records and reporting lines."""

    def __init__(self, db: AsyncSession, max_depth: Optional[int] = None):
        self.db = db
        self.max_depth = max_depth or settings.max_reporting_depth

    async def get_employee(self, employee_id: uuid.UUID) -> Employee:
        employee = await self.db.get(Employee, employee_id)
        if not employee:
            raise EmployeeNotFound(employee_id)
        return employee

    async def create_employee(
        self,
        employee_code: str,
        first_name: str,
        last_name: str,
        department: str,
        designation: str,
        join_date: date,
        reporting_manager_id: Optional[uuid.UUID] = None,
        created_by_id: Optional[uuid.UUID] = None,
        **details,
    ) -> Employee:
        """Onboard an employee. ``details`` carries optional contact, statutory and bank fields."""
        if reporting_manager_id is not None:
            await self.get_employee(reporting_manager_id)

        employee = Employee(
            employee_code=employee_code,
            first_name=first_name,
            last_name=last_name,
            department=department,
            designation=designation,
            join_date=join_date,
            reporting_manager_id=reporting_manager_id,
            status=EmployeeStatus.ACTIVE,
            created_by_id=created_by_id,
            **details,
        )
        self.db.add(employee)
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise ValidationException(
                f"Employee code {employee_code} is already in use",
                field="employee_code",
            ) from e

        logger.info(f"Employee {employee_code} onboarded into {department}")
        return employee

    async def separate_employee(self, employee_id: uuid.UUID, separation_date: date) -> Employee:
        """Mark an employee separated. They stay payable for months their tenure overlaps."""
        employee = await self.get_employee(employee_id)
        if employee.status == EmployeeStatus.SEPARATED:
            raise InvalidTransition("Employee", employee.status, EmployeeStatus.SEPARATED.value, employee_id)
        if separation_date < employee.join_date:
            raise ValidationException("Separation date precedes join date", field="separation_date")

        employee.status = EmployeeStatus.SEPARATED
        employee.separation_date = separation_date
        await self.db.commit()

        logger.info(f"Employee {employee.employee_code} separated on {separation_date}")
        return employee

    # ===========================================
    # REPORTING HIERARCHY
    # ===========================================

    async def get_reporting_chain(self, employee_id: uuid.UUID) -> List[Employee]:
        """
        Managers above the employee, nearest first.

        Stops at the top of the hierarchy or after ``max_depth`` levels, and
        raises HierarchyCycleError if a manager repeats.
        """
        employee = await self.get_employee(employee_id)
        chain: List[Employee] = []
        visited = {employee.id}

        manager_id = employee.reporting_manager_id
        while manager_id is not None and len(chain) < self.max_depth:
            if manager_id in visited:
                raise HierarchyCycleError(employee_id, manager_id)
            visited.add(manager_id)

            manager = await self.db.get(Employee, manager_id)
            if manager is None:
                logger.warning(f"Reporting manager {manager_id} of chain for {employee_id} no longer exists")
                break
            chain.append(manager)
            manager_id = manager.reporting_manager_id

        if manager_id is not None and len(chain) >= self.max_depth:
            logger.warning(f"Reporting chain for {employee_id} truncated at depth {self.max_depth}")
        return chain

    async def get_direct_reports(self, manager_id: uuid.UUID) -> List[Employee]:
        result = await self.db.execute(
            select(Employee)
            .where(Employee.reporting_manager_id == manager_id)
            .order_by(Employee.employee_code)
        )
        return list(result.scalars().all())

    async def assign_reporting_manager(
        self,
        employee_id: uuid.UUID,
        manager_id: Optional[uuid.UUID],
    ) -> Employee:
        """Set (or clear) the employee's manager, refusing assignments that form a cycle."""
        employee = await self.get_employee(employee_id)

        if manager_id is not None:
            if manager_id == employee_id:
                raise HierarchyCycleError(employee_id, manager_id)
            await self.get_employee(manager_id)
            chain = await self.get_reporting_chain(manager_id)
            if any(m.id == employee_id for m in chain):
                raise HierarchyCycleError(employee_id, manager_id)

        employee.reporting_manager_id = manager_id
        await self.db.commit()

        logger.info(f"Employee {employee.employee_code} now reports to {manager_id}")
        return employee
