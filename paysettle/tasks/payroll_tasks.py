"""
PaySettle - Payroll Celery Tasks

Background entry points for pay run generation and processing. Tasks take
and return JSON-serializable values only; ids travel as strings.
"""

import asyncio
import logging
import uuid
from datetime import date
from typing import Any, Callable, Dict, Optional

from celery import shared_task

from paysettle.database import async_session_maker
from paysettle.utils.error_handling import AppException, LockAcquisitionTimeout

logger = logging.getLogger(__name__)


def run_async(coro):
    """Helper to run async functions in Celery tasks."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _uuid(value: Optional[str]) -> Optional[uuid.UUID]:
    return uuid.UUID(value) if value else None


# ===========================================
# PAY RUN TASKS
# ===========================================

@shared_task(name='paysettle.tasks.payroll_tasks.generate_pay_run_task', bind=True, max_retries=3)
def generate_pay_run_task(self, month: int, year: int, requested_by: Optional[str] = None) -> Dict[str, Any]:
    """Generate the draft pay run for a month."""
    try:
        return run_async(_generate_pay_run(month, year, requested_by))
    except LockAcquisitionTimeout as e:
        raise self.retry(exc=e, countdown=60)


async def _generate_pay_run(
    month: int,
    year: int,
    requested_by: Optional[str] = None,
    session_factory: Optional[Callable] = None,
) -> Dict[str, Any]:
    """Async implementation of pay run generation."""
    from paysettle.services.pay_run_service import PayRunService

    session_factory = session_factory or async_session_maker
    async with session_factory() as db:
        service = PayRunService(db)
        try:
            pay_run = await service.generate_pay_run(month, year, requested_by=_uuid(requested_by))
        except LockAcquisitionTimeout:
            raise
        except AppException as e:
            logger.warning(f"Pay run generation {year}-{month:02d} failed: {e.message}")
            return {"status": "error", **e.to_dict()}

        return {
            "status": "generated",
            "pay_run_id": str(pay_run.id),
            "pay_run_code": pay_run.pay_run_code,
            "total_employees": pay_run.total_employees,
            "total_net_pay": str(pay_run.total_net_pay),
            "skipped": len(pay_run.generation_warnings or []),
        }


@shared_task(name='paysettle.tasks.payroll_tasks.process_pay_run_task', bind=True, max_retries=3)
def process_pay_run_task(
    self,
    pay_run_id: str,
    processor_id: str,
    payment_date: str,
    retry: bool = False,
) -> Dict[str, Any]:
    """Issue payslips and apply deductions for an approved pay run."""
    try:
        return run_async(_process_pay_run(pay_run_id, processor_id, payment_date, retry))
    except LockAcquisitionTimeout as e:
        raise self.retry(exc=e, countdown=60)


async def _process_pay_run(
    pay_run_id: str,
    processor_id: str,
    payment_date: str,
    retry: bool = False,
    session_factory: Optional[Callable] = None,
) -> Dict[str, Any]:
    """Async implementation of pay run processing."""
    from paysettle.services.pay_run_service import PayRunService

    session_factory = session_factory or async_session_maker
    async with session_factory() as db:
        service = PayRunService(db)
        try:
            report = await service.process_pay_run(
                uuid.UUID(pay_run_id),
                uuid.UUID(processor_id),
                date.fromisoformat(payment_date),
                retry=retry,
            )
        except LockAcquisitionTimeout:
            raise
        except AppException as e:
            logger.warning(f"Processing pay run {pay_run_id} failed: {e.message}")
            return {"status": "error", **e.to_dict()}

        return {
            "status": report.status,
            "pay_run_id": pay_run_id,
            "succeeded": report.succeeded_count,
            "failed": [
                {"employee_id": str(f.employee_id), "code": f.error_code, "message": f.message}
                for f in report.failed
            ],
        }
