"""
PaySettle - Background Tasks Package

Celery entry points for long-running pay run operations.
"""

from paysettle.tasks.payroll_tasks import (
    generate_pay_run_task,
    process_pay_run_task,
    run_async,
)

__all__ = [
    "generate_pay_run_task",
    "process_pay_run_task",
    "run_async",
]
