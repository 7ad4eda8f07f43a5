"""
PaySettle - Celery Configuration

Celery configuration for background pay run generation and processing.
Uses Redis as the message broker and result backend.
"""

from celery import Celery
from celery.signals import setup_logging

from paysettle.config import settings
from paysettle.logging_config import configure_logging


# Create Celery app
celery_app = Celery(
    'paysettle',
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=['paysettle.tasks.payroll_tasks'],
)

# Celery configuration
celery_app.conf.update(
    # Serialization
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',

    # Timezone
    timezone='Asia/Kolkata',
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=settings.celery_task_time_limit,
    task_soft_time_limit=settings.celery_task_time_limit - 60,

    # A pay run holds a period lock for its whole duration
    worker_prefetch_multiplier=1,

    # Result backend settings
    result_expires=86400,  # 24 hours
)

celery_app.conf.task_routes = {
    'paysettle.tasks.payroll_tasks.*': {'queue': 'payroll'},
}


@setup_logging.connect
def _configure_worker_logging(**kwargs):
    configure_logging()
