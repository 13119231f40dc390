"""
ClientDesk - Celery Configuration

Celery configuration for background document processing and the daily
compliance scan. Uses Redis as the message broker and result backend.
"""

from celery import Celery
from celery.schedules import crontab

from app.config import settings


# Create Celery app
celery_app = Celery(
    'clientdesk',
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=['app.tasks.celery_tasks'],
)

# Celery configuration
celery_app.conf.update(
    # Serialization
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',

    # Timezone
    timezone='Asia/Dubai',
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=300,  # 5 minutes
    task_soft_time_limit=240,  # 4 minutes (warning before hard limit)

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=4,

    # Result backend settings
    result_expires=86400,  # 24 hours

    # Extraction is never retried automatically; reprocessing is explicit
    task_max_retries=0,

    # Beat schedule for periodic tasks
    beat_schedule={
        # Portfolio compliance scan every day at 7 AM
        'compliance-alert-scan': {
            'task': 'app.tasks.celery_tasks.scan_compliance_alerts_task',
            'schedule': crontab(hour=7, minute=0),
        },
    },
)


# Task routing
celery_app.conf.task_routes = {
    'app.tasks.celery_tasks.process_client_document_task': {'queue': 'documents'},
    'app.tasks.celery_tasks.*': {'queue': 'default'},
}
