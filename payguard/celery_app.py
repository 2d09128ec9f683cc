"""
PayGuard - Celery Configuration

Celery configuration for ledger follow-up work.
Uses Redis as the message broker and result backend.
"""

from celery import Celery
from celery.schedules import crontab

from payguard.config import settings


celery_app = Celery(
    'payguard',
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=['payguard.tasks.celery_tasks'],
)

celery_app.conf.update(
    # Serialization
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',

    # Timezone
    timezone='Africa/Lagos',
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=300,  # 5 minutes
    task_soft_time_limit=240,

    # One ledger signing account: keep submissions serial per worker
    worker_prefetch_multiplier=1,
    worker_concurrency=1,

    result_expires=86400,  # 24 hours

    beat_schedule={
        # Re-check broadcast transactions the in-process poll gave up on
        'reconcile-ledger-receipts': {
            'task': 'payguard.tasks.celery_tasks.reconcile_pending_receipts_task',
            'schedule': crontab(minute='*/5'),
        },

        # Retry chain proofs for identities left unverified
        'retry-unverified-staff': {
            'task': 'payguard.tasks.celery_tasks.retry_unverified_staff_task',
            'schedule': crontab(minute=15),
        },

        # Retry chain proofs for batches left failed
        'retry-failed-batches': {
            'task': 'payguard.tasks.celery_tasks.retry_failed_batches_task',
            'schedule': crontab(minute=45),
        },
    },
)
