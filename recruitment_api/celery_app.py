"""
Celery application configuration for background sync processing.

Uses Redis as the message broker. Celery beat runs the sync of all lists
once a night.
"""

from celery import Celery
from celery.schedules import crontab

from recruitment_api.config import settings


# Create Celery application
celery_app = Celery(
    "recruitment_api",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["recruitment_api.tasks.sync_tasks"],
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,  # Acknowledge task after completion
    task_reject_on_worker_lost=True,  # Requeue task if worker dies
    task_time_limit=3600,  # 1 hour hard limit per task
    task_soft_time_limit=3000,

    # Result backend settings
    result_expires=86400,  # Results expire after 24 hours

    # Worker settings
    worker_prefetch_multiplier=1,

    # Retry settings
    task_default_retry_delay=60,
    task_max_retries=3,

    task_routes={
        "recruitment_api.tasks.sync_tasks.*": {"queue": "sync"},
    },

    beat_schedule={
        "sync-all-recruitment-lists": {
            "task": "recruitment_api.tasks.sync_tasks.sync_all_lists_task",
            "schedule": crontab(hour=settings.sync_schedule_hour, minute=0),
        },
    },
)

