"""
Celery application configuration.

Handles background tasks for:
- Insight embedding generation (semantic search)
"""
import logging

from celery import Celery
from celery.signals import task_prerun, task_postrun, task_failure

from app.core.config import settings

logger = logging.getLogger(__name__)

# Create Celery app
celery_app = Celery(
    "ask_insights",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "app.tasks.insight_tasks",
    ]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minute hard limit
    task_soft_time_limit=240,
    worker_prefetch_multiplier=1,  # Take one task at a time
    task_acks_late=True,  # Acknowledge task after completion
    task_reject_on_worker_lost=True,  # Requeue task if worker dies
)

# Task routes (assign tasks to specific queues)
celery_app.conf.task_routes = {
    "app.tasks.insight_tasks.*": {"queue": "celery"},
}

# Periodic tasks (run with `celery -A app.core.celery_app beat`)
celery_app.conf.beat_schedule = {
    "expire-stale-extraction-jobs": {
        "task": "app.tasks.insight_tasks.expire_stale_extraction_jobs",
        "schedule": 60.0,
    },
}


@task_prerun.connect
def task_prerun_handler(task_id, task, *args, **kwargs):
    """Handler called before task execution."""
    logger.info(f"Task starting: {task.name} (ID: {task_id})")


@task_postrun.connect
def task_postrun_handler(task_id, task, *args, retval=None, **kwargs):
    """Handler called after task execution."""
    logger.info(f"Task completed: {task.name} (ID: {task_id})")


@task_failure.connect
def task_failure_handler(task_id, exception, *args, **kwargs):
    """Handler called on task failure."""
    logger.warning(f"Task failed: {task_id}, Exception: {str(exception)}")
