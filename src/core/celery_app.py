"""Celery application for allocation maintenance jobs.

The engine never schedules work itself; beat only re-runs failed outbox
effects and backfills sessions that could not be generated at approval.

Usage:
    # Worker with embedded beat (development):
    celery -A src.core.celery_app worker -B -l info

    # Production (separate worker and beat):
    celery -A src.core.celery_app worker -l info
    celery -A src.core.celery_app beat -l info
"""
from celery import Celery
from celery.schedules import crontab

from src.config.settings import settings

celery_app = Celery(
    "tutorlink",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["src.tasks.effects"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.TIMEZONE,
    enable_utc=True,

    # Effects are idempotent, so a task lost with its worker can run again
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=300,
    task_soft_time_limit=240,

    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=100,

    result_expires=3600,

    beat_scheduler="celery.beat:PersistentScheduler",
    beat_schedule_filename="celerybeat-schedule",
)

celery_app.conf.beat_schedule = {
    "retry-failed-effects": {
        "task": "src.tasks.effects.retry_failed_effects",
        "schedule": crontab(minute=f"*/{settings.EFFECT_RETRY_INTERVAL_MINUTES}"),
    },
    "backfill-missing-sessions-daily": {
        "task": "src.tasks.effects.backfill_missing_sessions",
        "schedule": crontab(minute=0, hour=settings.SESSION_BACKFILL_HOUR),
    },
}
