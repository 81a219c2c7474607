# app/config/celery_config.py
"""Celery application factory and beat schedule"""
from celery import Celery

from app.config.settings import get_settings

settings = get_settings()


def create_celery_app() -> Celery:
    """Create the Celery app used by the worker and task modules"""
    app = Celery(
        "calendar_sync",
        broker=settings.CELERY_BROKER_URL,
        backend=settings.CELERY_RESULT_BACKEND,
        include=["app.tasks.calendar_tasks"],
    )

    app.conf.update(
        task_serializer=settings.CELERY_TASK_SERIALIZER,
        result_serializer="json",
        accept_content=["json"],
        timezone="UTC",
        enable_utc=True,
        task_acks_late=True,
        worker_prefetch_multiplier=1,
    )

    app.conf.beat_schedule = {
        "calendar-auto-sync": {
            "task": "app.tasks.calendar_tasks.auto_sync_calendars",
            "schedule": settings.AUTO_SYNC_INTERVAL_MINUTES * 60,
        },
        "calendar-token-maintenance": {
            "task": "app.tasks.calendar_tasks.run_token_maintenance",
            "schedule": settings.TOKEN_MAINTENANCE_INTERVAL_MINUTES * 60,
        },
    }

    return app


celery_app = create_celery_app()
