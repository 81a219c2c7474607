"""
Celery worker for calendar sync

Start with `python -m app.worker`; beat runs embedded so the periodic
auto-sync and token maintenance jobs need no separate process.
"""
import logging
from celery.signals import worker_ready, worker_shutdown

from app.config.celery_config import celery_app
from app.utils.my_logging import setup_logging

setup_logging()
logger = logging.getLogger(__name__)


def _calendar_task_names():
    return sorted(name for name in celery_app.tasks if name.startswith("app.tasks."))


@worker_ready.connect
def on_worker_ready(sender=None, **kwargs):
    logger.info(f"Calendar sync worker ready with tasks: {', '.join(_calendar_task_names())}")
    for entry, schedule in celery_app.conf.beat_schedule.items():
        logger.info(f"  beat {entry}: every {schedule['schedule']}s")


@worker_shutdown.connect
def on_worker_shutdown(sender=None, **kwargs):
    logger.info("Calendar sync worker stopped")


if __name__ == "__main__":
    celery_app.start([
        "worker",
        "--beat",
        "--loglevel=info",
        "--concurrency=4",
        "--max-tasks-per-child=1000",
    ])
