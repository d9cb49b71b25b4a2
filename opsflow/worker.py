"""Celery worker entry point."""

import sys
from datetime import timedelta

import structlog
from celery import Celery
from rich.console import Console

from opsflow.config import settings

logger = structlog.get_logger()
console = Console()

# Create Celery app
celery_app = Celery(
    "opsflow",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["opsflow.queue.tasks"],
)

# Configure Celery
celery_app.conf.update(
    task_serializer=settings.celery_task_serializer,
    accept_content=settings.celery_accept_content,
    result_serializer=settings.celery_result_serializer,
    timezone=settings.celery_timezone,
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    worker_max_tasks_per_child=1000,
    task_default_queue="workflows",
    beat_schedule={
        "fire-schedule-triggers": {
            "task": "opsflow.fire_schedule_triggers",
            "schedule": timedelta(seconds=settings.schedule_tick_seconds),
        },
        "resume-due-runs": {
            "task": "opsflow.resume_due_runs",
            "schedule": timedelta(seconds=settings.schedule_tick_seconds),
        },
    },
)


def main():
    """Main worker entry point."""
    console.print("Starting opsflow Celery worker...")

    try:
        celery_app.start([
            "worker",
            "--beat",
            f"--loglevel={settings.log_level.lower()}",
            "--queues=workflows",
        ])
    except KeyboardInterrupt:
        logger.info("Worker stopped by user")
        sys.exit(0)
    except Exception as e:
        logger.error("Worker error", error=str(e), exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
