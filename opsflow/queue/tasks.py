"""Celery tasks driving runs.

Each task builds the services for its own event loop, does one unit of
work and closes them again.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, TypeVar

import structlog
from celery import Task

from opsflow.config import settings
from opsflow.runs.schemas import RunResponse
from opsflow.services import Services, build_services
from opsflow.worker import celery_app

logger = structlog.get_logger()

T = TypeVar("T")


async def _with_services(work: Callable[[Services], Awaitable[T]]) -> T:
    services = await build_services(celery_app=celery_app)
    try:
        return await work(services)
    finally:
        await services.close()


def run_with_services(work: Callable[[Services], Awaitable[T]]) -> T:
    return asyncio.run(_with_services(work))


class RunTask(Task):
    """Base class for run tasks."""

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        logger.error(
            "Run task failed",
            task_id=task_id,
            task_name=self.name,
            args=args,
            error=str(exc),
        )


def _summary(record) -> Dict[str, Any]:
    return RunResponse.from_record(record).model_dump(mode="json")


@celery_app.task(base=RunTask, name="opsflow.start_run")
def start_run_task(run_id: str) -> Dict[str, Any]:
    """Execute a pending run."""
    logger.info("Starting run", run_id=run_id)
    record = run_with_services(lambda services: services.orchestrator.execute_run(run_id))
    return _summary(record)


@celery_app.task(base=RunTask, name="opsflow.resume_run")
def resume_run_task(run_id: str) -> Dict[str, Any]:
    """Resume a waiting run."""
    logger.info("Resuming run", run_id=run_id)
    record = run_with_services(lambda services: services.orchestrator.resume_run(run_id))
    return _summary(record)


@celery_app.task(base=RunTask, name="opsflow.resume_due_runs")
def resume_due_runs_task() -> List[str]:
    """Sweep for waiting runs whose wake-up was lost."""
    records = run_with_services(lambda services: services.orchestrator.resume_due_runs())
    return [record.id for record in records]


@celery_app.task(base=RunTask, name="opsflow.fire_schedule_triggers")
def fire_schedule_triggers_task() -> List[str]:
    """Start runs for schedule triggers that fired since the last tick."""
    response = run_with_services(
        lambda services: services.adapter.fire_schedules(window_seconds=settings.schedule_tick_seconds)
    )
    if response.run_ids:
        logger.info("Schedule triggers fired", run_ids=response.run_ids)
    return response.run_ids
