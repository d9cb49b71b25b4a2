"""Scheduling of run starts and resumptions."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Tuple

import structlog
from celery import Celery

logger = structlog.get_logger()

START_RUN_TASK = "opsflow.start_run"
RESUME_RUN_TASK = "opsflow.resume_run"


class RunScheduler(ABC):
    """Hands run ids to whatever executes them later."""

    @abstractmethod
    async def schedule_start(self, run_id: str) -> None:
        """Execute a pending run as soon as possible."""

    @abstractmethod
    async def schedule_resume(self, run_id: str, wake_at: datetime) -> None:
        """Resume a waiting run at ``wake_at``."""


class InMemoryRunScheduler(RunScheduler):
    """Collects scheduling requests; used by tests and the CLI."""

    def __init__(self):
        self.started: List[str] = []
        self.wake_ups: List[Tuple[str, datetime]] = []

    async def schedule_start(self, run_id: str) -> None:
        self.started.append(run_id)

    async def schedule_resume(self, run_id: str, wake_at: datetime) -> None:
        self.wake_ups.append((run_id, wake_at))

    def next_wake_up(self) -> Optional[Tuple[str, datetime]]:
        return min(self.wake_ups, key=lambda item: item[1]) if self.wake_ups else None


class CeleryRunScheduler(RunScheduler):
    """Enqueues Celery tasks by name so callers need not import the worker."""

    def __init__(self, celery_app: Celery, queue: str = "workflows"):
        self.celery_app = celery_app
        self.queue = queue
        self.logger = logger.bind(component="celery_run_scheduler")

    async def schedule_start(self, run_id: str) -> None:
        self.celery_app.send_task(START_RUN_TASK, args=[run_id], queue=self.queue)
        self.logger.info("Run start enqueued", run_id=run_id)

    async def schedule_resume(self, run_id: str, wake_at: datetime) -> None:
        self.celery_app.send_task(RESUME_RUN_TASK, args=[run_id], eta=wake_at, queue=self.queue)
        self.logger.info("Run resumption scheduled", run_id=run_id, wake_at=wake_at.isoformat())
