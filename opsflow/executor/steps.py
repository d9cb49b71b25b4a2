"""Durable steps.

A node performs side effects only through :class:`DurableStepRunner`. Each
step key is recorded in a per-run step log once it completes, so when a run
is resumed the completed steps replay their recorded result instead of
running again, and sleeps that already elapsed return immediately.
"""

import asyncio
import copy
import inspect
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union

import structlog
from pydantic import BaseModel, Field

from .errors import ExecutionSignal

logger = structlog.get_logger()

Clock = Callable[[], datetime]
StepFunction = Callable[[], Union[Awaitable[Any], Any]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepKind(str, Enum):
    RUN = "run"
    SLEEP = "sleep"


class StepStatus(str, Enum):
    COMPLETED = "completed"
    SLEEPING = "sleeping"


class StepEntry(BaseModel):
    """One recorded step of a run."""

    step_key: str = Field(..., description="Stable key of the step within its run")
    kind: StepKind = Field(..., description="Run or sleep")
    status: StepStatus = Field(..., description="Completion state")
    result: Any = Field(default=None, description="Recorded result of a completed run step")
    wake_at: Optional[datetime] = Field(default=None, description="Wake time of a sleep step")


class RunSuspended(ExecutionSignal):
    """Raised when a run must wait until ``wake_at`` before continuing."""

    def __init__(self, wake_at: datetime, step_key: Optional[str] = None):
        super().__init__(f"Suspended until {wake_at.isoformat()}")
        self.wake_at = wake_at
        self.step_key = step_key


class StepLog(ABC):
    """Persistent record of completed steps, keyed by run id and step key."""

    @abstractmethod
    async def get(self, run_id: str, step_key: str) -> Optional[StepEntry]:
        """Return the recorded entry or ``None``."""

    @abstractmethod
    async def put(self, run_id: str, entry: StepEntry) -> None:
        """Record or replace an entry."""

    @abstractmethod
    async def delete_run(self, run_id: str) -> None:
        """Forget every step of a run."""


class MemoryStepLog(StepLog):
    """Step log kept in process memory."""

    def __init__(self):
        self._entries: Dict[Tuple[str, str], StepEntry] = {}

    async def get(self, run_id: str, step_key: str) -> Optional[StepEntry]:
        entry = self._entries.get((run_id, step_key))
        return entry.model_copy(deep=True) if entry else None

    async def put(self, run_id: str, entry: StepEntry) -> None:
        self._entries[(run_id, entry.step_key)] = entry.model_copy(deep=True)

    async def delete_run(self, run_id: str) -> None:
        for key in [key for key in self._entries if key[0] == run_id]:
            del self._entries[key]

    def keys(self, run_id: str):
        return [step_key for (rid, step_key) in self._entries if rid == run_id]


class DurableStepRunner:
    """Runs and sleeps with at-most-once semantics per run id and step key."""

    def __init__(
        self,
        run_id: str,
        step_log: StepLog,
        clock: Optional[Clock] = None,
        inline_sleep_threshold_ms: int = 0,
    ):
        self.run_id = run_id
        self.step_log = step_log
        self.clock = clock or utcnow
        self.inline_sleep_threshold_ms = inline_sleep_threshold_ms
        self.logger = logger.bind(component="step_runner", run_id=run_id)

    def now(self) -> datetime:
        return self.clock()

    async def run(self, step_key: str, fn: StepFunction) -> Any:
        """Execute ``fn`` once for this run; replay its result afterwards."""
        entry = await self.step_log.get(self.run_id, step_key)
        if entry is not None and entry.status == StepStatus.COMPLETED:
            self.logger.debug("Replaying completed step", step_key=step_key)
            return copy.deepcopy(entry.result)

        result = fn()
        if inspect.isawaitable(result):
            result = await result

        await self.step_log.put(
            self.run_id,
            StepEntry(
                step_key=step_key,
                kind=StepKind.RUN,
                status=StepStatus.COMPLETED,
                result=copy.deepcopy(result),
            ),
        )
        self.logger.debug("Step completed", step_key=step_key)
        return result

    async def sleep(self, step_key: str, duration_ms: int) -> datetime:
        """Wait ``duration_ms`` measured from the first time this step was reached.

        Short remaining waits are awaited in-process; longer ones raise
        :class:`RunSuspended` so the run can be parked and resumed later.
        Returns the wake time.
        """
        entry = await self.step_log.get(self.run_id, step_key)
        if entry is not None and entry.status == StepStatus.COMPLETED:
            return entry.wake_at

        if entry is None:
            wake_at = self.now() + timedelta(milliseconds=duration_ms)
            entry = StepEntry(
                step_key=step_key,
                kind=StepKind.SLEEP,
                status=StepStatus.SLEEPING,
                wake_at=wake_at,
            )
            await self.step_log.put(self.run_id, entry)
        wake_at = entry.wake_at

        remaining_ms = (wake_at - self.now()).total_seconds() * 1000
        if remaining_ms > 0:
            if remaining_ms > self.inline_sleep_threshold_ms:
                self.logger.info("Suspending run", step_key=step_key, wake_at=wake_at.isoformat())
                raise RunSuspended(wake_at, step_key)
            await asyncio.sleep(remaining_ms / 1000)

        entry.status = StepStatus.COMPLETED
        await self.step_log.put(self.run_id, entry)
        return wake_at
