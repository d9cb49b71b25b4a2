"""Run stores and the SQL-backed step log."""

import copy
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

import structlog
from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from opsflow.executor.errors import RunNotFoundError
from opsflow.executor.steps import StepEntry, StepKind, StepLog, StepStatus, utcnow
from .models import StepRecord, WorkflowRun
from .schemas import RunFailure, RunRecord, RunStatus

logger = structlog.get_logger()


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite returns naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _lease_expired(record: RunRecord, now: datetime) -> bool:
    return (
        record.status == RunStatus.RUNNING
        and record.lease_expires_at is not None
        and record.lease_expires_at <= now
    )


def _claimable(record: RunRecord, from_statuses: set, now: datetime) -> bool:
    return record.status in from_statuses or _lease_expired(record, now)


def _due_at(record: RunRecord, now: datetime) -> Optional[datetime]:
    if record.status == RunStatus.WAITING and record.wake_at is not None and record.wake_at <= now:
        return record.wake_at
    if _lease_expired(record, now):
        return record.lease_expires_at
    return None


class RunStore(ABC):
    """Persistence of run records."""

    @abstractmethod
    async def create(self, record: RunRecord) -> RunRecord:
        """Persist a new run."""

    @abstractmethod
    async def find(self, run_id: str) -> Optional[RunRecord]:
        """Return a run or ``None``."""

    @abstractmethod
    async def save(self, record: RunRecord) -> RunRecord:
        """Persist the current state of a run."""

    @abstractmethod
    async def list_due(self, now: datetime, limit: int = 100) -> List[RunRecord]:
        """Top-level runs to pick up at ``now``.

        These are waiting runs whose wake time has passed and running runs
        whose lease expired because the worker driving them went away.
        """

    @abstractmethod
    async def claim(
        self,
        run_id: str,
        from_statuses: Iterable[RunStatus],
        now: datetime,
        lease_until: datetime,
    ) -> Optional[RunRecord]:
        """Atomically move a run to ``running`` under a lease.

        Succeeds when the run is in one of ``from_statuses`` or is running
        with an expired lease. Returns the claimed run, or ``None`` when the
        run is finished or another worker holds it.
        """

    async def get(self, run_id: str) -> RunRecord:
        record = await self.find(run_id)
        if record is None:
            raise RunNotFoundError(run_id)
        return record

    async def get_status(self, run_id: str) -> RunStatus:
        return (await self.get(run_id)).status


class MemoryRunStore(RunStore):
    """Run records kept in process memory."""

    def __init__(self):
        self._runs: Dict[str, RunRecord] = {}

    async def create(self, record: RunRecord) -> RunRecord:
        self._runs[record.id] = record.model_copy(deep=True)
        return record

    async def find(self, run_id: str) -> Optional[RunRecord]:
        record = self._runs.get(run_id)
        return record.model_copy(deep=True) if record else None

    async def save(self, record: RunRecord) -> RunRecord:
        record.updated_at = utcnow()
        self._runs[record.id] = record.model_copy(deep=True)
        return record

    async def list_due(self, now: datetime, limit: int = 100) -> List[RunRecord]:
        due = [
            record.model_copy(deep=True)
            for record in self._runs.values()
            if record.parent_run_id is None and _due_at(record, now) is not None
        ]
        return sorted(due, key=lambda record: _due_at(record, now))[:limit]

    async def claim(
        self,
        run_id: str,
        from_statuses: Iterable[RunStatus],
        now: datetime,
        lease_until: datetime,
    ) -> Optional[RunRecord]:
        record = self._runs.get(run_id)
        if record is None or not _claimable(record, set(from_statuses), now):
            return None
        record.status = RunStatus.RUNNING
        record.wake_at = None
        record.lease_expires_at = lease_until
        record.updated_at = utcnow()
        return record.model_copy(deep=True)

    def all(self) -> List[RunRecord]:
        return [record.model_copy(deep=True) for record in self._runs.values()]


class SqlRunStore(RunStore):
    """Run records in the ``workflow_runs`` table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    @staticmethod
    def _to_record(row: WorkflowRun) -> RunRecord:
        return RunRecord(
            id=row.id,
            workflow_id=row.workflow_id,
            status=RunStatus(row.status),
            context=copy.deepcopy(row.context or {}),
            reachable=list(row.reachable or []),
            completed=list(row.completed or []),
            current_node_id=row.current_node_id,
            failure=RunFailure.model_validate(row.failure) if row.failure else None,
            output=row.output,
            wake_at=_aware(row.wake_at),
            lease_expires_at=_aware(row.lease_expires_at),
            user_id=row.user_id,
            trigger_type=row.trigger_type,
            parent_run_id=row.parent_run_id,
            parent_node_id=row.parent_node_id,
            execution_stack=list(row.execution_stack or []),
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
            finished_at=_aware(row.finished_at),
        )

    @staticmethod
    def _apply(row: WorkflowRun, record: RunRecord) -> None:
        row.workflow_id = record.workflow_id
        row.status = record.status.value
        row.context = copy.deepcopy(record.context)
        row.reachable = list(record.reachable)
        row.completed = list(record.completed)
        row.current_node_id = record.current_node_id
        row.failure = record.failure.model_dump(mode="json") if record.failure else None
        row.output = copy.deepcopy(record.output)
        row.wake_at = record.wake_at
        row.lease_expires_at = record.lease_expires_at
        row.user_id = record.user_id
        row.trigger_type = record.trigger_type
        row.parent_run_id = record.parent_run_id
        row.parent_node_id = record.parent_node_id
        row.execution_stack = list(record.execution_stack)
        row.finished_at = record.finished_at

    async def create(self, record: RunRecord) -> RunRecord:
        async with self.session_maker() as session:
            row = WorkflowRun(id=record.id, created_at=record.created_at)
            self._apply(row, record)
            session.add(row)
            await session.commit()
        return record

    async def find(self, run_id: str) -> Optional[RunRecord]:
        async with self.session_maker() as session:
            row = await session.get(WorkflowRun, run_id)
            return self._to_record(row) if row else None

    async def save(self, record: RunRecord) -> RunRecord:
        async with self.session_maker() as session:
            row = await session.get(WorkflowRun, record.id)
            if row is None:
                raise RunNotFoundError(record.id)
            self._apply(row, record)
            await session.commit()
            record.updated_at = _aware(row.updated_at) or utcnow()
        return record

    @staticmethod
    def _lease_expired(now: datetime):
        return and_(
            WorkflowRun.status == RunStatus.RUNNING.value,
            WorkflowRun.lease_expires_at <= now,
        )

    async def list_due(self, now: datetime, limit: int = 100) -> List[RunRecord]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(WorkflowRun)
                .where(
                    WorkflowRun.parent_run_id.is_(None),
                    or_(
                        and_(
                            WorkflowRun.status == RunStatus.WAITING.value,
                            WorkflowRun.wake_at <= now,
                        ),
                        self._lease_expired(now),
                    ),
                )
                .order_by(func.coalesce(WorkflowRun.wake_at, WorkflowRun.lease_expires_at))
                .limit(limit)
            )
            return [self._to_record(row) for row in result.scalars()]

    async def claim(
        self,
        run_id: str,
        from_statuses: Iterable[RunStatus],
        now: datetime,
        lease_until: datetime,
    ) -> Optional[RunRecord]:
        statuses = [status.value for status in from_statuses]
        async with self.session_maker() as session:
            result = await session.execute(
                update(WorkflowRun)
                .where(
                    WorkflowRun.id == run_id,
                    or_(WorkflowRun.status.in_(statuses), self._lease_expired(now)),
                )
                .values(
                    status=RunStatus.RUNNING.value,
                    wake_at=None,
                    lease_expires_at=lease_until,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if result.rowcount != 1:
                return None
        return await self.find(run_id)


class SqlStepLog(StepLog):
    """Step log in the ``step_records`` table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def get(self, run_id: str, step_key: str) -> Optional[StepEntry]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(StepRecord).where(
                    StepRecord.run_id == run_id, StepRecord.step_key == step_key
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                return None
            return StepEntry(
                step_key=row.step_key,
                kind=StepKind(row.kind),
                status=StepStatus(row.status),
                result=copy.deepcopy(row.result),
                wake_at=_aware(row.wake_at),
            )

    async def put(self, run_id: str, entry: StepEntry) -> None:
        async with self.session_maker() as session:
            result = await session.execute(
                select(StepRecord).where(
                    StepRecord.run_id == run_id, StepRecord.step_key == entry.step_key
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = StepRecord(run_id=run_id, step_key=entry.step_key)
                session.add(row)
            row.kind = entry.kind.value
            row.status = entry.status.value
            row.result = copy.deepcopy(entry.result)
            row.wake_at = entry.wake_at
            await session.commit()

    async def delete_run(self, run_id: str) -> None:
        async with self.session_maker() as session:
            await session.execute(delete(StepRecord).where(StepRecord.run_id == run_id))
            await session.commit()
