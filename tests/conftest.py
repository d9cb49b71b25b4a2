"""Pytest configuration and fixtures."""

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional

os.environ.setdefault("ENVIRONMENT", "testing")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from opsflow.config import Settings
from opsflow.database import Base
from opsflow.executor.context import ExecutionContext, NodeExecutionContext
from opsflow.executor.engine import WorkflowOrchestrator
from opsflow.executor.steps import DurableStepRunner, MemoryStepLog
from opsflow.executor.templating import TemplateResolver
from opsflow.integrations.operations import DomainOperations
from opsflow.nodes.registry import build_default_registry
from opsflow.queue.scheduler import InMemoryRunScheduler
from opsflow.runs.schemas import RunRecord
from opsflow.runs.store import MemoryRunStore
from opsflow.status.publisher import InMemoryStatusPublisher, NodeStatusEmitter
from opsflow.workflows.repository import InMemoryWorkflowRepository
from opsflow.workflows.schemas import WorkflowDefinition


class FakeClock:
    """Controllable clock handed to the orchestrator and step runners."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


def edge(source: str, target: str, output: Optional[str] = None) -> Dict[str, Any]:
    connection = {"fromNodeId": source, "toNodeId": target}
    if output is not None:
        connection["fromOutput"] = output
    return connection


@pytest.fixture
def settings():
    """Settings without backoff delays or in-process sleeps."""
    return Settings(
        _env_file=None,
        environment="testing",
        retry_max_attempts=3,
        retry_initial_delay_ms=0,
        retry_max_delay_ms=0,
        inline_sleep_threshold_ms=0,
        webhook_secret=None,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(scope="session")
def registry():
    return build_default_registry()


@pytest.fixture
def workflows():
    return InMemoryWorkflowRepository()


@pytest.fixture
def operations():
    return DomainOperations()


@pytest.fixture
def publisher():
    return InMemoryStatusPublisher()


@pytest.fixture
def scheduler():
    return InMemoryRunScheduler()


@pytest.fixture
def orchestrator(workflows, operations, publisher, scheduler, registry, settings, clock):
    return WorkflowOrchestrator(
        workflows=workflows,
        runs=MemoryRunStore(),
        step_log=MemoryStepLog(),
        publisher=publisher,
        registry=registry,
        operations=operations,
        scheduler=scheduler,
        settings=settings,
        clock=clock,
    )


@pytest.fixture
def make_workflow(workflows):
    """Build a workflow from plain dicts and add it to the repository."""

    def factory(
        workflow_id: str,
        nodes: Iterable[Dict[str, Any]],
        connections: Iterable[Dict[str, Any]] = (),
        **extra: Any,
    ) -> WorkflowDefinition:
        workflow = WorkflowDefinition.model_validate({
            "id": workflow_id,
            "name": workflow_id.replace("-", " ").title(),
            "nodes": list(nodes),
            "connections": list(connections),
            **extra,
        })
        workflows.add(workflow)
        return workflow

    return factory


@pytest.fixture
def run_node(registry, publisher, clock):
    """Run a single node outside of any workflow."""
    step_log = MemoryStepLog()

    async def runner(
        node_type: str,
        data: Dict[str, Any],
        variables: Optional[Dict[str, Any]] = None,
        operations: Optional[DomainOperations] = None,
        run_id: str = "run-1",
        node_id: str = "node-1",
        extras: Optional[Dict[str, Any]] = None,
        inline_sleep_threshold_ms: int = 0,
    ):
        definition = registry.get_node_definition(node_type)
        node_context = NodeExecutionContext(
            node_id=node_id,
            node_type=node_type,
            data=data,
            context=ExecutionContext(variables or {}),
            steps=DurableStepRunner(
                run_id,
                step_log,
                clock=clock,
                inline_sleep_threshold_ms=inline_sleep_threshold_ms,
            ),
            status=NodeStatusEmitter(publisher, definition.channel, node_id, run_id),
            resolver=TemplateResolver(),
            run=RunRecord(id=run_id, workflow_id="wf-test"),
            operations=operations,
            extras=extras or {},
        )
        return await registry.create_node(node_context).run()

    runner.step_log = step_log
    return runner


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    """Async session maker over a fresh SQLite file."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'runs.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()
