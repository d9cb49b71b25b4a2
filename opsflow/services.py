"""Wiring of stores, publishers and the orchestrator."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx
import structlog
from celery import Celery

from opsflow.config import Settings, get_settings
from opsflow.database import DatabaseManager
from opsflow.executor.engine import WorkflowOrchestrator
from opsflow.executor.steps import Clock, MemoryStepLog
from opsflow.integrations.operations import DomainOperations, HttpDomainOperations
from opsflow.queue.scheduler import CeleryRunScheduler, InMemoryRunScheduler, RunScheduler
from opsflow.runs.store import MemoryRunStore, SqlRunStore, SqlStepLog
from opsflow.status.publisher import InMemoryStatusPublisher, RedisStatusPublisher, StatusPublisher
from opsflow.triggers.adapter import TriggerAdapter
from opsflow.triggers.auth import TriggerAuthenticator
from opsflow.workflows.repository import (
    InMemoryWorkflowRepository,
    WorkflowRepository,
    load_workflow_directory,
)

logger = structlog.get_logger()


@dataclass
class Services:
    """Everything the HTTP app, the worker and the CLI need."""

    orchestrator: WorkflowOrchestrator
    adapter: TriggerAdapter
    database: Optional[DatabaseManager] = None
    resources: Dict[str, Any] = field(default_factory=dict)

    async def close(self) -> None:
        operations = self.orchestrator.operations
        if isinstance(operations, HttpDomainOperations):
            await operations.close()
        http_client = self.orchestrator.extras.get("http_client")
        if isinstance(http_client, httpx.AsyncClient):
            await http_client.aclose()
        if self.database is not None:
            await self.database.close()


def build_operations(settings: Settings) -> DomainOperations:
    if settings.operations_base_url:
        return HttpDomainOperations(
            settings.operations_base_url,
            timeout=settings.operations_timeout,
            api_key=settings.operations_api_key,
        )
    return DomainOperations()


def authenticator_for(settings: Settings) -> TriggerAuthenticator:
    return TriggerAuthenticator(
        settings.webhook_secret,
        header=settings.webhook_secret_header,
        allow_unauthenticated=settings.allow_unauthenticated_triggers,
    )


def build_memory_services(
    workflows: Optional[WorkflowRepository] = None,
    settings: Optional[Settings] = None,
    operations: Optional[DomainOperations] = None,
    publisher: Optional[StatusPublisher] = None,
    scheduler: Optional[RunScheduler] = None,
    clock: Optional[Clock] = None,
    extras: Optional[Dict[str, Any]] = None,
) -> Services:
    """Process-local services backed by in-memory stores."""
    settings = settings or get_settings()
    orchestrator = WorkflowOrchestrator(
        workflows=workflows or InMemoryWorkflowRepository(),
        runs=MemoryRunStore(),
        step_log=MemoryStepLog(),
        publisher=publisher or InMemoryStatusPublisher(),
        operations=operations if operations is not None else DomainOperations(),
        scheduler=scheduler or InMemoryRunScheduler(),
        settings=settings,
        clock=clock,
        extras=extras,
    )
    adapter = TriggerAdapter(orchestrator, authenticator_for(settings))
    return Services(orchestrator=orchestrator, adapter=adapter)


async def build_services(
    settings: Optional[Settings] = None,
    database: Optional[DatabaseManager] = None,
    celery_app: Optional[Celery] = None,
) -> Services:
    """Services backed by the SQL run store, Redis status channel and Celery."""
    settings = settings or get_settings()
    database = database or DatabaseManager(settings)
    await database.initialize(create_tables=not settings.is_production)

    if settings.workflows_path:
        workflows: WorkflowRepository = load_workflow_directory(settings.workflows_path)
    else:
        logger.warning("No workflows_path configured; no workflows loaded")
        workflows = InMemoryWorkflowRepository()

    if database.redis_client is not None:
        publisher: StatusPublisher = RedisStatusPublisher(
            database.redis_client, prefix=settings.status_channel_prefix
        )
    else:
        publisher = InMemoryStatusPublisher()

    scheduler = CeleryRunScheduler(celery_app) if celery_app is not None else None
    orchestrator = WorkflowOrchestrator(
        workflows=workflows,
        runs=SqlRunStore(database.async_session_maker),
        step_log=SqlStepLog(database.async_session_maker),
        publisher=publisher,
        operations=build_operations(settings),
        scheduler=scheduler,
        settings=settings,
        extras={"http_client": httpx.AsyncClient(timeout=settings.operations_timeout)},
    )
    adapter = TriggerAdapter(orchestrator, authenticator_for(settings), scheduler=scheduler)
    logger.info(
        "Services ready",
        environment=settings.environment,
        scheduler=type(scheduler).__name__ if scheduler else None,
    )
    return Services(orchestrator=orchestrator, adapter=adapter, database=database)
