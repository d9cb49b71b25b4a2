"""Workflow orchestrator: drives runs through their nodes."""

import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence
from uuid import uuid4

import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from opsflow.config import Settings, get_settings
from opsflow.integrations.operations import DomainOperations
from opsflow.metrics import NODE_DURATION, NODE_EXECUTIONS, NODE_RETRIES, RUNS_TOTAL
from opsflow.nodes.base import NodeOutcome
from opsflow.nodes.control import StopWorkflow
from opsflow.nodes.registry import NodeRegistry, build_default_registry
from opsflow.queue.scheduler import RunScheduler
from opsflow.runs.schemas import RunFailure, RunRecord, RunStatus
from opsflow.runs.store import RunStore
from opsflow.status.publisher import NodeStatusEmitter, StatusPublisher
from opsflow.workflows.repository import WorkflowRepository
from opsflow.workflows.schemas import WorkflowDefinition, WorkflowNodeSpec
from .context import ExecutionContext, NodeExecutionContext, RunLauncher
from .errors import (
    CircularWorkflowError,
    ExecutionError,
    ExecutionSignal,
    NodeExecutionError,
    SubWorkflowDepthError,
    classify,
    is_retriable,
)
from .graph import WorkflowGraph
from .steps import Clock, DurableStepRunner, RunSuspended, StepLog, utcnow
from .templating import TemplateResolver

logger = structlog.get_logger()


class WorkflowOrchestrator(RunLauncher):
    """Runs workflows node by node with durable checkpoints.

    After every node the run record holds the accumulated context and the
    cursor (completed and reachable nodes), so a run can be resumed by any
    process. A run moves ``pending -> running -> (waiting <-> running)* ->
    succeeded | failed``; ``cancelled`` may interrupt any non-terminal state.
    """

    def __init__(
        self,
        workflows: WorkflowRepository,
        runs: RunStore,
        step_log: StepLog,
        publisher: StatusPublisher,
        registry: Optional[NodeRegistry] = None,
        operations: Optional[DomainOperations] = None,
        scheduler: Optional[RunScheduler] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        resolver: Optional[TemplateResolver] = None,
        extras: Optional[Dict[str, Any]] = None,
    ):
        self.workflows = workflows
        self.runs = runs
        self.step_log = step_log
        self.publisher = publisher
        self.registry = registry or build_default_registry()
        self.operations = operations
        self.scheduler = scheduler
        self.settings = settings or get_settings()
        self.clock = clock or utcnow
        self.resolver = resolver or TemplateResolver()
        self.extras = extras or {}
        self.logger = logger.bind(component="orchestrator")

    # Workflows

    def validate_workflow(self, workflow: WorkflowDefinition) -> WorkflowGraph:
        """Check structure and node kinds; raises :class:`WorkflowValidationError`."""
        return WorkflowGraph(workflow).validate(self.registry.kinds())

    async def load_workflow(self, workflow_id: str) -> WorkflowDefinition:
        return await self.workflows.get(workflow_id)

    # Runs

    async def get_run(self, run_id: str) -> RunRecord:
        return await self.runs.get(run_id)

    async def create_run(
        self,
        workflow_id: str,
        trigger_data: Optional[Mapping[str, Any]] = None,
        *,
        user_id: Optional[str] = None,
        trigger_type: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> RunRecord:
        """Persist a pending run seeded with ``trigger_data``."""
        workflow = await self.load_workflow(workflow_id)
        graph = self.validate_workflow(workflow)
        record = RunRecord(
            id=run_id or str(uuid4()),
            workflow_id=workflow.id,
            context=ExecutionContext.seeded(trigger_data).to_dict(),
            reachable=graph.entry_nodes(trigger_type),
            user_id=user_id or workflow.user_id,
            trigger_type=trigger_type,
            created_at=self.clock(),
        )
        await self.runs.create(record)
        self.logger.info(
            "Run created",
            run_id=record.id,
            workflow_id=workflow.id,
            trigger_type=trigger_type,
        )
        return record

    async def start_run(
        self,
        workflow_id: str,
        trigger_data: Optional[Mapping[str, Any]] = None,
        **kwargs: Any,
    ) -> RunRecord:
        """Create a run and drive it until it is terminal or waiting."""
        record = await self.create_run(workflow_id, trigger_data, **kwargs)
        return await self._advance(record)

    async def execute_run(self, run_id: str) -> RunRecord:
        """Drive a pending run, or take over one whose worker went away."""
        return await self._claim_and_advance(run_id, (RunStatus.PENDING,))

    async def resume_run(self, run_id: str) -> RunRecord:
        """Continue a waiting run, or take over one whose worker went away.

        Any other run is returned unchanged.
        """
        return await self._claim_and_advance(run_id, (RunStatus.WAITING,))

    async def resume_due_runs(self, now: Optional[datetime] = None, limit: int = 100) -> List[RunRecord]:
        """Resume every top-level run that is due at ``now``.

        Waiting runs past their wake time and running runs with an expired
        lease are due. A run another worker claims first is skipped.
        """
        now = now or self.clock()
        resumed: List[RunRecord] = []
        for due in await self.runs.list_due(now, limit):
            try:
                record = await self.runs.claim(due.id, (RunStatus.WAITING,), now, self._lease_until())
                if record is None:
                    self.logger.info("Run claimed elsewhere", run_id=due.id)
                    continue
                resumed.append(await self._advance(record))
            except Exception as e:
                self.logger.error("Failed to resume run", run_id=due.id, error=str(e), exc_info=True)
        return resumed

    async def _claim_and_advance(self, run_id: str, from_statuses: Sequence[RunStatus]) -> RunRecord:
        record = await self.runs.claim(run_id, from_statuses, self.clock(), self._lease_until())
        if record is None:
            current = await self.runs.get(run_id)
            self.logger.info("Run not claimable", run_id=run_id, status=current.status.value)
            return current
        return await self._advance(record)

    def _lease_until(self) -> datetime:
        return self.clock() + timedelta(seconds=self.settings.run_lease_seconds)

    async def cancel_run(self, run_id: str) -> RunRecord:
        record = await self.runs.get(run_id)
        if record.is_terminal:
            return record
        record.status = RunStatus.CANCELLED
        record.wake_at = None
        record.lease_expires_at = None
        record.finished_at = self.clock()
        await self.runs.save(record)
        RUNS_TOTAL.labels(status=RunStatus.CANCELLED.value).inc()
        self.logger.info("Run cancelled", run_id=run_id)
        return record

    async def run_child(
        self,
        parent: RunRecord,
        parent_node_id: str,
        child_run_id: str,
        workflow_id: str,
        seed: Mapping[str, Any],
    ) -> RunRecord:
        """Start or continue the nested run ``child_run_id``.

        The child id is derived from the parent run and node, so re-entering
        the parent node after a suspension or retry finds the same child.
        """
        stack = [*parent.execution_stack, parent.workflow_id]
        if workflow_id in stack:
            path = stack + [workflow_id]
            raise CircularWorkflowError(
                f"Circular workflow dependency detected: {' -> '.join(path)}",
                workflow_path=path,
            )
        max_depth = self.settings.max_subworkflow_depth
        if len(stack) > max_depth:
            raise SubWorkflowDepthError(
                f"Maximum workflow nesting depth ({max_depth}) exceeded", max_depth=max_depth
            )

        existing = await self.runs.find(child_run_id)
        if existing is not None:
            return await self._advance(existing)

        workflow = await self.load_workflow(workflow_id)
        graph = self.validate_workflow(workflow)
        record = RunRecord(
            id=child_run_id,
            workflow_id=workflow.id,
            context=ExecutionContext(seed).to_dict(),
            reachable=graph.entry_nodes(),
            user_id=parent.user_id,
            parent_run_id=parent.id,
            parent_node_id=parent_node_id,
            execution_stack=stack,
            created_at=self.clock(),
        )
        await self.runs.create(record)
        self.logger.info(
            "Nested run created",
            run_id=record.id,
            parent_run_id=parent.id,
            workflow_id=workflow.id,
            depth=record.depth,
        )
        return await self._advance(record, workflow, graph)

    # Traversal

    async def _advance(
        self,
        record: RunRecord,
        workflow: Optional[WorkflowDefinition] = None,
        graph: Optional[WorkflowGraph] = None,
    ) -> RunRecord:
        if record.is_terminal:
            return record
        log = self.logger.bind(run_id=record.id, workflow_id=record.workflow_id)

        try:
            workflow = workflow or await self.load_workflow(record.workflow_id)
            graph = graph or self.validate_workflow(workflow)
        except ExecutionError as e:
            log.error("Workflow unusable for run", error=e.message)
            record.status = RunStatus.RUNNING
            await self.runs.save(record)
            return await self._fail(
                record,
                ExecutionContext(record.context),
                NodeExecutionError(
                    e.message,
                    node_id=record.current_node_id or "",
                    node_type=None,
                    kind=e.kind,
                    run_id=record.id,
                    details={"cause": e.to_dict()},
                ),
            )

        record.status = RunStatus.RUNNING
        record.wake_at = None
        record.lease_expires_at = self._lease_until()
        await self.runs.save(record)
        log.info("Run advancing", completed=len(record.completed))

        context = ExecutionContext(record.context)
        completed = list(record.completed)
        reachable = list(record.reachable)

        for node_id in graph.execution_order():
            if node_id in completed or node_id not in reachable:
                continue
            spec = workflow.get_node(node_id)
            record.current_node_id = node_id
            output_port: Optional[str] = None

            if spec.disabled:
                log.debug("Skipping disabled node", node_id=node_id)
            else:
                try:
                    outcome = await self._execute_with_retry(record, workflow, spec, context)
                except RunSuspended as suspended:
                    return await self._suspend(record, context, suspended.wake_at)
                except StopWorkflow as stop:
                    record.completed = completed + [node_id]
                    log.info("Stop node reached", node_id=node_id, reason=stop.reason)
                    return await self._finish(record, context.merge(stop.updates))
                except NodeExecutionError as e:
                    return await self._fail(record, context, e)
                context = outcome.context
                output_port = outcome.output_port

            if not await self._still_running(record):
                log.info("Run left running state; discarding node result", node_id=node_id)
                return await self.runs.get(record.id)

            completed.append(node_id)
            for target in graph.successors(node_id, output_port):
                if target not in reachable:
                    reachable.append(target)
            record.context = context.to_dict()
            record.completed = completed
            record.reachable = reachable
            record.lease_expires_at = self._lease_until()
            await self.runs.save(record)

        return await self._finish(record, context)

    async def _execute_with_retry(
        self,
        record: RunRecord,
        workflow: WorkflowDefinition,
        spec: WorkflowNodeSpec,
        context: ExecutionContext,
    ) -> NodeOutcome:
        """Run a node, retrying retriable failures with exponential backoff.

        Signals pass through untouched; the final failure is wrapped in a
        :class:`NodeExecutionError` carrying the node id, kind and attempts.
        Cancellation is never retried and propagates as raised.
        """
        attempts = 0
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.settings.retry_max_attempts),
                wait=wait_exponential(
                    multiplier=self.settings.retry_initial_delay_ms / 1000,
                    max=self.settings.retry_max_delay_ms / 1000,
                ),
                retry=retry_if_exception(is_retriable),
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    if attempts > 1:
                        NODE_RETRIES.labels(node_type=spec.type).inc()
                    return await self._execute_node(record, workflow, spec, context, attempts)
        except ExecutionSignal:
            raise
        except Exception as e:
            if isinstance(e, ExecutionError):
                message, cause = e.message, e.to_dict()
            else:
                message = str(e) or type(e).__name__
                cause = {"error": type(e).__name__, "message": str(e)}
            raise NodeExecutionError(
                message,
                node_id=spec.id,
                node_type=spec.type,
                kind=classify(e),
                attempts=attempts,
                run_id=record.id,
                details={"cause": cause},
            ) from e

    async def _execute_node(
        self,
        record: RunRecord,
        workflow: WorkflowDefinition,
        spec: WorkflowNodeSpec,
        context: ExecutionContext,
        attempt: int,
    ) -> NodeOutcome:
        definition = self.registry.get_node_definition(spec.type)
        node_context = NodeExecutionContext(
            node_id=spec.id,
            node_type=spec.type,
            data=spec.data,
            context=context,
            steps=DurableStepRunner(
                record.id,
                self.step_log,
                clock=self.clock,
                inline_sleep_threshold_ms=self.settings.inline_sleep_threshold_ms,
            ),
            status=NodeStatusEmitter(self.publisher, definition.channel, spec.id, record.id),
            resolver=self.resolver,
            run=record,
            workflow=workflow,
            operations=self.operations,
            launcher=self,
            node_name=spec.name,
            attempt=attempt,
            extras={"bundle_max_concurrency": self.settings.bundle_max_concurrency, **self.extras},
        )

        started = time.monotonic()
        status = "success"
        try:
            node = self.registry.create_node(node_context)
            return await node.run()
        except RunSuspended:
            status = "waiting"
            raise
        except ExecutionSignal:
            raise
        except Exception:
            status = "error"
            raise
        finally:
            NODE_EXECUTIONS.labels(node_type=spec.type, status=status).inc()
            NODE_DURATION.labels(node_type=spec.type).observe(time.monotonic() - started)

    # Checkpoints

    async def _still_running(self, record: RunRecord) -> bool:
        return await self.runs.get_status(record.id) == RunStatus.RUNNING

    async def _suspend(self, record: RunRecord, context: ExecutionContext, wake_at: datetime) -> RunRecord:
        if not await self._still_running(record):
            return await self.runs.get(record.id)
        record.status = RunStatus.WAITING
        record.wake_at = wake_at
        record.lease_expires_at = None
        record.context = context.to_dict()
        await self.runs.save(record)
        self.logger.info(
            "Run waiting",
            run_id=record.id,
            node_id=record.current_node_id,
            wake_at=wake_at.isoformat(),
        )
        if record.parent_run_id is None and self.scheduler is not None:
            await self.scheduler.schedule_resume(record.id, wake_at)
        return record

    async def _finish(self, record: RunRecord, context: ExecutionContext) -> RunRecord:
        if not await self._still_running(record):
            return await self.runs.get(record.id)
        record.status = RunStatus.SUCCEEDED
        record.context = context.to_dict()
        record.output = context.to_dict()
        record.lease_expires_at = None
        record.finished_at = self.clock()
        await self.runs.save(record)
        await self.step_log.delete_run(record.id)
        RUNS_TOTAL.labels(status=RunStatus.SUCCEEDED.value).inc()
        self.logger.info("Run succeeded", run_id=record.id, workflow_id=record.workflow_id)
        return record

    async def _fail(self, record: RunRecord, context: ExecutionContext, error: NodeExecutionError) -> RunRecord:
        if not await self._still_running(record):
            return await self.runs.get(record.id)
        record.status = RunStatus.FAILED
        record.context = context.to_dict()
        record.failure = RunFailure(
            node_id=error.node_id,
            node_type=error.node_type,
            kind=error.kind.value,
            message=error.message,
            attempts=error.attempts,
            details=error.details.get("cause") or {},
        )
        record.lease_expires_at = None
        record.finished_at = self.clock()
        await self.runs.save(record)
        await self.step_log.delete_run(record.id)
        RUNS_TOTAL.labels(status=RunStatus.FAILED.value).inc()
        self.logger.warning(
            "Run failed",
            run_id=record.id,
            node_id=error.node_id,
            kind=error.kind.value,
            attempts=error.attempts,
            error=error.message,
        )
        return record
