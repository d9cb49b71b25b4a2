"""Trigger adapter: turns authenticated ingress into workflow runs."""

import json
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

import structlog

from opsflow.executor.engine import WorkflowOrchestrator
from opsflow.executor.errors import ConfigurationError, WorkflowNotFoundError
from opsflow.nodes.triggers import WEBHOOK_TRIGGER
from opsflow.queue.scheduler import RunScheduler
from opsflow.runs.schemas import RunRecord, TriggerResponse
from .auth import TriggerAuthenticator
from .schedule import due_schedules, schedule_run_id

logger = structlog.get_logger()

HIDDEN_HEADERS = frozenset({"authorization", "cookie"})


def parse_payload(body: bytes) -> Any:
    """Decode a JSON request body; an empty body is an empty object."""
    if not body or not body.strip():
        return {}
    try:
        return json.loads(body)
    except ValueError as e:
        raise ConfigurationError(f"Malformed trigger payload: {e}", field="body") from e


class TriggerAdapter:
    """Starts runs for webhook calls, domain events and schedule ticks.

    Runs are handed to the scheduler when one is configured and executed
    inline otherwise.
    """

    def __init__(
        self,
        orchestrator: WorkflowOrchestrator,
        authenticator: Optional[TriggerAuthenticator] = None,
        scheduler: Optional[RunScheduler] = None,
    ):
        self.orchestrator = orchestrator
        self.workflows = orchestrator.workflows
        self.authenticator = authenticator or TriggerAuthenticator()
        self.scheduler = scheduler
        self.logger = logger.bind(component="trigger_adapter")

    async def dispatch(
        self,
        workflow_id: str,
        trigger_data: Mapping[str, Any],
        trigger_type: str,
        user_id: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> RunRecord:
        record = await self.orchestrator.create_run(
            workflow_id,
            trigger_data,
            user_id=user_id,
            trigger_type=trigger_type,
            run_id=run_id,
        )
        if self.scheduler is not None:
            await self.scheduler.schedule_start(record.id)
            return record
        return await self.orchestrator.execute_run(record.id)

    def _visible_headers(self, headers: Mapping[str, str]) -> Dict[str, str]:
        hidden = HIDDEN_HEADERS | {self.authenticator.header, self.authenticator.signature_header}
        return {key.lower(): value for key, value in headers.items() if key.lower() not in hidden}

    async def handle_webhook(
        self,
        workflow_id: str,
        body: bytes,
        headers: Mapping[str, str],
        query: Optional[Mapping[str, str]] = None,
        method: str = "POST",
    ) -> TriggerResponse:
        """Start one run of ``workflow_id`` from a webhook call."""
        workflow = await self.workflows.get(workflow_id)
        if not workflow.active:
            raise WorkflowNotFoundError(workflow_id)
        self.authenticator.authenticate(headers, body, workflow)
        if not workflow.nodes_of_type(WEBHOOK_TRIGGER):
            raise ConfigurationError(f"Workflow {workflow_id} has no webhook trigger", field="workflowId")

        trigger_data = {
            "body": parse_payload(body),
            "headers": self._visible_headers(headers),
            "query": dict(query or {}),
            "method": method,
            "receivedAt": self.orchestrator.clock().isoformat(),
        }
        record = await self.dispatch(workflow.id, trigger_data, WEBHOOK_TRIGGER)
        self.logger.info("Webhook accepted", workflow_id=workflow.id, run_id=record.id)
        return TriggerResponse(run_ids=[record.id], workflow_ids=[workflow.id])

    async def handle_event(
        self,
        kind: str,
        body: bytes,
        headers: Mapping[str, str],
        user_id: Optional[str] = None,
    ) -> TriggerResponse:
        """Start a run of every active workflow listening for ``kind``."""
        self.authenticator.authenticate(headers, body)
        definition = self.orchestrator.registry.get_node_definition(kind)
        if definition is None or not definition.is_trigger:
            raise ConfigurationError(f"Unknown trigger kind: {kind}", field="kind")
        payload = parse_payload(body)
        if not isinstance(payload, dict):
            raise ConfigurationError("Event payload must be a JSON object", field="body")

        response = TriggerResponse()
        for workflow in await self.workflows.find_by_trigger(kind):
            if user_id is not None and workflow.user_id != user_id:
                continue
            record = await self.dispatch(workflow.id, payload, kind, user_id=user_id)
            response.run_ids.append(record.id)
            response.workflow_ids.append(workflow.id)

        self.logger.info("Event dispatched", kind=kind, runs=len(response.run_ids))
        return response

    async def fire_schedules(self, now: Optional[datetime] = None, window_seconds: int = 60) -> TriggerResponse:
        """Start runs for schedule triggers that fired within the last window."""
        now = now or self.orchestrator.clock()
        response = TriggerResponse()
        for workflow, node, fired_at in await due_schedules(self.workflows, now, window_seconds):
            run_id = schedule_run_id(workflow.id, node.id, fired_at)
            if await self.orchestrator.runs.find(run_id) is not None:
                continue
            trigger_data = {
                "cron": node.data.get("cron"),
                "timezone": node.data.get("timezone") or "UTC",
                "firedAt": fired_at.isoformat(),
            }
            record = await self.dispatch(
                workflow.id, trigger_data, node.type, user_id=workflow.user_id, run_id=run_id
            )
            response.run_ids.append(record.id)
            response.workflow_ids.append(workflow.id)
        return response
