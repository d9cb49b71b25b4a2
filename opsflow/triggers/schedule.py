"""Schedule trigger evaluation."""

from datetime import datetime, timedelta
from typing import List, Tuple

import structlog

from opsflow.executor.errors import ConfigurationError
from opsflow.nodes.triggers import SCHEDULE_TRIGGER, previous_fire_time, validate_schedule
from opsflow.workflows.repository import WorkflowRepository
from opsflow.workflows.schemas import WorkflowDefinition, WorkflowNodeSpec

logger = structlog.get_logger()

DueSchedule = Tuple[WorkflowDefinition, WorkflowNodeSpec, datetime]


def schedule_run_id(workflow_id: str, node_id: str, fired_at: datetime) -> str:
    """Run id of one firing; the same firing never starts two runs."""
    return f"schedule:{workflow_id}:{node_id}:{int(fired_at.timestamp())}"


async def due_schedules(
    workflows: WorkflowRepository,
    now: datetime,
    window_seconds: int = 60,
) -> List[DueSchedule]:
    """Schedule triggers whose most recent firing falls in ``[now - window, now]``."""
    window_start = now - timedelta(seconds=window_seconds)
    due: List[DueSchedule] = []
    for workflow in await workflows.find_by_trigger(SCHEDULE_TRIGGER):
        for node in workflow.nodes_of_type(SCHEDULE_TRIGGER):
            if node.disabled:
                continue
            cron = node.data.get("cron")
            timezone = node.data.get("timezone") or "UTC"
            try:
                validate_schedule(cron, timezone)
            except ConfigurationError as e:
                logger.warning(
                    "Skipping invalid schedule",
                    workflow_id=workflow.id,
                    node_id=node.id,
                    error=e.message,
                )
                continue
            fired_at = previous_fire_time(cron, timezone, now)
            if window_start <= fired_at <= now:
                due.append((workflow, node, fired_at))
    return due
