"""Run record schemas."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from opsflow.executor.steps import utcnow


class RunStatus(str, Enum):
    """Run lifecycle status."""

    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED})


class RunFailure(BaseModel):
    """Why a run failed."""

    node_id: str = Field(..., description="Failing node")
    node_type: Optional[str] = Field(default=None)
    kind: str = Field(..., description="Error kind")
    message: str
    attempts: int = Field(default=1)
    details: Dict[str, Any] = Field(default_factory=dict)


class RunRecord(BaseModel):
    """Authoritative state of one workflow run."""

    id: str
    workflow_id: str
    status: RunStatus = RunStatus.PENDING
    context: Dict[str, Any] = Field(default_factory=dict)

    # Cursor
    reachable: List[str] = Field(default_factory=list)
    completed: List[str] = Field(default_factory=list)
    current_node_id: Optional[str] = None

    failure: Optional[RunFailure] = None
    output: Optional[Dict[str, Any]] = None
    wake_at: Optional[datetime] = None
    # Set while a worker drives the run; an expired lease marks a crashed worker
    lease_expires_at: Optional[datetime] = None

    user_id: Optional[str] = None
    trigger_type: Optional[str] = None
    parent_run_id: Optional[str] = None
    parent_node_id: Optional[str] = None
    execution_stack: List[str] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def depth(self) -> int:
        return len(self.execution_stack)


class RunResponse(BaseModel):
    """Public view of a run."""

    id: str
    workflow_id: str
    status: RunStatus
    current_node_id: Optional[str] = None
    completed: List[str] = Field(default_factory=list)
    failure: Optional[RunFailure] = None
    output: Optional[Dict[str, Any]] = None
    wake_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    finished_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: RunRecord) -> "RunResponse":
        return cls.model_validate(record.model_dump(exclude={"context"}))


class TriggerResponse(BaseModel):
    """Runs started by one trigger ingress call."""

    run_ids: List[str] = Field(default_factory=list)
    workflow_ids: List[str] = Field(default_factory=list)
