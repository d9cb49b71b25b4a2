"""Run persistence models."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from opsflow.database import Base
from opsflow.executor.steps import utcnow


class WorkflowRun(Base):
    """A single workflow run and its cursor."""

    __tablename__ = "workflow_runs"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    workflow_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)

    context: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    reachable: Mapped[List[str]] = mapped_column(JSON, default=list)
    completed: Mapped[List[str]] = mapped_column(JSON, default=list)
    current_node_id: Mapped[Optional[str]] = mapped_column(String(255))

    failure: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)
    output: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)
    wake_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    user_id: Mapped[Optional[str]] = mapped_column(String(255))
    trigger_type: Mapped[Optional[str]] = mapped_column(String(128))
    parent_run_id: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    parent_node_id: Mapped[Optional[str]] = mapped_column(String(255))
    execution_stack: Mapped[List[str]] = mapped_column(JSON, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_workflow_runs_status_wake_at", "status", "wake_at"),
    )

    def __repr__(self) -> str:
        return f"<WorkflowRun(id={self.id}, workflow_id={self.workflow_id}, status={self.status})>"


class StepRecord(Base):
    """A completed (or sleeping) durable step of a run."""

    __tablename__ = "step_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("workflow_runs.id", ondelete="CASCADE"), nullable=False
    )
    step_key: Mapped[str] = mapped_column(Text, nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    result: Mapped[Optional[Any]] = mapped_column(JSON)
    wake_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("run_id", "step_key", name="uq_step_records_run_id_step_key"),
    )

    def __repr__(self) -> str:
        return f"<StepRecord(run_id={self.run_id}, step_key={self.step_key}, status={self.status})>"
