"""Workflow definition repositories."""

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

import structlog

from opsflow.executor.errors import ConfigurationError, WorkflowNotFoundError
from .schemas import WorkflowDefinition

logger = structlog.get_logger()


class WorkflowRepository(ABC):
    """Read access to workflow definitions."""

    @abstractmethod
    async def get(self, workflow_id: str) -> WorkflowDefinition:
        """Return a workflow or raise :class:`WorkflowNotFoundError`."""

    @abstractmethod
    async def list_active(self) -> List[WorkflowDefinition]:
        """Return every active workflow."""

    async def find_by_trigger(self, node_type: str) -> List[WorkflowDefinition]:
        """Active workflows containing a trigger node of ``node_type``."""
        return [
            workflow for workflow in await self.list_active()
            if workflow.nodes_of_type(node_type)
        ]


class InMemoryWorkflowRepository(WorkflowRepository):
    """Workflows held in a dictionary."""

    def __init__(self, workflows: Optional[Iterable[WorkflowDefinition]] = None):
        self._workflows: Dict[str, WorkflowDefinition] = {}
        for workflow in workflows or []:
            self.add(workflow)

    def add(self, workflow: WorkflowDefinition) -> None:
        self._workflows[workflow.id] = workflow

    async def get(self, workflow_id: str) -> WorkflowDefinition:
        workflow = self._workflows.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    async def list_active(self) -> List[WorkflowDefinition]:
        return [workflow for workflow in self._workflows.values() if workflow.active]


def load_workflow_file(path: Union[str, Path]) -> WorkflowDefinition:
    """Load one workflow definition from a JSON file."""
    path = Path(path)
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as e:
        raise ConfigurationError(f"Invalid workflow file {path}: {e}") from e
    payload.setdefault("id", path.stem)
    return WorkflowDefinition.model_validate(payload)


def load_workflow_directory(directory: Union[str, Path]) -> InMemoryWorkflowRepository:
    """Build a repository from every ``*.json`` file in ``directory``."""
    repository = InMemoryWorkflowRepository()
    for path in sorted(Path(directory).glob("*.json")):
        workflow = load_workflow_file(path)
        repository.add(workflow)
        logger.info("Loaded workflow", workflow_id=workflow.id, path=str(path))
    return repository
