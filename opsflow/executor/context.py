"""Execution context classes."""

import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Iterator, Mapping, Optional

import structlog

if TYPE_CHECKING:
    from opsflow.executor.steps import DurableStepRunner
    from opsflow.executor.templating import TemplateResolver
    from opsflow.integrations.operations import DomainOperations
    from opsflow.runs.schemas import RunRecord
    from opsflow.status.publisher import NodeStatusEmitter
    from opsflow.workflows.schemas import WorkflowDefinition

logger = structlog.get_logger()

TRIGGER_DATA_KEY = "triggerData"


class ExecutionContext(Mapping[str, Any]):
    """Accumulated variables of a run.

    The context is append-only: ``merge`` returns a new context and values
    are copied on the way in and on the way out, so a value held by an
    earlier node is never changed underneath it.
    """

    __slots__ = ("_data",)

    def __init__(self, data: Optional[Mapping[str, Any]] = None):
        self._data: Dict[str, Any] = copy.deepcopy(dict(data or {}))

    @classmethod
    def seeded(cls, trigger_data: Optional[Mapping[str, Any]] = None) -> "ExecutionContext":
        """Create the initial context of a run from its trigger payload."""
        return cls({TRIGGER_DATA_KEY: dict(trigger_data or {})})

    def __getitem__(self, key: str) -> Any:
        return copy.deepcopy(self._data[key])

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"ExecutionContext({self._data!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ExecutionContext):
            return self._data == other._data
        if isinstance(other, Mapping):
            return self._data == dict(other)
        return NotImplemented

    @property
    def trigger_data(self) -> Dict[str, Any]:
        """Payload of the trigger that started the run."""
        value = self._data.get(TRIGGER_DATA_KEY)
        return copy.deepcopy(value) if isinstance(value, dict) else {}

    def merge(self, updates: Optional[Mapping[str, Any]]) -> "ExecutionContext":
        """Return a new context with ``updates`` superseding existing keys."""
        if not updates:
            return self
        merged = ExecutionContext()
        merged._data = {**self._data, **copy.deepcopy(dict(updates))}
        return merged

    def to_dict(self) -> Dict[str, Any]:
        """Detached copy suitable for rendering and persistence."""
        return copy.deepcopy(self._data)


@dataclass
class NodeExecutionContext:
    """Everything a node executor may use while it runs.

    ``steps`` is the only way a node performs side effects; ``status`` is
    the only way it reports progress.
    """

    node_id: str
    node_type: str
    data: Dict[str, Any]
    context: ExecutionContext
    steps: "DurableStepRunner"
    status: "NodeStatusEmitter"
    resolver: "TemplateResolver"
    run: "RunRecord"
    workflow: Optional["WorkflowDefinition"] = None
    operations: Optional["DomainOperations"] = None
    launcher: Optional["RunLauncher"] = None
    node_name: Optional[str] = None
    attempt: int = 1
    extras: Dict[str, Any] = field(default_factory=dict)

    @property
    def run_id(self) -> str:
        return self.run.id

    @property
    def user_id(self) -> Optional[str]:
        return self.run.user_id

    def get_parameter(self, key: str, default: Any = None) -> Any:
        """Get a raw (unrendered) configuration value."""
        return self.data.get(key, default)


class RunLauncher(ABC):
    """Capability for nodes that start nested runs."""

    @abstractmethod
    async def run_child(
        self,
        parent: "RunRecord",
        parent_node_id: str,
        child_run_id: str,
        workflow_id: str,
        seed: Mapping[str, Any],
    ) -> "RunRecord":
        """Start or continue a nested run and return its latest record."""

    @abstractmethod
    async def load_workflow(self, workflow_id: str) -> "WorkflowDefinition":
        """Fetch a workflow definition by id."""
