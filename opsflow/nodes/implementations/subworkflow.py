"""Sub-workflow node implementation for workflow composition."""

from typing import Any, Dict, List, Mapping, Optional

import structlog
from jsonpath_ng import parse as jsonpath_parse

from opsflow.executor.context import RunLauncher
from opsflow.executor.errors import (
    ChildRunFailedError,
    ConfigurationError,
    ErrorKind,
    PermanentError,
)
from opsflow.executor.steps import RunSuspended
from opsflow.executor.templating import lookup_path
from opsflow.runs.schemas import RunRecord, RunStatus
from opsflow.workflows.schemas import BundleOutput
from ..base import (
    BaseNode,
    NodeCategory,
    NodeDefinition,
    NodeParameter,
    ParameterType,
    variable_name_parameter,
)

logger = structlog.get_logger()

EXECUTE_WORKFLOW = "EXECUTE_WORKFLOW"


def extract_value(data: Mapping[str, Any], path: str) -> Any:
    """Read ``path`` from ``data``.

    ``$``-prefixed paths are JSONPath expressions; anything else is a dotted
    path. A single JSONPath match is returned as is, several as a list.
    """
    if not path.startswith("$"):
        return lookup_path(data, path)
    try:
        expr = jsonpath_parse(path)
    except Exception as e:
        raise ConfigurationError(f"Invalid output path {path}: {e}", field="outputs") from e
    matches = [match.value for match in expr.find(dict(data))]
    if not matches:
        return None
    return matches[0] if len(matches) == 1 else matches


def map_outputs(data: Mapping[str, Any], mapping: Mapping[str, str]) -> Dict[str, Any]:
    return {name: extract_value(data, path) for name, path in mapping.items()}


def declared_outputs(outputs: List[BundleOutput]) -> Dict[str, str]:
    return {output.name: output.path for output in outputs}


def child_result(child: RunRecord) -> RunRecord:
    """Return ``child`` when it succeeded; otherwise suspend or fail the caller."""
    if child.status == RunStatus.SUCCEEDED:
        return child
    if child.status == RunStatus.WAITING and child.wake_at is not None:
        raise RunSuspended(child.wake_at, step_key=child.id)
    if child.status == RunStatus.FAILED and child.failure is not None:
        failure = child.failure
        raise ChildRunFailedError(
            f"Workflow {child.workflow_id} failed at node {failure.node_id}: {failure.message}",
            kind=ErrorKind(failure.kind),
            child_run_id=child.id,
            failure=failure.model_dump(),
        )
    raise PermanentError(
        f"Workflow {child.workflow_id} ended with status {child.status.value}",
        details={"child_run_id": child.id},
    )


class SubWorkflowNode(BaseNode):
    """Node that executes another workflow as a sub-workflow.

    The nested run is seeded with the current context (plus any configured
    inputs) and the node blocks until it is terminal. Its final context, or
    the configured output mapping over it, becomes this node's result.
    """

    definition = NodeDefinition(
        name="Execute Workflow",
        type=EXECUTE_WORKFLOW,
        category=NodeCategory.WORKFLOW,
        description="Execute another workflow as part of this workflow",
        default_variable_name="workflowResult",
        parameters=[
            NodeParameter(
                name="workflowId",
                display_name="Workflow",
                required=True,
                description="ID of the workflow to execute",
                placeholder="Select or enter workflow ID",
            ),
            variable_name_parameter(),
            NodeParameter(
                name="inputs",
                display_name="Inputs",
                type=ParameterType.JSON,
                description="Extra variables for the nested run",
            ),
            NodeParameter(
                name="outputMapping",
                display_name="Output Mapping",
                type=ParameterType.JSON,
                templated=False,
                description="Map nested results to outputs using JSONPath",
            ),
        ],
    )

    @property
    def launcher(self) -> RunLauncher:
        if self.context.launcher is None:
            raise ConfigurationError(f"{self.definition.name} error: nested runs are not available.")
        return self.context.launcher

    def child_run_id(self, index: Optional[int] = None) -> str:
        base = f"{self.context.run_id}:{self.node_id}"
        return base if index is None else f"{base}:{index}"

    async def execute(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        workflow_id = str(parameters["workflowId"]).strip()
        inputs = parameters.get("inputs") or {}
        if not isinstance(inputs, dict):
            raise ConfigurationError(
                f"{self.definition.name} error: Inputs must be an object.", field="inputs"
            )

        seed = {**self.variables.to_dict(), **inputs}
        self.logger.info("Starting nested run", workflow_id=workflow_id)
        child = child_result(
            await self.launcher.run_child(
                self.context.run, self.node_id, self.child_run_id(), workflow_id, seed
            )
        )

        output = child.output or {}
        mapping = parameters.get("outputMapping")
        if mapping:
            if not isinstance(mapping, dict):
                raise ConfigurationError(
                    f"{self.definition.name} error: Output Mapping must be an object.",
                    field="outputMapping",
                )
            result: Any = map_outputs(output, mapping)
        else:
            workflow = await self.launcher.load_workflow(workflow_id)
            if workflow.bundle_outputs:
                result = map_outputs(output, declared_outputs(workflow.bundle_outputs))
            else:
                result = output
        return self.bind_output(result, parameters)
