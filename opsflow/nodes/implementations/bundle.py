"""Bundle node: run a bundle workflow once per item of a list."""

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

from opsflow.executor.errors import ConfigurationError, ExecutionSignal, classify
from opsflow.executor.steps import RunSuspended
from opsflow.status.publisher import NodeStatus
from opsflow.workflows.schemas import WorkflowDefinition
from ..base import NodeCategory, NodeDefinition, NodeParameter, ParameterType, variable_name_parameter
from .subworkflow import SubWorkflowNode, child_result, declared_outputs, map_outputs

BUNDLE_WORKFLOW = "BUNDLE_WORKFLOW"

FAIL_FAST = "fail_fast"
BEST_EFFORT = "best_effort"
PARENT_CONTEXT_KEY = "parentContext"


class BundleWorkflowNode(SubWorkflowNode):
    """Iterates ``items`` and starts one nested run of a bundle workflow per item.

    ``mode`` decides what an item failure does: ``fail_fast`` fails the node
    at the first failing item, ``best_effort`` records the failure and moves
    on. Items run in chunks of ``concurrency`` nested runs at a time.
    """

    definition = NodeDefinition(
        name="Bundle Workflow",
        type=BUNDLE_WORKFLOW,
        category=NodeCategory.WORKFLOW,
        description="Run a bundle workflow for every item of a list",
        default_variable_name="bundleResult",
        parameters=[
            NodeParameter(
                name="bundleWorkflowId",
                display_name="Bundle Workflow",
                required=True,
                description="ID of the bundle workflow to run",
            ),
            NodeParameter(
                name="items",
                display_name="Items",
                type=ParameterType.EXPRESSION,
                required=True,
                templated=False,
                description="List to iterate, or a template resolving to one",
            ),
            NodeParameter(
                name="mode",
                display_name="Mode",
                type=ParameterType.OPTIONS,
                required=True,
                templated=False,
                options=[FAIL_FAST, BEST_EFFORT],
            ),
            variable_name_parameter(),
            NodeParameter(
                name="itemVariableName",
                display_name="Item Variable Name",
                templated=False,
                default="item",
            ),
            NodeParameter(
                name="indexVariableName",
                display_name="Index Variable Name",
                templated=False,
                default="index",
            ),
            NodeParameter(
                name="inputMappings",
                display_name="Input Mappings",
                type=ParameterType.ARRAY,
                templated=False,
                description="List of {bundleInputName, value}; values are templates",
            ),
            NodeParameter(
                name="concurrency",
                display_name="Concurrency",
                type=ParameterType.NUMBER,
                templated=False,
                default=1,
                min_value=1,
            ),
        ],
    )

    def resolve_items(self, raw: Any) -> List[Any]:
        items = self.context.resolver.resolve_value(raw, self.variables.to_dict())
        if not isinstance(items, list):
            raise ConfigurationError(
                f"{self.definition.name} error: Items must resolve to a list.", field="items"
            )
        return items

    def concurrency(self, value: Any) -> int:
        try:
            requested = max(1, int(value))
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                f"{self.definition.name} error: Concurrency must be a number.", field="concurrency"
            ) from e
        limit = self.context.extras.get("bundle_max_concurrency")
        return min(requested, limit) if limit else requested

    async def load_bundle(self, workflow_id: str) -> WorkflowDefinition:
        workflow = await self.launcher.load_workflow(workflow_id)
        if not workflow.is_bundle:
            raise ConfigurationError(
                f"Workflow {workflow_id} is not a bundle workflow.", field="bundleWorkflowId"
            )
        return workflow

    def build_inputs(
        self,
        workflow: WorkflowDefinition,
        mappings: Any,
        scope: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Declared defaults overridden by rendered input mappings."""
        inputs = {
            declared.name: declared.default
            for declared in workflow.bundle_inputs
            if declared.default is not None
        }
        for mapping in mappings or []:
            if not isinstance(mapping, dict) or not mapping.get("bundleInputName"):
                continue
            inputs[mapping["bundleInputName"]] = self.context.resolver.resolve_value(
                mapping.get("value"), scope
            )
        return inputs

    async def run_item(
        self,
        workflow: WorkflowDefinition,
        parameters: Dict[str, Any],
        index: int,
        item: Any,
        total: int,
    ) -> Any:
        """Run (or continue) the nested run of one item and return its output."""
        progress = {"current_index": index + 1, "total_iterations": total}
        await self.publish(NodeStatus.LOADING, **progress)

        item_name = parameters.get("itemVariableName") or "item"
        index_name = parameters.get("indexVariableName") or "index"
        parent = self.variables.to_dict()
        try:
            inputs = self.build_inputs(
                workflow,
                parameters.get("inputMappings"),
                {**parent, item_name: item, index_name: index},
            )
            seed = {
                **inputs,
                item_name: item,
                index_name: index,
                PARENT_CONTEXT_KEY: parent,
                "triggerData": {**inputs, item_name: item, index_name: index},
            }
            child = child_result(
                await self.launcher.run_child(
                    self.context.run, self.node_id, self.child_run_id(index), workflow.id, seed
                )
            )
        except ExecutionSignal:
            raise
        except Exception as e:
            e.status_fields = progress
            await self.publish(NodeStatus.ERROR, **progress)
            raise

        await self.publish(NodeStatus.SUCCESS, **progress)
        output = child.output or {}
        if workflow.bundle_outputs:
            return map_outputs(output, declared_outputs(workflow.bundle_outputs))
        return {"result": {k: v for k, v in output.items() if k != PARENT_CONTEXT_KEY}}

    async def execute(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        workflow_id = str(parameters["bundleWorkflowId"]).strip()
        mode = parameters["mode"]
        items = self.resolve_items(self.get_parameter("items"))
        concurrency = self.concurrency(parameters.get("concurrency", 1))
        workflow = await self.load_bundle(workflow_id)
        total = len(items)

        self.logger.info(
            "Running bundle",
            workflow_id=workflow_id,
            mode=mode,
            total=total,
            concurrency=concurrency,
        )

        results: List[Any] = [None] * total
        failures: List[Dict[str, Any]] = []
        wake_at: Optional[datetime] = None

        for start in range(0, total, concurrency):
            indexes = range(start, min(start + concurrency, total))
            outcomes = await asyncio.gather(
                *(self.run_item(workflow, parameters, i, items[i], total) for i in indexes),
                return_exceptions=True,
            )
            for index, outcome in zip(indexes, outcomes):
                if isinstance(outcome, RunSuspended):
                    wake_at = outcome.wake_at if wake_at is None else min(wake_at, outcome.wake_at)
                elif isinstance(outcome, BaseException):
                    if not isinstance(outcome, Exception) or isinstance(outcome, ExecutionSignal):
                        raise outcome
                    if mode == FAIL_FAST:
                        raise outcome
                    failures.append({
                        "index": index,
                        "error": str(outcome),
                        "kind": classify(outcome).value,
                    })
                else:
                    results[index] = outcome
            if wake_at is not None:
                raise RunSuspended(wake_at, step_key=self.step_key("bundle"))

        return self.bind_output(
            {
                "results": results,
                "failures": failures,
                "succeeded": total - len(failures),
                "failed": len(failures),
                "total": total,
            },
            parameters,
        )


WORKFLOW_NODES: List[type] = [SubWorkflowNode, BundleWorkflowNode]
