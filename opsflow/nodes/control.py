"""Control flow node implementations."""

import math
from typing import Any, Dict, List, Optional

from opsflow.executor.errors import ConfigurationError, ExecutionSignal
from opsflow.status.publisher import NodeStatus
from .base import (
    ControlNode,
    NodeCategory,
    NodeDefinition,
    NodeParameter,
    ParameterType,
    variable_name_parameter,
)

IF_ELSE = "IF_ELSE"
SWITCH = "SWITCH"
SET_VARIABLE = "SET_VARIABLE"
WAIT = "WAIT"
STOP_WORKFLOW = "STOP_WORKFLOW"

UNIT_MILLISECONDS = {
    "seconds": 1000,
    "minutes": 60 * 1000,
    "hours": 60 * 60 * 1000,
    "days": 24 * 60 * 60 * 1000,
}


class StopWorkflow(ExecutionSignal):
    """Ends the run successfully at the current node."""

    node_status = NodeStatus.SUCCESS

    def __init__(self, reason: str = "", updates: Optional[Dict[str, Any]] = None):
        super().__init__(reason or "Workflow stopped")
        self.reason = reason
        self.updates = updates or {}


def _to_number(value: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


def compare(operator: str, left: str, right: str) -> bool:
    """Evaluate an if/else operator on rendered operands."""
    if operator == "equals":
        return left == right
    if operator == "notEquals":
        return left != right
    if operator == "greaterThan":
        return _to_number(left) > _to_number(right)
    if operator == "lessThan":
        return _to_number(left) < _to_number(right)
    if operator == "greaterThanOrEqual":
        return _to_number(left) >= _to_number(right)
    if operator == "lessThanOrEqual":
        return _to_number(left) <= _to_number(right)
    if operator == "contains":
        return right in left
    if operator == "notContains":
        return right not in left
    if operator == "startsWith":
        return left.startswith(right)
    if operator == "endsWith":
        return left.endswith(right)
    if operator == "isEmpty":
        return not left.strip()
    if operator == "isNotEmpty":
        return bool(left.strip())
    raise ConfigurationError(f"If/Else error: unknown operator {operator!r}.", field="operator")


OPERATORS = [
    "equals", "notEquals", "greaterThan", "lessThan", "greaterThanOrEqual",
    "lessThanOrEqual", "contains", "notContains", "startsWith", "endsWith",
    "isEmpty", "isNotEmpty",
]


class IfElseNode(ControlNode):
    """Two-way branch on a comparison."""

    definition = NodeDefinition(
        name="If/Else",
        type=IF_ELSE,
        category=NodeCategory.FLOW,
        description="Branch execution based on a condition",
        default_variable_name="condition",
        outputs=["true", "false"],
        parameters=[
            variable_name_parameter(),
            NodeParameter(name="leftOperand", display_name="Left Operand", required=True),
            NodeParameter(
                name="operator",
                display_name="Operator",
                type=ParameterType.OPTIONS,
                required=True,
                templated=False,
                options=OPERATORS,
            ),
            NodeParameter(name="rightOperand", display_name="Right Operand", default=""),
        ],
    )

    async def execute(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        left = str(parameters.get("leftOperand") or "")
        right = str(parameters.get("rightOperand") or "")
        operator = parameters["operator"]
        result = compare(operator, left, right)
        branch = "true" if result else "false"
        self.select_output(branch)
        return self.bind_output(
            {
                "result": result,
                "leftValue": left,
                "rightValue": right,
                "operator": operator,
                "branchToFollow": branch,
            },
            parameters,
        )


class SwitchNode(ControlNode):
    """Multi-way branch: first case whose value equals the input wins."""

    definition = NodeDefinition(
        name="Switch",
        type=SWITCH,
        category=NodeCategory.FLOW,
        description="Route to the first matching case",
        default_variable_name="switchResult",
        outputs=["case-<index>", "default"],
        parameters=[
            variable_name_parameter(),
            NodeParameter(name="inputValue", display_name="Input Value", required=True),
            NodeParameter(
                name="cases",
                display_name="Cases",
                type=ParameterType.ARRAY,
                required=True,
                description="List of {value, label}",
            ),
            NodeParameter(name="defaultLabel", display_name="Default Label", default="Default"),
        ],
    )

    async def execute(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        cases = parameters.get("cases")
        if not isinstance(cases, list) or not cases:
            raise ConfigurationError("Switch error: At least one case is required.", field="cases")

        value = str(parameters.get("inputValue") or "")
        matched: Optional[int] = None
        for index, case in enumerate(cases):
            if isinstance(case, dict) and str(case.get("value", "")) == value:
                matched = index
                break

        if matched is None:
            port = "default"
            label = parameters.get("defaultLabel") or "Default"
        else:
            port = f"case-{matched}"
            label = cases[matched].get("label") or port
        self.select_output(port)
        return self.bind_output(
            {"value": value, "matchedCase": matched, "label": label, "branchToFollow": port},
            parameters,
        )


class SetVariableNode(ControlNode):
    """Store a rendered value in the context."""

    definition = NodeDefinition(
        name="Set Variable",
        type=SET_VARIABLE,
        category=NodeCategory.FLOW,
        description="Store a value under a variable name",
        parameters=[
            variable_name_parameter(required=True),
            NodeParameter(name="value", display_name="Value", required=True),
        ],
    )

    async def execute(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        value = self.context.resolver.resolve_value(
            self.get_parameter("value"), self.variables.to_dict()
        )
        return self.bind_output(value, parameters)


class WaitNode(ControlNode):
    """Pause the run for a fixed duration."""

    definition = NodeDefinition(
        name="Wait",
        type=WAIT,
        category=NodeCategory.FLOW,
        description="Wait for a duration before continuing",
        parameters=[
            variable_name_parameter(required=True),
            NodeParameter(
                name="duration",
                display_name="Duration",
                type=ParameterType.NUMBER,
                required=True,
                min_value=0,
            ),
            NodeParameter(
                name="unit",
                display_name="Unit",
                type=ParameterType.OPTIONS,
                required=True,
                templated=False,
                options=list(UNIT_MILLISECONDS),
            ),
        ],
    )

    @staticmethod
    def duration_ms(duration: Any, unit: str) -> int:
        try:
            amount = float(duration)
        except (TypeError, ValueError) as e:
            raise ConfigurationError("Wait error: Duration must be a number.", field="duration") from e
        if not math.isfinite(amount) or amount <= 0:
            raise ConfigurationError("Wait error: Duration must be greater than 0.", field="duration")
        return int(round(amount * UNIT_MILLISECONDS[unit]))

    async def execute(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        unit = parameters["unit"]
        duration_ms = self.duration_ms(parameters["duration"], unit)

        await self.context.steps.sleep(self.step_key("wait"), duration_ms)
        waited_until = self.context.steps.now()

        duration = float(parameters["duration"])
        return self.bind_output(
            {
                "duration": int(duration) if duration.is_integer() else duration,
                "unit": unit,
                "durationMs": duration_ms,
                "waitedUntil": waited_until.isoformat(),
            },
            parameters,
        )


class StopWorkflowNode(ControlNode):
    """End the run successfully."""

    definition = NodeDefinition(
        name="Stop Workflow",
        type=STOP_WORKFLOW,
        category=NodeCategory.FLOW,
        description="Stop the workflow here",
        default_variable_name="stopped",
        outputs=[],
        parameters=[
            variable_name_parameter(),
            NodeParameter(name="reason", display_name="Reason"),
        ],
    )

    async def execute(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        reason = parameters.get("reason") or ""
        raise StopWorkflow(
            reason,
            self.bind_output({"stopped": True, "reason": reason}, parameters),
        )


CONTROL_NODES: List[type] = [IfElseNode, SwitchNode, SetVariableNode, WaitNode, StopWorkflowNode]
