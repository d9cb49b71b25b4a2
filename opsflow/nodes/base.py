"""Base node classes and definitions.

Every executor shares one lifecycle, implemented by :meth:`BaseNode.run`:
publish ``loading``, validate required configuration, render templated
fields, perform the effect, then publish ``success`` (or ``error`` and
re-raise). Subclasses implement :meth:`BaseNode.execute` only.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import structlog
from pydantic import BaseModel, Field

from opsflow.executor.context import ExecutionContext, NodeExecutionContext
from opsflow.executor.errors import ConfigurationError, ExecutionSignal, NodeNotImplementedError
from opsflow.status.publisher import NodeStatus, channel_for

logger = structlog.get_logger()

VARIABLE_NAME_PATTERN = re.compile(r"^[A-Za-z_$][A-Za-z0-9_$]*$")


class NodeCategory(str, Enum):
    """Node category enumeration."""
    TRIGGER = "trigger"
    CRM = "crm"
    INTEGRATION = "integration"
    FLOW = "flow"
    WORKFLOW = "workflow"


class ParameterType(str, Enum):
    """Parameter type enumeration."""
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    JSON = "json"
    OPTIONS = "options"
    ARRAY = "array"
    EXPRESSION = "expression"


class NodeParameter(BaseModel):
    """Node parameter definition."""
    name: str = Field(..., description="Parameter name")
    display_name: Optional[str] = Field(None, description="Parameter display name")
    type: ParameterType = Field(default=ParameterType.STRING, description="Parameter type")
    required: bool = Field(default=False, description="Is parameter required")
    default: Any = Field(default=None, description="Default value")
    description: Optional[str] = Field(None, description="Parameter description")
    placeholder: Optional[str] = Field(None, description="Placeholder text")
    templated: bool = Field(default=True, description="Render template strings before execution")

    options: Optional[List[str]] = Field(None, description="Options for OPTIONS type")
    min_value: Optional[Union[int, float]] = Field(None, description="Minimum value for NUMBER type")

    @property
    def label(self) -> str:
        return self.display_name or self.name

    def is_missing(self, value: Any) -> bool:
        """Required-field check on the raw configured value."""
        if value is None:
            return True
        if isinstance(value, str):
            return not value.strip()
        return False


class NodeDefinition(BaseModel):
    """Node type definition."""
    name: str = Field(..., description="Node display name")
    type: str = Field(..., description="Node kind")
    category: NodeCategory = Field(..., description="Node category")
    description: str = Field(default="", description="Node description")

    parameters: List[NodeParameter] = Field(default_factory=list, description="Node parameters")
    inputs: List[str] = Field(default_factory=lambda: ["main"], description="Input ports")
    outputs: List[str] = Field(default_factory=lambda: ["main"], description="Output ports")

    default_variable_name: Optional[str] = Field(
        None, description="Context key used when no output variable is configured"
    )
    operation: Optional[str] = Field(None, description="Domain operation performed by the node")
    version: str = Field(default="1.0", description="Node version")

    @property
    def is_trigger(self) -> bool:
        return self.category == NodeCategory.TRIGGER

    @property
    def channel(self) -> str:
        return channel_for(self.type, trigger=self.is_trigger)

    def get_parameter(self, name: str) -> Optional[NodeParameter]:
        """Get parameter by name."""
        for param in self.parameters:
            if param.name == name:
                return param
        return None


def variable_name_parameter(required: bool = False) -> NodeParameter:
    return NodeParameter(
        name="variableName",
        display_name="Variable Name",
        type=ParameterType.STRING,
        required=required,
        templated=False,
        description="Context variable receiving the node result",
    )


def normalize_variable_name(name: Any, default: str) -> str:
    """Configured name when it is a valid identifier, otherwise ``default``."""
    if isinstance(name, str):
        candidate = name.strip()
        if candidate and VARIABLE_NAME_PATTERN.match(candidate):
            return candidate
    return default


def kebab_case(value: str) -> str:
    return re.sub(r"[_\s]+", "-", value.strip()).lower()


@dataclass
class NodeOutcome:
    """Context after a node ran and the output port it selected."""
    context: ExecutionContext
    output_port: Optional[str] = None


class BaseNode(ABC):
    """Base class for all nodes."""

    definition: Optional[NodeDefinition] = None

    def __init__(self, context: NodeExecutionContext, definition: Optional[NodeDefinition] = None):
        self.context = context
        self.definition = definition or self.get_definition()
        self.output_port: Optional[str] = None
        self.logger = logger.bind(
            node_id=context.node_id,
            node_type=context.node_type,
            run_id=context.run_id,
        )

    @property
    def node_id(self) -> str:
        return self.context.node_id

    @property
    def variables(self) -> ExecutionContext:
        """Context as it was when the node started."""
        return self.context.context

    def get_parameter(self, key: str, default: Any = None) -> Any:
        """Get raw parameter value."""
        return self.context.get_parameter(key, default)

    def step_key(self, purpose: Optional[str] = None) -> str:
        """Stable step key derived from node id and purpose."""
        return f"{self.node_id}:{purpose or kebab_case(self.definition.type)}"

    async def publish(self, status: NodeStatus, **fields: Any) -> None:
        await self.context.status(status, **fields)

    async def run(self) -> NodeOutcome:
        """Run the node with the shared lifecycle."""
        await self.publish(NodeStatus.LOADING)
        try:
            await self.pre_execute()
            self.validate_parameters()
            parameters = self.render_parameters()
            updates = await self.execute(parameters)
            await self.post_execute(updates)
        except ExecutionSignal as signal:
            status = getattr(signal, "node_status", None)
            if status is not None:
                await self.publish(status)
            raise
        except Exception as e:
            await self.on_error(e)
            await self.publish(NodeStatus.ERROR, **getattr(e, "status_fields", {}))
            raise

        await self.publish(NodeStatus.SUCCESS)
        return NodeOutcome(self.variables.merge(updates), self.output_port)

    def validate_parameters(self) -> None:
        """Reject missing required fields and unknown options."""
        for param in self.definition.parameters:
            value = self.get_parameter(param.name, param.default)
            if param.required and param.is_missing(value):
                raise ConfigurationError(
                    f"{self.definition.name} error: {param.label} is required.",
                    field=param.name,
                    details={"node_id": self.node_id},
                )
            if (
                value is not None
                and param.options
                and not param.templated
                and value not in param.options
            ):
                raise ConfigurationError(
                    f"{self.definition.name} error: {param.label} must be one of "
                    f"{', '.join(param.options)}.",
                    field=param.name,
                    details={"node_id": self.node_id},
                )

    def render_parameters(self) -> Dict[str, Any]:
        """Render templated fields against the current context."""
        variables = self.variables.to_dict()
        rendered: Dict[str, Any] = {}
        for key, value in self.context.data.items():
            param = self.definition.get_parameter(key)
            if param is not None and not param.templated:
                rendered[key] = value
            else:
                rendered[key] = self.context.resolver.render_value(value, variables)
        for param in self.definition.parameters:
            if param.name not in rendered and param.default is not None:
                rendered[param.name] = param.default
        return rendered

    def bind_output(self, result: Any, parameters: Dict[str, Any]) -> Dict[str, Any]:
        """Context updates binding ``result`` to the configured output variable."""
        name = parameters.get("variableName")
        if isinstance(name, str) and name.strip():
            return {name.strip(): result}
        if self.definition.default_variable_name:
            return {self.definition.default_variable_name: result}
        return {}

    async def pre_execute(self) -> None:
        """Hook called before execution."""
        pass

    @abstractmethod
    async def execute(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        """Perform the node's effect and return context updates."""
        raise NotImplementedError("Node execution not implemented")

    async def post_execute(self, updates: Dict[str, Any]) -> None:
        """Hook called after successful execution."""
        pass

    async def on_error(self, error: Exception) -> None:
        """Hook called on execution error."""
        self.logger.warning("Node failed", error=str(error), error_type=type(error).__name__)

    @classmethod
    def get_definition(cls) -> NodeDefinition:
        """Get node definition."""
        if cls.definition is None:
            raise NotImplementedError(f"{cls.__name__} has no definition")
        return cls.definition


class TriggerNode(BaseNode):
    """Passive trigger: re-exposes the trigger payload under a variable name."""

    async def execute(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        name = normalize_variable_name(
            parameters.get("variableName"),
            self.definition.default_variable_name or "triggerData",
        )
        return {name: self.variables.trigger_data}


class ActionNode(BaseNode):
    """Base class for nodes that call a domain operation."""

    async def perform(
        self,
        operation: str,
        payload: Dict[str, Any],
        purpose: Optional[str] = None,
    ) -> Any:
        """Invoke a domain operation exactly once for this run."""
        operations = self.context.operations
        if operations is None or not operations.supports(operation):
            raise NodeNotImplementedError(
                f"{self.definition.name} is not implemented yet.", operation=operation
            )

        async def invoke() -> Any:
            return await operations.invoke(
                operation,
                payload,
                user_id=self.context.user_id,
                run_id=self.context.run_id,
                node_id=self.node_id,
            )

        return await self.context.steps.run(self.step_key(purpose), invoke)


class ControlNode(BaseNode):
    """Base class for control flow nodes."""

    def select_output(self, port: str) -> None:
        """Choose the outgoing branch followed after this node."""
        self.output_port = port
