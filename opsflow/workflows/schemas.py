"""Workflow definition schemas."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

MAIN_OUTPUT = "main"


class WorkflowNodeSpec(BaseModel):
    """A node placed in a workflow."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Node id, unique within the workflow")
    type: str = Field(..., description="Node kind")
    name: Optional[str] = Field(default=None, description="Display name")
    data: Dict[str, Any] = Field(default_factory=dict, description="Node configuration")
    disabled: bool = Field(default=False, description="Disabled nodes pass through without running")


class WorkflowConnectionSpec(BaseModel):
    """Directed edge between two nodes."""

    model_config = ConfigDict(populate_by_name=True)

    source: str = Field(..., alias="fromNodeId")
    target: str = Field(..., alias="toNodeId")
    source_output: str = Field(
        default=MAIN_OUTPUT,
        alias="fromOutput",
        description="Branch label selected by the source node's outcome",
    )


class BundleInput(BaseModel):
    """Declared input of a bundle workflow."""

    name: str
    type: str = Field(default="string")
    default: Any = Field(default=None)
    description: Optional[str] = None


class BundleOutput(BaseModel):
    """Declared output of a bundle workflow, extracted from its final context."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    path: str = Field(..., alias="variablePath", description="JSONPath into the final context")


class WorkflowDefinition(BaseModel):
    """A user-authored workflow."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str = Field(default="")
    user_id: Optional[str] = Field(default=None, alias="userId")
    active: bool = Field(default=True)
    nodes: List[WorkflowNodeSpec] = Field(default_factory=list)
    connections: List[WorkflowConnectionSpec] = Field(default_factory=list)
    is_bundle: bool = Field(default=False, alias="isBundle")
    bundle_inputs: List[BundleInput] = Field(default_factory=list, alias="bundleInputs")
    bundle_outputs: List[BundleOutput] = Field(default_factory=list, alias="bundleOutputs")
    settings: Dict[str, Any] = Field(default_factory=dict)

    def get_node(self, node_id: str) -> Optional[WorkflowNodeSpec]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def nodes_of_type(self, *node_types: str) -> List[WorkflowNodeSpec]:
        return [node for node in self.nodes if node.type in node_types]

    def outgoing(self, node_id: str) -> List[WorkflowConnectionSpec]:
        return [conn for conn in self.connections if conn.source == node_id]
