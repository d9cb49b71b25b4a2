"""Node registry: maps node kinds to executors and their definitions.

Catalog nodes share one executor class and differ only by definition, so
every registration stores the pair.
"""

from typing import Callable, Dict, List, Optional, Type

import structlog

from opsflow.executor.context import NodeExecutionContext
from opsflow.executor.errors import ConfigurationError
from .base import BaseNode, NodeCategory, NodeDefinition, TriggerNode

logger = structlog.get_logger()


class NodeRegistry:
    """Registry for node types."""

    def __init__(self):
        self._nodes: Dict[str, Type[BaseNode]] = {}
        self._definitions: Dict[str, NodeDefinition] = {}
        self.logger = logger.bind(component="node_registry")

    def _register_node(
        self,
        type_key: str,
        node_class: Type[BaseNode],
        definition: Optional[NodeDefinition] = None,
    ) -> None:
        """Internal method to register a node."""
        self._nodes[type_key] = node_class
        self._definitions[type_key] = definition or node_class.get_definition()
        self.logger.debug("Registered node type", type_key=type_key, node_class=node_class.__name__)

    def register_class(self, node_class: Type[BaseNode]) -> None:
        """Register a node class under the kind of its own definition."""
        self._register_node(node_class.get_definition().type, node_class)

    def register_definition(self, node_class: Type[BaseNode], definition: NodeDefinition) -> None:
        """Register a table-driven node kind served by a shared executor class."""
        self._register_node(definition.type, node_class, definition)

    def register(self, type_key: Optional[str] = None) -> Callable:
        """Decorator to register a node type."""
        def decorator(node_class: Type[BaseNode]) -> Type[BaseNode]:
            self._register_node(type_key or node_class.get_definition().type, node_class)
            return node_class
        return decorator

    def has_node(self, type_key: str) -> bool:
        """Check if a node type is registered."""
        return type_key in self._nodes

    def get_node_class(self, type_key: str) -> Type[BaseNode]:
        """Get node class by type key; unknown kinds are configuration errors."""
        node_class = self._nodes.get(type_key)
        if node_class is None:
            raise ConfigurationError(f"Unknown node type: {type_key}", field="type")
        return node_class

    def get_node_definition(self, type_key: str) -> Optional[NodeDefinition]:
        """Get node definition by type key."""
        return self._definitions.get(type_key)

    def get_nodes_by_category(self, category: NodeCategory) -> List[NodeDefinition]:
        return [d for d in self._definitions.values() if d.category == category]

    def list_definitions(self) -> List[NodeDefinition]:
        return list(self._definitions.values())

    def kinds(self) -> List[str]:
        return list(self._nodes)

    def create_node(self, context: NodeExecutionContext) -> BaseNode:
        """Create a node instance from context."""
        node_class = self.get_node_class(context.node_type)
        node = node_class(context, self._definitions[context.node_type])
        self.logger.debug("Created node instance", type_key=context.node_type, node_id=context.node_id)
        return node


def build_default_registry() -> NodeRegistry:
    """Registry with every built-in node kind."""
    from .actions import HTTPRequestNode, OperationActionNode
    from .actions.catalog import catalog_action_definitions
    from .control import CONTROL_NODES
    from .implementations import WORKFLOW_NODES
    from .triggers import ScheduleTriggerNode, catalog_trigger_definitions

    registry = NodeRegistry()
    for definition in catalog_trigger_definitions():
        registry.register_definition(TriggerNode, definition)
    registry.register_class(ScheduleTriggerNode)

    for definition in catalog_action_definitions():
        registry.register_definition(OperationActionNode, definition)
    registry.register_class(HTTPRequestNode)

    for node_class in CONTROL_NODES + WORKFLOW_NODES:
        registry.register_class(node_class)

    logger.info("Node registry ready", node_types=len(registry.kinds()))
    return registry
