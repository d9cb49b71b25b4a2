"""Node executors and the registry keyed by node kind."""

from .base import (
    ActionNode,
    BaseNode,
    ControlNode,
    NodeCategory,
    NodeDefinition,
    NodeOutcome,
    NodeParameter,
    ParameterType,
    TriggerNode,
)
from .registry import NodeRegistry, build_default_registry

__all__ = [
    "ActionNode",
    "BaseNode",
    "ControlNode",
    "NodeCategory",
    "NodeDefinition",
    "NodeOutcome",
    "NodeParameter",
    "NodeRegistry",
    "ParameterType",
    "TriggerNode",
    "build_default_registry",
]
