"""Action nodes."""

from .catalog import ACTION_CATALOG, ActionSpec, OperationActionNode, action_definition
from .http import HTTPRequestNode

__all__ = [
    "ACTION_CATALOG",
    "ActionSpec",
    "HTTPRequestNode",
    "OperationActionNode",
    "action_definition",
]
