"""Nodes that start nested workflow runs."""

from .bundle import BUNDLE_WORKFLOW, WORKFLOW_NODES, BundleWorkflowNode
from .subworkflow import EXECUTE_WORKFLOW, SubWorkflowNode

__all__ = [
    "BUNDLE_WORKFLOW",
    "EXECUTE_WORKFLOW",
    "WORKFLOW_NODES",
    "BundleWorkflowNode",
    "SubWorkflowNode",
]
