"""Workflow graph: validation and deterministic traversal order."""

from typing import Dict, Iterable, List, Optional

import networkx as nx
import structlog

from opsflow.workflows.schemas import WorkflowDefinition
from .errors import WorkflowValidationError

logger = structlog.get_logger()


class WorkflowGraph:
    """Directed graph of a workflow's nodes and connections.

    Ordering is topological with ties broken by declaration order, so two
    runs of the same workflow always visit nodes in the same sequence.
    """

    def __init__(self, workflow: WorkflowDefinition):
        self.workflow = workflow
        self._index: Dict[str, int] = {node.id: i for i, node in enumerate(workflow.nodes)}
        self.graph = nx.DiGraph()
        for node in workflow.nodes:
            self.graph.add_node(node.id, type=node.type, disabled=node.disabled)
        for conn in workflow.connections:
            if conn.source in self._index and conn.target in self._index:
                self.graph.add_edge(conn.source, conn.target)
        self._order: Optional[List[str]] = None

    def validate(self, known_kinds: Optional[Iterable[str]] = None) -> "WorkflowGraph":
        """Raise :class:`WorkflowValidationError` listing every structural problem."""
        errors: List[str] = []

        if not self.workflow.nodes:
            errors.append("Workflow has no nodes")
        if len(self._index) != len(self.workflow.nodes):
            errors.append("Node ids must be unique")

        if known_kinds is not None:
            kinds = set(known_kinds)
            for node in self.workflow.nodes:
                if node.type not in kinds:
                    errors.append(f"Node {node.id} has unknown type {node.type}")

        for conn in self.workflow.connections:
            for end in (conn.source, conn.target):
                if end not in self._index:
                    errors.append(f"Connection references unknown node {end}")

        if not nx.is_directed_acyclic_graph(self.graph):
            cycle = next(nx.simple_cycles(self.graph), [])
            errors.append(f"Workflow contains a cycle: {' -> '.join(cycle)}")
        elif self.workflow.nodes and not self.entry_nodes():
            errors.append("Workflow has no entry node")

        if errors:
            raise WorkflowValidationError(
                f"Workflow {self.workflow.id} is invalid: {errors[0]}",
                validation_errors=errors,
            )
        return self

    def entry_nodes(self, trigger_type: Optional[str] = None) -> List[str]:
        """Nodes without incoming edges, optionally narrowed to one trigger kind."""
        roots = [node.id for node in self.workflow.nodes if self.graph.in_degree(node.id) == 0]
        if trigger_type:
            matching = [node_id for node_id in roots if self.graph.nodes[node_id]["type"] == trigger_type]
            if matching:
                return matching
        return roots

    def execution_order(self) -> List[str]:
        if self._order is None:
            self._order = list(
                nx.lexicographical_topological_sort(self.graph, key=self._index.__getitem__)
            )
        return self._order

    def successors(self, node_id: str, output_port: Optional[str] = None) -> List[str]:
        """Targets reached from ``node_id``; ``output_port`` selects a branch."""
        targets: List[str] = []
        for conn in self.workflow.outgoing(node_id):
            if output_port is not None and conn.source_output != output_port:
                continue
            if conn.target not in targets:
                targets.append(conn.target)
        return targets
