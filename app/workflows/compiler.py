"""Static validation and adjacency compilation of workflow definitions."""

from dataclasses import dataclass, field
from typing import Dict, List, Set

from ..models.workflow import (
    EdgeCondition,
    ValidationReport,
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowNodeType,
)
from .errors import ExpressionError, WorkflowValidationError
from .expressions import parse_expression


@dataclass
class CompiledWorkflow:
    """Adjacency view of a definition consumed by the engine."""

    definition: WorkflowDefinition
    start_node_id: str
    outgoing: Dict[str, List[WorkflowEdge]] = field(default_factory=dict)
    incoming_count: Dict[str, int] = field(default_factory=dict)

    def edges_from(self, node_id: str) -> List[WorkflowEdge]:
        return self.outgoing.get(node_id, [])


def validate_workflow_definition(definition: WorkflowDefinition) -> ValidationReport:
    errors: List[str] = []
    warnings: List[str] = []

    if not definition.nodes:
        errors.append("Workflow must include at least one node.")

    node_ids: Set[str] = set()
    for node in definition.nodes:
        if not node.id.strip():
            errors.append("Every node must have a non-empty id.")
            continue
        if node.id in node_ids:
            errors.append(f"Duplicate node id: {node.id}")
        node_ids.add(node.id)

    start_nodes = [n for n in definition.nodes if n.type == WorkflowNodeType.START]
    end_nodes = [n for n in definition.nodes if n.type == WorkflowNodeType.END]

    if definition.nodes and not start_nodes:
        warnings.append("Workflow has no start node; the first node will be used.")
    if len(start_nodes) > 1:
        warnings.append("Multiple start nodes detected; the first one will be used.")
    if definition.nodes and not end_nodes:
        warnings.append("Workflow has no end node; runs will end when no matching edge is found.")

    for index, edge in enumerate(definition.edges):
        label = edge.id or f"#{index}"
        if edge.from_node not in node_ids:
            errors.append(f"Edge {label} references unknown source node: {edge.from_node}")
        if edge.to_node not in node_ids:
            errors.append(f"Edge {label} references unknown target node: {edge.to_node}")
        if edge.condition == EdgeCondition.CUSTOM:
            if not (edge.expression or "").strip():
                errors.append(f"Edge {label} uses custom condition without an expression.")
            else:
                try:
                    parse_expression(edge.expression)
                except ExpressionError as exc:
                    errors.append(f"Edge {label} has an invalid expression: {exc}")

    return ValidationReport(valid=not errors, errors=errors, warnings=warnings)


def compile_workflow_definition(definition: WorkflowDefinition) -> CompiledWorkflow:
    """Validate a definition and build its outgoing-edge map.

    Raises:
        WorkflowValidationError: if the definition is not valid
    """
    report = validate_workflow_definition(definition)
    if not report.valid:
        raise WorkflowValidationError(report.errors)

    start_node = next(
        (n for n in definition.nodes if n.type == WorkflowNodeType.START),
        definition.nodes[0],
    )

    outgoing: Dict[str, List[WorkflowEdge]] = {node.id: [] for node in definition.nodes}
    incoming_count: Dict[str, int] = {node.id: 0 for node in definition.nodes}

    for edge in definition.edges:
        outgoing[edge.from_node].append(edge)
        incoming_count[edge.to_node] += 1

    return CompiledWorkflow(
        definition=definition,
        start_node_id=start_node.id,
        outgoing=outgoing,
        incoming_count=incoming_count,
    )
