"""Structural validation of workflows.

Every violation is collected so the caller sees the complete list in one
pass. Only a missing or malformed ``nodes`` array stops validation early,
since nothing else can be checked without it. Nodes and connections are
parsed one at a time, so a field with the wrong type is reported by path
and the rest of the graph is still checked.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from skillflow.graph.expression import ConditionExpression, ExpressionError
from skillflow.graph.workflow import Connection, NodeKind, Workflow, WorkflowNode

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

# Keys a node's outgoing connections may be submitted under
CONNECTION_KEYS = ("connections", "outgoing_connections", "outgoingConnections")


@dataclass
class ValidationReport:
    """Outcome of validating a workflow."""

    valid: bool
    errors: list[str]
    warnings: list[str] = field(default_factory=list)
    workflow: Workflow | None = None

    @property
    def error(self) -> str:
        """Get combined error message."""
        return "; ".join(self.errors) if self.errors else ""


def format_pydantic_errors(e: ValidationError, prefix: str = "") -> list[str]:
    errors = []
    for error in e.errors():
        parts = [prefix] if prefix else []
        parts.extend(str(loc) for loc in error["loc"])
        field_path = ".".join(parts)
        errors.append(f"{field_path}: {error['msg']} (type: {error['type']})")
    return errors


def validate_leniently(
    model: type[M], data: dict[str, Any], prefix: str, errors: list[str]
) -> M | None:
    """
    Validate ``data`` as ``model``, dropping top-level fields that fail.

    Each failure is appended to ``errors`` and the offending field falls back
    to its default. Returns None only when nothing valid is left.
    """
    while True:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            errors.extend(format_pydantic_errors(e, prefix))
            bad = {err["loc"][0] for err in e.errors() if err["loc"]}
            pruned = {key: value for key, value in data.items() if key not in bad}
            if len(pruned) == len(data):
                return None
            data = pruned


def find_cycles(adjacency: dict[str, list[str]]) -> list[list[str]]:
    """
    Find directed cycles with an iterative three-colour depth-first search.

    Each cycle is returned as the DFS path that closed it, with the first id
    repeated at the end (``["a", "b", "a"]``). Neighbours that are not keys of
    ``adjacency`` are ignored.
    """
    unvisited, in_progress, done = 0, 1, 2
    colour = dict.fromkeys(adjacency, unvisited)
    cycles: list[list[str]] = []

    for root in adjacency:
        if colour[root] != unvisited:
            continue
        colour[root] = in_progress
        path = [root]
        stack = [iter(adjacency[root])]
        while stack:
            nxt = next(stack[-1], None)
            if nxt is None:
                stack.pop()
                colour[path.pop()] = done
                continue
            state = colour.get(nxt)
            if state == in_progress:
                cycles.append(path[path.index(nxt) :] + [nxt])
            elif state == unvisited:
                colour[nxt] = in_progress
                path.append(nxt)
                stack.append(iter(adjacency[nxt]))
    return cycles


class GraphValidator:
    """Checks that a workflow is a well-formed DAG the executor can run."""

    def validate(self, graph: Workflow | dict[str, Any]) -> ValidationReport:
        errors: list[str] = []
        warnings: list[str] = []

        if isinstance(graph, Workflow):
            workflow = graph
        elif not isinstance(graph, dict) or not isinstance(graph.get("nodes"), list):
            return ValidationReport(valid=False, errors=["Workflow must define a 'nodes' list"])
        else:
            workflow = self._parse(graph, errors)

        self._check_required_kinds(workflow, errors)
        self._check_nodes(workflow, errors)
        self._check_connections(workflow, errors, warnings)
        self._check_cycles(workflow, errors)

        report = ValidationReport(
            valid=not errors, errors=errors, warnings=warnings, workflow=workflow
        )
        if errors:
            logger.debug(f"Workflow '{workflow.id}' failed validation: {report.error}")
        for warning in warnings:
            logger.warning(f"Workflow '{workflow.id}': {warning}")
        return report

    def _parse(self, graph: dict[str, Any], errors: list[str]) -> Workflow:
        header = {key: value for key, value in graph.items() if key != "nodes"}
        workflow = validate_leniently(Workflow, header, "", errors) or Workflow()
        for index, raw in enumerate(graph["nodes"]):
            prefix = f"nodes.{index}"
            if not isinstance(raw, dict):
                errors.append(f"{prefix}: node must be an object")
                continue
            data = dict(raw)
            for key in CONNECTION_KEYS:
                if isinstance(data.get(key), list):
                    data[key] = self._parse_connections(data[key], f"{prefix}.{key}", errors)
            node = validate_leniently(WorkflowNode, data, prefix, errors)
            if node is not None:
                workflow.nodes.append(node)
        return workflow

    def _parse_connections(
        self, raw_connections: list[Any], prefix: str, errors: list[str]
    ) -> list[Connection]:
        connections = []
        for index, raw in enumerate(raw_connections):
            try:
                connections.append(Connection.model_validate(raw))
            except ValidationError as e:
                errors.extend(format_pydantic_errors(e, f"{prefix}.{index}"))
        return connections

    def _check_required_kinds(self, workflow: Workflow, errors: list[str]) -> None:
        if not workflow.nodes_of_kind(NodeKind.INPUT):
            errors.append("Workflow must have at least one Input node")
        if not workflow.nodes_of_kind(NodeKind.OUTPUT):
            errors.append("Workflow must have at least one Output node")

    def _check_nodes(self, workflow: Workflow, errors: list[str]) -> None:
        seen: set[str] = set()
        for index, node in enumerate(workflow.nodes):
            if not node.id.strip():
                errors.append(f"Node at index {index} has no id")
                label = f"#{index}"
            else:
                label = node.id
                if node.id in seen:
                    errors.append(f"Duplicate node id: '{node.id}'")
                seen.add(node.id)

            kind = node.node_kind
            if kind is None:
                if node.kind:
                    errors.append(f"Node '{label}' has unknown kind '{node.kind}'")
                else:
                    errors.append(f"Node '{label}' has no kind")

            if not isinstance(node.config, dict):
                errors.append(f"Node '{label}' config must be an object")
                continue

            if kind is not None and kind.invokes_capability and node.capability is None:
                errors.append(f"Node '{label}' ({kind}) must have a capability reference")

            if kind == NodeKind.CONDITION:
                try:
                    ConditionExpression.parse(node.config.get("condition"))
                except ExpressionError as e:
                    errors.append(f"Node '{label}' has an invalid condition: {e}")

            if kind in (NodeKind.SKILL, NodeKind.GENERATIVE_STEP):
                defaults = node.config.get("inputs")
                if defaults is not None and not isinstance(defaults, dict):
                    errors.append(f"Node '{label}' config.inputs must be an object")

    def _check_connections(
        self, workflow: Workflow, errors: list[str], warnings: list[str]
    ) -> None:
        node_ids = set(workflow.node_ids)
        connected: set[str] = set()

        for source, conn in workflow.edges():
            if conn.source is not None and conn.source != source:
                errors.append(
                    f"Connection on node '{source}' declares a different source '{conn.source}'"
                )
            if not conn.target:
                errors.append(f"Connection on node '{source}' has no target")
                continue
            if conn.target not in node_ids:
                errors.append(
                    f"Connection from '{source}' references missing target '{conn.target}'"
                )
                continue
            target = workflow.get_node(conn.target)
            if target is not None and target.node_kind == NodeKind.INPUT:
                errors.append(f"Input node '{conn.target}' cannot have incoming connections")
            connected.add(source)
            connected.add(conn.target)

        for node in workflow.nodes:
            if node.node_kind in (NodeKind.INPUT, NodeKind.OUTPUT):
                continue
            if node.id and node.id not in connected:
                warnings.append(f"Node '{node.id}' is not connected to any other node")

    def _check_cycles(self, workflow: Workflow, errors: list[str]) -> None:
        adjacency: dict[str, list[str]] = {}
        for node in workflow.nodes:
            targets = adjacency.setdefault(node.id, [])
            targets.extend(conn.target for conn in node.connections)
        for cycle in find_cycles(adjacency):
            errors.append(f"Cycle detected: {' -> '.join(cycle)}")
