"""
Workflow model - the graph a user submits for execution.

A workflow is a flat list of nodes. Each node owns its outgoing connections,
so the graph's edges are ``(node.id -> connection.target)`` for every
connection on every node:

    {"id": "w1", "name": "Review", "nodes": [
        {"id": "in", "kind": "Input", "config": {"name": "code"},
         "connections": [{"target": "review"}]},
        {"id": "review", "kind": "Skill", "config": {"capability": "code-reviewer"},
         "connections": [{"target": "out"}]},
        {"id": "out", "kind": "Output", "config": {"name": "result"}}
    ]}

The models here are deliberately lenient (``kind`` is a free string, ``config``
may be anything) so that ``GraphValidator`` can collect every structural
problem in one pass instead of pydantic stopping at the first one.
"""

import json
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import AliasChoices, BaseModel, Field

from skillflow.errors import ErrorKind


class NodeKind(StrEnum):
    """The closed set of node kinds the dispatcher knows how to run."""

    INPUT = "Input"
    OUTPUT = "Output"
    CONDITION = "Condition"
    SKILL = "Skill"
    GENERATIVE_STEP = "GenerativeStep"

    @classmethod
    def parse(cls, value: Any) -> "NodeKind | None":
        """Resolve a kind tag leniently ("skill", "generative_step", "GenerativeStep")."""
        if isinstance(value, NodeKind):
            return value
        if not isinstance(value, str):
            return None
        key = value.replace("_", "").replace("-", "").lower()
        for kind in cls:
            if kind.value.lower() == key:
                return kind
        return None

    @property
    def invokes_capability(self) -> bool:
        return self in (NodeKind.SKILL, NodeKind.GENERATIVE_STEP)


class Connection(BaseModel):
    """A directed edge from the owning node to ``target``."""

    target: str = Field(default="", description="Target node ID")
    source: str | None = Field(
        default=None,
        description="Source node ID; defaults to the node that owns the connection",
    )
    source_handle: str | None = Field(
        default=None,
        validation_alias=AliasChoices("source_handle", "sourceHandle"),
        description="Key to pick out of the source node's output",
    )
    target_handle: str | None = Field(
        default=None,
        validation_alias=AliasChoices("target_handle", "targetHandle"),
        description="Input name the value is delivered under on the target node",
    )

    model_config = {"extra": "allow", "populate_by_name": True}


class WorkflowNode(BaseModel):
    """A single step in a workflow."""

    id: str = ""
    kind: str = Field(default="", validation_alias=AliasChoices("kind", "type"))
    config: Any = Field(default_factory=dict)
    connections: list[Connection] = Field(
        default_factory=list,
        validation_alias=AliasChoices("connections", "outgoing_connections", "outgoingConnections"),
    )
    skill_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("skill_id", "skillId"),
        description="Legacy capability reference, equivalent to config.capability",
    )

    model_config = {"extra": "allow", "populate_by_name": True}

    @property
    def node_kind(self) -> NodeKind | None:
        return NodeKind.parse(self.kind)

    @property
    def settings(self) -> dict[str, Any]:
        """``config`` as a dict (empty if the node was submitted with a malformed config)."""
        return self.config if isinstance(self.config, dict) else {}

    @property
    def capability(self) -> str | None:
        ref = self.settings.get("capability") or self.skill_id
        return ref if isinstance(ref, str) and ref.strip() else None

    @property
    def name(self) -> str:
        """Configured name of an Input/Output node."""
        default = "output" if self.node_kind == NodeKind.OUTPUT else "input"
        name = self.settings.get("name")
        return name if isinstance(name, str) and name else default


class Workflow(BaseModel):
    """A user-authored graph of nodes."""

    id: str = ""
    name: str = ""
    description: str = ""
    nodes: list[WorkflowNode] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    def get_node(self, node_id: str) -> WorkflowNode | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    @property
    def node_ids(self) -> list[str]:
        return [node.id for node in self.nodes]

    def nodes_of_kind(self, kind: NodeKind) -> list[WorkflowNode]:
        return [node for node in self.nodes if node.node_kind == kind]

    def edges(self) -> list[tuple[str, Connection]]:
        """All (source_id, connection) pairs in declaration order."""
        return [(node.id, conn) for node in self.nodes for conn in node.connections]

    def incoming(self, node_id: str) -> list[tuple[str, Connection]]:
        """Connections whose target is ``node_id``, in declaration order."""
        return [(source, conn) for source, conn in self.edges() if conn.target == node_id]

    @classmethod
    def from_json(cls, data: str | dict) -> "Workflow":
        """Load a workflow from a JSON string or an already-parsed dict."""
        if isinstance(data, str):
            data = json.loads(data)
        return cls.model_validate(data)


class EventPhase(StrEnum):
    """Lifecycle phase recorded for a node."""

    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (EventPhase.COMPLETED, EventPhase.FAILED)


class ExecutionEvent(BaseModel):
    """One entry of the append-only execution trace."""

    node_id: str
    phase: EventPhase
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    input: Any = None
    output: Any = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    attempts: int | None = Field(
        default=None, description="Capability attempts made, on terminal events of capability nodes"
    )
    duration_ms: int | None = None


class ExecutionState(StrEnum):
    """States the executor moves through for one run."""

    IDLE = "idle"
    VALIDATING = "validating"
    PLANNING = "planning"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionState.SUCCEEDED, ExecutionState.FAILED)


class ExecutionResult(BaseModel):
    """Result of executing a workflow. Always returned, never raised."""

    success: bool
    output: dict[str, Any] = Field(default_factory=dict)
    events: list[ExecutionEvent] = Field(default_factory=list)
    error: str | None = None
    error_kind: ErrorKind | None = None

    execution_id: str = ""
    workflow_id: str = ""
    state: ExecutionState = ExecutionState.IDLE
    node_outputs: dict[str, Any] = Field(
        default_factory=dict, description="Outputs of every node that completed, for debugging"
    )
    validation_errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    duration_ms: int = 0
    total_tokens: int = 0

    def phases(self) -> list[tuple[str, str]]:
        """``(node_id, phase)`` pairs of the trace, without timestamps."""
        return [(event.node_id, event.phase.value) for event in self.events]

    def started_nodes(self) -> list[str]:
        return [e.node_id for e in self.events if e.phase == EventPhase.STARTED]

    def to_json(self, indent: int | None = 2) -> str:
        return self.model_dump_json(indent=indent)
