"""Workflow graph: model, validation, planning and execution."""

from skillflow.graph.dispatcher import NodeDispatcher, NodeOutcome, RunContext
from skillflow.graph.executor import GraphExecutor, resolve_inputs
from skillflow.graph.expression import ConditionExpression, ExpressionError, evaluate_condition
from skillflow.graph.planner import ExecutionPlanner
from skillflow.graph.validator import GraphValidator, ValidationReport, find_cycles
from skillflow.graph.workflow import (
    Connection,
    EventPhase,
    ExecutionEvent,
    ExecutionResult,
    ExecutionState,
    NodeKind,
    Workflow,
    WorkflowNode,
)

__all__ = [
    # Model
    "Workflow",
    "WorkflowNode",
    "Connection",
    "NodeKind",
    "EventPhase",
    "ExecutionEvent",
    "ExecutionResult",
    "ExecutionState",
    # Validation and planning
    "GraphValidator",
    "ValidationReport",
    "find_cycles",
    "ExecutionPlanner",
    "ConditionExpression",
    "ExpressionError",
    "evaluate_condition",
    # Execution
    "GraphExecutor",
    "resolve_inputs",
    "NodeDispatcher",
    "NodeOutcome",
    "RunContext",
]
