"""
skillflow - validate and execute user-authored skill workflows.

A workflow is a DAG of Input, Output, Condition, Skill and GenerativeStep
nodes. The engine validates it, orders it, and runs every node, delegating
Skill/GenerativeStep nodes to a capability provider through a resilient
invoker (timeouts, retries, circuit breakers). The orchestrator runs the
same kind of dependency graph for tasks handed to specialized agents.
"""

from skillflow.config import EngineConfig
from skillflow.errors import (
    CapabilityError,
    CircuitOpenError,
    DependencyUnsatisfiedError,
    ErrorKind,
    ExecutionCancelledError,
    InternalError,
    InvocationTimeoutError,
    SkillflowError,
    WorkflowValidationError,
)
from skillflow.graph import (
    ExecutionEvent,
    ExecutionPlanner,
    ExecutionResult,
    GraphExecutor,
    GraphValidator,
    NodeKind,
    Workflow,
    WorkflowNode,
)
from skillflow.orchestrator import AgentSpecialization, AgentTask, OrchestratorSession
from skillflow.runtime import (
    CallableCapabilityProvider,
    CancellationToken,
    CapabilityProvider,
    CapabilityResponse,
    HttpCapabilityProvider,
    ResilientInvoker,
    RetryPolicy,
    TelemetrySink,
)

__version__ = "0.1.0"

__all__ = [
    "EngineConfig",
    "ErrorKind",
    "SkillflowError",
    "WorkflowValidationError",
    "DependencyUnsatisfiedError",
    "InvocationTimeoutError",
    "CapabilityError",
    "CircuitOpenError",
    "ExecutionCancelledError",
    "InternalError",
    "Workflow",
    "WorkflowNode",
    "NodeKind",
    "ExecutionEvent",
    "ExecutionResult",
    "GraphValidator",
    "ExecutionPlanner",
    "GraphExecutor",
    "AgentSpecialization",
    "AgentTask",
    "OrchestratorSession",
    "CapabilityProvider",
    "CapabilityResponse",
    "CallableCapabilityProvider",
    "HttpCapabilityProvider",
    "CancellationToken",
    "RetryPolicy",
    "ResilientInvoker",
    "TelemetrySink",
]
