"""
Graph Executor - runs a workflow from its Input nodes to its Output nodes.

The executor:
1. Validates the workflow (no node runs if validation fails)
2. Plans a dependency-respecting order (or dependency waves when parallel)
3. Resolves each node's inputs from the outputs of its upstream nodes
4. Hands the node to the NodeDispatcher
5. Halts on the first failed node
6. Returns an ExecutionResult with the output and the full event trace

``execute`` never raises for a failed run. Validation errors, node failures,
cancellation and unexpected exceptions all come back as
``ExecutionResult(success=False, ...)`` with the partial trace attached.
"""

import asyncio
import logging
import time
import uuid
from typing import Any

from skillflow.config import EngineConfig
from skillflow.errors import (
    ExecutionCancelledError,
    InternalError,
    SkillflowError,
    WorkflowValidationError,
)
from skillflow.graph.dispatcher import NodeDispatcher, NodeOutcome, RunContext
from skillflow.graph.planner import ExecutionPlanner
from skillflow.graph.validator import GraphValidator
from skillflow.graph.workflow import (
    ExecutionResult,
    ExecutionState,
    NodeKind,
    Workflow,
    WorkflowNode,
)
from skillflow.observability import set_trace_context
from skillflow.runtime.cancellation import CancellationToken
from skillflow.runtime.capability import CapabilityProvider
from skillflow.runtime.resilience import CircuitBreakerConfig, ResilientInvoker, RetryPolicy
from skillflow.runtime.telemetry import TelemetrySink

logger = logging.getLogger(__name__)


def resolve_inputs(
    workflow: Workflow, node: WorkflowNode, node_outputs: dict[str, Any]
) -> dict[str, Any]:
    """
    Gather a node's inputs from the outputs of the nodes connected into it.

    Each connection delivers under its ``target_handle``. Without one, a lone
    connection delivers under ``"input"`` and several deliver under their
    source node ids. ``source_handle`` picks a key out of a dict output.

    Raises:
        InternalError: an upstream node has not produced output yet
    """
    incoming = workflow.incoming(node.id)
    unhandled = sum(1 for _, conn in incoming if not conn.target_handle)

    resolved: dict[str, Any] = {}
    for source, conn in incoming:
        if source not in node_outputs:
            raise InternalError(
                f"Node '{node.id}' was scheduled before its dependency '{source}' produced output",
                context={"node_id": node.id, "dependency": source},
            )
        value = node_outputs[source]
        if conn.source_handle:
            if isinstance(value, dict) and conn.source_handle in value:
                value = value[conn.source_handle]
            else:
                logger.warning(
                    f"Output of '{source}' has no key '{conn.source_handle}', "
                    f"delivering None to '{node.id}'"
                )
                value = None

        if conn.target_handle:
            key = conn.target_handle
        elif unhandled == 1:
            key = "input"
        else:
            key = source
        resolved[key] = value
    return resolved


class GraphExecutor:
    """
    Executes workflows against a capability provider.

    Example:
        executor = GraphExecutor(
            provider=CallableCapabilityProvider({"code-reviewer": review}),
            telemetry=sink,
        )
        result = await executor.execute(workflow, inputs={"code": "def f(): ..."})
    """

    def __init__(
        self,
        provider: CapabilityProvider,
        policy: RetryPolicy | None = None,
        invoker: ResilientInvoker | None = None,
        telemetry: TelemetrySink | None = None,
        config: EngineConfig | None = None,
        parallel: bool = False,
        validator: GraphValidator | None = None,
        planner: ExecutionPlanner | None = None,
    ):
        """
        Args:
            provider: Answers Skill/GenerativeStep invocations
            policy: Retry/timeout policy; defaults from ``config``
            invoker: Pre-built invoker (shares breaker state between executors)
            telemetry: Optional sink for workflow/node analytics
            config: Engine configuration; ``EngineConfig()`` defaults if omitted
            parallel: Run independent nodes of each dependency wave concurrently
        """
        config = config or EngineConfig()
        self.provider = provider
        self.invoker = invoker or ResilientInvoker(
            policy=policy or RetryPolicy.from_config(config),
            breaker_config=CircuitBreakerConfig.from_config(config),
        )
        self.telemetry = telemetry
        self.parallel = parallel
        self.validator = validator or GraphValidator()
        self.planner = planner or ExecutionPlanner()
        self.dispatcher = NodeDispatcher(provider, self.invoker, telemetry)
        self.logger = logger

    async def execute(
        self,
        workflow: Workflow | dict[str, Any],
        inputs: dict[str, Any] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ExecutionResult:
        """
        Execute a workflow.

        Args:
            workflow: Workflow model or its JSON dict
            inputs: Values for Input nodes, keyed by their configured name
            cancel_token: Checked before every node and during capability calls

        Returns:
            ExecutionResult, successful or not
        """
        execution_id = uuid.uuid4().hex
        if isinstance(workflow, Workflow):
            workflow_id = workflow.id
        elif isinstance(workflow, dict):
            workflow_id = str(workflow.get("id", ""))
        else:
            workflow_id = ""
        set_trace_context(
            trace_id=execution_id, execution_id=execution_id, workflow_id=workflow_id
        )
        started = time.monotonic()
        result = ExecutionResult(
            success=False,
            execution_id=execution_id,
            workflow_id=workflow_id,
            state=ExecutionState.IDLE,
        )

        try:
            await self._run(workflow, inputs or {}, cancel_token, result)
        except asyncio.CancelledError:
            self.logger.info("⏸ Execution cancelled by task cancellation")
            self._fail(result, ExecutionCancelledError())
        except Exception as e:
            self.logger.exception("Unexpected executor failure")
            self._fail(result, InternalError(f"{type(e).__name__}: {e}"))

        result.duration_ms = int((time.monotonic() - started) * 1000)
        if self.telemetry is not None:
            self.telemetry.track_workflow_execution(
                workflow_id=workflow_id,
                execution_id=execution_id,
                success=result.success,
                duration_ms=result.duration_ms,
                node_count=len(result.node_outputs),
                total_tokens=result.total_tokens,
                error_kind=result.error_kind,
            )
        return result

    def _transition(self, result: ExecutionResult, state: ExecutionState) -> None:
        self.logger.debug(f"Execution {result.execution_id[-8:]}: {result.state} -> {state}")
        result.state = state

    def _fail(
        self,
        result: ExecutionResult,
        error: SkillflowError,
        message: str = "",
        graph: Workflow | None = None,
    ) -> None:
        if graph is not None:
            # Output nodes that completed before the failure
            result.output = self._collect_output(graph, result.node_outputs)
        result.success = False
        result.error = message or error.message
        result.error_kind = error.kind
        self._transition(result, ExecutionState.FAILED)

    async def _run(
        self,
        workflow: Workflow | dict[str, Any],
        inputs: dict[str, Any],
        cancel_token: CancellationToken | None,
        result: ExecutionResult,
    ) -> None:
        self._transition(result, ExecutionState.VALIDATING)
        report = self.validator.validate(workflow)
        result.warnings = list(report.warnings)
        if not report.valid or report.workflow is None:
            result.validation_errors = list(report.errors)
            error = WorkflowValidationError(report.errors)
            self.logger.error(f"❌ {error.message}")
            self._fail(result, error)
            return
        graph = report.workflow
        if not result.workflow_id:
            result.workflow_id = graph.id

        self._transition(result, ExecutionState.PLANNING)
        try:
            if self.parallel:
                schedule = self.planner.waves(graph)
            else:
                schedule = [[node] for node in self.planner.order(graph)]
        except SkillflowError as e:
            self._fail(result, e)
            return

        self._transition(result, ExecutionState.RUNNING)
        self.logger.info(f"🚀 Starting workflow: {graph.name or graph.id}")
        run = RunContext(
            workflow_id=graph.id,
            execution_id=result.execution_id,
            provided_inputs=inputs,
            events=result.events,
            cancel_token=cancel_token,
        )

        for wave in schedule:
            if cancel_token is not None and cancel_token.cancelled:
                self.logger.info("⏸ Cancellation requested, stopping at node boundary")
                self._fail(result, ExecutionCancelledError(cancel_token.reason), graph=graph)
                return

            try:
                batch = [(node, resolve_inputs(graph, node, result.node_outputs)) for node in wave]
            except InternalError as e:
                self.logger.error(f"❌ {e.message}")
                self._fail(result, e, graph=graph)
                return

            if len(batch) == 1:
                node, node_inputs = batch[0]
                outcomes = [await self.dispatcher.execute(node, node_inputs, run)]
            else:
                outcomes = await asyncio.gather(
                    *(self.dispatcher.execute(node, inputs_, run) for node, inputs_ in batch)
                )

            failed: NodeOutcome | None = None
            for outcome in outcomes:
                result.total_tokens += outcome.tokens
                if outcome.success:
                    result.node_outputs[outcome.node_id] = outcome.output
                elif failed is None:
                    failed = outcome

            if failed is not None:
                error = failed.error or InternalError("Node failed without an error")
                self._fail(
                    result, error, f"Node {failed.node_id} failed: {error.message}", graph=graph
                )
                return

        result.output = self._collect_output(graph, result.node_outputs)
        result.success = True
        result.error = None
        result.error_kind = None
        self._transition(result, ExecutionState.SUCCEEDED)
        self.logger.info(
            f"✓ Workflow {graph.id} completed: {len(result.node_outputs)} node(s), "
            f"{result.total_tokens} tokens"
        )

    def _collect_output(self, graph: Workflow, node_outputs: dict[str, Any]) -> dict[str, Any]:
        """Outputs of the Output nodes that ran, keyed by their configured name."""
        return {
            node.name: node_outputs[node.id]
            for node in graph.nodes
            if node.node_kind == NodeKind.OUTPUT and node.id in node_outputs
        }
