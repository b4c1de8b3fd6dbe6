"""
NodeDispatcher - runs a single node by kind.

The dispatcher is handed a node and its already-resolved inputs, emits the
node's ``started`` event, does the work, and emits exactly one terminal
event. Failures are returned as a ``NodeOutcome``; the executor decides
whether to halt.

Per kind:
    Input           provided input under config.name, else config.defaultValue
    Output          its resolved inputs (unwrapped when there is a single one)
    Condition       restricted boolean expression over the resolved inputs
    Skill           capability call through the ResilientInvoker
    GenerativeStep  like Skill, with prompt/model/temperature from config
"""

import asyncio
import copy
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from skillflow.errors import (
    CapabilityError,
    ErrorKind,
    ExecutionCancelledError,
    InternalError,
    SkillflowError,
)
from skillflow.graph.expression import evaluate_condition
from skillflow.graph.workflow import EventPhase, ExecutionEvent, NodeKind, WorkflowNode
from skillflow.observability import get_trace_context, set_trace_context
from skillflow.runtime.cancellation import CancellationToken
from skillflow.runtime.capability import CapabilityProvider, CapabilityResponse
from skillflow.runtime.resilience import ResilientInvoker
from skillflow.runtime.telemetry import TelemetrySink

logger = logging.getLogger(__name__)

# Config keys forwarded to generative capabilities unless an input supplies them
GENERATIVE_CONFIG_KEYS = ("prompt", "model", "temperature", "max_tokens", "system")


@dataclass
class RunContext:
    """Per-run state shared between the executor and the dispatcher."""

    workflow_id: str
    execution_id: str
    provided_inputs: dict[str, Any] = field(default_factory=dict)
    events: list[ExecutionEvent] = field(default_factory=list)
    cancel_token: CancellationToken | None = None

    def emit(self, event: ExecutionEvent) -> None:
        self.events.append(event)


@dataclass
class NodeOutcome:
    """Result of running one node."""

    node_id: str
    success: bool
    output: Any = None
    error: SkillflowError | None = None
    attempts: int = 0
    tokens: int = 0
    duration_ms: int = 0

    @property
    def error_kind(self) -> ErrorKind | None:
        return self.error.kind if self.error else None


class NodeDispatcher:
    """Executes nodes, recording their events in the run's trace."""

    def __init__(
        self,
        provider: CapabilityProvider,
        invoker: ResilientInvoker,
        telemetry: TelemetrySink | None = None,
    ):
        self.provider = provider
        self.invoker = invoker
        self.telemetry = telemetry

    async def execute(
        self,
        node: WorkflowNode,
        resolved_inputs: dict[str, Any],
        run: RunContext,
    ) -> NodeOutcome:
        previous_node = get_trace_context().get("node_id")
        set_trace_context(node_id=node.id)
        started = time.monotonic()
        snapshot = copy.deepcopy(resolved_inputs)
        run.emit(ExecutionEvent(node_id=node.id, phase=EventPhase.STARTED, input=snapshot))
        logger.info(f"▶ Node {node.id} ({node.kind})")

        try:
            outcome = await self._dispatch(node, resolved_inputs, run)
        except asyncio.CancelledError:
            outcome = NodeOutcome(node.id, False, error=ExecutionCancelledError())
            self._finish(node, outcome, snapshot, run, started)
            raise
        except SkillflowError as e:
            outcome = NodeOutcome(node.id, False, error=e)
        except Exception as e:
            logger.exception(f"Unexpected error in node {node.id}")
            outcome = NodeOutcome(
                node.id, False, error=InternalError(f"{type(e).__name__}: {e}")
            )
        finally:
            set_trace_context(node_id=previous_node)

        self._finish(node, outcome, snapshot, run, started)
        return outcome

    def _finish(
        self,
        node: WorkflowNode,
        outcome: NodeOutcome,
        snapshot: dict[str, Any],
        run: RunContext,
        started: float,
    ) -> None:
        outcome.duration_ms = int((time.monotonic() - started) * 1000)
        capability_node = node.node_kind is not None and node.node_kind.invokes_capability

        if outcome.success:
            run.emit(
                ExecutionEvent(
                    node_id=node.id,
                    phase=EventPhase.COMPLETED,
                    input=snapshot,
                    output=outcome.output,
                    attempts=outcome.attempts if capability_node else None,
                    duration_ms=outcome.duration_ms,
                )
            )
            logger.info(f"  ✓ Node {node.id} completed in {outcome.duration_ms}ms")
        else:
            run.emit(
                ExecutionEvent(
                    node_id=node.id,
                    phase=EventPhase.FAILED,
                    input=snapshot,
                    error=outcome.error.message if outcome.error else "Unknown error",
                    error_kind=outcome.error_kind,
                    attempts=outcome.attempts if capability_node else None,
                    duration_ms=outcome.duration_ms,
                )
            )
            logger.error(
                f"  ✗ Node {node.id} failed: {outcome.error.message if outcome.error else ''}"
            )

        if self.telemetry is not None:
            self.telemetry.track_node_execution(
                workflow_id=run.workflow_id,
                node_id=node.id,
                kind=str(node.node_kind or node.kind),
                success=outcome.success,
                duration_ms=outcome.duration_ms,
                attempts=outcome.attempts,
                capability=node.capability,
                tokens=outcome.tokens,
                error_kind=outcome.error_kind,
            )

    async def _dispatch(
        self, node: WorkflowNode, inputs: dict[str, Any], run: RunContext
    ) -> NodeOutcome:
        match node.node_kind:
            case NodeKind.INPUT:
                return NodeOutcome(node.id, True, output=self._run_input(node, run))
            case NodeKind.OUTPUT:
                return NodeOutcome(node.id, True, output=self._run_output(inputs))
            case NodeKind.CONDITION:
                return NodeOutcome(node.id, True, output=self._run_condition(node, inputs))
            case NodeKind.SKILL | NodeKind.GENERATIVE_STEP:
                return await self._run_capability(node, inputs, run)
            case _:
                raise InternalError(f"Node '{node.id}' has unknown kind '{node.kind}'")

    def _run_input(self, node: WorkflowNode, run: RunContext) -> Any:
        value = run.provided_inputs.get(node.name)
        if value is not None:
            return value
        settings = node.settings
        return settings.get("defaultValue", settings.get("default_value"))

    def _run_output(self, inputs: dict[str, Any]) -> Any:
        if set(inputs) == {"input"}:
            return inputs["input"]
        return dict(inputs)

    def _run_condition(self, node: WorkflowNode, inputs: dict[str, Any]) -> bool:
        variables = dict(inputs)
        # A single upstream dict exposes its keys directly: "score > 5"
        upstream = inputs.get("input")
        if isinstance(upstream, dict):
            for key, value in upstream.items():
                variables.setdefault(key, value)
        return evaluate_condition(node.settings.get("condition", ""), variables)

    def build_payload(self, node: WorkflowNode, inputs: dict[str, Any]) -> dict[str, Any]:
        """Resolved inputs over node-local defaults from ``config.inputs``."""
        defaults = node.settings.get("inputs")
        payload = dict(defaults) if isinstance(defaults, dict) else {}
        payload.update(inputs)
        if node.node_kind == NodeKind.GENERATIVE_STEP:
            for key in GENERATIVE_CONFIG_KEYS:
                if key in node.settings and key not in payload:
                    payload[key] = node.settings[key]
        return payload

    async def _run_capability(
        self, node: WorkflowNode, inputs: dict[str, Any], run: RunContext
    ) -> NodeOutcome:
        ref = node.capability
        if ref is None:
            raise InternalError(f"Node '{node.id}' has no capability reference")
        payload = self.build_payload(node, inputs)

        async def call() -> CapabilityResponse:
            response = await self.provider.invoke(ref, payload)
            if not response.success:
                raise CapabilityError(
                    response.error or f"Capability '{ref}' failed",
                    retryable=response.retryable,
                    context={"capability": ref},
                )
            return response

        result = await self.invoker.invoke(call, key=ref, cancel_token=run.cancel_token)
        if not result.success:
            return NodeOutcome(node.id, False, error=result.error, attempts=result.attempts)

        response = result.value
        tokens = response.tokens_used.total if response.tokens_used else 0
        output = response.output

        output_key = node.settings.get("output_key")
        if output_key:
            if not isinstance(output, dict) or output_key not in output:
                error = CapabilityError(
                    f"Capability '{ref}' output has no key '{output_key}'",
                    context={"capability": ref},
                )
                return NodeOutcome(
                    node.id, False, error=error, attempts=result.attempts, tokens=tokens
                )
            output = output[output_key]

        return NodeOutcome(
            node.id, True, output=output, attempts=result.attempts, tokens=tokens
        )
