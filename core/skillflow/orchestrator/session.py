"""
OrchestratorSession - drives a task graph of specialized agents to completion.

The driver loop:

1. Find every pending task whose dependencies have all completed
2. Take a deep-copied snapshot of the shared context
3. Run the eligible tasks concurrently (bounded by ``max_concurrency``),
   each seeing only its own copy of the snapshot
4. Merge each completed task's result into the shared context under its id
5. Repeat until a pass finds nothing eligible

Only the driver mutates task status and the shared context, and only between
passes. A failed task halts the session. Tasks still pending once the loop
converges mean a dependency on an unknown task or a cycle; this is reported
as ``DependencyUnsatisfiedError``. When every task completed, the lead agent
synthesizes the results into the session output.
"""

import asyncio
import copy
import json
import logging
import time
import uuid
from datetime import UTC, datetime
from typing import Any

from skillflow.config import EngineConfig
from skillflow.errors import (
    CapabilityError,
    DependencyUnsatisfiedError,
    ExecutionCancelledError,
    InternalError,
    SkillflowError,
    WorkflowValidationError,
)
from skillflow.graph.validator import find_cycles
from skillflow.observability import set_trace_context
from skillflow.orchestrator.agents import (
    DECOMPOSE_CAPABILITY,
    AGENT_PROFILES,
    SYNTHESIZE_CAPABILITY,
    AgentSpecialization,
    default_capabilities,
)
from skillflow.orchestrator.task import (
    AgentTask,
    CollaborationSession,
    SessionResult,
    SessionStatus,
    TaskStatus,
)
from skillflow.runtime.cancellation import CancellationToken
from skillflow.runtime.capability import CapabilityProvider, CapabilityResponse
from skillflow.runtime.resilience import (
    CircuitBreakerConfig,
    InvocationResult,
    ResilientInvoker,
    RetryPolicy,
)
from skillflow.runtime.telemetry import TelemetrySink

logger = logging.getLogger(__name__)


class OrchestratorSession:
    """
    Multi-agent analogue of GraphExecutor.

    Example:
        orchestrator = OrchestratorSession(provider, telemetry=sink)
        await orchestrator.decompose("Add OAuth login and tests")
        result = await orchestrator.run()
    """

    def __init__(
        self,
        provider: CapabilityProvider,
        session: CollaborationSession | None = None,
        policy: RetryPolicy | None = None,
        invoker: ResilientInvoker | None = None,
        telemetry: TelemetrySink | None = None,
        config: EngineConfig | None = None,
        capabilities: dict[AgentSpecialization, str] | None = None,
        max_concurrency: int = 4,
    ):
        config = config or EngineConfig()
        self.provider = provider
        self.session = session or CollaborationSession(id=f"session-{uuid.uuid4().hex[:12]}")
        self.invoker = invoker or ResilientInvoker(
            policy=policy or RetryPolicy.from_config(config),
            breaker_config=CircuitBreakerConfig.from_config(config),
        )
        self.telemetry = telemetry
        self.capabilities = {**default_capabilities(), **(capabilities or {})}
        self._semaphore = asyncio.Semaphore(max(1, max_concurrency))
        self._total_tokens = 0

    # ------------------------------------------------------------------
    # Task registration
    # ------------------------------------------------------------------

    def add_task(
        self,
        specialization: AgentSpecialization | str,
        input: dict[str, Any] | None = None,
        dependencies: list[str] | None = None,
        description: str = "",
        task_id: str | None = None,
    ) -> AgentTask:
        """Register a task. Only allowed before ``run()``."""
        spec = AgentSpecialization.parse(specialization)
        if spec is None:
            raise WorkflowValidationError([f"Invalid specialization: {specialization}"])
        task_id = task_id or f"task-{len(self.session.tasks) + 1}"
        if self.session.get_task(task_id) is not None:
            raise WorkflowValidationError([f"Duplicate task id: '{task_id}'"])
        task = AgentTask(
            id=task_id,
            specialization=spec,
            description=description,
            input=dict(input or {}),
            dependencies=list(dependencies or []),
        )
        self.session.tasks.append(task)
        return task

    async def decompose(self, request: str) -> list[AgentTask]:
        """
        Ask the lead agent to split ``request`` into subtasks and register them.

        The lead agent must answer ``{"subtasks": [{"specialization",
        "description", "input", "dependencies", "id"?}, ...]}`` (as a dict or
        a JSON string). Dependencies may name another subtask's ``id`` label,
        its index in the list, or an already registered task id.

        Raises:
            WorkflowValidationError: empty request or invalid subtasks
            CapabilityError: the lead agent failed or answered malformed JSON
        """
        if not isinstance(request, str) or not request.strip():
            raise WorkflowValidationError(["Valid request is required"])
        set_trace_context(session_id=self.session.id)
        self.session.shared_context.setdefault("request", request)

        logger.info(f"Decomposing request for session {self.session.id}: {request[:100]}")
        payload = {
            "request": request,
            "specializations": [s.value for s in AgentSpecialization],
            "context": copy.deepcopy(self.session.shared_context),
        }
        result = await self._invoke(DECOMPOSE_CAPABILITY, payload)
        if not result.success:
            error = result.error or InternalError("Decomposition failed")
            raise error
        subtasks = self._parse_subtasks(result.value.output)

        errors: list[str] = []
        specs: list[AgentSpecialization] = []
        for index, subtask in enumerate(subtasks):
            if not isinstance(subtask, dict):
                errors.append(f"Invalid subtask at index {index}: expected an object")
                continue
            if not subtask.get("specialization") or not subtask.get("description"):
                errors.append(f"Invalid subtask at index {index}: missing required fields")
                continue
            spec = AgentSpecialization.parse(subtask["specialization"])
            if spec is None:
                errors.append(f"Invalid specialization: {subtask['specialization']}")
                continue
            if subtask.get("input") is not None and not isinstance(subtask["input"], dict):
                errors.append(f"Invalid subtask at index {index}: input must be an object")
                continue
            specs.append(spec)
        if errors:
            raise WorkflowValidationError(errors)

        offset = len(self.session.tasks)
        ids = [f"task-{offset + i + 1}" for i in range(len(subtasks))]
        labels = {
            str(subtask["id"]): ids[i] for i, subtask in enumerate(subtasks) if "id" in subtask
        }

        def resolve(ref: Any) -> str:
            if str(ref) in labels:
                return labels[str(ref)]
            if isinstance(ref, int) or (isinstance(ref, str) and ref.isdigit()):
                if 0 <= int(ref) < len(ids):
                    return ids[int(ref)]
            return str(ref)

        created = []
        for i, subtask in enumerate(subtasks):
            task = self.add_task(
                specs[i],
                input={**(subtask.get("input") or {}), "request": request},
                dependencies=[resolve(ref) for ref in subtask.get("dependencies") or []],
                description=subtask["description"],
                task_id=ids[i],
            )
            created.append(task)

        logger.info(f"Decomposed request into {len(created)} task(s)")
        return created

    def _parse_subtasks(self, output: Any) -> list[Any]:
        if isinstance(output, str):
            try:
                output = json.loads(output)
            except json.JSONDecodeError as e:
                raise CapabilityError(f"Invalid JSON response from decomposition: {e}") from e
        if not isinstance(output, dict) or not isinstance(output.get("subtasks"), list):
            raise CapabilityError("Invalid response format: missing or invalid subtasks array")
        return output["subtasks"]

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run(self, cancel_token: CancellationToken | None = None) -> SessionResult:
        """Run every task, then synthesize. Never raises for a failed session."""
        set_trace_context(trace_id=self.session.id, session_id=self.session.id)
        started = time.monotonic()
        self._total_tokens = 0
        logger.info(
            f"🚀 Starting session {self.session.id} with {len(self.session.tasks)} task(s)"
        )

        try:
            output = await self._drive(cancel_token)
        except SkillflowError as e:
            result = self._finish(started, error=e)
        except asyncio.CancelledError:
            logger.info("⏸ Session cancelled by task cancellation")
            result = self._finish(started, error=ExecutionCancelledError())
        except Exception as e:
            logger.exception("Unexpected orchestrator failure")
            result = self._finish(started, error=InternalError(f"{type(e).__name__}: {e}"))
        else:
            result = self._finish(started, output=output)

        if self.telemetry is not None:
            self.telemetry.track_session_execution(
                session_id=self.session.id,
                success=result.success,
                duration_ms=result.duration_ms,
                task_count=len(self.session.tasks),
                completed_tasks=len(self.session.completed_ids()),
                error_kind=result.error_kind,
            )
        return result

    async def execute(
        self, request: str, cancel_token: CancellationToken | None = None
    ) -> SessionResult:
        """Decompose ``request`` and run the resulting tasks."""
        started = time.monotonic()
        try:
            await self.decompose(request)
        except SkillflowError as e:
            logger.error(f"Task decomposition failed: {e.message}")
            return self._finish(started, error=e)
        return await self.run(cancel_token)

    async def _drive(self, cancel_token: CancellationToken | None) -> Any:
        if not self.session.tasks:
            raise WorkflowValidationError(["No tasks to execute in session"])

        passes = 0
        while True:
            if cancel_token is not None and cancel_token.cancelled:
                raise ExecutionCancelledError(cancel_token.reason)

            completed = self.session.completed_ids()
            eligible = [task for task in self.session.tasks if task.is_ready(completed)]
            if not eligible:
                break
            passes += 1
            logger.debug(f"Pass {passes}: running {[t.id for t in eligible]}")

            snapshot = copy.deepcopy(self.session.shared_context)
            for task in eligible:
                task.transition(TaskStatus.IN_PROGRESS)
            results = await asyncio.gather(
                *(self._run_task(task, snapshot, cancel_token) for task in eligible)
            )

            # Single authoritative merge, between passes
            failure: tuple[AgentTask, SkillflowError] | None = None
            for task, result in zip(eligible, results, strict=True):
                task.attempts = result.attempts
                if result.success:
                    task.result = result.value.output
                    task.transition(TaskStatus.COMPLETED)
                    self.session.shared_context[task.id] = copy.deepcopy(task.result)
                else:
                    error = result.error or InternalError("Task failed without an error")
                    task.error = error.message
                    task.error_kind = error.kind
                    task.transition(TaskStatus.FAILED)
                    if failure is None:
                        failure = (task, error)

            if failure is not None:
                task, error = failure
                raise error.with_prefix(f"Task {task.id} failed: ") from error

        pending = self.session.pending()
        if pending:
            raise self._unsatisfied(pending)

        return await self._synthesize(cancel_token)

    def _unsatisfied(self, pending: list[AgentTask]) -> DependencyUnsatisfiedError:
        known = {task.id for task in self.session.tasks}
        missing = {
            task.id: [dep for dep in task.dependencies if dep not in known]
            for task in pending
            if any(dep not in known for dep in task.dependencies)
        }
        cycles = find_cycles({task.id: list(task.dependencies) for task in pending})

        problems = [
            f"{task_id} depends on unknown task(s) {', '.join(deps)}"
            for task_id, deps in missing.items()
        ]
        problems += [f"circular dependency {' -> '.join(cycle)}" for cycle in cycles]
        if not problems:
            problems.append("dependencies can never complete")

        blocked = {
            task.id: [d for d in task.dependencies if d not in self.session.completed_ids()]
            for task in pending
        }
        message = (
            f"Not all tasks could be completed. Unfinished tasks: "
            f"{', '.join(t.id for t in pending)} ({'; '.join(problems)})"
        )
        logger.error(message)
        return DependencyUnsatisfiedError(message, missing=blocked)

    async def _run_task(
        self,
        task: AgentTask,
        snapshot: dict[str, Any],
        cancel_token: CancellationToken | None,
    ) -> InvocationResult[CapabilityResponse]:
        async with self._semaphore:
            set_trace_context(task_id=task.id)
            context = copy.deepcopy(snapshot)
            profile = AGENT_PROFILES[task.specialization]
            payload = {
                "agent": profile.name,
                "system": profile.description,
                "temperature": profile.temperature,
                **task.input,
                "description": task.description,
                "context": context,
                "dependency_results": {dep: context.get(dep) for dep in task.dependencies},
            }
            ref = self.capabilities[task.specialization]
            logger.info(f"▶ Task {task.id} ({task.specialization}) via {ref}")
            started = time.monotonic()
            result = await self._invoke(ref, payload, cancel_token)
            if result.success and (result.value.output is None or result.value.output == ""):
                result = InvocationResult(
                    success=False,
                    error=CapabilityError("Empty response from task execution"),
                    attempts=result.attempts,
                    duration_ms=result.duration_ms,
                    audit=result.audit,
                )
            duration_ms = int((time.monotonic() - started) * 1000)

            tokens = 0
            if result.success and result.value.tokens_used:
                tokens = result.value.tokens_used.total
            if result.success:
                logger.info(f"  ✓ Task {task.id} completed in {duration_ms}ms")
            else:
                logger.error(f"  ✗ Task {task.id} failed: {result.error.message}")

            if self.telemetry is not None:
                self.telemetry.track_task_execution(
                    session_id=self.session.id,
                    task_id=task.id,
                    specialization=task.specialization,
                    success=result.success,
                    duration_ms=duration_ms,
                    attempts=result.attempts,
                    tokens=tokens,
                    error_kind=result.error_kind,
                )
            return result

    async def _synthesize(self, cancel_token: CancellationToken | None) -> Any:
        task_results = {
            task.id: {
                "specialization": task.specialization.value,
                "description": task.description,
                "result": task.result,
            }
            for task in self.session.tasks
            if task.status == TaskStatus.COMPLETED
        }
        payload = {
            "request": self.session.shared_context.get("request"),
            "task_results": task_results,
            "context": copy.deepcopy(self.session.shared_context),
        }
        logger.info(f"Synthesizing results of {len(task_results)} task(s)")
        result = await self._invoke(SYNTHESIZE_CAPABILITY, payload, cancel_token)
        if not result.success:
            error = result.error or InternalError("Synthesis failed")
            raise error.with_prefix("Result synthesis failed: ") from error
        output = result.value.output
        if output is None or output == "":
            raise CapabilityError("Empty response from synthesis")
        return output

    async def _invoke(
        self,
        ref: str,
        payload: dict[str, Any],
        cancel_token: CancellationToken | None = None,
    ) -> InvocationResult[CapabilityResponse]:
        async def call() -> CapabilityResponse:
            response = await self.provider.invoke(ref, payload)
            if not response.success:
                raise CapabilityError(
                    response.error or f"Capability '{ref}' failed",
                    retryable=response.retryable,
                    context={"capability": ref},
                )
            return response

        result = await self.invoker.invoke(call, key=ref, cancel_token=cancel_token)
        if result.success and result.value.tokens_used:
            self._total_tokens += result.value.tokens_used.total
        return result

    def _finish(
        self,
        started: float,
        output: Any = None,
        error: SkillflowError | None = None,
    ) -> SessionResult:
        duration_ms = int((time.monotonic() - started) * 1000)
        if error is None:
            self.session.status = SessionStatus.COMPLETED
            self.session.result = output
            logger.info(f"✓ Session {self.session.id} completed in {duration_ms}ms")
        else:
            self.session.status = SessionStatus.FAILED
            logger.error(f"❌ Session {self.session.id} failed: {error.message}")
        self.session.updated_at = datetime.now(UTC)

        return SessionResult(
            success=error is None,
            output=output,
            error=error.message if error else None,
            error_kind=error.kind if error else None,
            session_id=self.session.id,
            status=self.session.status,
            tasks=[task.model_copy(deep=True) for task in self.session.tasks],
            shared_context=copy.deepcopy(self.session.shared_context),
            missing_dependencies=(
                error.missing if isinstance(error, DependencyUnsatisfiedError) else {}
            ),
            duration_ms=duration_ms,
            total_tokens=self._total_tokens,
        )
