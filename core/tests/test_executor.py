"""Tests for GraphExecutor end to end."""

import asyncio

import pytest

from skillflow.errors import ErrorKind
from skillflow.graph.executor import GraphExecutor, resolve_inputs
from skillflow.graph.workflow import ExecutionState, Workflow
from skillflow.runtime.cancellation import CancellationToken
from skillflow.runtime.capability import CallableCapabilityProvider
from skillflow.runtime.resilience import RetryPolicy
from skillflow.runtime.telemetry import TelemetrySink


def node(node_id, kind, targets=(), **config):
    return {
        "id": node_id,
        "kind": kind,
        "config": config,
        "connections": [t if isinstance(t, dict) else {"target": t} for t in targets],
    }


def review_pipeline():
    return {
        "id": "code-review",
        "name": "Code review",
        "nodes": [
            node("in", "Input", ["review"], name="code"),
            node("review", "Skill", ["out"], capability="reviewer"),
            node("out", "Output", name="result"),
        ],
    }


def make_executor(handlers, **kwargs):
    kwargs.setdefault("policy", RetryPolicy(max_attempts=2, backoff_base_ms=0))
    return GraphExecutor(CallableCapabilityProvider(handlers), **kwargs)


@pytest.mark.asyncio
async def test_linear_pipeline():
    seen = []

    def review(payload):
        seen.append(payload)
        return {"issues": []}

    result = await make_executor({"reviewer": review}).execute(
        review_pipeline(), {"code": "def f(): pass"}
    )

    assert result.success, result.error
    assert result.output == {"result": {"issues": []}}
    assert result.state == ExecutionState.SUCCEEDED
    assert result.workflow_id == "code-review"
    assert seen == [{"input": "def f(): pass"}]
    assert result.phases() == [
        ("in", "started"),
        ("in", "completed"),
        ("review", "started"),
        ("review", "completed"),
        ("out", "started"),
        ("out", "completed"),
    ]


@pytest.mark.asyncio
async def test_same_input_same_trace():
    executor = make_executor({"reviewer": lambda p: {"issues": [p["input"]]}})
    first = await executor.execute(review_pipeline(), {"code": "x"})
    second = await executor.execute(review_pipeline(), {"code": "x"})
    assert first.phases() == second.phases()
    assert first.output == second.output
    assert first.execution_id != second.execution_id


@pytest.mark.asyncio
async def test_fan_in_with_handles():
    workflow = {
        "id": "fan-in",
        "nodes": [
            node("code", "Input", [{"target": "merge", "targetHandle": "code"}], name="code"),
            node("lang", "Input", [{"target": "merge", "targetHandle": "language"}], name="lang"),
            node(
                "merge",
                "Skill",
                [{"target": "out", "sourceHandle": "summary"}],
                capability="merge",
            ),
            node("out", "Output"),
        ],
    }
    executor = make_executor(
        {"merge": lambda p: {"summary": f"{p['language']}:{p['code']}", "extra": 1}}
    )
    result = await executor.execute(workflow, {"code": "x", "lang": "py"})
    assert result.success, result.error
    assert result.output == {"output": "py:x"}


def test_resolve_inputs_keys_by_source_when_several():
    workflow = Workflow.model_validate(
        {
            "nodes": [
                node("a", "Input", ["m"]),
                node("b", "Input", ["m"]),
                node("m", "Output"),
            ]
        }
    )
    resolved = resolve_inputs(workflow, workflow.get_node("m"), {"a": 1, "b": 2})
    assert resolved == {"a": 1, "b": 2}


@pytest.mark.asyncio
async def test_validation_failure_runs_nothing():
    calls = []
    workflow = review_pipeline()
    workflow["nodes"].pop()  # no Output node

    result = await make_executor({"reviewer": calls.append}).execute(workflow, {"code": "x"})
    assert not result.success
    assert result.error_kind == ErrorKind.VALIDATION_ERROR
    assert "Workflow must have at least one Output node" in result.validation_errors
    assert result.events == []
    assert calls == []


@pytest.mark.asyncio
async def test_cycle_is_rejected_before_execution():
    workflow = {
        "nodes": [
            node("in", "Input", ["a"]),
            node("a", "Skill", ["b"], capability="s"),
            node("b", "Skill", ["a", "out"], capability="s"),
            node("out", "Output"),
        ]
    }
    result = await make_executor({"s": lambda p: p}).execute(workflow)
    assert result.error_kind == ErrorKind.VALIDATION_ERROR
    assert any(e.startswith("Cycle detected") for e in result.validation_errors)
    assert result.events == []


@pytest.mark.asyncio
async def test_failure_halts_downstream():
    workflow = {
        "id": "halt",
        "nodes": [
            node("in", "Input", ["review"], name="code"),
            node("review", "Skill", ["fix"], capability="reviewer"),
            node("fix", "Skill", ["out"], capability="fixer"),
            node("out", "Output"),
        ],
    }
    fixer_calls = []
    executor = make_executor(
        {
            "reviewer": lambda p: {"success": False, "error": "bad code", "retryable": False},
            "fixer": fixer_calls.append,
        }
    )
    result = await executor.execute(workflow, {"code": "x"})

    assert not result.success
    assert result.state == ExecutionState.FAILED
    assert result.error == "Node review failed: bad code"
    assert result.error_kind == ErrorKind.CAPABILITY_ERROR
    assert result.output == {}
    assert fixer_calls == []
    assert "fix" not in result.started_nodes()
    assert result.events[-1].node_id == "review"
    assert result.node_outputs == {"in": "x"}


@pytest.mark.asyncio
async def test_failure_keeps_completed_outputs():
    workflow = {
        "nodes": [
            node("in", "Input", ["draft", "review"], name="code"),
            node("draft", "Output", name="draft"),
            node("review", "Skill", ["out"], capability="reviewer"),
            node("out", "Output", name="result"),
        ]
    }
    executor = make_executor(
        {"reviewer": lambda p: {"success": False, "error": "bad code", "retryable": False}}
    )
    result = await executor.execute(workflow, {"code": "x"})

    assert result.state == ExecutionState.FAILED
    assert result.output == {"draft": "x"}
    assert "out" not in result.started_nodes()


@pytest.mark.asyncio
async def test_cancel_before_run():
    token = CancellationToken()
    token.cancel()
    result = await make_executor({"reviewer": lambda p: 1}).execute(
        review_pipeline(), {"code": "x"}, cancel_token=token
    )
    assert result.error_kind == ErrorKind.CANCELLED
    assert result.events == []


@pytest.mark.asyncio
async def test_cancel_mid_node():
    token = CancellationToken()
    entered = asyncio.Event()

    async def slow_review(payload):
        entered.set()
        await asyncio.sleep(10)
        return {}

    executor = make_executor({"reviewer": slow_review})
    task = asyncio.create_task(
        executor.execute(review_pipeline(), {"code": "x"}, cancel_token=token)
    )
    await entered.wait()
    token.cancel("user abort")
    result = await asyncio.wait_for(task, timeout=1)

    assert not result.success
    assert result.error_kind == ErrorKind.CANCELLED
    assert "out" not in result.started_nodes()
    assert result.phases()[-1] == ("review", "failed")


@pytest.mark.asyncio
async def test_task_cancellation_returns_cancelled_result():
    entered = asyncio.Event()

    async def slow_review(payload):
        entered.set()
        await asyncio.sleep(10)

    task = asyncio.create_task(
        make_executor({"reviewer": slow_review}).execute(review_pipeline(), {"code": "x"})
    )
    await entered.wait()
    task.cancel()
    result = await task
    assert result.error_kind == ErrorKind.CANCELLED
    assert result.phases()[-1] == ("review", "failed")


@pytest.mark.asyncio
async def test_parallel_wave_runs_concurrently():
    running = 0
    peak = 0

    async def work(payload):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1
        return payload["input"]

    workflow = {
        "nodes": [
            node("in", "Input", ["a", "b"], name="x"),
            node("a", "Skill", [{"target": "out", "targetHandle": "a"}], capability="work"),
            node("b", "Skill", [{"target": "out", "targetHandle": "b"}], capability="work"),
            node("out", "Output"),
        ]
    }
    result = await make_executor({"work": work}, parallel=True).execute(workflow, {"x": 5})
    assert result.success
    assert result.output == {"output": {"a": 5, "b": 5}}
    assert peak == 2


@pytest.mark.asyncio
async def test_unexpected_handler_exception_is_contained():
    def broken(payload):
        raise ValueError("boom")

    result = await make_executor({"reviewer": broken}).execute(review_pipeline(), {"code": "x"})
    assert not result.success
    assert result.error_kind == ErrorKind.CAPABILITY_ERROR
    assert "boom" in result.error


@pytest.mark.asyncio
async def test_workflow_telemetry():
    sink = TelemetrySink()
    executor = make_executor(
        {"reviewer": lambda p: {"success": True, "output": 1, "tokens_used": {"prompt": 4}}},
        telemetry=sink,
    )
    result = await executor.execute(review_pipeline(), {"code": "x"})
    assert result.total_tokens == 4

    types = [event.event_type for event in sink.pending]
    assert types == ["node_execution"] * 3 + ["workflow_execution"]
    summary = sink.pending[-1]
    assert summary.properties["success"] is True
    assert summary.properties["node_count"] == 3
    assert summary.properties["total_tokens"] == 4
    assert summary.context["execution_id"] == result.execution_id
